"""Tests for BundleProcessor fan-out, paging, and persistence."""

import asyncio
import logging
import math
import threading

import pytest
from conftest import CountingStorage, RecordingBundle, seed
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from bundlehost.core.bundle import Bundle
from bundlehost.core.loader import BundleLoader
from bundlehost.core.models import BundleInstance, EntityChangeEvent, RecurringJob
from bundlehost.core.processor import BundleProcessor
from bundlehost.core.resilience import ResilienceManager
from bundlehost.storage.filesystem import FileSystemInstanceStorage


class FreshIdBundle(RecordingBundle):
    """Returns results under a brand new id every time."""

    id = "fresh"

    def handle_event(self, event_name, instance):
        super().handle_event(event_name, instance)
        return BundleInstance(
            bundle_id=instance.bundle_id,
            bundle_version=instance.bundle_version,
            properties={"status": "success", "originalInstanceId": instance.id},
        )


class SelectiveFailureBundle(RecordingBundle):
    """Raises for a chosen set of instance ids."""

    id = "selective"

    def __init__(self, failing: set[str]) -> None:
        super().__init__()
        self.failing = failing

    def handle_event(self, event_name, instance):
        if instance.id in self.failing:
            raise RuntimeError(f"cannot process {instance.id}")
        return super().handle_event(event_name, instance)

    def upgrade_instance(self, instance):
        if instance.id in self.failing:
            raise RuntimeError(f"cannot upgrade {instance.id}")
        return super().upgrade_instance(instance)


class JobBundle(RecordingBundle):
    id = "jobs"
    recurring_jobs = [
        RecurringJob(
            name="DataProcessing",
            cron_schedule="0 */3 * * *",
            description="Processes data",
            parameters={"eventName": "data.process", "batchSize": 100},
        ),
        RecurringJob(name="Cleanup", cron_schedule="30 4 * * *"),
    ]


def build_processor(storage, *bundles: Bundle, page_size: int = 1000, timeout: float = 2.0):
    loader = BundleLoader()
    for b in bundles:
        loader.register(b)
    return BundleProcessor(loader, storage, ResilienceManager(timeout=timeout), page_size=page_size)


@pytest.fixture
def make_processor():
    """Build processors and release their handler threads at teardown."""
    built: list[BundleProcessor] = []

    def factory(storage, *bundles: Bundle, page_size: int = 1000, timeout: float = 2.0):
        processor = build_processor(storage, *bundles, page_size=page_size, timeout=timeout)
        built.append(processor)
        return processor

    yield factory
    for processor in built:
        processor.resilience.shutdown(wait=True, timeout=1.0)


@pytest.fixture
def customer_event() -> EntityChangeEvent:
    return EntityChangeEvent(
        entity_type="customer",
        entity_id="c1",
        event_type="updated",
        entity_data={"plan": "gold"},
        metadata={"source": "crm"},
    )


class TestEntityEvents:
    async def test_billing_scenario(self, make_processor, storage, bundle, customer_event):
        ids = await seed(storage, "billing", 3)
        processor = make_processor(storage, bundle)

        results = await processor.process_entity_event(customer_event)

        assert len(results) == 1
        stats = results[0]
        assert (stats.attempted, stats.succeeded, stats.failed) == (3, 3, 0)
        assert stats.pages_fetched == 2
        assert [name for name, _ in bundle.calls] == ["entity.updated"] * 3

        for instance_id in ids:
            stored = await storage.get(instance_id)
            assert stored is not None
            assert stored.properties["handled"] == "entity.updated"
            assert stored.properties["_entityType"] == "customer"
            assert stored.properties["_entityId"] == "c1"
            assert stored.properties["_eventType"] == "updated"
            assert stored.properties["_eventTimestamp"] == customer_event.timestamp
            assert stored.properties["_entity_plan"] == "gold"
            assert stored.properties["_meta_source"] == "crm"
        assert await storage.get_count() == 3

    async def test_bundle_sees_enriched_instance(self, make_processor, storage, bundle, customer_event):
        await seed(storage, "billing", 1)
        processor = make_processor(storage, bundle)

        await processor.process_entity_event(customer_event)

        _, seen = bundle.calls[0]
        assert seen.properties["n"] == 0
        assert "_entityId" in seen.properties

    async def test_every_bundle_is_processed(self, make_processor, storage, customer_event):
        billing = RecordingBundle()
        jobs = JobBundle()
        await seed(storage, "billing", 2)
        await seed(storage, "jobs", 3)
        processor = make_processor(storage, billing, jobs)

        results = await processor.process_entity_event(customer_event)

        assert [(s.bundle_id, s.succeeded) for s in results] == [("billing", 2), ("jobs", 3)]

    async def test_no_bundles_logs_warning(self, make_processor, storage, customer_event, caplog):
        processor = make_processor(storage)

        with caplog.at_level(logging.WARNING, logger="bundlehost"):
            results = await processor.process_entity_event(customer_event)

        assert results == []
        assert any("No bundles loaded" in r.getMessage() for r in caplog.records)

    async def test_bundle_without_instances_fetches_one_page(self, make_processor, storage, bundle, customer_event):
        processor = make_processor(storage, bundle)

        results = await processor.process_entity_event(customer_event)

        assert results[0].attempted == 0
        assert len(storage.page_requests) == 1
        assert bundle.calls == []

    async def test_storage_failure_for_one_bundle_does_not_stop_others(self, make_processor, customer_event):
        class FlakyStorage(CountingStorage):
            async def get_by_bundle_id(self, bundle_id, pagination):
                if bundle_id == "billing":
                    raise ConnectionError("storage down")
                return await super().get_by_bundle_id(bundle_id, pagination)

        storage = FlakyStorage()
        await seed(storage, "jobs", 2)
        processor = make_processor(storage, RecordingBundle(), JobBundle())

        results = await processor.process_entity_event(customer_event)

        assert [(s.bundle_id, s.succeeded) for s in results] == [("billing", 0), ("jobs", 2)]

    async def test_none_event_rejected(self, make_processor, storage, bundle):
        with pytest.raises(ValueError):
            await make_processor(storage, bundle).process_entity_event(None)  # type: ignore[arg-type]


class TestPaging:
    @pytest.mark.timeout(60)
    async def test_2500_records_take_four_fetches(self, make_processor, storage, bundle, customer_event):
        await seed(storage, "billing", 2500)
        processor = make_processor(storage, bundle, page_size=1000)

        stats = (await processor.process_entity_event(customer_event))[0]

        assert stats.pages_fetched == 4
        assert [r.page_number for r in storage.page_requests] == [1, 2, 3, 4]
        assert all(r.page_size == 1000 for r in storage.page_requests)
        assert stats.succeeded == 2500
        assert len(bundle.calls) == 2500

    async def test_exact_multiple_of_page_size(self, make_processor, storage, bundle, customer_event):
        await seed(storage, "billing", 200)
        processor = make_processor(storage, bundle, page_size=100)

        stats = (await processor.process_entity_event(customer_event))[0]

        assert stats.pages_fetched == 3
        assert stats.succeeded == 200

    @settings(max_examples=15, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(count=st.integers(min_value=0, max_value=60), page_size=st.integers(min_value=1, max_value=25))
    def test_fetch_count_and_single_visit(self, count: int, page_size: int):
        async def scenario():
            storage = CountingStorage()
            bundle = RecordingBundle()
            ids = await seed(storage, "billing", count)
            processor = build_processor(storage, bundle, page_size=page_size)
            try:
                results = await processor.process_entity_event(
                    EntityChangeEvent(entity_type="t", entity_id="e", event_type="updated")
                )
            finally:
                processor.resilience.shutdown()
            return ids, bundle, results[0]

        ids, bundle, stats = asyncio.run(scenario())

        assert stats.pages_fetched == math.ceil(count / page_size) + 1
        seen = [instance.id for _, instance in bundle.calls]
        assert sorted(seen) == sorted(ids)
        assert len(set(seen)) == len(seen)

    @pytest.mark.parametrize("page_size", [0, 1001])
    def test_invalid_page_size_rejected(self, make_processor, storage, bundle, page_size):
        with pytest.raises(ValueError):
            make_processor(storage, bundle, page_size=page_size)


class TestPersistence:
    async def test_result_persisted_under_original_id(self, make_processor, storage, customer_event):
        ids = await seed(storage, "fresh", 3)
        processor = make_processor(storage, FreshIdBundle())

        stats = (await processor.process_entity_event(customer_event))[0]

        assert stats.succeeded == 3
        assert await storage.get_count() == 3
        for instance_id in ids:
            stored = await storage.get(instance_id)
            assert stored.properties == {"status": "success", "originalInstanceId": instance_id}

    async def test_refused_update_counts_as_failure(self, make_processor, storage, bundle, customer_event, caplog):
        ids = await seed(storage, "billing", 3)
        storage.refuse_updates.add(ids[1])
        processor = make_processor(storage, bundle)

        with caplog.at_level(logging.WARNING, logger="bundlehost"):
            stats = (await processor.process_entity_event(customer_event))[0]

        assert (stats.succeeded, stats.failed) == (2, 1)
        assert any(ids[1] in r.getMessage() for r in caplog.records)

    async def test_faulting_instance_is_isolated(self, make_processor, storage, customer_event):
        ids = await seed(storage, "selective", 4)
        bundle = SelectiveFailureBundle({ids[1], ids[2]})
        processor = make_processor(storage, bundle)

        stats = (await processor.process_entity_event(customer_event))[0]

        assert (stats.attempted, stats.succeeded, stats.failed) == (4, 2, 2)
        assert (await storage.get(ids[1])).properties == {"n": 1}
        assert (await storage.get(ids[3])).properties["handled"] == "entity.updated"


class TestRecurringJobs:
    async def test_event_name_override(self, make_processor, storage):
        bundle = JobBundle()
        await seed(storage, "jobs", 2)
        processor = make_processor(storage, bundle)

        stats = await processor.execute_recurring_job(
            "jobs", "DataProcessing", {"eventName": "data.process", "batchSize": 100}
        )

        assert stats.succeeded == 2
        assert {name for name, _ in bundle.calls} == {"data.process"}
        _, seen = bundle.calls[0]
        assert seen.properties["_recurringJobName"] == "DataProcessing"
        assert seen.properties["_recurringJobDescription"] == "Processes data"
        assert seen.properties["_job_batchSize"] == 100
        assert seen.properties["_job_eventName"] == "data.process"
        assert "_executionTimestamp" in seen.properties

    async def test_default_event_name(self, make_processor, storage):
        bundle = JobBundle()
        await seed(storage, "jobs", 1)
        processor = make_processor(storage, bundle)

        await processor.execute_recurring_job("jobs", "Cleanup")

        assert bundle.calls[0][0] == "recurring.Cleanup"
        assert bundle.calls[0][1].properties["_recurringJobDescription"] is None

    async def test_unknown_job_does_nothing(self, make_processor, storage, caplog):
        bundle = JobBundle()
        await seed(storage, "jobs", 2)
        processor = make_processor(storage, bundle)

        with caplog.at_level(logging.WARNING, logger="bundlehost"):
            stats = await processor.execute_recurring_job("jobs", "Nope")

        assert stats.attempted == 0
        assert bundle.calls == []
        assert storage.page_requests == []
        assert any("Nope" in r.getMessage() for r in caplog.records)

    async def test_unknown_bundle_does_nothing(self, make_processor, storage):
        processor = make_processor(storage, JobBundle())

        stats = await processor.execute_recurring_job("ghost", "Cleanup")

        assert stats.attempted == 0
        assert storage.page_requests == []

    async def test_storage_failure_is_reraised(self, make_processor):
        class BrokenStorage(CountingStorage):
            async def get_by_bundle_id(self, bundle_id, pagination):
                raise ConnectionError("storage down")

        processor = make_processor(BrokenStorage(), JobBundle())

        with pytest.raises(ConnectionError):
            await processor.execute_recurring_job("jobs", "Cleanup")

    @pytest.mark.parametrize("bundle_id,job_name", [("", "Cleanup"), ("jobs", " "), (None, "Cleanup")])
    async def test_blank_arguments_rejected(self, make_processor, storage, bundle_id, job_name):
        with pytest.raises(ValueError):
            await make_processor(storage, JobBundle()).execute_recurring_job(bundle_id, job_name)


class TestExecuteInstance:
    async def test_single_call_and_persist(self, make_processor, storage, bundle):
        ids = await seed(storage, "billing", 3)
        processor = make_processor(storage, bundle)

        stats = await processor.execute_instance(ids[1], "manual.run")

        assert (stats.attempted, stats.succeeded) == (1, 1)
        assert len(bundle.calls) == 1
        assert (await storage.get(ids[1])).properties["handled"] == "manual.run"
        assert "handled" not in (await storage.get(ids[0])).properties

    async def test_default_event_name(self, make_processor, storage, bundle):
        ids = await seed(storage, "billing", 1)
        processor = make_processor(storage, bundle)

        await processor.execute_instance(ids[0])

        assert bundle.calls[0][0] == "background.execute"

    async def test_missing_instance(self, make_processor, storage, bundle, caplog):
        processor = make_processor(storage, bundle)

        with caplog.at_level(logging.WARNING, logger="bundlehost"):
            stats = await processor.execute_instance("ghost")

        assert stats.attempted == 0
        assert bundle.calls == []
        assert any("ghost" in r.getMessage() for r in caplog.records)

    async def test_missing_bundle(self, make_processor, storage):
        await storage.create(BundleInstance(id="orphan", bundle_id="unloaded"))
        processor = make_processor(storage, RecordingBundle())

        stats = await processor.execute_instance("orphan")

        assert stats.attempted == 0
        assert (await storage.get("orphan")).properties == {}

    async def test_handler_fault_counts_as_failure(self, make_processor, storage):
        await storage.create(BundleInstance(id="x1", bundle_id="selective"))
        processor = make_processor(storage, SelectiveFailureBundle({"x1"}))

        stats = await processor.execute_instance("x1")

        assert (stats.attempted, stats.failed) == (1, 1)

    @pytest.mark.parametrize("instance_id,event_name", [("", "e"), ("i", ""), (None, "e")])
    async def test_blank_arguments_rejected(self, make_processor, storage, bundle, instance_id, event_name):
        with pytest.raises(ValueError):
            await make_processor(storage, bundle).execute_instance(instance_id, event_name)


class TestUpgrades:
    async def test_only_outdated_instances_upgraded(self, make_processor, storage, bundle):
        old = await seed(storage, "billing", 3, version="1.0.0")
        await storage.create(BundleInstance(id="up-to-date", bundle_id="billing", bundle_version="2.0.0"))

        upgraded: list[str] = []
        original = bundle.upgrade_instance

        def spy(instance):
            upgraded.append(instance.id)
            return original(instance)

        bundle.upgrade_instance = spy  # type: ignore[method-assign]
        processor = make_processor(storage, bundle)

        stats = await processor.upgrade_instances("billing")

        assert sorted(upgraded) == sorted(old)
        assert (stats.attempted, stats.succeeded, stats.skipped) == (3, 3, 1)
        for instance_id in old:
            stored = await storage.get(instance_id)
            assert stored.id == instance_id
            assert stored.bundle_version == "2.0.0"
            assert stored.properties["_upgraded"] is True
            assert stored.properties["_originalVersion"] == "1.0.0"
            assert stored.properties["rate"] == 10
        assert "_upgraded" not in (await storage.get("up-to-date")).properties
        assert await storage.get_count() == 4

    async def test_upgrade_fault_continues(self, make_processor, storage):
        ids = await seed(storage, "selective", 3, version="0.1.0")
        bundle = SelectiveFailureBundle({ids[0]})
        processor = make_processor(storage, bundle)

        stats = await processor.upgrade_instances("selective")

        assert (stats.attempted, stats.succeeded, stats.failed) == (3, 2, 1)
        assert (await storage.get(ids[0])).bundle_version == "0.1.0"
        assert (await storage.get(ids[2])).bundle_version == "2.0.0"

    async def test_non_instance_result_is_a_failure(self, make_processor, storage):
        class BadUpgrade(RecordingBundle):
            def upgrade_instance(self, instance):
                return None

        await seed(storage, "billing", 2, version="1.0.0")
        processor = make_processor(storage, BadUpgrade())

        stats = await processor.upgrade_instances("billing")

        assert (stats.attempted, stats.failed) == (2, 2)

    async def test_unknown_bundle(self, make_processor, storage):
        stats = await make_processor(storage).upgrade_instances("ghost")
        assert stats.attempted == 0


class TestExecuteBundles:
    async def test_runs_each_bundle_on_fresh_instance(self, make_processor, storage):
        billing = RecordingBundle()
        jobs = JobBundle()
        processor = make_processor(storage, billing, jobs)

        results = await processor.execute_bundles("adhoc", {"rate": 42})

        assert [r.bundle_id for r in results] == ["billing", "jobs"]
        assert all(r.properties["rate"] == 42 for r in results)
        assert all(r.properties["handled"] == "adhoc" for r in results)
        assert await storage.get_count() == 0

    async def test_faulting_bundle_is_omitted(self, make_processor, storage):
        class AlwaysFails(RecordingBundle):
            id = "fails"

            def handle_event(self, event_name, instance):
                raise RuntimeError("nope")

        processor = make_processor(storage, RecordingBundle(), AlwaysFails())

        results = await processor.execute_bundles("adhoc")

        assert [r.bundle_id for r in results] == ["billing"]


class HangingBundle(RecordingBundle):
    """Blocks every call until released, far past any handler timeout."""

    id = "aaa-hangs"

    def __init__(self, release: threading.Event) -> None:
        super().__init__()
        self.release = release

    def handle_event(self, event_name, instance):
        self.release.wait(timeout=10)
        return super().handle_event(event_name, instance)


class OpaqueBundle(RecordingBundle):
    """Puts a value JSON cannot represent into the result."""

    id = "opaque"

    def handle_event(self, event_name, instance):
        return instance.with_properties({**instance.properties, "obj": object()})


class TestIsolation:
    @pytest.mark.timeout(30)
    async def test_hung_bundle_does_not_fail_the_next_bundle(
        self, make_processor, storage, bundle, customer_event, release_event
    ):
        await seed(storage, "aaa-hangs", 40)
        await seed(storage, "billing", 3)
        processor = make_processor(storage, HangingBundle(release_event), bundle, timeout=0.05)

        try:
            results = await processor.process_entity_event(customer_event)
        finally:
            release_event.set()

        assert [(s.bundle_id, s.attempted, s.succeeded, s.failed) for s in results] == [
            ("aaa-hangs", 40, 0, 40),
            ("billing", 3, 3, 0),
        ]

    async def test_unserializable_result_is_a_failed_write(self, make_processor, tmp_path, caplog):
        storage = FileSystemInstanceStorage(tmp_path / "instances")
        await storage.create(BundleInstance(id="x1", bundle_id="opaque", properties={"n": 1}))
        processor = make_processor(storage, OpaqueBundle())

        with caplog.at_level(logging.WARNING, logger="bundlehost"):
            stats = await processor.execute_instance("x1")

        assert (stats.attempted, stats.succeeded, stats.failed) == (1, 0, 1)
        assert (await storage.get("x1")).properties == {"n": 1}
        assert any("Failed to update instance 'x1'" in r.getMessage() for r in caplog.records)

    async def test_unserializable_result_in_fan_out_continues(self, make_processor, tmp_path, customer_event):
        storage = FileSystemInstanceStorage(tmp_path / "instances")
        await seed(storage, "opaque", 3)
        processor = make_processor(storage, OpaqueBundle())

        stats = (await processor.process_entity_event(customer_event))[0]

        assert (stats.attempted, stats.succeeded, stats.failed) == (3, 0, 3)


class TestMultiPageOperations:
    async def test_upgrade_walks_every_page(self, make_processor, storage, bundle):
        old = await seed(storage, "billing", 7, version="1.0.0")
        for i in range(3):
            await storage.create(BundleInstance(id=f"current-{i}", bundle_id="billing", bundle_version="2.0.0"))
        processor = make_processor(storage, bundle, page_size=3)

        stats = await processor.upgrade_instances("billing")

        assert (stats.attempted, stats.succeeded, stats.skipped) == (7, 7, 3)
        assert stats.pages_fetched == 5
        assert [r.page_number for r in storage.page_requests] == [1, 2, 3, 4, 5]
        for instance_id in old:
            assert (await storage.get(instance_id)).bundle_version == "2.0.0"

    async def test_recurring_job_walks_every_page(self, make_processor, storage):
        bundle = JobBundle()
        ids = await seed(storage, "jobs", 8)
        processor = make_processor(storage, bundle, page_size=3)

        stats = await processor.execute_recurring_job("jobs", "Cleanup")

        assert (stats.attempted, stats.succeeded) == (8, 8)
        assert stats.pages_fetched == 4
        assert sorted(instance.id for _, instance in bundle.calls) == ids
        for instance_id in ids:
            assert (await storage.get(instance_id)).properties["handled"] == "recurring.Cleanup"

    async def test_entity_event_on_filesystem_storage(self, make_processor, bundle, customer_event, tmp_path):
        storage = FileSystemInstanceStorage(tmp_path / "instances")
        ids = await seed(storage, "billing", 7)
        processor = make_processor(storage, bundle, page_size=2)

        stats = (await processor.process_entity_event(customer_event))[0]

        assert (stats.attempted, stats.succeeded) == (7, 7)
        assert stats.pages_fetched == 5
        assert await storage.get_count() == 7
        for instance_id in ids:
            stored = await storage.get(instance_id)
            assert stored.properties["handled"] == "entity.updated"
            assert stored.properties["_entity_plan"] == "gold"
            assert stored.properties["_meta_source"] == "crm"
