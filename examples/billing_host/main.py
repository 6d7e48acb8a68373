#!/usr/bin/env python3
"""
Billing Host - bundlehost Demo Application

Loads the sample bundles from ./plugins, seeds in-memory storage with
instances, then drives every processor operation:

  python main.py                    # Demo with a few instances
  python main.py --instances 2500   # Paging across several storage pages
  python main.py --timeout 0.01     # Watch handlers time out
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from bundlehost import (
    BackgroundJobWrapper,
    BundleInstance,
    BundleLoader,
    BundleProcessor,
    CustomerEventSource,
    EntitySourceManager,
    FanoutStats,
    InMemoryInstanceStorage,
    InMemoryJobScheduler,
    RecurringJobManager,
    ResilienceManager,
)
from bundlehost.core.logging import configure_logging

PLUGINS_DIR = Path(__file__).parent / "plugins"


def print_stats(title: str, stats: FanoutStats) -> None:
    print(
        f"  {title:<28} [{stats.bundle_id}] "
        f"{stats.succeeded}/{stats.attempted} ok, {stats.failed} failed, "
        f"{stats.skipped} skipped, {stats.pages_fetched} pages"
    )


async def seed(storage: InMemoryInstanceStorage, loader: BundleLoader, count: int) -> None:
    """Create ``count`` instances per bundle, half of them at an old version."""
    for bundle in loader.loaded_bundles:
        for i in range(count):
            instance = bundle.create_instance({"customer": f"cust-{i:05d}"})
            if i % 2:
                instance = BundleInstance(
                    id=instance.id,
                    bundle_id=bundle.id,
                    bundle_version="0.9.0",
                    properties=instance.properties,
                )
            await storage.create(instance)


async def run_demo(instances: int, timeout: float, page_size: int) -> None:
    loader = BundleLoader(PLUGINS_DIR)
    loader.load_bundles()
    loader.initialize_bundles()

    storage = InMemoryInstanceStorage()
    resilience = ResilienceManager(timeout=timeout)
    processor = BundleProcessor(loader, storage, resilience, page_size=page_size)

    scheduler = InMemoryJobScheduler({"recurring": 2, "bundles": 2, "entities": 4})
    wrapper = BackgroundJobWrapper(processor, scheduler)
    jobs = RecurringJobManager(loader, scheduler, wrapper)
    sources = EntitySourceManager()

    try:
        await seed(storage, loader, instances)
        print("=" * 60)
        print(f"SEEDED {await storage.get_count()} INSTANCES")
        print("=" * 60)

        # Upgrades
        print("\nUPGRADES")
        for bundle in loader.loaded_bundles:
            print_stats("upgrade", await processor.upgrade_instances(bundle.id))

        # Recurring jobs
        registered = jobs.initialize_recurring_jobs()
        print(f"\nRECURRING JOBS ({registered})")
        for job_id in sorted(scheduler.recurring_jobs):
            print(f"  trigger {job_id}")
            await scheduler.trigger(job_id)

        # Entity events
        print("\nENTITY EVENTS")
        source = CustomerEventSource()
        await sources.register_entity_source(source)
        sources.register_processor("billing", processor)
        await source.simulate_created("cust-00001", {"name": "Alice", "plan": "gold"})
        await source.simulate_updated("cust-00001", {"plan": "platinum"})

        # One-shot execution through the job queue
        page = await storage.get_all()
        if page:
            wrapper.enqueue_instance_execution(page[0].id, "manual.run")
            ran = await scheduler.drain()
            print(f"\nDRAINED {ran} QUEUED JOBS")

        stats = resilience.stats
        print("\n" + "=" * 60)
        print("HANDLER OUTCOMES")
        print("=" * 60)
        print(f"  completed: {stats.completed}")
        print(f"  faulted:   {stats.faulted}")
        print(f"  timed out: {stats.timed_out}")
    finally:
        await sources.close()
        resilience.shutdown()
        loader.dispose_bundles()


def main():
    parser = argparse.ArgumentParser(description="Billing Host Demo")
    parser.add_argument("--instances", type=int, default=5, help="Instances per bundle")
    parser.add_argument("--timeout", type=float, default=5.0, help="Handler timeout in seconds")
    parser.add_argument("--page-size", type=int, default=1000, help="Storage page size")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.WARNING, fmt="console")
    try:
        asyncio.run(run_demo(args.instances, args.timeout, args.page_size))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
