"""Sample bundles: a synchronous one and a coroutine one."""

import asyncio
import time
from datetime import UTC, datetime
from typing import Any

from bundlehost import Bundle, BundleInstance, Property, RecurringJob


def upgraded_properties(bundle: Bundle, instance: BundleInstance) -> dict[str, Any]:
    """Copy existing values, add missing defaults, and stamp upgrade metadata."""
    properties = dict(instance.properties)
    for prop in bundle.properties:
        properties.setdefault(prop.name, prop.default_value)
    properties["_upgraded"] = True
    properties["_originalVersion"] = instance.bundle_version
    properties["_upgradeTimestamp"] = datetime.now(UTC).isoformat()
    return properties


class SampleBundle(Bundle):
    """Sync bundle that simulates a little blocking work per call."""

    id = "sampleplug"
    friendly_name = "Sample Bundle"
    description = "Demonstrates the Bundle contract with a blocking handler"
    version = "1.0.0"
    properties = [
        Property(name="ExecutionTimeout", description="Timeout in milliseconds", default_value=5000),
        Property(name="WorkSimulationDelay", description="Simulated work in milliseconds", default_value=50),
        Property(name="EnableDebugMode", description="Whether debug mode is enabled", default_value=False),
        Property(name="Priority", description="Execution priority", default_value="Medium"),
    ]

    def handle_event(self, event_name: str, instance: BundleInstance) -> BundleInstance:
        delay = instance.properties.get("WorkSimulationDelay", 50)
        time.sleep(float(delay) / 1000)

        properties = dict(instance.properties)
        properties.update(
            {
                "status": "success",
                "eventName": event_name,
                "processedProperties": len(instance.properties),
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        return instance.with_properties(properties)

    def upgrade_instance(self, instance: BundleInstance) -> BundleInstance:
        return BundleInstance(
            id=instance.id,
            bundle_id=self.id,
            bundle_version=self.version,
            properties=upgraded_properties(self, instance),
        )


class ReportingBundle(Bundle):
    """Async bundle with recurring jobs."""

    id = "reporting"
    friendly_name = "Reporting Bundle"
    description = "Counts events per instance and runs periodic reports"
    version = "2.1.0"
    properties = [
        Property(name="MaxProcessingSteps", description="Processing steps per call", default_value=3),
        Property(name="ProcessingDelay", description="Delay between steps in milliseconds", default_value=10),
    ]
    recurring_jobs = [
        RecurringJob(
            name="DataProcessing",
            cron_schedule="0 */3 * * *",
            description="Processes accumulated data every 3 hours",
            parameters={"eventName": "data.process", "batchSize": 100},
        ),
        RecurringJob(
            name="QuickStatusCheck",
            cron_schedule="*/15 * * * *",
            description="Quick status check every 15 minutes",
            parameters={"lightweight": True},
        ),
    ]

    async def handle_event(self, event_name: str, instance: BundleInstance) -> BundleInstance:
        steps = int(instance.properties.get("MaxProcessingSteps", 3))
        delay = float(instance.properties.get("ProcessingDelay", 10)) / 1000
        for _ in range(steps):
            await asyncio.sleep(delay)

        properties = dict(instance.properties)
        properties["eventCount"] = int(properties.get("eventCount", 0)) + 1
        properties["lastEvent"] = event_name
        properties["processingSteps"] = steps
        return instance.with_properties(properties)

    def upgrade_instance(self, instance: BundleInstance) -> BundleInstance:
        properties = upgraded_properties(self, instance)
        if int(properties.get("MaxProcessingSteps", 3)) < 3:
            properties["MaxProcessingSteps"] = 3
        return BundleInstance(
            id=instance.id,
            bundle_id=self.id,
            bundle_version=self.version,
            properties=properties,
        )
