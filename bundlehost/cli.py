"""Command-line entry point.

Usage:
  bundlehost list [--plugins DIR]
  bundlehost upgrade BUNDLE_ID
  bundlehost execute INSTANCE_ID [--event NAME]
  bundlehost jobs
"""

import argparse
import asyncio
import sys
from collections.abc import Sequence

from bundlehost.config import Settings, get_settings
from bundlehost.core.errors import BundleHostError, NotFoundError
from bundlehost.core.loader import BundleLoader
from bundlehost.core.logging import configure_logging
from bundlehost.core.processor import DEFAULT_EXECUTE_EVENT, BundleProcessor, FanoutStats
from bundlehost.core.resilience import ResilienceManager
from bundlehost.scheduling import BackgroundJobWrapper, InMemoryJobScheduler, RecurringJobManager
from bundlehost.storage.factory import create_storage


def _load(settings: Settings, plugins: str | None) -> BundleLoader:
    loader = BundleLoader(plugins or settings.plugins_path)
    loader.load_bundles()
    loader.initialize_bundles()
    return loader


def cmd_list(settings: Settings, args: argparse.Namespace) -> int:
    loader = _load(settings, args.plugins)
    bundles = loader.loaded_bundles

    print("=" * 60)
    print(f"LOADED BUNDLES ({len(bundles)})")
    print("=" * 60)
    if not bundles:
        print("  No bundles found")
    for bundle in bundles:
        print(f"  {bundle.friendly_name} [{bundle.id}] v{bundle.version}")
        if bundle.description:
            print(f"    {bundle.description}")
        for prop in bundle.properties:
            print(f"    - {prop.name} = {prop.default_value!r}  {prop.description}")
        for job in bundle.recurring_jobs:
            print(f"    * job {job}")
    loader.dispose_bundles()
    return 0


def _print_stats(stats: FanoutStats) -> None:
    print(
        f"{stats.operation} [{stats.bundle_id or '-'}]: "
        f"{stats.succeeded}/{stats.attempted} succeeded, "
        f"{stats.failed} failed, {stats.skipped} skipped, "
        f"{stats.pages_fetched} pages"
    )


async def _run_processor(settings: Settings, args: argparse.Namespace) -> FanoutStats:
    loader = _load(settings, args.plugins)
    storage = create_storage(settings)
    resilience = ResilienceManager(timeout=settings.handler_timeout)
    processor = BundleProcessor(loader, storage, resilience, page_size=settings.page_size)
    try:
        if args.command == "upgrade":
            if loader.get_bundle_by_id(args.bundle_id) is None:
                raise NotFoundError(f"bundle '{args.bundle_id}' is not loaded")
            return await processor.upgrade_instances(args.bundle_id)
        if await storage.get(args.instance_id) is None:
            raise NotFoundError(f"instance '{args.instance_id}' not found")
        return await processor.execute_instance(args.instance_id, args.event)
    finally:
        resilience.shutdown()
        loader.dispose_bundles()
        close = getattr(storage, "close", None)
        if close is not None:
            await close()


def cmd_run(settings: Settings, args: argparse.Namespace) -> int:
    stats = asyncio.run(_run_processor(settings, args))
    _print_stats(stats)
    return 1 if stats.failed else 0


def cmd_jobs(settings: Settings, args: argparse.Namespace) -> int:
    loader = _load(settings, args.plugins)
    scheduler = InMemoryJobScheduler(settings.queue_concurrency)
    resilience = ResilienceManager(timeout=settings.handler_timeout)
    processor = BundleProcessor(
        loader, create_storage(settings), resilience, page_size=settings.page_size
    )
    manager = RecurringJobManager(loader, scheduler, BackgroundJobWrapper(processor, scheduler))
    try:
        manager.initialize_recurring_jobs()
        jobs = scheduler.recurring_jobs
        print(f"RECURRING JOBS ({len(jobs)})")
        for job_id, job in sorted(jobs.items()):
            print(f"  {job_id:<40} {job.cron:<16} next: {job.next_run.isoformat()}")
    finally:
        resilience.shutdown()
        loader.dispose_bundles()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bundlehost", description="Bundle plugin host")
    parser.add_argument("--plugins", type=str, help="Plugins directory (overrides settings)")
    parser.add_argument("--log-level", type=str, help="Log level (overrides settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List loaded bundles")

    upgrade = sub.add_parser("upgrade", help="Upgrade every instance of a bundle")
    upgrade.add_argument("bundle_id")

    execute = sub.add_parser("execute", help="Run one event against one instance")
    execute.add_argument("instance_id")
    execute.add_argument("--event", default=DEFAULT_EXECUTE_EVENT, help="Event name")

    sub.add_parser("jobs", help="List recurring job ids")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, settings.log_format)

    handlers = {"list": cmd_list, "upgrade": cmd_run, "execute": cmd_run, "jobs": cmd_jobs}
    try:
        return handlers[args.command](settings, args)
    except BundleHostError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
