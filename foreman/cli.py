"""
Command line entry point. ``foreman run`` is what the crontab invokes each minute.
"""

from __future__ import annotations

import argparse
import logging
import shlex
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from foreman.config import DEFAULT_CONFIG, ForemanConfig, load_config, setup_logging
from foreman.errors import ForemanError
from foreman.events import EventSink, FanOutEventSink, JsonlEventSink, LoggingEventSink
from foreman.registry import JobRegistry
from foreman.scheduler import CycleStatus, Scheduler

logger = logging.getLogger("foreman")

UTC = timezone.utc
DEFAULT_PREVIEW_COUNT = 3


def _bootstrap(config_path: Path) -> ForemanConfig:
    config = load_config(config_path)
    setup_logging(config.logging.file, config.logging.level)
    return config


def _event_sink(config: ForemanConfig) -> EventSink:
    sinks: List[EventSink] = [LoggingEventSink()]
    if config.logging.events_file is not None:
        sinks.append(JsonlEventSink(config.logging.events_file))
    return FanOutEventSink(sinks)


def _parse_timestamp(value: Optional[str], config: ForemanConfig) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ForemanError(f'Error: --timestamp must be an ISO-8601 date and time, got "{value}".') from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=config.scheduler.zone)
    return parsed


def command_run(
    config_path: Path,
    timestamp: Optional[str] = None,
    dry_run: bool = False,
    job_names: Optional[List[str]] = None,
    run_all: bool = False,
    force: bool = False,
    quiet: bool = False,
) -> int:
    config = _bootstrap(config_path)
    locks = config.lock_manager()
    registry = config.build_registry(locks)
    events = _event_sink(config)
    scheduler = Scheduler(registry, locks, config.scheduler, events=events)
    at = _parse_timestamp(timestamp, config) or scheduler.now()

    try:
        if dry_run:
            jobs = scheduler.plan(at, force=force, job_names=job_names, ignore_schedule=run_all)
            print(f"Dry run at {at.isoformat()}: {len(jobs)} job(s) would run")
            for job in jobs:
                timeout = job.effective_timeout(config.scheduler.default_job_timeout)
                print(f"- {job.name} (priority={job.priority}, timeout={timeout}s, schedule={job.schedule})")
            return 0

        report = scheduler.run_cycle(at, force=force, job_names=job_names, ignore_schedule=run_all)
    finally:
        events.close()

    if not quiet:
        if report.status == CycleStatus.LOCKED:
            print("Another cycle holds the global lock; nothing to do.")
        elif report.status == CycleStatus.ADMISSION_DENIED and report.admission is not None:
            print(f"Cycle skipped: {report.admission.reason}")
        elif not report.results:
            print(f"No jobs due at {at.isoformat()}")
        for result in report.results:
            print(result.summary())
        print(report.summary())
    return report.exit_code


def command_list(config_path: Path, count: int) -> int:
    config = _bootstrap(config_path)
    registry = config.build_registry(config.lock_manager())
    now = datetime.now(tz=config.scheduler.zone)
    for row in registry.summary(count=count, after=now):
        print("=" * 80)
        print(f"Job: {row['name']} (enabled={row['enabled']}, kind={row['kind']})")
        if row["description"]:
            print(row["description"])
        print(f"Schedule: {row['schedule']} ({row['schedule_description']})")
        print(f"Priority: {row['priority']}")
        print(f"Timeout: {row['timeout'] or config.scheduler.default_job_timeout}s")
        print(f"Next {count} run(s):")
        for run_dt in row["next_runs"]:
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    return 0


def command_validate(config_path: Path) -> int:
    config = load_config(config_path)
    registry = config.build_registry(config.lock_manager())
    print(f"Config valid: {config.path}")
    print(f"Lock directory: {config.scheduler.lock_directory}")
    print(f"Total jobs: {len(registry)}")
    print(f"Enabled jobs: {len(registry.enabled_jobs())}")
    for job in JobRegistry.by_priority(registry.jobs()):
        print(f"- {job.name}: {job.schedule} (priority={job.priority}, enabled={job.enabled})")
    return 0


def command_locks(config_path: Path) -> int:
    config = _bootstrap(config_path)
    locks = config.lock_manager()
    infos = locks.active_locks()
    if not infos:
        print("No locks held.")
        return 0
    for info in infos:
        if info.lock is None:
            print(f"{info.name}: {info.status} ({info.path})")
            continue
        lock = info.lock
        remaining = lock.remaining(locks.clock())
        print(
            f"{info.name}: {info.status} pid={lock.owner_pid} host={lock.hostname} "
            f"acquired_at={datetime.fromtimestamp(lock.acquired_at, tz=UTC).isoformat()} "
            f"expires_in={remaining:.0f}s"
        )
    return 0


def command_unlock(config_path: Path, name: Optional[str]) -> int:
    config = _bootstrap(config_path)
    locks = config.lock_manager()
    if name:
        if not locks.force_release(name):
            print(f"No lock named {name}.")
            return 1
        print(f"Released {name}.")
        return 0
    released = locks.force_release_all()
    print(f"Released {released} lock(s).")
    return 0


def command_cleanup(config_path: Path) -> int:
    config = _bootstrap(config_path)
    cleaned = config.lock_manager().cleanup_stale()
    print(f"Cleaned up {cleaned} stale lock(s).")
    return 0


def command_export_cron(config_path: Path) -> int:
    config = load_config(config_path)
    config_abs = config.path
    command = (
        f"cd {shlex.quote(str(config_abs.parent))} && "
        f"{shlex.quote(sys.executable)} -m foreman --config {shlex.quote(str(config_abs))} run --quiet"
    )
    print("# foreman cron export")
    print(f"# generated_at={datetime.now(tz=UTC).isoformat()}")
    print(f"CRON_TZ={config.scheduler.timezone}")
    print(f"* * * * * {command}")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="foreman",
        description="foreman cron scheduler and lock coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to foreman YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_config(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    run_parser = subparsers.add_parser("run", help="Run one scheduler cycle")
    add_config(run_parser)
    run_parser.add_argument("--timestamp", help="Evaluate schedules at this ISO-8601 time instead of now")
    run_parser.add_argument("--dry-run", action="store_true", help="Show the jobs that would run and exit")
    run_parser.add_argument("--job", action="append", dest="jobs", help="Run only this job (repeatable)")
    run_parser.add_argument("--run-all", action="store_true", help="Treat every selected job as due")
    run_parser.add_argument(
        "--force",
        action="store_true",
        help="Release the global lock first and allow named disabled jobs",
    )
    run_parser.add_argument("--quiet", action="store_true", help="Do not print the cycle summary")

    list_parser = subparsers.add_parser("list", help="List jobs and their next run times")
    add_config(list_parser)
    list_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    validate_parser = subparsers.add_parser("validate", help="Validate config and job definitions")
    add_config(validate_parser)

    locks_parser = subparsers.add_parser("locks", help="Show lock files and their status")
    add_config(locks_parser)

    unlock_parser = subparsers.add_parser("unlock", help="Force release locks")
    add_config(unlock_parser)
    unlock_parser.add_argument("--name", help='Release one lock, e.g. "global" or "job:<name>"')

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove stale lock files")
    add_config(cleanup_parser)

    export_parser = subparsers.add_parser("export-cron", help="Print the crontab line that drives foreman")
    add_config(export_parser)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "run":
            return command_run(
                config_path,
                timestamp=args.timestamp,
                dry_run=args.dry_run,
                job_names=args.jobs,
                run_all=args.run_all,
                force=args.force,
                quiet=args.quiet,
            )
        if args.command == "list":
            if args.count <= 0:
                raise ForemanError("--count must be >= 1")
            return command_list(config_path, count=args.count)
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "locks":
            return command_locks(config_path)
        if args.command == "unlock":
            return command_unlock(config_path, name=args.name)
        if args.command == "cleanup":
            return command_cleanup(config_path)
        if args.command == "export-cron":
            return command_export_cron(config_path)
        raise ForemanError(f"Unsupported command: {args.command}")
    except ForemanError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1
