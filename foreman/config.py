"""
Scheduler settings, the YAML config loader and logging setup.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shlex
import sys
from collections import abc
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from foreman import cron
from foreman.errors import ConfigError, DuplicateJobError
from foreman.jobs import (
    LOCK_CLEANUP_PRIORITY,
    LOCK_CLEANUP_SCHEDULE,
    LOCK_CLEANUP_TIMEOUT,
    JobDescriptor,
    ScriptJob,
    ScriptSpec,
    load_callable,
    lock_cleanup_job,
)
from foreman.locks import LockManager
from foreman.registry import MAX_PRIORITY, JobRegistry

LOG_FILE = "foreman.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DEFAULT_CONFIG = "foreman.yaml"
DEFAULT_SCRIPT_TIMEOUT_SECONDS = 3600
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def setup_logging(log_file: Optional[Path] = None, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("foreman")
    logger.setLevel(level)
    if logger.handlers:
        return logger
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = logging.FileHandler(log_file or LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


def system_timezone() -> str:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            ZoneInfo(tz_name)
            return tz_name
        except ZoneInfoNotFoundError:
            pass
    return "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(
    value: Any,
    field_path: str,
    default: Optional[int],
    minimum: int = 1,
    maximum: Optional[int] = None,
) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    if maximum is not None and value > maximum:
        raise ConfigError(f"Error: {field_path} must be <= {maximum}.")
    return value


def ensure_float(value: Any, field_path: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, abc.Mapping):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    return dict(value)


def _reject_unknown(raw: Mapping[str, Any], allowed: set, field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


@dataclass(frozen=True)
class SchedulerConfig:
    global_timeout: int = 300
    max_concurrent_jobs: int = 3
    cleanup_stale_locks: bool = True
    skip_on_high_load: bool = True
    max_load_average: float = 5.0
    max_memory_usage: int = 512
    default_job_timeout: int = 300
    lock_directory: Path = Path("storage/cron/locks")
    lock_cleanup_interval: int = 300
    timezone: str = field(default_factory=system_timezone)

    @staticmethod
    def from_mapping(raw: Optional[Mapping[str, Any]] = None, field_path: str = "scheduler") -> "SchedulerConfig":
        """
        Build settings from snake_case or camelCase keys.

        Missing keys keep their defaults; unknown keys and wrongly typed values
        raise ConfigError.
        """
        raw = ensure_mapping(raw, field_path)
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            name = CONFIG_ALIASES.get(key)
            if name is None:
                raise ConfigError(f"Error: Unknown keys in {field_path}: {[key]}.")
            if name in values:
                raise ConfigError(f"Error: {field_path}.{name} is set more than once.")
            values[name] = value

        defaults = SchedulerConfig()

        def path(name: str) -> str:
            return f"{field_path}.{name}"

        lock_directory = values.get("lock_directory")
        if isinstance(lock_directory, os.PathLike):
            lock_directory = os.fspath(lock_directory)
        timezone_name = values.get("timezone")
        if timezone_name is not None:
            timezone_name = ensure_str(timezone_name, path("timezone"))
            parse_timezone(timezone_name, path("timezone"))

        return SchedulerConfig(
            global_timeout=ensure_int(values.get("global_timeout"), path("global_timeout"), defaults.global_timeout),
            max_concurrent_jobs=ensure_int(
                values.get("max_concurrent_jobs"), path("max_concurrent_jobs"), defaults.max_concurrent_jobs
            ),
            cleanup_stale_locks=ensure_bool(
                values.get("cleanup_stale_locks"), path("cleanup_stale_locks"), defaults.cleanup_stale_locks
            ),
            skip_on_high_load=ensure_bool(
                values.get("skip_on_high_load"), path("skip_on_high_load"), defaults.skip_on_high_load
            ),
            max_load_average=ensure_float(
                values.get("max_load_average"), path("max_load_average"), defaults.max_load_average
            ),
            max_memory_usage=ensure_int(
                values.get("max_memory_usage"), path("max_memory_usage"), defaults.max_memory_usage
            ),
            default_job_timeout=ensure_int(
                values.get("default_job_timeout"), path("default_job_timeout"), defaults.default_job_timeout
            ),
            lock_directory=(
                Path(ensure_str(lock_directory, path("lock_directory")))
                if lock_directory is not None
                else defaults.lock_directory
            ),
            lock_cleanup_interval=ensure_int(
                values.get("lock_cleanup_interval"),
                path("lock_cleanup_interval"),
                defaults.lock_cleanup_interval,
                minimum=0,
            ),
            timezone=timezone_name or defaults.timezone,
        )

    @property
    def zone(self) -> ZoneInfo:
        return parse_timezone(self.timezone, "scheduler.timezone")


CONFIG_ALIASES: Dict[str, str] = {}
for _field in dataclasses.fields(SchedulerConfig):
    _head, *_rest = _field.name.split("_")
    CONFIG_ALIASES[_field.name] = _field.name
    CONFIG_ALIASES[_head + "".join(part.capitalize() for part in _rest)] = _field.name


@dataclass(frozen=True)
class LoggingSettings:
    file: Path
    level: str = "INFO"
    events_file: Optional[Path] = None


@dataclass(frozen=True)
class LockCleanupSettings:
    enabled: bool = True
    schedule: str = LOCK_CLEANUP_SCHEDULE
    timeout: int = LOCK_CLEANUP_TIMEOUT
    priority: int = LOCK_CLEANUP_PRIORITY


@dataclass(frozen=True)
class ForemanConfig:
    path: Path
    scheduler: SchedulerConfig
    logging: LoggingSettings
    lock_cleanup: LockCleanupSettings
    jobs: List[JobDescriptor]

    def lock_manager(self) -> LockManager:
        return LockManager(self.scheduler.lock_directory)

    def build_registry(self, locks: LockManager) -> JobRegistry:
        registry = JobRegistry()
        cleanup = self.lock_cleanup
        registry.register(
            lock_cleanup_job(
                locks,
                schedule=cleanup.schedule,
                timeout=cleanup.timeout,
                priority=cleanup.priority,
                enabled=cleanup.enabled,
            )
        )
        registry.register_many(self.jobs)
        return registry


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def _resolve_path(value: Any, config_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path))
    return (raw if raw.is_absolute() else config_dir / raw).resolve()


def _resolve_working_dir(value: Any, config_dir: Path, field_path: str) -> Path:
    resolved = _resolve_path(value, config_dir, field_path)
    if not resolved.exists() or not resolved.is_dir():
        raise ConfigError(f"Error: working directory does not exist at {field_path}: {resolved}")
    return resolved


def load_config(config_path: Path) -> ForemanConfig:
    config_path = Path(config_path)
    payload = _load_config_payload(config_path)
    config_dir = config_path.resolve().parent

    _reject_unknown(payload, {"version", "scheduler", "logging", "builtin_jobs", "jobs"}, "top-level keys")

    scheduler = SchedulerConfig.from_mapping(payload.get("scheduler"), "scheduler")
    if not scheduler.lock_directory.is_absolute():
        scheduler = dataclasses.replace(scheduler, lock_directory=(config_dir / scheduler.lock_directory).resolve())

    logging_settings = parse_logging_settings(payload.get("logging"), config_dir)
    lock_cleanup = parse_lock_cleanup_settings(payload.get("builtin_jobs"))

    jobs_raw = payload.get("jobs")
    if jobs_raw is None:
        jobs_raw = []
    if not isinstance(jobs_raw, list):
        raise ConfigError("Error: jobs must be a list.")

    seen_names = set()
    jobs: List[JobDescriptor] = []
    for idx, job_raw in enumerate(jobs_raw):
        job = parse_job(job_raw, f"jobs[{idx}]", config_dir, scheduler.default_job_timeout)
        if job.name in seen_names:
            raise DuplicateJobError(job.name)
        seen_names.add(job.name)
        jobs.append(job)

    return ForemanConfig(
        path=config_path.resolve(),
        scheduler=scheduler,
        logging=logging_settings,
        lock_cleanup=lock_cleanup,
        jobs=jobs,
    )


def parse_logging_settings(raw: Any, config_dir: Path, field_path: str = "logging") -> LoggingSettings:
    raw = ensure_mapping(raw, field_path)
    _reject_unknown(raw, {"file", "level", "events_file"}, field_path)
    level = ensure_str(raw.get("level", "INFO"), f"{field_path}.level").upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"Error: {field_path}.level must be one of {sorted(LOG_LEVELS)}.")
    events_file = raw.get("events_file")
    return LoggingSettings(
        file=_resolve_path(raw.get("file", LOG_FILE), config_dir, f"{field_path}.file"),
        level=level,
        events_file=(
            _resolve_path(events_file, config_dir, f"{field_path}.events_file") if events_file is not None else None
        ),
    )


def parse_lock_cleanup_settings(raw: Any, field_path: str = "builtin_jobs") -> LockCleanupSettings:
    raw = ensure_mapping(raw, field_path)
    _reject_unknown(raw, {"lock_cleanup"}, field_path)
    item_path = f"{field_path}.lock_cleanup"
    cleanup = ensure_mapping(raw.get("lock_cleanup"), item_path)
    _reject_unknown(cleanup, {"enabled", "schedule", "timeout", "priority"}, item_path)
    schedule = ensure_str(cleanup.get("schedule", LOCK_CLEANUP_SCHEDULE), f"{item_path}.schedule")
    cron.parse(schedule)
    return LockCleanupSettings(
        enabled=ensure_bool(cleanup.get("enabled"), f"{item_path}.enabled", True),
        schedule=schedule,
        timeout=ensure_int(cleanup.get("timeout"), f"{item_path}.timeout", LOCK_CLEANUP_TIMEOUT),
        priority=ensure_int(
            cleanup.get("priority"), f"{item_path}.priority", LOCK_CLEANUP_PRIORITY, minimum=0, maximum=MAX_PRIORITY
        ),
    )


def parse_job(raw: Any, field_path: str, config_dir: Path, default_timeout: int) -> JobDescriptor:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    _reject_unknown(
        raw,
        {
            "name",
            "schedule",
            "priority",
            "timeout",
            "enabled",
            "description",
            "working_dir",
            "stop_on_failure",
            "scripts",
            "callable",
        },
        field_path,
    )

    name = ensure_str(raw.get("name"), f"{field_path}.name")
    schedule = ensure_str(raw.get("schedule"), f"{field_path}.schedule")
    cron.parse(schedule)
    timeout = ensure_int(raw.get("timeout"), f"{field_path}.timeout", None)
    priority = ensure_int(raw.get("priority"), f"{field_path}.priority", 50, minimum=0, maximum=MAX_PRIORITY)
    enabled = ensure_bool(raw.get("enabled"), f"{field_path}.enabled", True)
    description = raw.get("description") or ""
    if not isinstance(description, str):
        raise ConfigError(f"Error: {field_path}.description must be a string.")

    has_scripts = raw.get("scripts") is not None
    has_callable = raw.get("callable") is not None
    if has_scripts == has_callable:
        raise ConfigError(f'Error: {field_path} must define exactly one of "scripts" or "callable".')

    if has_callable:
        if "working_dir" in raw or "stop_on_failure" in raw:
            raise ConfigError(f"Error: {field_path}.working_dir and stop_on_failure only apply to scripts.")
        run = load_callable(ensure_str(raw["callable"], f"{field_path}.callable"))
        kind = "callable"
    else:
        working_dir = _resolve_working_dir(raw.get("working_dir", "."), config_dir, f"{field_path}.working_dir")
        scripts = parse_scripts(
            raw["scripts"],
            f"{field_path}.scripts",
            working_dir,
            timeout or default_timeout or DEFAULT_SCRIPT_TIMEOUT_SECONDS,
        )
        run = ScriptJob(
            name=name,
            scripts=scripts,
            working_dir=working_dir,
            stop_on_failure=ensure_bool(raw.get("stop_on_failure"), f"{field_path}.stop_on_failure", True),
        )
        kind = "scripts"

    return JobDescriptor(
        name=name,
        schedule=schedule,
        run=run,
        priority=priority,
        timeout=timeout,
        enabled=enabled,
        description=description,
        kind=kind,
    )


def parse_scripts(raw: Any, field_path: str, working_dir: Path, default_timeout: int) -> List[ScriptSpec]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Error: {field_path} must be a non-empty list.")
    scripts: List[ScriptSpec] = []
    for idx, script_raw in enumerate(raw):
        item_path = f"{field_path}[{idx}]"
        if isinstance(script_raw, str):
            script_raw = {"path": script_raw}
        if not isinstance(script_raw, dict):
            raise ConfigError(f"Error: {item_path} must be a mapping.")
        _reject_unknown(script_raw, {"path", "args", "timeout"}, item_path)
        path_str = ensure_str(script_raw.get("path"), f"{item_path}.path")
        args_raw = script_raw.get("args") or []
        if isinstance(args_raw, str):
            args = shlex.split(args_raw)
        elif isinstance(args_raw, list):
            args = []
            for arg_idx, arg in enumerate(args_raw):
                if not isinstance(arg, (str, int, float, bool)):
                    raise ConfigError(
                        f"Error: {item_path}.args[{arg_idx}] must be scalar value convertible to string."
                    )
                args.append(str(arg))
        else:
            raise ConfigError(f"Error: {item_path}.args must be a list or shell-style string.")

        timeout = ensure_int(script_raw.get("timeout"), f"{item_path}.timeout", default_timeout)
        raw_path = Path(path_str)
        resolved = (raw_path if raw_path.is_absolute() else working_dir / raw_path).resolve()
        if not resolved.exists() or not resolved.is_file():
            raise ConfigError(f"Error: Script path does not exist for {item_path}.path: {resolved}")
        scripts.append(ScriptSpec(path=path_str, args=args, timeout=timeout, resolved_path=resolved))
    return scripts
