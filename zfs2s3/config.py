"""
Configuration loading for zfs2s3.

The configuration is a TOML document with the sections ``backup``,
``cleanup``, ``s3`` and the optional ``zfs``, ``scheduler`` and ``logging``.
Everything is validated at load time: cron expressions are compiled,
durations and sizes parsed and the multipart part size selected, so a
running process never meets a malformed setting.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from zfs2s3.backup.transfer import CapacityError, select_part_size
from zfs2s3.models import JobKind, RetentionPolicy, ScheduleSpec
from zfs2s3.utils.cron import CronError, build_trigger
from zfs2s3.utils.units import TIB, parse_duration, parse_size


DEFAULT_CONFIG_PATH = 'config.toml'
DEFAULT_SNAPSHOT_PREFIX = 'auto-backup-'
DEFAULT_MAX_SNAPSHOT_SIZE = 5 * TIB


class ConfigurationError(Exception):
    """Raised when the configuration is unreadable or invalid."""
    pass


@dataclass
class BackupSettings:
    schedule: str
    incremental: str
    volumes: List[str] = field(default_factory=list)
    take_snapshots: bool = True
    snapshot_prefix: str = DEFAULT_SNAPSHOT_PREFIX


@dataclass
class CleanupSettings:
    schedule: str
    keep_min: int
    keep_duration: timedelta
    exclude: List[str] = field(default_factory=list)
    prune_local: bool = True
    stale_upload_age: Optional[timedelta] = timedelta(days=7)

    def policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            keep_min=self.keep_min,
            keep_duration=self.keep_duration,
            exclude=list(self.exclude),
        )


@dataclass
class S3Settings:
    bucket: str
    url: Optional[str] = None
    region: str = 'us-east-1'
    prefix: str = ''
    max_snapshot_size: int = DEFAULT_MAX_SNAPSHOT_SIZE
    part_size: int = 0
    checksums: bool = True
    addressing_style: str = 'path'
    connect_timeout: int = 60
    read_timeout: int = 300
    max_attempts: int = 3


@dataclass
class ZfsSettings:
    command: str = 'zfs'
    timeout: int = 120


@dataclass
class SchedulerSettings:
    tick_interval: float = 1.0
    max_workers: int = 3


@dataclass
class LoggingSettings:
    level: str = 'INFO'
    file: Optional[str] = None
    max_bytes: int = 10485760  # 10MB
    backup_count: int = 10


@dataclass
class Config:
    backup: BackupSettings
    cleanup: CleanupSettings
    s3: S3Settings
    zfs: ZfsSettings = field(default_factory=ZfsSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def schedules(self) -> List[ScheduleSpec]:
        """Schedules of the three job kinds, in the order they are registered."""
        return [
            ScheduleSpec(JobKind.FULL, self.backup.schedule),
            ScheduleSpec(JobKind.INCREMENTAL, self.backup.incremental),
            ScheduleSpec(JobKind.CLEANUP, self.cleanup.schedule),
        ]


def _section(raw: Dict[str, Any], name: str, required: bool = True) -> Dict[str, Any]:
    section = raw.get(name)
    if section is None:
        if required:
            raise ConfigurationError(f"[{name}] section is required")
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"[{name}] must be a table")
    return section


def _required(section: Dict[str, Any], section_name: str, key: str) -> Any:
    if key not in section or section[key] in (None, ''):
        raise ConfigurationError(f"{section_name}.{key} is required")
    return section[key]


def _cron(section: Dict[str, Any], section_name: str, key: str) -> str:
    expression = _required(section, section_name, key)
    if not isinstance(expression, str):
        raise ConfigurationError(f"{section_name}.{key} must be a string")
    try:
        build_trigger(expression)
    except CronError as e:
        raise ConfigurationError(f"{section_name}.{key}: {e}") from e
    return expression


def _string_list(section: Dict[str, Any], section_name: str, key: str) -> List[str]:
    value = section.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ConfigurationError(f"{section_name}.{key} must be a list of non-empty strings")
    return list(value)


def _bool(section: Dict[str, Any], section_name: str, key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"{section_name}.{key} must be true or false")
    return value


def _int(section: Dict[str, Any], section_name: str, key: str, default: int, minimum: int = 0) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{section_name}.{key} must be an integer")
    if value < minimum:
        raise ConfigurationError(f"{section_name}.{key} must be >= {minimum}, got {value}")
    return value


def _duration(value: Any, name: str) -> timedelta:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise ConfigurationError(f"{name}: Invalid duration: {e}") from e


def _parse_backup(raw: Dict[str, Any]) -> BackupSettings:
    section = _section(raw, 'backup')
    prefix = section.get('snapshot_prefix', DEFAULT_SNAPSHOT_PREFIX)
    if not isinstance(prefix, str) or not prefix or '@' in prefix or '/' in prefix:
        raise ConfigurationError("backup.snapshot_prefix must be a non-empty name without '@' or '/'")

    return BackupSettings(
        schedule=_cron(section, 'backup', 'schedule'),
        incremental=_cron(section, 'backup', 'incremental'),
        volumes=_string_list(section, 'backup', 'volumes'),
        take_snapshots=_bool(section, 'backup', 'take_snapshots', True),
        snapshot_prefix=prefix,
    )


def _parse_cleanup(raw: Dict[str, Any]) -> CleanupSettings:
    section = _section(raw, 'cleanup')
    if 'keep_min' not in section:
        raise ConfigurationError("cleanup.keep_min is required")

    stale_raw = section.get('stale_upload_age', '7d')
    stale_upload_age = _duration(stale_raw, 'cleanup.stale_upload_age') if stale_raw else None

    return CleanupSettings(
        schedule=_cron(section, 'cleanup', 'schedule'),
        keep_min=_int(section, 'cleanup', 'keep_min', 0),
        keep_duration=_duration(_required(section, 'cleanup', 'keep_duration'), 'cleanup.keep_duration'),
        exclude=_string_list(section, 'cleanup', 'exclude'),
        prune_local=_bool(section, 'cleanup', 'prune_local', True),
        stale_upload_age=stale_upload_age,
    )


def _parse_s3(raw: Dict[str, Any]) -> S3Settings:
    section = _section(raw, 's3')
    bucket = _required(section, 's3', 'bucket')

    try:
        max_snapshot_size = parse_size(section.get('max_snapshot_size', DEFAULT_MAX_SNAPSHOT_SIZE))
    except ValueError as e:
        raise ConfigurationError(f"s3.max_snapshot_size: {e}") from e
    try:
        part_size = select_part_size(max_snapshot_size)
    except CapacityError as e:
        raise ConfigurationError(f"s3.max_snapshot_size: {e}") from e

    addressing_style = section.get('addressing_style', 'path')
    if addressing_style not in ('auto', 'path', 'virtual'):
        raise ConfigurationError("s3.addressing_style must be one of: auto, path, virtual")

    prefix = section.get('prefix', '')
    if not isinstance(prefix, str):
        raise ConfigurationError("s3.prefix must be a string")
    if prefix and not prefix.endswith('/'):
        prefix += '/'

    return S3Settings(
        bucket=bucket,
        url=section.get('url') or None,
        region=section.get('region') or 'us-east-1',
        prefix=prefix,
        max_snapshot_size=max_snapshot_size,
        part_size=part_size,
        checksums=_bool(section, 's3', 'checksums', True),
        addressing_style=addressing_style,
        connect_timeout=_int(section, 's3', 'connect_timeout', 60, minimum=1),
        read_timeout=_int(section, 's3', 'read_timeout', 300, minimum=1),
        max_attempts=_int(section, 's3', 'max_attempts', 3, minimum=1),
    )


def _parse_zfs(raw: Dict[str, Any]) -> ZfsSettings:
    section = _section(raw, 'zfs', required=False)
    return ZfsSettings(
        command=section.get('command', 'zfs'),
        timeout=_int(section, 'zfs', 'timeout', 120, minimum=1),
    )


def _parse_scheduler(raw: Dict[str, Any]) -> SchedulerSettings:
    section = _section(raw, 'scheduler', required=False)
    tick_interval = section.get('tick_interval', 1.0)
    if isinstance(tick_interval, bool) or not isinstance(tick_interval, (int, float)) or tick_interval <= 0:
        raise ConfigurationError("scheduler.tick_interval must be a positive number")
    return SchedulerSettings(
        tick_interval=float(tick_interval),
        max_workers=_int(section, 'scheduler', 'max_workers', 3, minimum=1),
    )


def _parse_logging(raw: Dict[str, Any]) -> LoggingSettings:
    section = _section(raw, 'logging', required=False)
    level = os.environ.get('ZFS2S3_LOG_LEVEL') or section.get('level', 'INFO')
    if not isinstance(level, str) or level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
        raise ConfigurationError(f"logging.level is not a valid level: {level!r}")
    return LoggingSettings(
        level=level.upper(),
        file=section.get('file') or None,
        max_bytes=_int(section, 'logging', 'max_bytes', 10485760, minimum=1),
        backup_count=_int(section, 'logging', 'backup_count', 10),
    )


def parse_config(text: str) -> Config:
    """
    Parse and validate a TOML configuration document.

    Args:
        text: TOML source

    Returns:
        Validated Config

    Raises:
        ConfigurationError: If the document is not valid TOML or a setting is invalid
    """
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML configuration: {e}") from e

    return Config(
        backup=_parse_backup(raw),
        cleanup=_parse_cleanup(raw),
        s3=_parse_s3(raw),
        zfs=_parse_zfs(raw),
        scheduler=_parse_scheduler(raw),
        logging=_parse_logging(raw),
    )


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """
    Read and validate the configuration file at ``path``.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            text = f.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
    return parse_config(text)
