"""Backup policy: schedule, retention, storage target, inclusion flags.

The policy is a singleton row in the family database. It is loaded once per
operation and passed around explicitly; nothing here keeps global state.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger

from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import BackupType, StorageProvider, format_dt, to_camel, to_snake

log = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
_CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _now() -> str:
    return format_dt(datetime.now(timezone.utc))


@dataclass
class BackupSettings:
    """Installation-wide backup policy. Weekdays count from Sunday = 0."""

    daily_enabled: bool = True
    daily_time: str = "02:00"
    weekly_enabled: bool = True
    weekly_day: int = 0
    weekly_time: str = "03:00"
    monthly_enabled: bool = True
    monthly_day: int = 1
    monthly_time: str = "04:00"
    daily_retention: int = 7
    weekly_retention: int = 4
    monthly_retention: int = 12
    storage_provider: StorageProvider = StorageProvider.LOCAL
    storage_bucket: str | None = None
    storage_region: str | None = None
    storage_path: str = "backups"
    include_photos: bool = True
    include_audit_logs: bool = False
    compress_level: int = 6
    notify_on_success: bool = False
    notify_on_failure: bool = True
    notification_emails: list[str] = field(default_factory=list)
    updated_at: str = field(default_factory=_now)

    def validate(self) -> None:
        """Raise ValueError describing the first out-of-range value."""
        for name in ("daily_time", "weekly_time", "monthly_time"):
            parse_time_string(getattr(self, name))
        if not 0 <= self.weekly_day <= 6:
            raise ValueError(f"weekly_day must be 0-6, got {self.weekly_day}")
        if not 1 <= self.monthly_day <= 28:
            raise ValueError(f"monthly_day must be 1-28, got {self.monthly_day}")
        for name in ("daily_retention", "weekly_retention", "monthly_retention"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
        if not 0 <= self.compress_level <= 9:
            raise ValueError(f"compress_level must be 0-9, got {self.compress_level}")
        if self.storage_provider != StorageProvider.LOCAL and not self.storage_bucket:
            raise ValueError(
                f"storage_bucket is required for {self.storage_provider.value} storage"
            )
        if not self.storage_path.strip():
            raise ValueError("storage_path must not be empty")

    def to_dict(self) -> dict:
        data = {to_camel(f.name): getattr(self, f.name) for f in dataclasses.fields(self)}
        data["storageProvider"] = self.storage_provider.value
        data["notificationEmails"] = list(self.notification_emails)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> BackupSettings:
        names = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = to_snake(key)
            if name in names:
                kwargs[name] = value
        if "storage_provider" in kwargs:
            kwargs["storage_provider"] = StorageProvider(kwargs["storage_provider"])
        return cls(**kwargs)


def load_settings(db: FamilyDB) -> BackupSettings:
    """Read the policy, creating it with defaults on first use."""
    stored = db.read_backup_settings()
    if stored is not None:
        return BackupSettings.from_dict(stored)
    settings = BackupSettings()
    with db.transaction():
        db.write_backup_settings(settings.to_dict())
    log.info("Created default backup settings")
    return settings


def save_settings(db: FamilyDB, settings: BackupSettings) -> BackupSettings:
    """Validate and store the policy in place."""
    settings.validate()
    settings.updated_at = _now()
    with db.transaction():
        db.write_backup_settings(settings.to_dict())
    log.info("Backup settings updated")
    return settings


def coerce_setting(name: str, raw: str) -> object:
    """Convert a command-line string to the type of setting ``name``.

    Raises:
        KeyError: unknown setting.
        ValueError: value cannot be converted.
    """
    fields = {f.name: f for f in dataclasses.fields(BackupSettings)}
    if name not in fields or name == "updated_at":
        raise KeyError(name)
    default = getattr(BackupSettings(), name)
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("true", "yes", "on", "1"):
            return True
        if lowered in ("false", "no", "off", "0"):
            return False
        raise ValueError(f"{name} expects true/false, got {raw!r}")
    if isinstance(default, StorageProvider):
        return StorageProvider(raw.strip().upper())
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, list):
        return [part.strip() for part in raw.split(",") if part.strip()]
    if name in ("storage_bucket", "storage_region"):
        return raw or None
    return raw


# --- Schedule math ---


def parse_time_string(value: str) -> tuple[int, int]:
    """Parse ``HH:MM`` into (hours, minutes)."""
    match = _TIME_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid time format: {value!r}. Expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23:
        raise ValueError(f"Invalid hours: {hours}. Must be 0-23")
    if minutes > 59:
        raise ValueError(f"Invalid minutes: {minutes}. Must be 0-59")
    return hours, minutes


def _schedule(backup_type: BackupType, settings: BackupSettings) -> tuple[bool, str, int | None]:
    backup_type = BackupType(backup_type)
    if backup_type == BackupType.DAILY:
        return settings.daily_enabled, settings.daily_time, None
    if backup_type == BackupType.WEEKLY:
        return settings.weekly_enabled, settings.weekly_time, settings.weekly_day
    if backup_type == BackupType.MONTHLY:
        return settings.monthly_enabled, settings.monthly_time, settings.monthly_day
    raise ValueError(f"{backup_type.value} backups have no schedule")


def cron_expression(backup_type: BackupType, settings: BackupSettings) -> str | None:
    """Five-field cron expression (UTC) for a cadence, None when disabled."""
    enabled, time_str, day = _schedule(backup_type, settings)
    if not enabled:
        return None
    hours, minutes = parse_time_string(time_str)
    if BackupType(backup_type) == BackupType.DAILY:
        return f"{minutes} {hours} * * *"
    if BackupType(backup_type) == BackupType.WEEKLY:
        return f"{minutes} {hours} * * {day}"
    return f"{minutes} {hours} {day} * *"


def schedule_trigger(backup_type: BackupType, settings: BackupSettings) -> CronTrigger | None:
    """APScheduler trigger for a cadence (UTC), None when disabled."""
    expr = cron_expression(backup_type, settings)
    if expr is None:
        return None
    minute, hour, day, month, weekday = expr.split()
    if weekday != "*":
        # APScheduler numbers weekdays from Monday; names are unambiguous
        weekday = _CRON_DAY_NAMES[int(weekday)]
    return CronTrigger.from_crontab(
        f"{minute} {hour} {day} {month} {weekday}", timezone=timezone.utc
    )


def next_scheduled_time(
    backup_type: BackupType,
    settings: BackupSettings,
    after: datetime | None = None,
) -> datetime | None:
    """First scheduled run strictly after ``after`` (UTC), None when disabled."""
    trigger = schedule_trigger(backup_type, settings)
    if trigger is None:
        return None
    after = after or datetime.now(timezone.utc)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    # The trigger may fire at ``now`` itself
    return trigger.get_next_fire_time(None, after + timedelta(microseconds=1))


def describe_schedule(backup_type: BackupType, settings: BackupSettings) -> str:
    enabled, time_str, day = _schedule(backup_type, settings)
    if not enabled:
        return f"{BackupType(backup_type).value.lower()} backups are disabled"
    hours, minutes = parse_time_string(time_str)
    at = f"{hours:02d}:{minutes:02d} UTC"
    if BackupType(backup_type) == BackupType.DAILY:
        return f"Daily at {at}"
    if BackupType(backup_type) == BackupType.WEEKLY:
        return f"Weekly on {WEEKDAY_NAMES[day]} at {at}"
    suffix = {1: "st", 2: "nd", 3: "rd", 21: "st", 22: "nd", 23: "rd"}.get(day, "th")
    return f"Monthly on the {day}{suffix} at {at}"


def retention_for(backup_type: BackupType, settings: BackupSettings) -> int | None:
    """How many completed backups of a type to keep. None keeps all (manual)."""
    backup_type = BackupType(backup_type)
    if backup_type == BackupType.DAILY:
        return settings.daily_retention
    if backup_type == BackupType.WEEKLY:
        return settings.weekly_retention
    if backup_type == BackupType.MONTHLY:
        return settings.monthly_retention
    return None


def backup_filename(
    backup_type: BackupType, now: datetime | None = None, pre_import: bool = False
) -> str:
    """``kinkeeper-backup-daily-2024-01-15T02-00-00-000Z.zip`` or ``pre-import-backup-<stamp>.zip``."""
    stamp = format_dt(now or datetime.now(timezone.utc)).replace(":", "-").replace(".", "-")
    if pre_import:
        return f"pre-import-backup-{stamp}.zip"
    return f"kinkeeper-backup-{BackupType(backup_type).value.lower()}-{stamp}.zip"
