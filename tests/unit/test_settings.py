"""Tests for kinkeeper.backup.settings."""

from datetime import datetime, timezone

import pytest

from kinkeeper.backup.settings import (
    BackupSettings,
    backup_filename,
    coerce_setting,
    cron_expression,
    describe_schedule,
    load_settings,
    next_scheduled_time,
    parse_time_string,
    retention_for,
    save_settings,
    schedule_trigger,
)
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import BackupType, StorageProvider

# A Monday
_MONDAY = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestDefaults:
    def test_values(self):
        s = BackupSettings()
        assert (s.daily_time, s.weekly_time, s.monthly_time) == ("02:00", "03:00", "04:00")
        assert (s.daily_retention, s.weekly_retention, s.monthly_retention) == (7, 4, 12)
        assert s.weekly_day == 0
        assert s.monthly_day == 1
        assert s.storage_provider == StorageProvider.LOCAL
        assert s.storage_path == "backups"
        assert s.include_photos is True
        assert s.include_audit_logs is False
        assert s.compress_level == 6
        assert s.notify_on_failure is True
        assert s.notify_on_success is False

    def test_valid(self):
        BackupSettings().validate()


class TestValidate:
    @pytest.mark.parametrize(
        "changes",
        [
            {"daily_time": "24:00"},
            {"weekly_time": "3pm"},
            {"weekly_day": 7},
            {"monthly_day": 29},
            {"monthly_day": 0},
            {"daily_retention": 0},
            {"compress_level": 10},
            {"storage_provider": StorageProvider.S3},
            {"storage_path": "  "},
        ],
    )
    def test_rejects(self, changes):
        with pytest.raises(ValueError):
            BackupSettings(**changes).validate()

    def test_remote_storage_with_bucket(self):
        BackupSettings(storage_provider=StorageProvider.R2, storage_bucket="family").validate()


class TestSerialization:
    def test_round_trip(self):
        s = BackupSettings(daily_time="01:30", notification_emails=["a@example.com"])
        data = s.to_dict()
        assert data["dailyTime"] == "01:30"
        assert data["storageProvider"] == "LOCAL"
        assert BackupSettings.from_dict(data) == s

    def test_unknown_keys_ignored(self):
        assert BackupSettings.from_dict({"bogus": 1}).daily_time == "02:00"


class TestPersistence:
    def test_load_creates_defaults(self, db: FamilyDB):
        settings = load_settings(db)
        assert settings.daily_retention == 7
        assert db.read_backup_settings() is not None

    def test_save_and_reload(self, db: FamilyDB):
        settings = load_settings(db)
        settings.daily_retention = 3
        save_settings(db, settings)
        assert load_settings(db).daily_retention == 3

    def test_save_validates(self, db: FamilyDB):
        settings = load_settings(db)
        settings.monthly_day = 31
        with pytest.raises(ValueError):
            save_settings(db, settings)
        assert load_settings(db).monthly_day == 1


class TestCoerce:
    def test_bool(self):
        assert coerce_setting("include_photos", "no") is False
        assert coerce_setting("notify_on_success", "Yes") is True

    def test_bad_bool(self):
        with pytest.raises(ValueError):
            coerce_setting("include_photos", "maybe")

    def test_int(self):
        assert coerce_setting("daily_retention", "14") == 14

    def test_provider(self):
        assert coerce_setting("storage_provider", "s3") == StorageProvider.S3

    def test_list(self):
        assert coerce_setting("notification_emails", "a@x.com, b@x.com,") == ["a@x.com", "b@x.com"]

    def test_optional_string(self):
        assert coerce_setting("storage_bucket", "") is None
        assert coerce_setting("daily_time", "05:00") == "05:00"

    @pytest.mark.parametrize("name", ["nope", "updated_at"])
    def test_unknown(self, name):
        with pytest.raises(KeyError):
            coerce_setting(name, "x")


class TestSchedule:
    def test_parse_time(self):
        assert parse_time_string("2:05") == (2, 5)
        with pytest.raises(ValueError):
            parse_time_string("12:60")

    def test_cron(self):
        s = BackupSettings(weekly_day=3, monthly_day=15)
        assert cron_expression(BackupType.DAILY, s) == "0 2 * * *"
        assert cron_expression(BackupType.WEEKLY, s) == "0 3 * * 3"
        assert cron_expression(BackupType.MONTHLY, s) == "0 4 15 * *"

    def test_cron_disabled(self):
        assert cron_expression(BackupType.DAILY, BackupSettings(daily_enabled=False)) is None

    def test_manual_has_no_schedule(self):
        with pytest.raises(ValueError):
            cron_expression(BackupType.MANUAL, BackupSettings())

    def test_next_daily(self):
        s = BackupSettings()
        assert next_scheduled_time(BackupType.DAILY, s, _MONDAY) == datetime(2024, 1, 16, 2, 0, tzinfo=timezone.utc)
        early = datetime(2024, 1, 15, 1, 0, tzinfo=timezone.utc)
        assert next_scheduled_time(BackupType.DAILY, s, early) == datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)

    def test_next_weekly_counts_from_sunday(self):
        s = BackupSettings(weekly_day=0)
        assert next_scheduled_time(BackupType.WEEKLY, s, _MONDAY) == datetime(2024, 1, 21, 3, 0, tzinfo=timezone.utc)
        s = BackupSettings(weekly_day=1, weekly_time="13:00")
        assert next_scheduled_time(BackupType.WEEKLY, s, _MONDAY) == datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)

    def test_next_monthly(self):
        s = BackupSettings(monthly_day=1)
        assert next_scheduled_time(BackupType.MONTHLY, s, _MONDAY) == datetime(2024, 2, 1, 4, 0, tzinfo=timezone.utc)

    def test_next_is_strictly_after(self):
        at_run = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)
        assert next_scheduled_time(BackupType.DAILY, BackupSettings(), at_run).day == 16

    def test_next_disabled(self):
        assert next_scheduled_time(BackupType.MONTHLY, BackupSettings(monthly_enabled=False), _MONDAY) is None

    def test_next_weekly_saturday(self):
        s = BackupSettings(weekly_day=6, weekly_time="23:30")
        assert next_scheduled_time(BackupType.WEEKLY, s, _MONDAY) == datetime(2024, 1, 20, 23, 30, tzinfo=timezone.utc)

    def test_next_monthly_crosses_year(self):
        s = BackupSettings(monthly_day=1)
        after = datetime(2024, 12, 1, 4, 0, tzinfo=timezone.utc)
        assert next_scheduled_time(BackupType.MONTHLY, s, after) == datetime(2025, 1, 1, 4, 0, tzinfo=timezone.utc)

    def test_trigger_follows_cron_expression(self):
        s = BackupSettings(weekly_day=3)
        trigger = schedule_trigger(BackupType.WEEKLY, s)
        fire = trigger.get_next_fire_time(None, _MONDAY)
        assert fire == datetime(2024, 1, 17, 3, 0, tzinfo=timezone.utc)
        assert fire.strftime("%A") == "Wednesday"

    def test_trigger_disabled(self):
        assert schedule_trigger(BackupType.DAILY, BackupSettings(daily_enabled=False)) is None

    def test_describe(self):
        s = BackupSettings(weekly_day=2, monthly_day=22, daily_enabled=False)
        assert describe_schedule(BackupType.WEEKLY, s) == "Weekly on Tuesday at 03:00 UTC"
        assert describe_schedule(BackupType.MONTHLY, s) == "Monthly on the 22nd at 04:00 UTC"
        assert describe_schedule(BackupType.DAILY, s) == "daily backups are disabled"


class TestRetentionAndNames:
    def test_retention(self):
        s = BackupSettings(daily_retention=2)
        assert retention_for(BackupType.DAILY, s) == 2
        assert retention_for(BackupType.WEEKLY, s) == 4
        assert retention_for(BackupType.MONTHLY, s) == 12
        assert retention_for(BackupType.MANUAL, s) is None

    def test_filenames(self):
        now = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)
        assert backup_filename(BackupType.DAILY, now) == "kinkeeper-backup-daily-2024-01-15T02-00-00-000Z.zip"
        assert backup_filename(BackupType.MANUAL, now, pre_import=True) == "pre-import-backup-2024-01-15T02-00-00-000Z.zip"
