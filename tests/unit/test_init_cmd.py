"""Tests for kinkeeper.cli.init_cmd (kk init)."""

from __future__ import annotations

from pathlib import Path

import yaml
from click.testing import CliRunner

from kinkeeper.backup.settings import BackupSettings
from kinkeeper.cli.main import cli
from kinkeeper.core.family_db import FamilyDB


class TestInit:
    def test_creates_structure(self, tmp_path: Path):
        home = tmp_path / "family"
        result = CliRunner().invoke(cli, ["init", str(home)])

        assert result.exit_code == 0, result.output
        assert "Initialized" in result.output
        assert (home / ".kk" / "config.yaml").is_file()
        assert (home / ".kk" / "family.db").is_file()
        assert (home / "uploads").is_dir()

    def test_config_yaml(self, tmp_path: Path):
        home = tmp_path / "family"
        CliRunner().invoke(cli, ["init", str(home)])

        config = yaml.safe_load((home / ".kk" / "config.yaml").read_text(encoding="utf-8"))
        assert config["database"] == ".kk/family.db"
        assert config["storage"]["provider"] == "local"
        assert config["backup"]["audit_log_days"] == 90

    def test_database_seeded(self, tmp_path: Path):
        home = tmp_path / "family"
        CliRunner().invoke(cli, ["init", str(home), "--family-name", "Byrons"])

        db = FamilyDB(home / ".kk" / "family.db")
        try:
            assert db.get_family_settings().family_name == "Byrons"
            stored = BackupSettings.from_dict(db.read_backup_settings())
            assert stored.daily_retention == 7
        finally:
            db.close()

    def test_already_initialized(self, tmp_path: Path):
        home = tmp_path / "family"
        runner = CliRunner()
        runner.invoke(cli, ["init", str(home)])

        result = runner.invoke(cli, ["init", str(home)])
        assert result.exit_code == 0
        assert "Already initialized" in result.output

    def test_next_steps(self, tmp_path: Path):
        result = CliRunner().invoke(cli, ["init", str(tmp_path / "family")])
        assert "Next steps" in result.output
        assert "kk user add" in result.output

    def test_default_path(self, tmp_path: Path, monkeypatch):
        home = tmp_path / "default_home"
        monkeypatch.setenv("KK_HOME", str(home))

        result = CliRunner().invoke(cli, ["init"])
        assert result.exit_code == 0, result.output
        assert (home / ".kk" / "config.yaml").is_file()


class TestVersion:
    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "kinkeeper" in result.output
