"""Tests for settings loading: defaults, YAML files, environment overrides."""

import os

import pydantic
import pytest
import yaml

from driveaudit.adapters.credentials import MUTATION_SCOPES, READ_SCOPES
from driveaudit.config import Settings, get_settings, load_yaml_config, reload_settings


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with no config.yaml in reach and no DRIVEAUDIT_ variables."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for key in list(os.environ):
        if key.startswith("DRIVEAUDIT_"):
            monkeypatch.delenv(key)
    return tmp_path


class TestDefaults:

    def test_section_defaults(self, isolated):
        settings = Settings()
        assert settings.drive.page_size == 100
        assert settings.scan.batch_size == 500
        assert settings.scan.stale_timeout_seconds == 3 * 60 * 60
        assert settings.integrated.concurrency == 1
        assert settings.bulk.max_files_per_request == 100
        assert settings.storage.url.startswith("sqlite+aiosqlite://")
        assert settings.logging.level == "INFO"

    def test_delegation_scopes_follow_mutation_switch(self, isolated):
        assert Settings().delegation.scopes == list(READ_SCOPES)
        settings = Settings(delegation={"allow_mutations": True})
        assert settings.delegation.scopes == list(MUTATION_SCOPES)

    def test_section_helpers(self, isolated):
        settings = Settings(drive={"requests_per_second": 3.0}, circuit_breaker={"failure_threshold": 9})
        assert settings.drive.rate_limiter_config().requests_per_second == 3.0
        assert settings.circuit_breaker.breaker_config().failure_threshold == 9


class TestRiskSettings:

    def test_partial_weights_merge_with_defaults(self, isolated):
        policy = Settings(risk={"weights": {"external_owner": 10}}).risk.policy()
        assert policy.weights["external_owner"] == 10
        assert policy.weights["public_sharing"] == 40

    def test_partial_thresholds_merge(self, isolated):
        settings = Settings(risk={"thresholds": {"critical": 90}})
        assert settings.risk.thresholds == {"critical": 90, "high": 60, "medium": 40}

    def test_thresholds_must_descend(self, isolated):
        with pytest.raises(pydantic.ValidationError):
            Settings(risk={"thresholds": {"high": 30, "medium": 50}})


class TestSources:

    def test_yaml_file(self, isolated):
        (isolated / "config.yaml").write_text(yaml.safe_dump({"scan": {"batch_size": 50}}))
        assert load_yaml_config() == {"scan": {"batch_size": 50}}
        assert get_settings().scan.batch_size == 50

    def test_explicit_path_and_empty_file(self, isolated):
        path = isolated / "empty.yaml"
        path.write_text("")
        assert load_yaml_config(path) == {}
        assert load_yaml_config(isolated / "missing.yaml") == {}

    def test_environment_overrides(self, isolated, monkeypatch):
        monkeypatch.setenv("DRIVEAUDIT_SCAN__BATCH_SIZE", "25")
        monkeypatch.setenv("DRIVEAUDIT_STORAGE__URL", "memory://")
        settings = Settings()
        assert settings.scan.batch_size == 25
        assert settings.storage.url == "memory://"

    def test_environment_beats_yaml(self, isolated, monkeypatch):
        (isolated / "config.yaml").write_text(
            yaml.safe_dump({"scan": {"batch_size": 50, "batch_write_retries": 7}})
        )
        monkeypatch.setenv("DRIVEAUDIT_SCAN__BATCH_SIZE", "25")
        settings = get_settings()
        assert settings.scan.batch_size == 25
        assert settings.scan.batch_write_retries == 7

    def test_invalid_value_rejected(self, isolated):
        with pytest.raises(pydantic.ValidationError):
            Settings(drive={"page_size": 0})

    def test_get_settings_is_cached_until_reload(self, isolated):
        first = get_settings()
        assert get_settings() is first
        (isolated / "config.yaml").write_text(yaml.safe_dump({"bulk": {"max_files_per_request": 7}}))
        assert get_settings().bulk.max_files_per_request == 100
        assert reload_settings().bulk.max_files_per_request == 7
