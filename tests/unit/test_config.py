"""
Unit tests for settings.
"""

import pytest
from pydantic import ValidationError

from backlog.config import Settings, get_settings


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.max_attempts == 25
        assert settings.max_run_time_seconds == 4 * 60 * 60
        assert settings.batch_size == 5
        assert settings.sleep_delay_seconds == 5.0
        assert settings.destroy_failed_jobs is True
        assert settings.worker_name.startswith("host:")

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MAX_ATTEMPTS", "3")
        monkeypatch.setenv("BATCH_SIZE", "2")
        monkeypatch.setenv("DESTROY_FAILED_JOBS", "false")
        monkeypatch.setenv("PAYLOAD_MODULES", '["myapp.jobs", "myapp.mail"]')

        settings = Settings(_env_file=None)

        assert settings.max_attempts == 3
        assert settings.batch_size == 2
        assert settings.destroy_failed_jobs is False
        assert settings.payload_modules == ["myapp.jobs", "myapp.mail"]

    @pytest.mark.parametrize("field", ["max_attempts", "batch_size", "work_off_limit"])
    def test_rejects_non_positive(self, field: str):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_worker_identity_with_index(self):
        settings = Settings(_env_file=None, worker_name="host:box", worker_index="3")

        assert settings.worker_identity() == "backlog.3 host:box"

    def test_worker_identity_with_instance(self):
        settings = Settings(_env_file=None, worker_name="host:box", worker_index="3")

        assert settings.worker_identity(instance="abcd1234") == "backlog.3-abcd1234 host:box"

    def test_worker_identity_defaults_to_pid(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr("backlog.config.os.getpid", lambda: 4242)
        settings = Settings(_env_file=None, worker_name="host:box")

        assert settings.worker_identity() == "backlog.4242 host:box"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
