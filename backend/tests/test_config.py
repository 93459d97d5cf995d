"""
Tests for harness settings.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from vigil.config import DEFAULT_BASE_DIR, HarnessSettings


class TestDefaults:
    def test_calibrated_defaults(self):
        settings = HarnessSettings()

        assert settings.base_dir == DEFAULT_BASE_DIR
        assert settings.logger.buffer_cap == 1000
        assert settings.logger.trim_batch == 500
        assert settings.state.capture_interval_seconds == 1.0
        assert settings.state.history_cap == 100
        assert settings.workflow.stall_timeout_seconds == 30.0
        assert settings.workflow.edit_timeout_seconds == 15.0
        assert settings.retention.max_age_days == 30.0
        assert settings.retention.max_sessions == 50
        assert settings.interceptor.preserve_output is True

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            HarnessSettings.model_validate({"logger": {"buffer_size": 5}})


class TestFromEnv:
    def test_environment_overrides(self, tmp_path):
        """
        GIVEN VIGIL_* variables for several sections
        WHEN settings are built from the environment
        THEN each value lands in its section with the right type
        """
        env = {
            "VIGIL_BASE_DIR": str(tmp_path),
            "VIGIL_RETENTION_DAYS": "7",
            "VIGIL_MAX_SESSIONS": "5",
            "VIGIL_CAPTURE_INTERVAL": "0.5",
            "VIGIL_STALL_TIMEOUT": "45",
            "VIGIL_PRESERVE_OUTPUT": "false",
        }

        settings = HarnessSettings.from_env(env)

        assert settings.base_dir == Path(tmp_path)
        assert settings.retention.max_age_days == 7.0
        assert settings.retention.max_sessions == 5
        assert settings.state.capture_interval_seconds == 0.5
        assert settings.workflow.stall_timeout_seconds == 45.0
        assert settings.interceptor.preserve_output is False

    def test_empty_environment_gives_defaults(self):
        assert HarnessSettings.from_env({}) == HarnessSettings()

    def test_overrides_win(self, tmp_path):
        settings = HarnessSettings.from_env({"VIGIL_BASE_DIR": "/elsewhere"}, base_dir=tmp_path)
        assert settings.base_dir == tmp_path

    def test_bad_value_rejected(self):
        with pytest.raises(ValidationError):
            HarnessSettings.from_env({"VIGIL_MAX_SESSIONS": "many"})
