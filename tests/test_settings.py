"""
Tests — Settings loading: YAML, ${VAR} substitution and flat env overrides
"""
import textwrap
from pathlib import Path

import pytest

from config.settings import (
    DatabaseConfig, RateLimitConfig, Settings, apply_env_overrides, load_settings,
)
from models.schemas import RateTier

BUNDLED = str(Path(__file__).resolve().parent.parent / "config" / "settings.yaml")


def _write(tmp_path, text):
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(text))
    return str(path)


class TestDefaults:

    def test_dataclass_defaults(self):
        s = Settings()
        assert s.gateway.port == 4001
        assert s.gateway.secret == ""
        assert s.worker.poll_interval_ms == 2000
        assert s.worker.batch_size == 10
        assert s.worker.max_jobs_per_cycle == 1
        assert s.worker.max_attempts == 5
        assert s.worker.base_backoff_seconds == 30
        assert s.worker.max_backoff_seconds == 1800
        assert s.receipts.correlation_attempts == 8
        assert s.receipts.correlation_delay_ms == 2000
        assert s.receipts.poll_interval_ms == 10_000
        assert s.receipts.poll_timeout_ms == 1_800_000

    def test_tier_limits(self):
        rl = RateLimitConfig()
        assert rl.for_tier(RateTier.FREE).max_per_hour == 2
        assert rl.for_tier(RateTier.PAID).max_per_hour == 30
        assert rl.for_tier(RateTier.FREE).min_interval_seconds == 0

    def test_database_default_is_sqlite(self):
        cfg = DatabaseConfig()
        assert cfg.store_backend == "sql"
        assert "sqlite" in cfg.url


class TestLoadSettings:

    def test_bundled_yaml(self, monkeypatch):
        monkeypatch.delenv("GATEWAY_SECRET", raising=False)
        s = load_settings(BUNDLED, environ={})
        assert s.gateway.secret == ""
        assert s.worker.worker_id == "gateway-worker"
        assert s.rate_limit.paid.max_per_hour == 30

    def test_missing_file_uses_defaults(self, tmp_path):
        s = load_settings(str(tmp_path / "nope.yaml"), environ={})
        assert s.gateway.port == 4001

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_GATEWAY_SECRET", "s3cret")
        path = _write(tmp_path, """
            gateway:
              secret: "${TEST_GATEWAY_SECRET}"
        """)
        assert load_settings(path, environ={}).gateway.secret == "s3cret"

    def test_unresolved_secret_blanked(self, tmp_path, monkeypatch):
        monkeypatch.delenv("UNSET_GATEWAY_SECRET", raising=False)
        path = _write(tmp_path, """
            gateway:
              secret: "${UNSET_GATEWAY_SECRET}"
        """)
        assert load_settings(path, environ={}).gateway.secret == ""

    def test_sections_parsed(self, tmp_path):
        path = _write(tmp_path, """
            log_level: debug
            worker:
              enabled: "false"
              poll_interval_ms: "500"
            rate_limit:
              free:
                max_per_hour: 5
            receipts:
              enabled: false
            database:
              store_backend: memory
        """)
        s = load_settings(path, environ={})
        assert s.log_level == "DEBUG"
        assert s.worker.enabled is False
        assert s.worker.poll_interval_ms == 500
        assert s.rate_limit.free.max_per_hour == 5
        assert s.rate_limit.paid.max_per_hour == 30
        assert s.receipts.enabled is False
        assert s.database.store_backend == "memory"

    def test_non_numeric_yaml_value(self, tmp_path):
        path = _write(tmp_path, """
            worker:
              batch_size: lots
        """)
        with pytest.raises(ValueError, match="worker.batch_size must be a number"):
            load_settings(path, environ={})


class TestEnvOverrides:

    def test_flat_overrides(self):
        s = apply_env_overrides(Settings(), environ={
            "GATEWAY_SECRET": "abc",
            "GATEWAY_PORT": "5001",
            "WORKER_ENABLED": "false",
            "WORKER_POLL_INTERVAL_MS": "250",
            "MAX_ATTEMPTS": "7",
            "FREE_MAX_PER_HOUR": "3",
            "PAID_MIN_INTERVAL_SECONDS": "15",
            "CHAT_DB_PATH": "/tmp/chat.db",
            "DATABASE_URL": "mysql://u:p@h/db",
            "LOG_LEVEL": "warning",
        })
        assert s.gateway.secret == "abc"
        assert s.gateway.port == 5001
        assert s.worker.enabled is False
        assert s.worker.poll_interval_ms == 250
        assert s.worker.max_attempts == 7
        assert s.rate_limit.free.max_per_hour == 3
        assert s.rate_limit.paid.min_interval_seconds == 15
        assert s.receipts.chat_db_path == "/tmp/chat.db"
        assert s.database.url == "mysql://u:p@h/db"
        assert s.log_level == "WARNING"

    def test_only_literal_true_enables(self):
        assert apply_env_overrides(Settings(), environ={"WORKER_ENABLED": "TRUE"}).worker.enabled
        assert not apply_env_overrides(Settings(), environ={"WORKER_ENABLED": "yes"}).worker.enabled

    def test_empty_values_ignored(self):
        s = apply_env_overrides(Settings(), environ={"GATEWAY_PORT": "", "FREE_MAX_PER_HOUR": ""})
        assert s.gateway.port == 4001
        assert s.rate_limit.free.max_per_hour == 2

    def test_env_beats_yaml(self, tmp_path):
        path = _write(tmp_path, """
            worker:
              batch_size: 20
        """)
        s = load_settings(path, environ={"WORKER_BATCH_SIZE": "3"})
        assert s.worker.batch_size == 3

    @pytest.mark.parametrize("var", ["WORKER_POLL_INTERVAL_MS", "FREE_MAX_PER_HOUR", "GATEWAY_PORT"])
    def test_non_numeric_env(self, var):
        with pytest.raises(ValueError, match=f"{var} must be a number"):
            apply_env_overrides(Settings(), environ={var: "soon"})
