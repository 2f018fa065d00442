"""Tests for database-backed engine settings."""

from workflow_engine.models.system_config import SystemConfig
from workflow_engine.services.config_service import ConfigService, EngineConfig, load_engine_config


class TestConfigService:
    """Test suite for ConfigService."""

    def test_defaults_without_rows(self, db):
        """Test that defaults apply before anything is stored."""
        service = ConfigService(db)
        assert service.get_int("MAX_ATTEMPTS") == 3
        assert service.get_float("RETRY_BASE_DELAY_SECONDS") == 2.0
        assert service.get("NOT_A_KEY", "fallback") == "fallback"

    def test_initialize_defaults_is_idempotent(self, db):
        """Test that defaults are inserted once."""
        service = ConfigService(db)
        service.initialize_defaults()
        service.initialize_defaults()
        assert db.query(SystemConfig).count() == len(SystemConfig.DEFAULTS)

    def test_set_overrides_default(self, db):
        """Test that a stored value wins over the default and invalidates the cache."""
        service = ConfigService(db)
        assert service.get_int("WORKER_POOL_SIZE") == 4

        assert service.set("WORKER_POOL_SIZE", 8, updated_by="admin") is True
        assert service.get_int("WORKER_POOL_SIZE") == 8

        row = db.query(SystemConfig).filter(SystemConfig.key == "WORKER_POOL_SIZE").first()
        assert row.updated_by == "admin"
        assert row.value_type == "int"

    def test_get_all_marks_source(self, db):
        """Test that get_all reports where each value came from."""
        service = ConfigService(db)
        service.set("MAX_BATCH_SIZE", 25)

        configs = {c["key"]: c for c in service.get_all()}
        assert configs["MAX_BATCH_SIZE"]["source"] == "database"
        assert configs["MAX_BATCH_SIZE"]["value"] == 25
        assert configs["MAX_ATTEMPTS"]["source"] == "default"
        assert "retry" in service.get_categories()

    def test_engine_config_from_database(self, db):
        """Test that EngineConfig picks up stored overrides."""
        service = ConfigService(db)
        service.set("MAX_ATTEMPTS", 5)
        service.set("LEASE_DURATION_SECONDS", 300)

        config = load_engine_config(db)
        assert config.max_attempts == 5
        assert config.lease_duration_seconds == 300
        assert config.worker_pool_size == EngineConfig().worker_pool_size

    def test_bad_stored_value_falls_back(self, db):
        """Test that an unparsable number falls back to the given default."""
        service = ConfigService(db)
        service.set("MAX_ATTEMPTS", "many")
        assert service.get_int("MAX_ATTEMPTS", 3) == 3
