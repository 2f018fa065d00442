"""Engine settings stored in system_config, with defaults from SystemConfig.DEFAULTS.

Values are cached for all instances and re-read from the database at most
once a minute, or immediately after set().
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Dict, List, Tuple
from sqlalchemy.orm import Session

from workflow_engine.models.system_config import SystemConfig
from workflow_engine.utils.timezone import utcnow

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 60


def _typed(value: Optional[str], value_type: str) -> Any:
    """Parse a stored string; unparsable numbers come back as the raw string."""
    if value is None:
        return None
    try:
        if value_type == "int":
            return int(value)
        if value_type == "float":
            return float(value)
    except ValueError:
        return value
    return value


class ConfigService:
    """Reads and writes engine settings."""

    _cache: Dict[str, Tuple[str, str]] = {}
    _cache_loaded_at = None

    def __init__(self, db: Session):
        self.db = db

    @classmethod
    def invalidate_cache(cls):
        cls._cache = {}
        cls._cache_loaded_at = None

    def _stored(self, key: str) -> Optional[Tuple[str, str]]:
        loaded_at = ConfigService._cache_loaded_at
        if loaded_at is None or (utcnow() - loaded_at).total_seconds() > CACHE_TTL_SECONDS:
            try:
                rows = self.db.query(SystemConfig).all()
                ConfigService._cache = {r.key: (r.value, r.value_type or "string") for r in rows}
                ConfigService._cache_loaded_at = utcnow()
            except Exception as e:
                logger.warning(f"Could not load engine settings, using defaults: {e}")
        return ConfigService._cache.get(key)

    def get(self, key: str, default: Any = None) -> Any:
        """Stored value, else the built-in default, else `default`."""
        stored = self._stored(key)
        if stored is not None:
            return _typed(*stored)

        builtin = SystemConfig.DEFAULTS.get(key)
        if builtin is not None:
            return _typed(builtin["value"], builtin["value_type"])
        return default

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get(key, default))
        except (ValueError, TypeError):
            logger.warning(f"Setting {key} is not an integer; using {default}")
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        try:
            return float(self.get(key, default))
        except (ValueError, TypeError):
            logger.warning(f"Setting {key} is not a number; using {default}")
            return default

    def set(self, key: str, value: Any, updated_by: str = "system") -> bool:
        """Store a value. Returns False if the write failed."""
        builtin = SystemConfig.DEFAULTS.get(key, {})
        try:
            row = self.db.query(SystemConfig).filter(SystemConfig.key == key).first()
            if row is None:
                row = SystemConfig(
                    key=key,
                    value_type=builtin.get("value_type", "string"),
                    description=builtin.get("description", ""),
                    category=builtin.get("category", "general"),
                    display_order=builtin.get("display_order", "999"),
                )
                self.db.add(row)

            row.value = str(value)
            row.updated_by = updated_by
            row.updated_at = utcnow()
            self.db.commit()
        except Exception as e:
            logger.error(f"Failed to store setting {key}: {e}")
            self.db.rollback()
            return False

        ConfigService.invalidate_cache()
        return True

    def get_all(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        """Every known setting, with database rows taking precedence over defaults."""
        settings_by_key = {}

        for key, builtin in SystemConfig.DEFAULTS.items():
            if category and builtin["category"] != category:
                continue
            settings_by_key[key] = {
                "key": key,
                "value": _typed(builtin["value"], builtin["value_type"]),
                "value_type": builtin["value_type"],
                "description": builtin["description"],
                "category": builtin["category"],
                "display_order": builtin["display_order"],
                "source": "default",
                "updated_at": None,
                "updated_by": None
            }

        query = self.db.query(SystemConfig)
        if category:
            query = query.filter(SystemConfig.category == category)
        for row in query.all():
            value_type = row.value_type or "string"
            settings_by_key[row.key] = {
                "key": row.key,
                "value": _typed(row.value, value_type),
                "value_type": value_type,
                "description": row.description,
                "category": row.category,
                "display_order": row.display_order or "999",
                "source": "database",
                "updated_at": row.updated_at.isoformat() if row.updated_at else None,
                "updated_by": row.updated_by
            }

        return sorted(
            settings_by_key.values(),
            key=lambda s: (s["category"] or "zzz", s["display_order"] or "999")
        )

    def get_categories(self) -> List[str]:
        return sorted({builtin["category"] for builtin in SystemConfig.DEFAULTS.values()})

    def initialize_defaults(self):
        """Insert a row for every default that is not stored yet."""
        stored = {key for (key,) in self.db.query(SystemConfig.key).all()}
        missing = [key for key in SystemConfig.DEFAULTS if key not in stored]
        for key in missing:
            builtin = SystemConfig.DEFAULTS[key]
            self.db.add(SystemConfig(
                key=key,
                value=builtin["value"],
                value_type=builtin["value_type"],
                description=builtin["description"],
                category=builtin["category"],
                display_order=builtin["display_order"],
                updated_by="system"
            ))
        self.db.commit()
        logger.info(f"Engine settings initialized ({len(missing)} defaults added)")


@dataclass(frozen=True)
class EngineConfig:
    """Resolved engine tunables handed to the coordinator, queue and worker pool."""

    worker_pool_size: int = 4
    max_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 60.0
    lease_duration_seconds: int = 180
    lease_reclaim_interval_seconds: int = 30
    queue_poll_interval_seconds: float = 1.0
    api_call_timeout_seconds: int = 60
    storage_max_attempts: int = 3
    max_batch_size: int = 100
    prompt_min_length: int = 3
    prompt_max_length: int = 1000
    rate_limit_flash_rpm: int = 1000
    rate_limit_pro_rpm: int = 500

    @classmethod
    def from_config_service(cls, config_service: ConfigService) -> "EngineConfig":
        """Build a snapshot from system_config (database values override defaults)."""
        return cls(
            worker_pool_size=config_service.get_int("WORKER_POOL_SIZE", cls.worker_pool_size),
            max_attempts=config_service.get_int("MAX_ATTEMPTS", cls.max_attempts),
            retry_base_delay_seconds=config_service.get_float(
                "RETRY_BASE_DELAY_SECONDS", cls.retry_base_delay_seconds
            ),
            retry_max_delay_seconds=config_service.get_float(
                "RETRY_MAX_DELAY_SECONDS", cls.retry_max_delay_seconds
            ),
            lease_duration_seconds=config_service.get_int(
                "LEASE_DURATION_SECONDS", cls.lease_duration_seconds
            ),
            lease_reclaim_interval_seconds=config_service.get_int(
                "LEASE_RECLAIM_INTERVAL_SECONDS", cls.lease_reclaim_interval_seconds
            ),
            queue_poll_interval_seconds=config_service.get_float(
                "QUEUE_POLL_INTERVAL_SECONDS", cls.queue_poll_interval_seconds
            ),
            api_call_timeout_seconds=config_service.get_int(
                "API_CALL_TIMEOUT_SECONDS", cls.api_call_timeout_seconds
            ),
            storage_max_attempts=config_service.get_int("STORAGE_MAX_ATTEMPTS", cls.storage_max_attempts),
            max_batch_size=config_service.get_int("MAX_BATCH_SIZE", cls.max_batch_size),
            prompt_min_length=config_service.get_int("PROMPT_MIN_LENGTH", cls.prompt_min_length),
            prompt_max_length=config_service.get_int("PROMPT_MAX_LENGTH", cls.prompt_max_length),
            rate_limit_flash_rpm=config_service.get_int("RATE_LIMIT_FLASH_RPM", cls.rate_limit_flash_rpm),
            rate_limit_pro_rpm=config_service.get_int("RATE_LIMIT_PRO_RPM", cls.rate_limit_pro_rpm),
        )


def load_engine_config(db: Session) -> EngineConfig:
    """Convenience function to resolve the current engine configuration."""
    return EngineConfig.from_config_service(ConfigService(db))
