"""System configuration model."""

from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.sql import func
from workflow_engine.database import Base


class SystemConfig(Base):
    """System configuration key-value store."""

    __tablename__ = "system_config"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    value_type = Column(String(20), default="string")  # int, float, bool, string, json
    description = Column(String(500), nullable=True)
    category = Column(String(50), nullable=True)  # workers, retry, queue, limits, rate_limits
    display_order = Column(String(10), default="999")  # For UI ordering
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    updated_by = Column(String(100), nullable=True)

    # Default configuration values
    DEFAULTS = {
        # Worker Pool Settings
        "WORKER_POOL_SIZE": {
            "value": "4",
            "value_type": "int",
            "description": "Number of concurrent workers calling the external API. Applied on pool restart.",
            "category": "workers",
            "display_order": "010"
        },
        "API_CALL_TIMEOUT_SECONDS": {
            "value": "60",
            "value_type": "int",
            "description": "Maximum seconds to wait for a single external API call",
            "category": "workers",
            "display_order": "020"
        },
        "STORAGE_MAX_ATTEMPTS": {
            "value": "3",
            "value_type": "int",
            "description": "Attempts to persist a generated result before the item is failed",
            "category": "workers",
            "display_order": "030"
        },
        # Retry Settings
        "MAX_ATTEMPTS": {
            "value": "3",
            "value_type": "int",
            "description": "Maximum attempts per item before it is marked failed",
            "category": "retry",
            "display_order": "010"
        },
        "RETRY_BASE_DELAY_SECONDS": {
            "value": "2",
            "value_type": "float",
            "description": "Base delay for exponential backoff between attempts",
            "category": "retry",
            "display_order": "020"
        },
        "RETRY_MAX_DELAY_SECONDS": {
            "value": "60",
            "value_type": "float",
            "description": "Upper bound on the backoff delay",
            "category": "retry",
            "display_order": "030"
        },
        # Queue Settings
        "LEASE_DURATION_SECONDS": {
            "value": "180",
            "value_type": "int",
            "description": "Seconds a worker holds an item before the lease expires and the item can be reclaimed",
            "category": "queue",
            "display_order": "010"
        },
        "LEASE_RECLAIM_INTERVAL_SECONDS": {
            "value": "30",
            "value_type": "int",
            "description": "Seconds between sweeps that reclaim expired leases",
            "category": "queue",
            "display_order": "020"
        },
        "QUEUE_POLL_INTERVAL_SECONDS": {
            "value": "1",
            "value_type": "float",
            "description": "Seconds an idle worker waits before polling the queue again",
            "category": "queue",
            "display_order": "030"
        },
        # Submission Limits
        "MAX_BATCH_SIZE": {
            "value": "100",
            "value_type": "int",
            "description": "Maximum number of items accepted in a single batch",
            "category": "limits",
            "display_order": "010"
        },
        "PROMPT_MIN_LENGTH": {
            "value": "3",
            "value_type": "int",
            "description": "Minimum prompt length in characters",
            "category": "limits",
            "display_order": "020"
        },
        "PROMPT_MAX_LENGTH": {
            "value": "1000",
            "value_type": "int",
            "description": "Maximum prompt length in characters",
            "category": "limits",
            "display_order": "030"
        },
        # Rate Limits
        "RATE_LIMIT_FLASH_RPM": {
            "value": "1000",
            "value_type": "int",
            "description": "Requests per minute allowed for Flash image models",
            "category": "rate_limits",
            "display_order": "010"
        },
        "RATE_LIMIT_PRO_RPM": {
            "value": "500",
            "value_type": "int",
            "description": "Requests per minute allowed for Pro image models",
            "category": "rate_limits",
            "display_order": "020"
        },
    }
