"""Utility modules for the application."""

from workflow_engine.utils.timezone import utcnow, to_utc_iso, seconds_between
from workflow_engine.utils.prompt_parser import parse_prompts, validate_prompts, estimate_cost

__all__ = [
    "utcnow",
    "to_utc_iso",
    "seconds_between",
    "parse_prompts",
    "validate_prompts",
    "estimate_cost",
]
