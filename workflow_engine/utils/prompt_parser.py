"""
Prompt parsing utilities for batch image generation.

Prompts are submitted as multiline text separated by blank lines:

    a beautiful sunset over mountains

    a futuristic city at night

which parses to ["a beautiful sunset over mountains", "a futuristic city at night"].
"""

import logging
import re
from typing import Dict, List

logger = logging.getLogger(__name__)

BLANK_LINE_SPLIT = re.compile(r"\n\n+")
DANGEROUS_CONTENT = re.compile(r"<script|javascript:|onerror=", re.IGNORECASE)

DEFAULT_PRICE_PER_IMAGE = 0.039


def parse_prompts(prompts_text: str) -> List[str]:
    """Split multiline prompt text into individual prompts."""
    if not prompts_text or not isinstance(prompts_text, str):
        return []

    # Normalize Windows and old Mac line endings
    normalized = prompts_text.replace("\r\n", "\n").replace("\r", "\n")

    prompts = [p.strip() for p in BLANK_LINE_SPLIT.split(normalized)]
    prompts = [p for p in prompts if p]

    logger.debug(f"Parsed {len(prompts)} prompts from input")
    return prompts


def validate_prompts(
    prompts: List[str],
    min_length: int = 3,
    max_length: int = 1000,
    min_prompts: int = 1,
    max_prompts: int = 100
) -> List[str]:
    """Validate a list of prompts.

    Returns:
        List of error messages; empty when the prompts are valid.
    """
    errors = []

    if not isinstance(prompts, list):
        return ["Prompts must be a list"]

    if len(prompts) < min_prompts:
        errors.append(f"Minimum {min_prompts} prompt(s) required, got {len(prompts)}")

    if len(prompts) > max_prompts:
        errors.append(f"Maximum {max_prompts} prompts allowed, got {len(prompts)}")

    for index, prompt in enumerate(prompts):
        if not isinstance(prompt, str):
            errors.append(f"Prompt at index {index} must be a string")
            continue

        if len(prompt) < min_length:
            errors.append(f"Prompt at index {index} is too short (minimum {min_length} characters)")

        if len(prompt) > max_length:
            errors.append(f"Prompt at index {index} is too long (maximum {max_length} characters)")

        if DANGEROUS_CONTENT.search(prompt):
            errors.append(f"Prompt at index {index} contains potentially dangerous content")

    return errors


def estimate_cost(prompt_count: int, price_per_image: float = DEFAULT_PRICE_PER_IMAGE) -> Dict:
    """Estimate API cost for a number of prompts (one image per prompt)."""
    return {
        "total_cost": round(prompt_count * price_per_image, 2),
        "cost_per_image": price_per_image,
        "image_count": prompt_count,
        "currency": "USD"
    }
