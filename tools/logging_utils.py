"""Logging Utilities for the Meal Plan Generator
=============================================

One place that configures logging (config.LOGGING_CONFIG via dictConfig)
and the small helpers the pipeline shares.

Usage:
    from tools.logging_utils import get_logger, log_with_emoji

    logger = get_logger(__name__)
    logger.info("🚀 Generating 7-day plan for u1")
    log_with_emoji(logger, "⚠️  Enrichment failed for plan p1")

Conventions:
    - Service and pipeline modules log; only orchestrator.py prints (rich)
    - Messages start with an emoji that matches the level (see LOG_LEVEL_MAPPING)
    - File log: data/logs/meal_planner.log, DEBUG and up, 10MB x 5
    - Console: INFO by default, changed with set_console_level (CLI -v / -q)
"""

import os
import time
import logging
import logging.config
from typing import Union

from config import LOGGING_CONFIG, DATA_DIR

_configured = False


def setup_logging():
    """Apply LOGGING_CONFIG once; later calls are no-ops."""
    global _configured
    if _configured:
        return
    try:
        os.makedirs(str(DATA_DIR / "logs"), exist_ok=True)
        logging.config.dictConfig(LOGGING_CONFIG)
        _configured = True
    except (OSError, ValueError) as e:
        print(f"Warning: Logging setup failed: {e}")


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)


def set_console_level(level: Union[int, str]) -> int:
    """
    Change the level of the console handler only; the file log keeps
    everything. Returns the numeric level applied.
    """
    setup_logging()
    numeric = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(numeric)
    return numeric


def elapsed_ms(start: float) -> int:
    """Milliseconds since ``start`` (a time.time() value), as stored on runs."""
    return max(0, int((time.time() - start) * 1000))


# Emoji prefix -> level
LOG_LEVEL_MAPPING = {
    "✅": logging.INFO,      # success
    "⚠️": logging.WARNING,
    "❌": logging.ERROR,
    "🔍": logging.DEBUG,
    "🔧": logging.DEBUG,     # setup
    "📊": logging.INFO,      # statistics
    "🚀": logging.INFO,      # run starts
    "💾": logging.DEBUG,     # persistence
    "♻️": logging.INFO,      # history reuse
    "🤖": logging.INFO,      # generative fallback
}


def log_with_emoji(logger: logging.Logger, message: str):
    """Log ``message`` at the level its emoji prefix maps to (INFO otherwise)."""
    # Emoji can be 1-2 chars
    emoji = message[:2].strip() if len(message) >= 2 else None
    level = LOG_LEVEL_MAPPING.get(emoji, LOG_LEVEL_MAPPING.get(message[:1], logging.INFO))
    logger.log(level, message)
