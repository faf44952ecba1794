"""
Configuration module for the Meal Plan Generator
================================================

This module centralizes all configuration for the meal plan generator:
- Generator settings (DB-first fill, history reuse, AI budget, coverage)
- Variety targets (per diet overrides supported)
- LLM access (OpenRouter chat completions for fallback, enrichment, translation)
- Logging (dictConfig, rotating file under data/logs)

CONFIGURATION:
- data/config.yaml: generator, variety and LLM settings
- data/secrets.yaml: credentials (openrouter API key)

Nothing is loaded at import time. Callers build a PlannerConfig explicitly
and hand it to the service:

    from config import load_planner_config
    from meal_plans_service import MealPlansService

    cfg = load_planner_config()
    service = MealPlansService(cfg)

SETUP:
    1. Copy config.yaml.example to data/config.yaml (optional, defaults apply)
    2. Set OPENROUTER_API_KEY (env var or data/secrets.yaml) for the AI fallback
"""

import os
from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from plan_errors import MealPlanError, ErrorCode


# =============================================================================
# PATHS
# =============================================================================

# Project root directory (where this file lives)
PROJECT_ROOT = Path(__file__).parent

# Data directory - THE canonical location for all runtime data
DATA_DIR = PROJECT_ROOT / "data"

CONFIG_PATH = DATA_DIR / "config.yaml"
EXAMPLE_CONFIG_PATH = PROJECT_ROOT / "config.yaml.example"
SECRETS_PATH = DATA_DIR / "secrets.yaml"

# SQLite database holding plans, runs and the candidate lookup tables
DB_PATH = DATA_DIR / "meal_plans.db"

FILL_MODES = ("fill_missing", "strict")
SERVINGS_POLICIES = ("scale_to_household", "keep_recipe_servings")
DEFAULT_SLOTS = ["breakfast", "lunch", "dinner"]


# =============================================================================
# SETTINGS DATACLASSES
# =============================================================================

@dataclass
class LLMSettings:
    """OpenRouter chat completion settings."""
    chat_model: str = "openai/gpt-4o-mini"
    api_url: str = "https://openrouter.ai/api/v1"
    temperature: float = 0.4
    max_tokens: int = 6000
    timeout_seconds: int = 120
    max_retries: int = 3
    cache_size: int = 500
    cache_ttl_seconds: int = 86400


@dataclass
class HistoryReuseSettings:
    """Thresholds for reusing well-rated meals from the user's history."""
    enabled: bool = True
    # Fraction of required cells that must be filled before the reuse is accepted
    min_ratio: float = 1.0
    min_rating: int = 3
    min_combined_score: float = 60.0
    max_usage_count: int = 10
    recency_window_days: int = 7
    candidate_limit: int = 20


@dataclass
class GeneratorSettings:
    """DB-first fill and fallback policy."""
    use_db_first: bool = True
    ai_fill_mode: str = "fill_missing"
    target_reuse_ratio: float = 0.7
    prefill_fetch_limit_max: int = 20
    repeat_window_days: int = 7
    # None disables the AI budget check
    max_ai_generated_slots_per_week: Optional[int] = None
    min_db_recipe_coverage_ratio: float = 0.5
    allow_db_coverage_fallback: bool = True
    history_reuse: HistoryReuseSettings = field(default_factory=HistoryReuseSettings)


@dataclass
class VarietyTargets:
    """Per-plan variety targets for a 7-day week."""
    unique_veg_min: int = 5
    unique_fruit_min: int = 3
    protein_rotation_min_categories: int = 3
    max_repeat_same_recipe_within_days: int = 7


@dataclass
class PlannerConfig:
    """
    Complete, explicitly constructed configuration for one service instance.

    Per-diet overrides live in ``diet_overrides`` as
    ``{diet_key: {"planner": {...}, "variety": {...}}}`` and are applied by
    ``for_diet()``.
    """
    slots: List[str] = field(default_factory=lambda: list(DEFAULT_SLOTS))
    max_plan_days: int = 14
    db_path: str = str(DB_PATH)
    generator: GeneratorSettings = field(default_factory=GeneratorSettings)
    variety: VarietyTargets = field(default_factory=VarietyTargets)
    llm: LLMSettings = field(default_factory=LLMSettings)
    diet_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def for_diet(self, diet_key: Optional[str]) -> "PlannerConfig":
        """
        Return a copy with the diet's generator/variety overrides applied.

        Raises:
            MealPlanError(CONFIG_INVALID): unknown override keys or out-of-range values
        """
        override = self.diet_overrides.get(diet_key or "", {})
        if not override:
            return self

        section = f"diet_overrides.{diet_key}"
        generator = self.generator
        gen_override = dict(override.get("planner") or override.get("generator") or {})
        if gen_override:
            history_override = gen_override.pop("history_reuse", None) or {}
            merged = asdict(generator)
            history = merged.pop("history_reuse")
            generator = _build_section(GeneratorSettings, {**merged, **gen_override}, f"{section}.planner")
            generator.history_reuse = _build_section(
                HistoryReuseSettings, {**history, **history_override}, f"{section}.planner.history_reuse")

        variety = self.variety
        if override.get("variety"):
            variety = _build_section(VarietyTargets, {**asdict(variety), **override["variety"]},
                                     f"{section}.variety")

        cfg = replace(self, generator=generator, variety=variety)
        validate_planner_config(cfg)
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# LOADING & VALIDATION
# =============================================================================

def _config_error(message: str, path: Optional[Path] = None, **details) -> MealPlanError:
    if path is not None:
        details["file"] = str(path)
    return MealPlanError(ErrorCode.CONFIG_INVALID, message, details)


def _build_section(cls, raw: Optional[Dict[str, Any]], section: str):
    """Instantiate a settings dataclass, rejecting unknown keys."""
    raw = dict(raw or {})
    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(raw) - known)
    if unknown:
        raise _config_error(f"Unknown keys in '{section}': {unknown}", section=section)
    return cls(**raw)


def planner_config_from_dict(raw: Dict[str, Any]) -> PlannerConfig:
    """
    Build a PlannerConfig from a parsed YAML mapping.

    Raises:
        MealPlanError(CONFIG_INVALID): unknown keys or out-of-range values
    """
    if not isinstance(raw, dict):
        raise _config_error("Configuration root must be a mapping")

    planner = dict(raw.get("planner") or {})
    history = planner.pop("history_reuse", None)
    slots = planner.pop("slots", None) or list(DEFAULT_SLOTS)
    max_plan_days = planner.pop("max_plan_days", 14)
    db_path = planner.pop("db_path", None) or str(DB_PATH)

    generator = _build_section(GeneratorSettings, planner, "planner")
    generator.history_reuse = _build_section(HistoryReuseSettings, history, "planner.history_reuse")

    cfg = PlannerConfig(
        slots=list(slots),
        max_plan_days=int(max_plan_days),
        db_path=str(db_path),
        generator=generator,
        variety=_build_section(VarietyTargets, raw.get("variety"), "variety"),
        llm=_build_section(LLMSettings, raw.get("llm"), "llm"),
        diet_overrides=dict(raw.get("diet_overrides") or {}),
    )
    validate_planner_config(cfg)
    return cfg


def validate_planner_config(cfg: PlannerConfig) -> None:
    """Raise CONFIG_INVALID when a setting is outside its allowed range."""
    gen = cfg.generator
    errors = []

    if gen.ai_fill_mode not in FILL_MODES:
        errors.append(f"planner.ai_fill_mode must be one of {FILL_MODES}, got '{gen.ai_fill_mode}'")
    for name in ("target_reuse_ratio", "min_db_recipe_coverage_ratio"):
        value = getattr(gen, name)
        if not 0.0 <= float(value) <= 1.0:
            errors.append(f"planner.{name} must be within [0, 1], got {value}")
    if not 0.0 <= float(gen.history_reuse.min_ratio) <= 1.0:
        errors.append(f"planner.history_reuse.min_ratio must be within [0, 1], got {gen.history_reuse.min_ratio}")
    if gen.repeat_window_days < 1:
        errors.append("planner.repeat_window_days must be >= 1")
    if gen.prefill_fetch_limit_max < 1:
        errors.append("planner.prefill_fetch_limit_max must be >= 1")
    if gen.max_ai_generated_slots_per_week is not None and gen.max_ai_generated_slots_per_week < 0:
        errors.append("planner.max_ai_generated_slots_per_week must be >= 0")
    if not cfg.slots:
        errors.append("planner.slots must list at least one slot")
    elif len(set(cfg.slots)) != len(cfg.slots):
        errors.append(f"planner.slots contains duplicates: {cfg.slots}")
    if cfg.max_plan_days < 1:
        errors.append("planner.max_plan_days must be >= 1")

    if errors:
        raise _config_error("Invalid planner configuration: " + "; ".join(errors), errors=errors)


def load_planner_config(path: Optional[Path] = None) -> PlannerConfig:
    """
    Load the planner configuration from YAML.

    Resolution order: explicit ``path``, then data/config.yaml, then
    config.yaml.example. When none exist the dataclass defaults are used.

    Raises:
        MealPlanError(CONFIG_INVALID): invalid YAML or invalid settings
    """
    candidates = [Path(path)] if path else [CONFIG_PATH, EXAMPLE_CONFIG_PATH]
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            with open(candidate, "r") as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise _config_error(f"config has invalid YAML syntax: {e}", candidate) from e
        return planner_config_from_dict(raw or {})

    if path:
        raise _config_error(f"config file not found: {path}", Path(path))
    return PlannerConfig()


# =============================================================================
# SECRETS
# =============================================================================

def _load_secrets() -> Dict[str, Any]:
    """Load data/secrets.yaml if present. Missing file means no secrets."""
    if not SECRETS_PATH.exists():
        return {}
    try:
        with open(SECRETS_PATH, "r") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise _config_error(f"secrets.yaml has invalid YAML syntax: {e}", SECRETS_PATH) from e


def get_openrouter_api_key() -> Optional[str]:
    """Environment variable wins over data/secrets.yaml."""
    env_value = os.environ.get("OPENROUTER_API_KEY")
    if env_value:
        return env_value
    return _load_secrets().get("openrouter_api_key")


# =============================================================================
# LOGGING
# =============================================================================

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "detailed": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "standard",
            "stream": "ext://sys.stdout"
        },
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "DEBUG",
            "formatter": "detailed",
            "filename": str(DATA_DIR / "logs" / "meal_planner.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5
        }
    },
    "root": {
        "level": "DEBUG",
        "handlers": ["console", "file"]
    }
}
