"""
Variety Enforcer
================

Measures a finished plan against per-week variety targets and drives the
bounded retry around plan generation.

Scorecard:
- distinct vegetable / fruit / protein ingredient keys (keyword heuristics,
  Dutch + English, substring match in either direction)
- max number of times one meal name appears in any sliding window of
  ``repeat_window_days`` days (met when <= 1)

Targets are defined per 7 days; shorter plans scale the minimums down
(ceil, min 1) and cap the repeat window at the plan length.

Retry state machine:
    Attempt(1) --SUCCESS--------------------------> Success(plan, shortfall=False)
    Attempt(1) --VARIETY_UNMET | TRANSIENT_ERROR--> Attempt(2)
    Attempt(2) --VARIETY_UNMET--------------------> Success(plan, shortfall=True)
    any        --STRUCTURAL_ERROR-----------------> Fail(error)
    Attempt(2) --TRANSIENT_ERROR------------------> Fail(error)
"""

import math
from collections import Counter
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from config import VarietyTargets
from plan_errors import MealPlanError
from plan_types import Meal, MealPlan
from tools.logging_utils import get_logger

logger = get_logger(__name__)

REFERENCE_DAYS = 7
MAX_ATTEMPTS = 2
TOP_REPEATS_LIMIT = 10


# =============================================================================
# KEYWORDS
# =============================================================================

VEG_TERMS = frozenset([
    "groente", "groenten", "tomaten", "tomaat", "wortel", "wortelen", "ui", "uien",
    "knoflook", "paprika", "courgette", "aubergine", "spinazie", "sla", "broccoli",
    "bloemkool", "boerenkool", "andijvie", "prei", "bleekselderij", "komkommer",
    "radijs", "biet", "bieten",
    "vegetable", "tomato", "carrot", "onion", "garlic", "pepper", "spinach", "lettuce",
    "cauliflower", "kale", "zucchini", "eggplant", "cucumber", "celery", "leek",
])

FRUIT_TERMS = frozenset([
    "fruit", "appel", "appels", "banaan", "bananen", "sinaasappel", "citroen", "limoen",
    "peer", "peren", "druif", "druiven", "bes", "bessen", "aardbei", "aardbeien",
    "framboos", "blauwe bes", "mango", "ananas", "kiwi",
    "apple", "banana", "orange", "lemon", "lime", "pear", "grape", "berry", "berries",
    "strawberry", "raspberry", "blueberry", "pineapple",
])

PROTEIN_TERMS = frozenset([
    "kip", "kipfilet", "kipfilets", "vlees", "rund", "varken", "gehakt", "ei", "eieren",
    "vis", "zalm", "tonijn", "kabeljauw", "forel", "tofu", "tempeh", "linzen",
    "kikkererwten", "bonen", "quorn",
    "chicken", "beef", "pork", "egg", "fish", "salmon", "tuna", "cod", "lentil",
    "chickpea", "bean", "beans",
])


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _matches_any(key: str, terms: frozenset) -> bool:
    return any(term in key or key in term for term in terms)


def ingredient_keys(meal: Meal) -> List[str]:
    """Distinct ingredient keys: display name, else food code."""
    keys: List[str] = []
    seen: Set[str] = set()
    for ref in meal.ingredient_refs:
        key = _normalize(ref.display_name) or _normalize(ref.food_code)
        if key and key not in seen:
            seen.add(key)
            keys.append(key)
    return keys


# =============================================================================
# TARGETS & SCORECARD
# =============================================================================

def scale_variety_targets(num_days: int, targets: Optional[VarietyTargets]) -> VarietyTargets:
    """Scale weekly targets to a plan of ``num_days`` days."""
    if targets is None or num_days < 1:
        return VarietyTargets(
            unique_veg_min=1,
            unique_fruit_min=1,
            protein_rotation_min_categories=1,
            max_repeat_same_recipe_within_days=max(1, num_days),
        )
    scale = min(1.0, num_days / REFERENCE_DAYS)
    return VarietyTargets(
        unique_veg_min=max(1, math.ceil(targets.unique_veg_min * scale)),
        unique_fruit_min=max(1, math.ceil(targets.unique_fruit_min * scale)),
        protein_rotation_min_categories=max(1, math.ceil(targets.protein_rotation_min_categories * scale)),
        max_repeat_same_recipe_within_days=min(targets.max_repeat_same_recipe_within_days, max(1, num_days)),
    )


def max_repeat_within_days(plan: MealPlan, window_days: int):
    """
    Largest count of one meal name inside any window of ``window_days`` consecutive plan days.

    Returns:
        (max_repeat, top_repeats) where top_repeats lists names used more than once in the plan
    """
    days = sorted(plan.days, key=lambda d: d.date)
    if window_days < 1 or not days:
        return 0, []

    max_repeat = 0
    for start in range(0, max(1, len(days) - window_days + 1)):
        window = Counter(
            _normalize(meal.name) or "unknown"
            for plan_day in days[start:start + window_days]
            for meal in plan_day.meals
        )
        if window:
            max_repeat = max(max_repeat, max(window.values()))

    totals = Counter(_normalize(m.name) or "unknown" for m in plan.iter_meals())
    top = [{"name": name, "count": count} for name, count in totals.most_common() if count > 1]
    return max_repeat, top[:TOP_REPEATS_LIMIT]


def build_variety_scorecard(plan: MealPlan, targets: Optional[VarietyTargets]) -> Dict[str, Any]:
    """Variety metrics for a plan; pure reporting."""
    num_days = max(1, len(plan.days))
    scaled = scale_variety_targets(num_days, targets)

    veg: Set[str] = set()
    fruit: Set[str] = set()
    protein: Set[str] = set()
    for meal in plan.iter_meals():
        for key in ingredient_keys(meal):
            if _matches_any(key, VEG_TERMS):
                veg.add(key)
            if _matches_any(key, FRUIT_TERMS):
                fruit.add(key)
            if _matches_any(key, PROTEIN_TERMS):
                protein.add(key)

    max_repeat, top_repeats = max_repeat_within_days(plan, scaled.max_repeat_same_recipe_within_days)
    meets = {
        "unique_veg_min": len(veg) >= scaled.unique_veg_min,
        "unique_fruit_min": len(fruit) >= scaled.unique_fruit_min,
        "protein_rotation": len(protein) >= scaled.protein_rotation_min_categories,
        "repeat_window": max_repeat <= 1,
    }
    return {
        "status": "ok",
        "unique_veg_count": len(veg),
        "unique_fruit_count": len(fruit),
        "protein_unique_count": len(protein),
        "max_repeat_within_days": max_repeat,
        "repeat_window_days": scaled.max_repeat_same_recipe_within_days,
        "targets": {
            "unique_veg_min": scaled.unique_veg_min,
            "unique_fruit_min": scaled.unique_fruit_min,
            "protein_rotation_min_categories": scaled.protein_rotation_min_categories,
            "max_repeat_same_recipe_within_days": scaled.max_repeat_same_recipe_within_days,
        },
        "meets_targets": meets,
        "top_repeats": top_repeats,
        "shortfall": False,
    }


def targets_met(scorecard: Dict[str, Any]) -> bool:
    return all(scorecard.get("meets_targets", {}).values())


def variety_hints(scorecard: Dict[str, Any]) -> Dict[str, Any]:
    """The part of a scorecard worth telling the planner on a retry."""
    return {
        "missed": sorted(k for k, ok in scorecard.get("meets_targets", {}).items() if not ok),
        "targets": scorecard.get("targets", {}),
        "repeated_meals": [r["name"] for r in scorecard.get("top_repeats", [])],
    }


# =============================================================================
# BOUNDED RETRY STATE MACHINE
# =============================================================================

class OutcomeKind(Enum):
    """Result classes of one generation attempt."""
    SUCCESS = "success"
    VARIETY_UNMET = "variety_unmet"
    TRANSIENT_ERROR = "transient_error"
    STRUCTURAL_ERROR = "structural_error"


@dataclass
class AttemptOutcome:
    kind: OutcomeKind
    plan: Optional[MealPlan] = None
    error: Optional[MealPlanError] = None


@dataclass
class Attempt:
    number: int = 1
    retry_reason: Optional[str] = None

    @property
    def is_retry(self) -> bool:
        return self.number > 1


@dataclass
class Success:
    plan: MealPlan
    shortfall: bool = False


@dataclass
class Fail:
    error: MealPlanError


State = Union[Attempt, Success, Fail]


def classify_error(error: MealPlanError) -> OutcomeKind:
    return OutcomeKind.TRANSIENT_ERROR if error.is_transient else OutcomeKind.STRUCTURAL_ERROR


def should_retry(outcome: OutcomeKind, attempt: int) -> bool:
    """Only variety and transient outcomes are retried, and only once."""
    if outcome not in (OutcomeKind.VARIETY_UNMET, OutcomeKind.TRANSIENT_ERROR):
        return False
    return attempt < MAX_ATTEMPTS


def next_state(state: Attempt, outcome: AttemptOutcome) -> State:
    if outcome.kind == OutcomeKind.SUCCESS:
        return Success(plan=outcome.plan, shortfall=False)
    if should_retry(outcome.kind, state.number):
        return replace(state, number=state.number + 1, retry_reason=outcome.kind.value)
    if outcome.kind == OutcomeKind.VARIETY_UNMET:
        logger.warning(f"⚠️  Variety targets still unmet after {state.number} attempt(s), accepting plan")
        return Success(plan=outcome.plan, shortfall=True)
    return Fail(error=outcome.error)
