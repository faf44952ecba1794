"""
DB-First Fill Engine
====================

Fills a placeholder skeleton cell by cell (days chronological, slots in
request order) from the per-slot candidate lists. Every cell ends up either
filled (tier 'db' or 'history') or deferred with a reason for the
generative fallback.

Per cell:
1. pool = slot candidates (retry attempts explore via weighted reordering)
2. drop candidates used in this slot fewer than repeat_window_days away,
   and candidates already on the same day
3. drop candidates without ingredient refs
4. substitute into a copy of the whole plan and validate; first clean wins
"""

import copy
import random
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from diet_rules import ConstraintValidator
from plan_types import DietRuleSet, Meal, MealPlan, MealPlanDay, PlanRequest
from tools.logging_utils import get_logger

logger = get_logger(__name__)

TIER_DB = "db"
TIER_HISTORY = "history"
TIER_AI = "ai"

REASON_NO_CANDIDATES = "no_candidates"
REASON_REPEAT_WINDOW = "repeat_window_blocked"
REASON_MISSING_REFS = "missing_ingredient_refs"
REASON_ALL_BLOCKED = "all_candidates_blocked_by_constraints"
REASON_AI_BLOCKED = "ai_candidate_blocked_by_constraints"
REASON_DB_FIRST_DISABLED = "db_first_disabled"


@dataclass
class SlotProvenance:
    source: str
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"source": self.source, "reason": self.reason}


@dataclass
class FillResult:
    plan: MealPlan
    slot_provenance: Dict[str, SlotProvenance] = field(default_factory=dict)
    deferred: List[Tuple[str, str]] = field(default_factory=list)
    fallback_reasons: Counter = field(default_factory=Counter)

    def defer(self, day: str, slot: str, reason: str) -> None:
        self.deferred.append((day, slot))
        self.fallback_reasons[reason] += 1
        self.slot_provenance[cell_key(day, slot)] = SlotProvenance(TIER_AI, reason)


def cell_key(day: str, slot: str) -> str:
    return f"{day}-{slot}"


def tier_for(meal: Meal) -> str:
    if meal.recipe_source == "custom_meals":
        return TIER_DB
    if meal.recipe_source == "meal_history":
        return TIER_HISTORY
    return TIER_AI


def build_skeleton(request: PlanRequest, request_id: str) -> MealPlan:
    """A plan with one placeholder per required (date, slot)."""
    days = [
        MealPlanDay(date=day, meals=[Meal.placeholder(day, slot) for slot in request.slots])
        for day in request.dates()
    ]
    return MealPlan(request_id=request_id, days=days)


def instantiate(candidate: Meal, day: str, slot: str) -> Meal:
    """Bind a candidate to a cell with a cell-unique id."""
    meal = copy.deepcopy(candidate)
    meal.base_id = candidate.identity
    meal.id = f"{candidate.identity}-{day}-{slot}"
    meal.date = day
    meal.slot = slot
    return meal


def _weighted_sample_without_replacement(items: List[Meal], weights: List[float],
                                         rng: random.Random) -> List[Meal]:
    """Efraimidis-Spirakis: key = u^(1/w), highest keys first."""
    keyed = []
    for item, weight in zip(items, weights):
        weight = max(weight, 1e-9)
        keyed.append((rng.random() ** (1.0 / weight), item))
    keyed.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in keyed]


def order_pool(pool: Sequence[Meal], attempt: int, rng: random.Random) -> List[Meal]:
    """Attempt 1 keeps rank order; later attempts reorder with rank-decaying weights."""
    pool = list(pool)
    if attempt <= 1 or len(pool) < 2:
        return pool
    weights = [1.0 / (1 + rank) for rank in range(len(pool))]
    return _weighted_sample_without_replacement(pool, weights, rng)


def _ordinal(day: str) -> int:
    return date.fromisoformat(day).toordinal()


class DbFirstFiller:
    """Greedy, validator-gated cell filling."""

    def __init__(self, validator: ConstraintValidator, repeat_window_days: int,
                 rng: Optional[random.Random] = None):
        self.validator = validator
        self.repeat_window_days = repeat_window_days
        self.rng = rng or random.Random()

    async def fill(self, plan: MealPlan, request: PlanRequest, rules: DietRuleSet,
                   candidates_by_slot: Dict[str, List[Meal]], attempt: int = 1,
                   empty_pool_reason: str = REASON_NO_CANDIDATES) -> FillResult:
        """
        Args:
            plan: skeleton, possibly with some cells already filled
            candidates_by_slot: output of CandidateSource.load_prefilled_by_slot
            attempt: 1 for the first pass, 2 on the variety/transient retry
            empty_pool_reason: reason recorded when a slot has no candidates

        Returns:
            FillResult with the filled plan (deferred cells stay placeholders)
        """
        result = FillResult(plan=plan.clone())
        working = result.plan

        # (slot, identity) -> ordinals of days where it is placed
        placements: Dict[Tuple[str, str], List[int]] = {}

        def remember(meal: Meal) -> None:
            placements.setdefault((meal.slot, meal.identity), []).append(_ordinal(meal.date))

        for meal in working.iter_meals():
            if not meal.is_placeholder():
                remember(meal)
                result.slot_provenance[cell_key(meal.date, meal.slot)] = SlotProvenance(tier_for(meal))

        for plan_day in working.days:
            day_ordinal = _ordinal(plan_day.date)
            for slot in request.slots:
                existing = plan_day.meal_for(slot)
                if existing is not None and not existing.is_placeholder():
                    continue
                if existing is None:
                    plan_day.set_meal(slot, Meal.placeholder(plan_day.date, slot))

                pool = order_pool(candidates_by_slot.get(slot, []), attempt, self.rng)
                if not pool:
                    result.defer(plan_day.date, slot, empty_pool_reason)
                    continue

                same_day = {m.identity for m in plan_day.meals if not m.is_placeholder()}
                windowed = [
                    c for c in pool
                    if c.identity not in same_day and not self._in_repeat_window(placements, slot, c, day_ordinal)
                ]
                if not windowed:
                    result.defer(plan_day.date, slot, REASON_REPEAT_WINDOW)
                    continue

                complete = [c for c in windowed if c.has_ingredients()]
                if not complete:
                    result.defer(plan_day.date, slot, REASON_MISSING_REFS)
                    continue

                accepted = await self._first_valid(working, plan_day.date, slot, complete, rules, request)
                if accepted is None:
                    result.defer(plan_day.date, slot, REASON_ALL_BLOCKED)
                    continue

                plan_day.set_meal(slot, accepted)
                remember(accepted)
                result.slot_provenance[cell_key(plan_day.date, slot)] = SlotProvenance(tier_for(accepted))

        filled = request.total_slots - len(result.deferred)
        logger.info(
            f"📊 DB-first fill (attempt {attempt}): {filled}/{request.total_slots} filled, "
            f"{len(result.deferred)} deferred {dict(result.fallback_reasons)}"
        )
        return result

    def _in_repeat_window(self, placements: Dict[Tuple[str, str], List[int]], slot: str,
                          candidate: Meal, day_ordinal: int) -> bool:
        for used in placements.get((slot, candidate.identity), []):
            if used != day_ordinal and abs(day_ordinal - used) < self.repeat_window_days:
                return True
        return False

    async def _first_valid(self, plan: MealPlan, day: str, slot: str, candidates: List[Meal],
                           rules: DietRuleSet, request: PlanRequest) -> Optional[Meal]:
        for candidate in candidates:
            placed = instantiate(candidate, day, slot)
            scratch = plan.clone()
            scratch.day(day).set_meal(slot, placed)
            issues = await self.validator.validate(scratch, rules, request)
            if not issues:
                return placed
            logger.debug(f"🔍 {candidate.name} blocked for {day}/{slot}: {[i.code for i in issues]}")
        return None
