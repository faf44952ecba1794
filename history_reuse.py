"""
History Reuse Decision
======================

Before any DB-first filling, try to assemble the plan purely from the
user's well-rated, recently unused history meals. The attempt is accepted
when enough cells are filled and the result validates cleanly.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional

from config import HistoryReuseSettings
from diet_rules import ConstraintValidator, matches_slot_preferences, meal_preference_terms
from meal_history import MealHistoryStore
from plan_types import DietRuleSet, MealPlan, PlanRequest
from tools.logging_utils import get_logger

logger = get_logger(__name__)


@dataclass
class ReuseResult:
    can_reuse: bool
    plan: Optional[MealPlan] = None
    reused_count: int = 0
    required_count: int = 0
    used_meal_ids: List[str] = field(default_factory=list)
    reason: str = ""


def slot_preference_terms(request: PlanRequest, slot: str) -> List[str]:
    """Profile meal preferences for the slot plus the slot style, ignoring 'any'."""
    terms = meal_preference_terms(request.profile, slot)
    style = (request.slot_preferences.get(slot) or "").strip()
    if style and style.lower() != "any":
        terms.append(style)
    return terms


def required_reuse_count(total_slots: int, min_ratio: float) -> int:
    return max(1, math.ceil(total_slots * min_ratio))


async def try_reuse_from_history(user_id: str, request: PlanRequest, diet_key: str,
                                 skeleton: MealPlan, history_store: MealHistoryStore,
                                 validator: ConstraintValidator, rules: DietRuleSet,
                                 settings: HistoryReuseSettings) -> ReuseResult:
    """
    Fill ``skeleton`` (a copy is used) from history, day by day and slot by slot.

    Reused meals are re-identified as ``{history_id}-{date}``. Usage counts
    are not touched here; the caller records usage once the plan is persisted.
    """
    total = request.total_slots
    required = required_reuse_count(total, settings.min_ratio)
    plan = skeleton.clone()
    used_ids: List[str] = []

    for plan_day in plan.days:
        for slot in request.slots:
            candidates = history_store.find_candidates(
                user_id,
                slot,
                diet_key=diet_key,
                min_rating=settings.min_rating,
                min_combined_score=settings.min_combined_score,
                exclude_meal_ids=used_ids,
                limit=settings.candidate_limit,
                max_usage_count=settings.max_usage_count,
                days_since_last_use=settings.recency_window_days,
            )
            terms = slot_preference_terms(request, slot)
            chosen = next((c for c in candidates if c.has_ingredients() and matches_slot_preferences(c, terms)), None)
            if chosen is None:
                continue

            chosen.id = f"{chosen.identity}-{plan_day.date}"
            chosen.date = plan_day.date
            chosen.slot = slot
            plan_day.set_meal(slot, chosen)
            used_ids.append(chosen.identity)

    reused = len(used_ids)
    if reused < required:
        logger.info(f"🔍 History reuse declined for {user_id}: {reused}/{total} cells (need {required})")
        return ReuseResult(False, reused_count=reused, required_count=required, reason="not_enough_history")

    issues = await validator.validate(plan, rules, request)
    if issues:
        logger.info(f"🔍 History reuse declined for {user_id}: {len(issues)} constraint issue(s)")
        return ReuseResult(False, reused_count=reused, required_count=required, reason="constraint_issues")

    logger.info(f"♻️  Reusing {reused}/{total} meals from history for {user_id}")
    return ReuseResult(True, plan=plan, reused_count=reused, required_count=required,
                       used_meal_ids=used_ids, reason="accepted")
