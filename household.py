"""
Household Scaler
================

Scales a finished plan to the household's size before it is persisted.

Only ``scale_to_household`` with a household of 2 or more changes anything.
The pre-scaling servings and gram quantities are kept on the meal
(``base_servings``) and on each ingredient (``base_quantity_g``), so scaling
again to the same size yields the same plan.
"""

from typing import Optional, Tuple

from plan_db import PlanDatabase
from plan_types import MealPlan
from tools.logging_utils import get_logger

logger = get_logger(__name__)

SCALE_TO_HOUSEHOLD = "scale_to_household"
KEEP_RECIPE_SERVINGS = "keep_recipe_servings"
MIN_HOUSEHOLD_SIZE = 1
MAX_HOUSEHOLD_SIZE = 12


def scale_plan_to_household(plan: MealPlan, household_size: Optional[int],
                            policy: str = SCALE_TO_HOUSEHOLD) -> MealPlan:
    """
    Return a scaled copy of ``plan``; the input is never modified.

    Per meal: factor = household_size / base_servings (base defaults to 1),
    quantity_g = max(1, round(base_quantity_g * factor)).
    """
    scaled = plan.clone()
    scaled.metadata["servings"] = {"household_size": household_size, "policy": policy}
    if policy != SCALE_TO_HOUSEHOLD or household_size is None or household_size < 2:
        return scaled

    for meal in scaled.iter_meals():
        if meal.is_placeholder():
            continue
        base_servings = meal.base_servings or meal.servings or 1
        factor = household_size / base_servings
        meal.base_servings = base_servings
        meal.servings = household_size
        for ref in meal.ingredient_refs:
            base_quantity = ref.base_quantity_g if ref.base_quantity_g is not None else ref.quantity_g
            ref.base_quantity_g = base_quantity
            ref.quantity_g = max(1, round(base_quantity * factor))

    logger.debug(f"🔧 Scaled plan {plan.request_id} to {household_size} servings")
    return scaled


def _valid_size(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if MIN_HOUSEHOLD_SIZE <= value <= MAX_HOUSEHOLD_SIZE:
        return value
    return None


def resolve_household(db: PlanDatabase, user_id: str) -> Tuple[Optional[int], str]:
    """
    Household size and servings policy for a user.

    Returns:
        (size or None, policy); no household means (None, 'scale_to_household')
    """
    with db.connect() as conn:
        prefs = conn.execute(
            'SELECT household_id FROM user_preferences WHERE user_id = ?', (user_id,)
        ).fetchone()
        household_id = (prefs["household_id"] or "").strip() if prefs else ""
        if not household_id:
            return None, SCALE_TO_HOUSEHOLD
        row = conn.execute(
            'SELECT household_size, servings_policy FROM households WHERE id = ?', (household_id,)
        ).fetchone()

    if row is None:
        return None, SCALE_TO_HOUSEHOLD
    return _valid_size(row["household_size"]), row["servings_policy"] or SCALE_TO_HOUSEHOLD


def unscale_plan(plan: MealPlan) -> MealPlan:
    """Copy of ``plan`` with recipe servings and base quantities restored."""
    restored = plan.clone()
    for meal in restored.iter_meals():
        if meal.base_servings is not None:
            meal.servings = meal.base_servings
            meal.base_servings = None
        for ref in meal.ingredient_refs:
            if ref.base_quantity_g is not None:
                ref.quantity_g = ref.base_quantity_g
                ref.base_quantity_g = None
    restored.metadata.pop("servings", None)
    return restored
