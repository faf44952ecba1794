"""
Meal History Store
==================

Second-tier candidate store: every meal that ended up in a persisted plan is
remembered per user, scored, and offered again when it is well rated and
has not been used recently.

Scores (0-100):
- nutrition: macro balance of the ingredients (50 when unknown)
- variety: 100 - min(usage*5, 50) + min(days_since_last_use*2, 30); never used = +30
- combined: rating 40% + nutrition 35% + variety 25% (rating 1-5 mapped to 0-100, default 50)
"""

import json
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from plan_db import PlanDatabase, format_ts, parse_ts, utc_now
from plan_errors import MealPlanError, ErrorCode
from plan_types import Meal, MealPlan
from tools.logging_utils import get_logger

logger = get_logger(__name__)

SCORING_WEIGHTS = {
    "user_rating": 0.4,
    "nutrition_score": 0.35,
    "variety_score": 0.25,
}

DEFAULT_NUTRITION_SCORE = 50.0


# =============================================================================
# SCORING (pure)
# =============================================================================

def calculate_variety_score(usage_count: int, last_used_at: Optional[datetime],
                            now: Optional[datetime] = None) -> float:
    score = 100.0 - min(usage_count * 5, 50)
    if last_used_at is None:
        score += 30
    else:
        now = now or utc_now()
        days_since = (now - last_used_at).total_seconds() / 86400
        score += min(days_since * 2, 30)
    return max(0.0, min(100.0, score))


def calculate_combined_score(user_rating: Optional[int], nutrition_score: Optional[float],
                             variety_score: float) -> float:
    normalized_rating = ((user_rating - 1) / 4) * 100 if user_rating else 50.0
    nutrition = nutrition_score if nutrition_score is not None else DEFAULT_NUTRITION_SCORE
    combined = (
        normalized_rating * SCORING_WEIGHTS["user_rating"]
        + nutrition * SCORING_WEIGHTS["nutrition_score"]
        + variety_score * SCORING_WEIGHTS["variety_score"]
    )
    return round(combined, 2)


def _band(pct: float, bands: List[tuple], default: int) -> int:
    for low, high, points in bands:
        if low <= pct <= high:
            return points
    return default


def calculate_nutrition_score(kcal: float, protein_g: float, carbs_g: float, fat_g: float) -> float:
    """Macro-balance score: protein 20-30%, fat 25-35%, carbs 35-50% of kcal score best."""
    if kcal <= 0:
        return DEFAULT_NUTRITION_SCORE
    protein_pct = protein_g * 4 / kcal * 100
    fat_pct = fat_g * 9 / kcal * 100
    carbs_pct = carbs_g * 4 / kcal * 100

    score = 50
    score += _band(protein_pct, [(20, 30, 20), (15, 20, 15), (30, 35, 15), (10, 15, 10), (35, 40, 10)], 5)
    score += _band(fat_pct, [(25, 35, 15), (20, 25, 10), (35, 40, 10)], 5)
    score += _band(carbs_pct, [(35, 50, 15), (30, 35, 10), (50, 55, 10)], 5)
    return float(max(0, min(100, score)))


# =============================================================================
# STORE
# =============================================================================

class MealHistoryStore:
    """SQLite implementation of the history store."""

    def __init__(self, db: PlanDatabase, now_fn: Callable[[], datetime] = utc_now):
        self.db = db
        self.now_fn = now_fn

    def find_candidates(self, user_id: str, slot: str, diet_key: Optional[str] = None,
                        min_rating: Optional[int] = None, min_combined_score: Optional[float] = None,
                        exclude_meal_ids: Iterable[str] = (), limit: int = 20,
                        max_usage_count: Optional[int] = None,
                        days_since_last_use: Optional[int] = None) -> List[Meal]:
        """
        Ranked history meals for one slot.

        Ordered by combined score, then rating, then most recent use.
        Returned meals carry ``base_id`` = history meal id and
        ``recipe_source`` = 'meal_history'.
        """
        sql = 'SELECT * FROM meal_history WHERE user_id = ? AND meal_slot = ?'
        params: list = [user_id, slot]

        if diet_key is not None:
            sql += ' AND diet_key = ?'
            params.append(diet_key)
        if min_rating is not None:
            sql += ' AND user_rating >= ?'
            params.append(min_rating)
        if min_combined_score is not None:
            sql += ' AND combined_score >= ?'
            params.append(min_combined_score)
        excluded = list(exclude_meal_ids)
        if excluded:
            sql += f' AND meal_id NOT IN ({",".join("?" * len(excluded))})'
            params.extend(excluded)
        if max_usage_count is not None:
            sql += ' AND usage_count <= ?'
            params.append(max_usage_count)
        if days_since_last_use is not None:
            cutoff = self.now_fn() - timedelta(days=days_since_last_use)
            sql += ' AND (last_used_at IS NULL OR last_used_at < ?)'
            params.append(format_ts(cutoff))

        sql += (' ORDER BY combined_score IS NULL, combined_score DESC,'
                ' user_rating IS NULL, user_rating DESC, last_used_at DESC LIMIT ?')
        params.append(limit)

        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_meal(row) for row in rows]

    @staticmethod
    def _row_to_meal(row) -> Meal:
        data = json.loads(row["meal_data"] or "{}")
        data.setdefault("id", row["meal_id"])
        data.setdefault("date", "")
        data["name"] = data.get("name") or row["meal_name"]
        data["slot"] = row["meal_slot"]
        meal = Meal.from_dict(data)
        meal.base_id = row["meal_id"]
        meal.recipe_source = "meal_history"
        return meal

    def record_usage(self, user_id: str, meal_id: str) -> None:
        """Increment usage and refresh variety/combined scores."""
        now = self.now_fn()
        with self.db.connect() as conn:
            row = conn.execute(
                'SELECT usage_count, user_rating, nutrition_score FROM meal_history WHERE user_id = ? AND meal_id = ?',
                (user_id, meal_id)
            ).fetchone()
            if row is None:
                logger.debug(f"🔍 No history row for {meal_id}, usage not recorded")
                return
            usage = (row["usage_count"] or 0) + 1
            variety = calculate_variety_score(usage, now, now)
            combined = calculate_combined_score(row["user_rating"], row["nutrition_score"], variety)
            conn.execute(
                '''UPDATE meal_history SET usage_count = ?, last_used_at = ?, variety_score = ?,
                   combined_score = ?, updated_at = ? WHERE user_id = ? AND meal_id = ?''',
                (usage, format_ts(now), variety, combined, format_ts(now), user_id, meal_id)
            )

    def extract_and_store(self, user_id: str, plan: MealPlan, diet_key: str) -> int:
        """
        Remember every meal of a persisted plan. Existing rows are left untouched.

        Returns:
            Number of new history rows
        """
        meals = [m for m in plan.iter_meals() if not m.is_placeholder()]
        if not meals:
            return 0

        now = format_ts(self.now_fn())
        inserted = 0
        with self.db.connect() as conn:
            for meal in meals:
                meal_id = meal.identity
                exists = conn.execute(
                    'SELECT 1 FROM meal_history WHERE user_id = ? AND meal_id = ?',
                    (user_id, meal_id)
                ).fetchone()
                if exists:
                    continue
                nutrition = self._nutrition_score(conn, meal)
                variety = calculate_variety_score(0, None)
                conn.execute(
                    '''INSERT INTO meal_history (id, user_id, meal_id, meal_name, meal_slot, diet_key, meal_data,
                       usage_count, first_used_at, last_used_at, nutrition_score, variety_score, combined_score,
                       created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, NULL, ?, ?, ?, ?, ?)''',
                    (str(uuid.uuid4()), user_id, meal_id, meal.name, meal.slot, diet_key,
                     json.dumps(_meal_payload(meal)), now, nutrition, variety,
                     calculate_combined_score(None, nutrition, variety), now, now)
                )
                inserted += 1
        logger.info(f"💾 Stored {inserted} new meal(s) in history for user {user_id}")
        return inserted

    def rate_meal(self, user_id: str, meal_id: str, rating: int) -> float:
        """
        Set a 1-5 rating and return the new combined score.

        Raises:
            MealPlanError(VALIDATION_ERROR): rating outside 1-5
            MealPlanError(NOT_FOUND): meal not in history
        """
        if not isinstance(rating, int) or rating < 1 or rating > 5:
            raise MealPlanError(ErrorCode.VALIDATION_ERROR, "Rating must be between 1 and 5", {"rating": rating})

        now = self.now_fn()
        with self.db.connect() as conn:
            row = conn.execute(
                'SELECT usage_count, last_used_at, nutrition_score FROM meal_history WHERE user_id = ? AND meal_id = ?',
                (user_id, meal_id)
            ).fetchone()
            if row is None:
                raise MealPlanError(ErrorCode.NOT_FOUND, "Meal not found in history", {"meal_id": meal_id})
            variety = calculate_variety_score(row["usage_count"] or 0, parse_ts(row["last_used_at"]), now)
            combined = calculate_combined_score(rating, row["nutrition_score"], variety)
            conn.execute(
                '''UPDATE meal_history SET user_rating = ?, variety_score = ?, combined_score = ?, updated_at = ?
                   WHERE user_id = ? AND meal_id = ?''',
                (rating, variety, combined, format_ts(now), user_id, meal_id)
            )
        return combined

    @staticmethod
    def _nutrition_score(conn, meal: Meal) -> float:
        if not meal.ingredient_refs:
            return DEFAULT_NUTRITION_SCORE
        codes = [ref.food_code for ref in meal.ingredient_refs]
        rows = conn.execute(
            f'''SELECT food_code, kcal_per_100g, protein_g_per_100g, carbs_g_per_100g, fat_g_per_100g
                FROM food_nutrients WHERE food_code IN ({",".join("?" * len(codes))})''',
            codes
        ).fetchall()
        table = {r["food_code"]: r for r in rows}
        kcal = protein = carbs = fat = 0.0
        for ref in meal.ingredient_refs:
            row = table.get(ref.food_code)
            if row is None:
                continue
            factor = ref.quantity_g / 100.0
            kcal += (row["kcal_per_100g"] or 0) * factor
            protein += (row["protein_g_per_100g"] or 0) * factor
            carbs += (row["carbs_g_per_100g"] or 0) * factor
            fat += (row["fat_g_per_100g"] or 0) * factor
        return calculate_nutrition_score(kcal, protein, carbs, fat)


def _meal_payload(meal: Meal) -> dict:
    """Meal as stored in history: unscaled, without a date binding."""
    data = asdict(meal)
    data["id"] = meal.identity
    data["date"] = ""
    data["servings"] = meal.base_servings or meal.servings
    data["base_servings"] = None
    for ref in data["ingredient_refs"]:
        if ref.get("base_quantity_g"):
            ref["quantity_g"] = ref["base_quantity_g"]
        ref["base_quantity_g"] = None
    return data
