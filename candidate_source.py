"""
Candidate Source
================

Builds the per-slot candidate lists the DB-first fill engine draws from.

Two tiers per slot:
1. custom_meals (the user's own recipe store), by consumption count then recency
2. meal_history, by combined score, rating, recency

Each slot list takes history candidates first, then custom meals, up to the
per-slot cap. Favorites (first 10 ids of user_preferences.favorite_meal_ids)
are moved to the front of each tier in favorite order. Household hard-avoid rules and the
profile's allergies/dislikes are filtered out here; the constraint validator
still checks every placement.
"""

import asyncio
import json
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from config import GeneratorSettings
from meal_history import MealHistoryStore
from plan_db import PlanDatabase
from plan_types import IngredientRef, Meal, PlanRequest
from tools.logging_utils import get_logger

logger = get_logger(__name__)

FAVORITES_LIMIT = 10
DB_TIER = "custom_meals"
HISTORY_TIER = "meal_history"
DEFAULT_INGREDIENT_GRAMS = 100


@dataclass
class AvoidRule:
    match_mode: str  # 'food_code' | 'term'
    match_value: str


@dataclass
class UserLookups:
    favorite_ids: List[str]
    avoid_rules: List[AvoidRule]


def per_slot_limit(total_slots: int, slot_count: int, target_reuse_ratio: float) -> int:
    """How many complete candidates each slot list is capped at."""
    return max(1, math.ceil(total_slots * target_reuse_ratio / max(1, slot_count)))


def fetch_limit(need: int, prefill_fetch_limit_max: int) -> int:
    return max(need, min(need * 2, prefill_fetch_limit_max))


def grams_from_recipe_row(quantity: Optional[float], unit: Optional[str]) -> int:
    """recipe_ingredients quantity in grams: 'g' is taken as-is, anything else is 100 g."""
    if quantity is None or quantity <= 0:
        grams = DEFAULT_INGREDIENT_GRAMS
    elif (unit or "").strip().lower() == "g":
        grams = quantity
    else:
        grams = DEFAULT_INGREDIENT_GRAMS
    return max(1, int(round(grams)))


def sort_favorites_first(meals: List[Meal], favorite_ids: Sequence[str]) -> List[Meal]:
    """Stable: favorites in favorite order, everything else keeps its rank."""
    order = {fid: i for i, fid in enumerate(favorite_ids)}
    return sorted(meals, key=lambda m: order.get(m.identity, len(order)))


def is_meal_blocked(meal: Meal, block_terms: Sequence[str], avoid_rules: Sequence[AvoidRule]) -> bool:
    """Case-insensitive substring match on name and ingredient names, plus food-code rules."""
    haystacks = [(meal.name or "").lower()]
    haystacks.extend((ref.display_name or "").lower() for ref in meal.ingredient_refs)
    codes = {ref.food_code for ref in meal.ingredient_refs}

    for term in block_terms:
        needle = (term or "").strip().lower()
        if needle and any(needle in h for h in haystacks):
            return True
    for rule in avoid_rules:
        value = (rule.match_value or "").strip()
        if not value:
            continue
        if rule.match_mode == "food_code" and value in codes:
            return True
        if rule.match_mode == "term" and any(value.lower() in h for h in haystacks):
            return True
    return False


class CandidateSource:
    """Loads ranked, pre-filtered candidates per slot."""

    def __init__(self, db: PlanDatabase, history_store: MealHistoryStore, settings: GeneratorSettings):
        self.db = db
        self.history_store = history_store
        self.settings = settings

    async def load_prefilled_by_slot(self, user_id: str, request: PlanRequest,
                                     diet_key: str) -> Dict[str, List[Meal]]:
        """
        Returns:
            {slot: [Meal, ...]} with complete candidates first (history, then
            custom meals, capped) and candidates lacking ingredient refs at the tail
        """
        slots = list(request.slots)
        need = per_slot_limit(request.total_slots, len(slots), self.settings.target_reuse_ratio)
        limit = fetch_limit(need, self.settings.prefill_fetch_limit_max)

        lookups, db_lists, history_lists = await asyncio.gather(
            asyncio.to_thread(self._load_user_lookups, user_id),
            asyncio.gather(*[asyncio.to_thread(self._load_custom_meals, user_id, s, limit) for s in slots]),
            asyncio.gather(*[
                asyncio.to_thread(self.history_store.find_candidates, user_id, s, diet_key, limit=limit)
                for s in slots
            ]),
        )

        incomplete_ids = [m.identity for meals in list(db_lists) + list(history_lists)
                          for m in meals if not m.has_ingredients()]
        if incomplete_ids:
            refs_by_recipe = await asyncio.to_thread(self._load_recipe_ingredients, incomplete_ids)
            for meals in list(db_lists) + list(history_lists):
                for meal in meals:
                    if not meal.has_ingredients() and refs_by_recipe.get(meal.identity):
                        meal.ingredient_refs = refs_by_recipe[meal.identity]

        block_terms = list(request.profile.allergies) + list(request.profile.dislikes)
        result: Dict[str, List[Meal]] = {}
        for slot, db_meals, history_meals in zip(slots, db_lists, history_lists):
            # History leads; custom meals fill what it leaves under the cap
            merged = (sort_favorites_first(history_meals, lookups.favorite_ids)
                      + sort_favorites_first(db_meals, lookups.favorite_ids))
            seen = set()
            complete: List[Meal] = []
            incomplete: List[Meal] = []
            for meal in merged:
                if meal.identity in seen:
                    continue
                seen.add(meal.identity)
                if is_meal_blocked(meal, block_terms, lookups.avoid_rules):
                    continue
                (complete if meal.has_ingredients() else incomplete).append(meal)
            result[slot] = complete[:need] + incomplete

        logger.debug(
            f"🔍 Candidates for {user_id}: "
            + ", ".join(f"{s}={len(result[s])}" for s in slots)
            + f" (per-slot cap {need})"
        )
        return result

    # =========================================================================
    # Queries (run in worker threads)
    # =========================================================================

    def _load_user_lookups(self, user_id: str) -> UserLookups:
        with self.db.connect() as conn:
            prefs = conn.execute(
                'SELECT favorite_meal_ids, household_id FROM user_preferences WHERE user_id = ?',
                (user_id,)
            ).fetchone()
            favorite_ids: List[str] = []
            avoid_rules: List[AvoidRule] = []
            if prefs is not None:
                raw = json.loads(prefs["favorite_meal_ids"] or "[]")
                favorite_ids = [str(f) for f in raw if f][:FAVORITES_LIMIT]
                if prefs["household_id"]:
                    rows = conn.execute(
                        '''SELECT match_mode, match_value FROM household_avoid_rules
                           WHERE household_id = ? AND strictness = 'hard'
                           AND match_mode IN ('food_code', 'term')''',
                        (prefs["household_id"],)
                    ).fetchall()
                    avoid_rules = [AvoidRule(r["match_mode"], r["match_value"]) for r in rows]
        return UserLookups(favorite_ids=favorite_ids, avoid_rules=avoid_rules)

    def _load_custom_meals(self, user_id: str, slot: str, limit: int) -> List[Meal]:
        with self.db.connect() as conn:
            rows = conn.execute(
                '''SELECT id, name, meal_slot, meal_data FROM custom_meals
                   WHERE user_id = ? AND meal_slot = ?
                   ORDER BY consumption_count DESC, updated_at DESC LIMIT ?''',
                (user_id, slot, limit)
            ).fetchall()

        meals = []
        for row in rows:
            data = json.loads(row["meal_data"] or "{}")
            refs = [IngredientRef.from_dict(r) for r in data.get("ingredient_refs") or []]
            meals.append(Meal(
                id=row["id"],
                name=row["name"],
                slot=row["meal_slot"],
                date="",
                ingredient_refs=refs,
                servings=data.get("servings"),
                recipe_source=DB_TIER,
                base_id=row["id"],
            ))
        return meals

    def _load_recipe_ingredients(self, recipe_ids: List[str]) -> Dict[str, List[IngredientRef]]:
        placeholders = ",".join("?" * len(recipe_ids))
        with self.db.connect() as conn:
            rows = conn.execute(
                f'''SELECT recipe_id, food_code, name, quantity, unit FROM recipe_ingredients
                    WHERE recipe_id IN ({placeholders}) AND food_code IS NOT NULL AND food_code != ''
                    ORDER BY id''',
                recipe_ids
            ).fetchall()

        refs: Dict[str, List[IngredientRef]] = {}
        for row in rows:
            refs.setdefault(row["recipe_id"], []).append(IngredientRef(
                food_code=row["food_code"],
                quantity_g=grams_from_recipe_row(row["quantity"], row["unit"]),
                display_name=row["name"],
            ))
        return refs
