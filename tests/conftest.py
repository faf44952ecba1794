"""
Pytest Configuration and Fixtures
=================================

Provides shared fixtures for the test suite:
- Temporary SQLite database (one per test)
- Planner configuration pointing at that database
- Seeding helpers for profiles, custom meals, households and history
- A deterministic fake generative planner and a controllable clock

No test talks to OpenRouter; LLM-backed services are exercised with mocks.
"""

import asyncio
import json
from datetime import date, datetime, timedelta
from typing import List, Optional

import pytest

from config import GeneratorSettings, HistoryReuseSettings, PlannerConfig, VarietyTargets
from plan_db import PlanDatabase, format_ts
from plan_types import IngredientRef, Meal, MealPlan, MealPlanDay, PlanRequest, Profile


SLOTS = ["breakfast", "lunch", "dinner"]
START_DATE = "2026-01-05"


def run_async(coro):
    """Drive a coroutine to completion from a sync test."""
    return asyncio.run(coro)


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Callable clock; tests move it forward explicitly."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# =============================================================================
# Fake planner
# =============================================================================

def ai_refs() -> List[IngredientRef]:
    return [
        IngredientRef("veg-carrot", 100, "carrot"),
        IngredientRef("fruit-apple", 80, "apple"),
        IngredientRef("prot-egg", 60, "egg"),
    ]


class FakePlanner:
    """
    GenerativePlanner double.

    Fills every requested cell with a uniquely named meal. Exceptions in
    ``failures`` are raised by successive calls, one per call.
    """

    model = "fake-model"

    def __init__(self, failures: Optional[list] = None, refs=None):
        self.failures = list(failures or [])
        self.refs = refs
        self.calls = []

    async def generate(self, request, locale, options):
        self.calls.append(options)
        if self.failures:
            raise self.failures.pop(0)

        wanted = set(options.only_slots or [(d, s) for d in request.dates() for s in request.slots])
        days = []
        for day in request.dates():
            meals = []
            for slot in request.slots:
                if (day, slot) not in wanted:
                    meals.append(Meal.placeholder(day, slot))
                    continue
                base_id = f"ai-{slot}-{day}"
                meals.append(Meal(
                    id=f"{base_id}-{day}-{slot}",
                    name=f"AI {slot} {day}",
                    slot=slot,
                    date=day,
                    ingredient_refs=list(self.refs) if self.refs is not None else ai_refs(),
                    servings=1,
                    recipe_source="ai",
                    base_id=base_id,
                ))
            days.append(MealPlanDay(date=day, meals=meals))
        return MealPlan(request_id="", days=days)


# =============================================================================
# Seeding helpers
# =============================================================================

def seed_nutrients(db: PlanDatabase, codes, kcal: float = 100.0, protein: float = 5.0) -> None:
    """Known food codes with flat per-100g values; existing rows are kept."""
    with db.connect() as conn:
        conn.executemany(
            'INSERT OR IGNORE INTO food_nutrients (food_code, kcal_per_100g, protein_g_per_100g) VALUES (?, ?, ?)',
            [(code, kcal, protein) for code in codes]
        )


def seed_ai_nutrients(db: PlanDatabase) -> None:
    seed_nutrients(db, [ref.food_code for ref in ai_refs()])


def seed_profile(db: PlanDatabase, user_id: str, diet_key: str = "balanced", allergies=None,
                 dislikes=None, strictness: str = "flexible", language: str = "en",
                 calorie_target: Optional[int] = None, meal_preferences=None) -> None:
    with db.connect() as conn:
        conn.execute(
            '''INSERT OR REPLACE INTO user_profiles (user_id, diet_key, allergies, dislikes, meal_preferences,
               calorie_target, strictness, language) VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
            (user_id, diet_key, json.dumps(allergies or []), json.dumps(dislikes or []),
             json.dumps(meal_preferences or {}),
             calorie_target, strictness, language)
        )


def seed_custom_meal(db: PlanDatabase, user_id: str, meal_id: str, name: str, slot: str,
                     refs: Optional[List[dict]] = None, servings: Optional[int] = None,
                     consumption_count: int = 0) -> None:
    if refs is None:
        refs = [
            {"food_code": f"{meal_id}-veg", "quantity_g": 100, "display_name": "tomato"},
            {"food_code": f"{meal_id}-fruit", "quantity_g": 50, "display_name": "banana"},
            {"food_code": f"{meal_id}-prot", "quantity_g": 80, "display_name": "chicken"},
        ]
    data = {"ingredient_refs": refs}
    if servings is not None:
        data["servings"] = servings
    seed_nutrients(db, [r["food_code"] for r in refs if r.get("food_code")])
    now = format_ts(datetime(2025, 12, 1))
    with db.connect() as conn:
        conn.execute(
            '''INSERT INTO custom_meals (id, user_id, name, meal_slot, meal_data, consumption_count,
               created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
            (meal_id, user_id, name, slot, json.dumps(data), consumption_count, now, now)
        )


def seed_catalog(db: PlanDatabase, user_id: str, per_slot: int, slots=SLOTS, servings: Optional[int] = None) -> None:
    """``per_slot`` distinctly named custom meals for every slot."""
    for slot in slots:
        for i in range(per_slot):
            seed_custom_meal(db, user_id, f"{slot}-{i}", f"{slot.title()} dish {i}", slot,
                             servings=servings, consumption_count=per_slot - i)


def seed_household(db: PlanDatabase, user_id: str, size: Optional[int],
                   policy: str = "scale_to_household", household_id: str = "hh-1") -> None:
    with db.connect() as conn:
        conn.execute('INSERT OR REPLACE INTO households (id, household_size, servings_policy) VALUES (?, ?, ?)',
                     (household_id, size, policy))
        conn.execute(
            '''INSERT INTO user_preferences (user_id, household_id) VALUES (?, ?)
               ON CONFLICT(user_id) DO UPDATE SET household_id = excluded.household_id''',
            (user_id, household_id)
        )


def seed_history_meal(db: PlanDatabase, user_id: str, meal_id: str, name: str, slot: str,
                      diet_key: str = "balanced", rating: Optional[int] = 5, combined_score: float = 90.0,
                      usage_count: int = 0, last_used_at: Optional[datetime] = None, refs=None) -> None:
    payload = {
        "id": meal_id,
        "name": name,
        "slot": slot,
        "date": "",
        "ingredient_refs": refs if refs is not None else [
            {"food_code": f"{meal_id}-veg", "quantity_g": 100, "display_name": "spinach"},
            {"food_code": f"{meal_id}-fruit", "quantity_g": 50, "display_name": "pear"},
            {"food_code": f"{meal_id}-prot", "quantity_g": 80, "display_name": "salmon"},
        ],
        "servings": 1,
    }
    seed_nutrients(db, [r["food_code"] for r in payload["ingredient_refs"] if r.get("food_code")])
    now = format_ts(datetime(2025, 11, 1))
    with db.connect() as conn:
        conn.execute(
            '''INSERT INTO meal_history (id, user_id, meal_id, meal_name, meal_slot, diet_key, meal_data,
               usage_count, first_used_at, last_used_at, user_rating, nutrition_score, variety_score,
               combined_score, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 50, 80, ?, ?, ?)''',
            (f"h-{meal_id}", user_id, meal_id, name, slot, diet_key, json.dumps(payload), usage_count, now,
             format_ts(last_used_at) if last_used_at else None, rating, combined_score, now, now)
        )


def make_request(days: int = 1, slots=SLOTS, start: str = START_DATE, **profile_kwargs) -> PlanRequest:
    first = date.fromisoformat(start)
    return PlanRequest(
        date_from=first.isoformat(),
        date_to=(first + timedelta(days=days - 1)).isoformat(),
        slots=list(slots),
        profile=Profile(**profile_kwargs),
    )


def make_meal(meal_id: str, name: str, slot: str = "lunch", day: str = "", refs=None, **kwargs) -> Meal:
    if refs is None:
        refs = [IngredientRef(f"{meal_id}-veg", 100, "carrot")]
    return Meal(id=meal_id, name=name, slot=slot, date=day, ingredient_refs=refs, **kwargs)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "meal_plans.db")


@pytest.fixture
def db(db_path):
    return PlanDatabase(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def planner_config(db_path):
    """Small, deterministic configuration: no history reuse, no coverage floor."""
    return PlannerConfig(
        slots=list(SLOTS),
        max_plan_days=14,
        db_path=db_path,
        generator=GeneratorSettings(
            target_reuse_ratio=1.0,
            min_db_recipe_coverage_ratio=0.0,
            history_reuse=HistoryReuseSettings(enabled=False),
        ),
        variety=VarietyTargets(
            unique_veg_min=1,
            unique_fruit_min=1,
            protein_rotation_min_categories=1,
            max_repeat_same_recipe_within_days=7,
        ),
    )


@pytest.fixture
def fake_planner():
    return FakePlanner()


# =============================================================================
# Test Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "readonly: marks test as read-only (no database writes)"
    )
    config.addinivalue_line(
        "markers", "creates_data: marks test as writing to the temporary database"
    )
    config.addinivalue_line(
        "markers", "slow: marks test as slow (may take >10 seconds)"
    )
