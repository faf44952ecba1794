"""
Household Scaler Tests
======================
"""

import pytest

from conftest import make_meal, seed_household


def _plan(servings=2, grams=100):
    from plan_types import IngredientRef, Meal, MealPlan, MealPlanDay

    day = "2026-01-05"
    return MealPlan("p1", [MealPlanDay(day, [
        make_meal("soup", "Soup", day=day, servings=servings, refs=[IngredientRef("leek", grams, "leek")]),
        Meal.placeholder(day, "dinner"),
    ])])


def _soup(plan):
    return plan.day("2026-01-05").meal_for("lunch")


class TestScalePlan:

    @pytest.mark.readonly
    def test_scales_quantities_and_servings(self):
        from household import scale_plan_to_household

        original = _plan(servings=2, grams=100)

        scaled = scale_plan_to_household(original, 4)

        soup = _soup(scaled)
        assert (soup.servings, soup.base_servings) == (4, 2)
        assert (soup.ingredient_refs[0].quantity_g, soup.ingredient_refs[0].base_quantity_g) == (200, 100)
        assert scaled.metadata["servings"] == {"household_size": 4, "policy": "scale_to_household"}
        assert _soup(original).servings == 2
        assert _soup(original).ingredient_refs[0].base_quantity_g is None

    @pytest.mark.readonly
    def test_idempotent_for_same_size(self):
        from household import scale_plan_to_household

        once = scale_plan_to_household(_plan(), 3)
        twice = scale_plan_to_household(once, 3)

        assert twice == once

    @pytest.mark.readonly
    def test_rescale_uses_base_values(self):
        from household import scale_plan_to_household

        scaled = scale_plan_to_household(scale_plan_to_household(_plan(servings=2, grams=100), 6), 4)

        assert _soup(scaled).ingredient_refs[0].quantity_g == 200

    @pytest.mark.readonly
    def test_minimum_one_gram(self):
        from household import scale_plan_to_household

        scaled = scale_plan_to_household(_plan(servings=12, grams=1), 2)

        assert _soup(scaled).ingredient_refs[0].quantity_g == 1

    @pytest.mark.readonly
    @pytest.mark.parametrize("size,policy", [
        (None, "scale_to_household"),
        (1, "scale_to_household"),
        (4, "keep_recipe_servings"),
    ])
    def test_noop_cases(self, size, policy):
        from household import scale_plan_to_household

        scaled = scale_plan_to_household(_plan(), size, policy)

        assert _soup(scaled).servings == 2
        assert _soup(scaled).base_servings is None
        assert scaled.metadata["servings"]["policy"] == policy

    @pytest.mark.readonly
    def test_unscale_restores_recipe(self):
        from household import scale_plan_to_household, unscale_plan

        original = _plan()

        restored = unscale_plan(scale_plan_to_household(original, 5))

        assert restored == original


class TestResolveHousehold:

    @pytest.mark.creates_data
    def test_household_found(self, db):
        from household import resolve_household

        seed_household(db, "u1", 4, policy="keep_recipe_servings")

        assert resolve_household(db, "u1") == (4, "keep_recipe_servings")

    @pytest.mark.readonly
    def test_no_preferences(self, db):
        from household import resolve_household

        assert resolve_household(db, "u1") == (None, "scale_to_household")

    @pytest.mark.creates_data
    @pytest.mark.parametrize("size", [0, 13, None])
    def test_invalid_size_ignored(self, db, size):
        from household import resolve_household

        seed_household(db, "u1", size)

        assert resolve_household(db, "u1") == (None, "scale_to_household")

    @pytest.mark.creates_data
    def test_dangling_household_id(self, db):
        from household import resolve_household

        with db.connect() as conn:
            conn.execute("INSERT INTO user_preferences (user_id, household_id) VALUES ('u1', 'gone')")

        assert resolve_household(db, "u1") == (None, "scale_to_household")


class TestProfileProvider:

    @pytest.mark.creates_data
    def test_profile_row(self, db):
        from conftest import seed_profile
        from profile_provider import SqliteProfileProvider

        seed_profile(db, "u1", diet_key="vegan", allergies=["peanut", " "], strictness="strict",
                     language="nl", calorie_target=1800)
        provider = SqliteProfileProvider(db)

        profile = provider.load_profile("u1")

        assert profile.diet_key == "vegan"
        assert profile.allergies == ["peanut"]
        assert profile.strictness == "strict"
        assert profile.calorie_target == 1800
        assert provider.get_language("u1") == "nl"

    @pytest.mark.readonly
    def test_defaults_without_row(self, db):
        from plan_types import Profile
        from profile_provider import SqliteProfileProvider

        provider = SqliteProfileProvider(db)

        assert provider.load_profile("nobody") == Profile()
        assert provider.get_language("nobody") == "en"
        assert provider.load_slot_styles("nobody") == {}

    @pytest.mark.creates_data
    def test_slot_styles(self, db):
        from profile_provider import SqliteProfileProvider

        with db.connect() as conn:
            conn.execute("""INSERT INTO user_preferences (user_id, slot_styles) VALUES ('u1', '{"breakfast": "sweet", "lunch": ""}')""")

        assert SqliteProfileProvider(db).load_slot_styles("u1") == {"breakfast": "sweet"}
