"""
Diet Rules Tests
================

Rule derivation, term matching, the hard-constraint validator and the
guardrails metadata evaluator.
"""

import pytest

from conftest import SLOTS, make_meal, run_async


def _plan(meals_by_day):
    from plan_types import MealPlan, MealPlanDay
    return MealPlan(request_id="p1", days=[MealPlanDay(day, meals) for day, meals in meals_by_day.items()])


def _request(days=1):
    from datetime import date, timedelta
    from plan_types import PlanRequest, Profile

    start = date(2026, 1, 5)
    return PlanRequest(date_from=start.isoformat(), date_to=(start + timedelta(days=days - 1)).isoformat(),
                       slots=list(SLOTS), profile=Profile())


def _full_day(day="2026-01-05", names=("Oats", "Salad", "Stew"), refs=None):
    return [make_meal(f"m{i}", name, slot=slot, day=day, refs=refs)
            for i, (slot, name) in enumerate(zip(SLOTS, names))]


def _codes(issues):
    return [issue.code for issue in issues]


class TestDeriveRuleSet:

    @pytest.mark.readonly
    def test_vegan_excludes_animal_products(self):
        from diet_rules import derive_rule_set
        from plan_types import Profile

        rules = derive_rule_set(Profile(diet_key="vegan"))

        assert "chicken" in rules.excluded_terms
        assert "honey" in rules.excluded_terms
        assert rules.required_daily_categories == []
        assert rules.daily_protein_min_g is None

    @pytest.mark.readonly
    def test_strict_adds_minimums(self):
        from diet_rules import derive_rule_set
        from plan_types import Profile

        rules = derive_rule_set(Profile(diet_key="vegan", strictness="strict", calorie_target=2000))

        assert rules.required_daily_categories == ["plant_protein"]
        assert rules.daily_protein_min_g == 60
        assert rules.daily_kcal_min == 1400
        assert rules.daily_kcal_max == 2400

    @pytest.mark.readonly
    def test_flexible_only_caps_calories(self):
        from diet_rules import derive_rule_set
        from plan_types import Profile

        rules = derive_rule_set(Profile(calorie_target=2000))

        assert rules.daily_kcal_max == 2400
        assert rules.daily_kcal_min is None

    @pytest.mark.readonly
    def test_allergies_normalized(self):
        from diet_rules import derive_rule_set
        from plan_types import Profile

        rules = derive_rule_set(Profile(allergies=[" Peanut ", "", "SHELLFISH"]))

        assert rules.allergen_terms == ["peanut", "shellfish"]

    @pytest.mark.readonly
    def test_dislikes_are_hard_terms(self):
        from diet_rules import derive_rule_set
        from plan_types import Profile

        rules = derive_rule_set(Profile(dislikes=[" Mushroom", "", "olives"]))

        assert rules.disliked_terms == ["mushroom", "olives"]

    @pytest.mark.readonly
    def test_unknown_diet_uses_balanced_rules(self):
        from diet_rules import derive_rule_set
        from plan_types import Profile

        rules = derive_rule_set(Profile(diet_key="fruitarian"))

        assert rules.diet_key == "fruitarian"
        assert rules.excluded_terms == []

    @pytest.mark.readonly
    def test_wahls_requires_seaweed_always(self):
        from diet_rules import derive_rule_set
        from plan_types import Profile

        rules = derive_rule_set(Profile(diet_key="wahls_paleo_plus"))

        assert rules.required_daily_categories == ["seaweed"]


class TestTermMatching:

    @pytest.mark.readonly
    @pytest.mark.parametrize("text,term,expected", [
        ("scrambled eggs", "egg", True),
        ("protein shake", "ei", False),
        ("gebakken eieren", "eieren", True),
        ("Peanut butter toast", "peanut", True),
        ("coconut", "nut", False),
        ("anything", "   ", False),
        ("", "egg", False),
    ])
    def test_word_start_prefix(self, text, term, expected):
        from diet_rules import term_matches

        assert term_matches(text, term) is expected


class TestHardConstraintValidator:

    @pytest.mark.readonly
    def test_clean_plan_has_no_issues(self):
        from diet_rules import HardConstraintValidator
        from plan_types import DietRuleSet

        issues = HardConstraintValidator().validate_sync(_plan({"2026-01-05": _full_day()}),
                                                         DietRuleSet("balanced"), _request())

        assert issues == []

    @pytest.mark.readonly
    def test_placeholders_skipped(self):
        from diet_rules import HardConstraintValidator
        from plan_types import DietRuleSet, Meal

        meals = [Meal.placeholder("2026-01-05", slot) for slot in SLOTS]
        rules = DietRuleSet("balanced", required_daily_categories=["seaweed"])

        assert HardConstraintValidator().validate_sync(_plan({"2026-01-05": meals}), rules, _request()) == []

    @pytest.mark.readonly
    def test_allergen_and_excluded_terms(self):
        from diet_rules import HardConstraintValidator
        from plan_types import DietRuleSet, IngredientRef

        meal = make_meal("m1", "Peanut chicken", day="2026-01-05",
                         refs=[IngredientRef("c1", 100, "chicken"), IngredientRef("c2", 20, "peanut")])
        rules = DietRuleSet("vegan", allergen_terms=["peanut"], excluded_terms=["chicken"],
                            excluded_food_codes=["c2"])

        codes = _codes(HardConstraintValidator().validate_sync(_plan({"2026-01-05": [meal]}), rules, _request()))

        assert codes.count("ALLERGEN_PRESENT") == 1
        assert codes.count("EXCLUDED_INGREDIENT") == 1
        assert codes.count("EXCLUDED_FOOD_CODE") == 1

    @pytest.mark.readonly
    def test_duplicate_meal_in_day(self):
        from diet_rules import HardConstraintValidator
        from plan_types import DietRuleSet

        meals = _full_day(names=("Soup", "Soup", "Stew"))

        codes = _codes(HardConstraintValidator().validate_sync(_plan({"2026-01-05": meals}),
                                                               DietRuleSet("balanced"), _request()))

        assert codes == ["DUPLICATE_MEAL_IN_DAY"]

    @pytest.mark.readonly
    def test_required_category_only_on_complete_day(self):
        from diet_rules import HardConstraintValidator
        from plan_types import DietRuleSet

        rules = DietRuleSet("wahls_paleo_plus", required_daily_categories=["seaweed"])
        validator = HardConstraintValidator()

        partial = _full_day()[:2]
        assert validator.validate_sync(_plan({"2026-01-05": partial}), rules, _request()) == []

        codes = _codes(validator.validate_sync(_plan({"2026-01-05": _full_day()}), rules, _request()))
        assert codes == ["REQUIRED_CATEGORY_MISSING"]

    @pytest.mark.creates_data
    def test_daily_calorie_bounds(self, db):
        from diet_rules import FoodNutrientTable, HardConstraintValidator
        from plan_types import DietRuleSet, IngredientRef

        with db.connect() as conn:
            conn.execute("INSERT INTO food_nutrients (food_code, kcal_per_100g, protein_g_per_100g) "
                         "VALUES ('rich', 500, 10)")
        refs = [IngredientRef("rich", 200, "butter cake")]
        rules = DietRuleSet("balanced", daily_kcal_max=2000, daily_protein_min_g=100)

        validator = HardConstraintValidator(FoodNutrientTable(db))
        codes = _codes(validator.validate_sync(_plan({"2026-01-05": _full_day(refs=refs)}), rules, _request()))

        # 3 x 1000 kcal, 3 x 20 g protein
        assert sorted(codes) == ["DAILY_CALORIES_ABOVE_MAX", "DAILY_PROTEIN_BELOW_MIN"]

    @pytest.mark.readonly
    def test_unknown_food_codes_rejected(self, db):
        """Codes missing from food_nutrients cannot slip past the daily bounds."""
        from diet_rules import FoodNutrientTable, HardConstraintValidator
        from plan_types import DietRuleSet, IngredientRef

        refs = [IngredientRef("fabricated-xyz", 5000, "lard")]
        rules = DietRuleSet("balanced", daily_kcal_max=2160)

        issues = HardConstraintValidator(FoodNutrientTable(db)).validate_sync(
            _plan({"2026-01-05": _full_day(refs=refs)}), rules, _request())

        assert _codes(issues) == ["UNKNOWN_FOOD_CODE"] * 3
        assert [i.slot for i in issues] == SLOTS
        assert "fabricated-xyz" in issues[0].detail

    @pytest.mark.creates_data
    def test_food_code_added_later_is_recognised(self, db):
        from conftest import seed_nutrients
        from diet_rules import FoodNutrientTable, HardConstraintValidator
        from plan_types import DietRuleSet, IngredientRef

        validator = HardConstraintValidator(FoodNutrientTable(db))
        plan = _plan({"2026-01-05": [make_meal("m1", "Leek soup", refs=[IngredientRef("leek", 200, "leek")])]})
        rules = DietRuleSet("balanced")

        assert _codes(validator.validate_sync(plan, rules, _request())) == ["UNKNOWN_FOOD_CODE"]
        seed_nutrients(db, ["leek"])
        assert validator.validate_sync(plan, rules, _request()) == []

    @pytest.mark.readonly
    def test_disliked_ingredient_rejected(self):
        from diet_rules import HardConstraintValidator, derive_rule_set
        from plan_types import IngredientRef, Profile

        rules = derive_rule_set(Profile(dislikes=["Mushroom"]))
        meals = [
            make_meal("m1", "Creamy risotto", slot="dinner", day="2026-01-05",
                      refs=[IngredientRef("mush-1", 80, "mushrooms")]),
            make_meal("m2", "Tomato soup", slot="lunch", day="2026-01-05"),
        ]

        issues = HardConstraintValidator().validate_sync(_plan({"2026-01-05": meals}), rules, _request())

        assert [(i.code, i.slot) for i in issues] == [("DISLIKED_INGREDIENT", "dinner")]

    @pytest.mark.readonly
    def test_meal_preference_miss(self):
        from diet_rules import HardConstraintValidator
        from plan_types import DietRuleSet

        request = _request()
        request.profile.meal_preferences = {"breakfast": ["porridge", "any"], "lunch": []}
        meals = [
            make_meal("m1", "Toast", slot="breakfast", day="2026-01-05"),
            make_meal("m2", "Tomato soup", slot="lunch", day="2026-01-05"),
        ]

        issues = HardConstraintValidator().validate_sync(_plan({"2026-01-05": meals}), DietRuleSet("balanced"), request)
        assert [(i.code, i.slot) for i in issues] == [("MEAL_PREFERENCE_MISS", "breakfast")]

        meals[0] = make_meal("m1", "Oat porridge", slot="breakfast", day="2026-01-05")
        assert HardConstraintValidator().validate_sync(_plan({"2026-01-05": meals}), DietRuleSet("balanced"),
                                                       request) == []


class TestGuardrails:

    @pytest.mark.readonly
    def test_decision_metadata(self):
        from diet_rules import GUARDRAILS_VERSION, HardConstraintValidator, RulesetGuardrailsEvaluator
        from plan_types import DietRuleSet

        rules = DietRuleSet("balanced", allergen_terms=["oats"])
        evaluator = RulesetGuardrailsEvaluator(HardConstraintValidator())

        decision = run_async(evaluator.evaluate(_plan({"2026-01-05": _full_day()}), rules, _request()))

        assert decision.allowed is False
        assert decision.reason_codes == ["ALLERGEN_PRESENT"]
        assert decision.version == GUARDRAILS_VERSION
        assert len(decision.content_hash) == 16

    @pytest.mark.readonly
    def test_hash_tracks_rule_content(self):
        from diet_rules import rules_content_hash
        from plan_types import DietRuleSet

        assert rules_content_hash(DietRuleSet("vegan")) == rules_content_hash(DietRuleSet("vegan"))
        assert rules_content_hash(DietRuleSet("vegan")) != rules_content_hash(DietRuleSet("keto"))
