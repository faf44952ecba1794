"""
Generative Fallback Tests
=========================

Deferred cells go to the planner in one batched call; every proposal is
validated before it lands and no placeholder may survive the pass.
"""

import pytest

from conftest import FakePlanner, make_meal, make_request, run_async


def _deferred_fill(request, filled=None):
    """A FillResult with every cell deferred except those in ``filled``."""
    from db_first_fill import FillResult, build_skeleton

    plan = build_skeleton(request, "p1")
    result = FillResult(plan=plan)
    for meal in filled or []:
        plan.day(meal.date).set_meal(meal.slot, meal)
    for day in request.dates():
        for slot in request.slots:
            if plan.day(day).meal_for(slot).is_placeholder():
                result.defer(day, slot, "no_candidates")
    return result


def _run(planner, fill_result, request, rules=None, **kwargs):
    from diet_rules import HardConstraintValidator
    from generative_fallback import GenerativeFallback
    from plan_types import DietRuleSet

    fallback = GenerativeFallback(planner, HardConstraintValidator())
    return run_async(fallback.run(fill_result, request, rules or DietRuleSet("balanced"), **kwargs))


class TestGenerativeFallback:

    @pytest.mark.readonly
    def test_nothing_deferred_skips_planner(self):
        from db_first_fill import FillResult

        request = make_request(days=1, slots=["lunch"])
        plan = _deferred_fill(request).plan
        plan.day("2026-01-05").set_meal("lunch", make_meal("soup", "Soup", day="2026-01-05"))

        result = _run(None, FillResult(plan=plan), request)

        assert result.planner_called is False
        assert result.ai_cells == []

    @pytest.mark.readonly
    def test_fills_only_deferred_cells(self):
        request = make_request(days=1)
        kept = make_meal("soup", "Soup", slot="lunch", day="2026-01-05", recipe_source="custom_meals")
        planner = FakePlanner()

        result = _run(planner, _deferred_fill(request, [kept]), request)

        assert result.planner_called
        assert result.ai_cells == [("2026-01-05", "breakfast"), ("2026-01-05", "dinner")]
        assert planner.calls[0].only_slots == result.ai_cells
        assert result.plan.day("2026-01-05").meal_for("lunch").name == "Soup"
        assert result.plan.day("2026-01-05").meal_for("dinner").recipe_source == "ai"
        assert result.slot_provenance["2026-01-05-dinner"].reason == "no_candidates"

    @pytest.mark.readonly
    def test_full_plan_requests_every_cell(self):
        request = make_request(days=1)
        planner = FakePlanner()

        _run(planner, _deferred_fill(request), request, full_plan=True, variety_hints={"missed": ["repeat_window"]})

        assert planner.calls[0].only_slots is None
        assert planner.calls[0].variety_hints == {"missed": ["repeat_window"]}

    @pytest.mark.readonly
    def test_constraints_in_prompt(self):
        from plan_types import DietRuleSet

        request = make_request(days=1, slots=["lunch"])
        planner = FakePlanner()

        result = _run(planner, _deferred_fill(request), request, rules=DietRuleSet("balanced", allergen_terms=["peanut"]))

        assert result.constraints_in_prompt is True
        assert "peanut" in planner.calls[0].constraints_text

    @pytest.mark.readonly
    def test_strict_mode_refuses(self):
        from plan_errors import MealPlanError

        request = make_request(days=1)
        planner = FakePlanner()

        with pytest.raises(MealPlanError) as excinfo:
            _run(planner, _deferred_fill(request), request, fill_mode="strict")

        assert excinfo.value.code == "INSUFFICIENT_CANDIDATES"
        assert excinfo.value.details["unfilled_slots"] == 3
        assert planner.calls == []

    @pytest.mark.readonly
    def test_missing_planner(self):
        from plan_errors import MealPlanError

        request = make_request(days=1)

        with pytest.raises(MealPlanError) as excinfo:
            _run(None, _deferred_fill(request), request)

        assert excinfo.value.code == "AGENT_ERROR"

    @pytest.mark.readonly
    def test_blocked_proposals_leave_cells_unfilled(self):
        from plan_errors import MealPlanError
        from plan_types import DietRuleSet, IngredientRef

        request = make_request(days=1, slots=["lunch"])
        planner = FakePlanner(refs=[IngredientRef("nut-1", 30, "peanut")])

        with pytest.raises(MealPlanError) as excinfo:
            _run(planner, _deferred_fill(request), request, rules=DietRuleSet("balanced", allergen_terms=["peanut"]))

        assert excinfo.value.code == "INSUFFICIENT_CANDIDATES"
        assert excinfo.value.details["cells"] == ["2026-01-05-lunch"]

    @pytest.mark.readonly
    def test_disliked_proposals_blocked(self):
        from diet_rules import derive_rule_set
        from plan_errors import MealPlanError
        from plan_types import IngredientRef

        request = make_request(days=1, slots=["lunch"], dislikes=["mushroom"])
        planner = FakePlanner(refs=[IngredientRef("mush-1", 80, "mushroom"), IngredientRef("egg-1", 60, "egg")])

        with pytest.raises(MealPlanError) as excinfo:
            _run(planner, _deferred_fill(request), request, rules=derive_rule_set(request.profile))

        assert excinfo.value.code == "INSUFFICIENT_CANDIDATES"
        assert len(planner.calls) == 1

    @pytest.mark.readonly
    def test_proposals_must_match_slot_preferences(self):
        from plan_errors import MealPlanError

        request = make_request(days=1, slots=["breakfast"], meal_preferences={"breakfast": ["porridge"]})

        with pytest.raises(MealPlanError) as excinfo:
            _run(FakePlanner(), _deferred_fill(request), request)

        assert excinfo.value.details["cells"] == ["2026-01-05-breakfast"]

    @pytest.mark.readonly
    def test_fabricated_food_codes_blocked(self, db):
        from diet_rules import FoodNutrientTable, HardConstraintValidator
        from generative_fallback import GenerativeFallback
        from plan_errors import MealPlanError
        from plan_types import DietRuleSet, IngredientRef

        request = make_request(days=1, calorie_target=1800)
        planner = FakePlanner(refs=[IngredientRef("fabricated-xyz", 5000, "lard")])
        fallback = GenerativeFallback(planner, HardConstraintValidator(FoodNutrientTable(db)))

        with pytest.raises(MealPlanError) as excinfo:
            run_async(fallback.run(_deferred_fill(request), request, DietRuleSet("balanced", daily_kcal_max=2160)))

        assert excinfo.value.code == "INSUFFICIENT_CANDIDATES"
        assert len(excinfo.value.details["cells"]) == 3

    @pytest.mark.readonly
    @pytest.mark.parametrize("failure,code", [
        (ValueError("not json"), "VALIDATION_ERROR"),
        (RuntimeError("HTTP 503"), "AGENT_ERROR"),
    ])
    def test_planner_failures_classified(self, failure, code):
        from plan_errors import MealPlanError

        request = make_request(days=1)

        with pytest.raises(MealPlanError) as excinfo:
            _run(FakePlanner(failures=[failure]), _deferred_fill(request), request)

        assert excinfo.value.code == code
        assert excinfo.value.is_transient

    @pytest.mark.readonly
    def test_planner_meal_plan_error_passes_through(self):
        from plan_errors import MealPlanError

        request = make_request(days=1)
        failure = MealPlanError("RATE_LIMIT", "upstream quota")

        with pytest.raises(MealPlanError) as excinfo:
            _run(FakePlanner(failures=[failure]), _deferred_fill(request), request)

        assert excinfo.value is failure


class TestAssertNoPlaceholders:

    @pytest.mark.readonly
    def test_complete_plan_passes(self):
        from generative_fallback import assert_no_placeholders
        from plan_types import MealPlan, MealPlanDay

        request = make_request(days=1, slots=["lunch"])
        plan = MealPlan("p1", [MealPlanDay("2026-01-05", [make_meal("soup", "Soup", day="2026-01-05")])])

        assert_no_placeholders(plan, request)

    @pytest.mark.readonly
    @pytest.mark.parametrize("meals,bad_count", [
        ([], 1),
        ([make_meal("a", "Soup", day="2026-01-05"), make_meal("b", "Stew", day="2026-01-05")], 1),
        ([make_meal("a", "Soup", day="2026-01-05", refs=[])], 1),
        ([make_meal("a", "  ", day="2026-01-05")], 1),
    ])
    def test_bad_cells_reported(self, meals, bad_count):
        from generative_fallback import assert_no_placeholders
        from plan_errors import MealPlanError
        from plan_types import MealPlan, MealPlanDay

        request = make_request(days=1, slots=["lunch"])
        plan = MealPlan("p1", [MealPlanDay("2026-01-05", meals)])

        with pytest.raises(MealPlanError) as excinfo:
            assert_no_placeholders(plan, request)

        assert excinfo.value.code == "INSUFFICIENT_CANDIDATES"
        assert excinfo.value.details["unfilled_slots"] == bad_count
