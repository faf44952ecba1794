"""
Generative Fallback & Placeholder Elimination
=============================================

Cells the DB-first fill deferred are handed to the generative planner in
one batched call. Every proposal is re-validated by whole-plan substitution
before it is written; anything else leaves the cell deferred.

After the pass no placeholder may remain: a plan is never persisted with
placeholder content.
"""

import copy
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from db_first_fill import (
    REASON_AI_BLOCKED,
    TIER_AI,
    FillResult,
    SlotProvenance,
    cell_key,
)
from diet_rules import ConstraintValidator
from llm_planner import GenerateOptions, GenerativePlanner
from plan_errors import ErrorCode, MealPlanError
from plan_types import DietRuleSet, Meal, MealPlan, PlanRequest
from prompts import build_constraints_text
from tools.logging_utils import get_logger

logger = get_logger(__name__)


@dataclass
class FallbackResult:
    plan: MealPlan
    slot_provenance: Dict[str, SlotProvenance] = field(default_factory=dict)
    fallback_reasons: Counter = field(default_factory=Counter)
    ai_cells: List[Tuple[str, str]] = field(default_factory=list)
    planner_called: bool = False
    constraints_in_prompt: bool = False


def _unfilled_error(cells: List[Tuple[str, str]], message: str) -> MealPlanError:
    return MealPlanError(
        ErrorCode.INSUFFICIENT_CANDIDATES,
        message,
        {"unfilled_slots": len(cells), "cells": [cell_key(d, s) for d, s in cells]},
    )


def assert_no_placeholders(plan: MealPlan, request: PlanRequest) -> None:
    """
    Every required (date, slot) must appear exactly once with real content.

    Raises:
        MealPlanError(INSUFFICIENT_CANDIDATES): with the number of bad cells
    """
    seen: Counter = Counter((m.date, m.slot) for m in plan.iter_meals())
    bad: List[Tuple[str, str]] = []
    for day in request.dates():
        for slot in request.slots:
            if seen[(day, slot)] != 1:
                bad.append((day, slot))
    for meal in plan.iter_meals():
        if (meal.is_placeholder() or not meal.has_ingredients() or not (meal.name or "").strip()) \
                and (meal.date, meal.slot) not in bad:
            bad.append((meal.date, meal.slot))
    if bad:
        raise _unfilled_error(bad, f"{len(bad)} slot(s) could not be filled")


class GenerativeFallback:
    """Batched LLM fill for deferred cells."""

    def __init__(self, planner: Optional[GenerativePlanner], validator: ConstraintValidator):
        self.planner = planner
        self.validator = validator

    async def run(self, fill_result: FillResult, request: PlanRequest, rules: DietRuleSet,
                  locale: str = "en", fill_mode: str = "fill_missing",
                  variety_hints: Optional[Dict] = None, full_plan: bool = False) -> FallbackResult:
        """
        Args:
            fill_result: output of DbFirstFiller.fill
            fill_mode: 'strict' refuses to generate at all
            variety_hints: passed to the prompt on the variety retry
            full_plan: ask the planner for every cell (transient-retry path);
                only deferred cells are taken from the answer

        Raises:
            MealPlanError(INSUFFICIENT_CANDIDATES): strict mode, or cells left unfilled
            MealPlanError(AGENT_ERROR): the planner call failed
            MealPlanError(VALIDATION_ERROR): the planner answered with malformed output
        """
        plan = fill_result.plan.clone()
        result = FallbackResult(
            plan=plan,
            slot_provenance=dict(fill_result.slot_provenance),
            fallback_reasons=Counter(fill_result.fallback_reasons),
        )
        deferred = list(fill_result.deferred)
        if not deferred:
            return result

        if fill_mode == "strict":
            logger.warning(f"⚠️  Strict fill mode: {len(deferred)} slot(s) unfilled, not generating")
            raise _unfilled_error(deferred, "Not enough database candidates in strict fill mode")

        if self.planner is None:
            raise MealPlanError(ErrorCode.AGENT_ERROR, "No generative planner configured",
                                {"deferred": len(deferred)})

        constraints_text = build_constraints_text(rules, request)
        options = GenerateOptions(
            prefilled=plan,
            only_slots=None if full_plan else deferred,
            variety_hints=variety_hints,
            constraints_text=constraints_text,
        )
        result.constraints_in_prompt = bool(constraints_text)
        result.planner_called = True
        try:
            generated = await self.planner.generate(request, locale, options)
        except MealPlanError:
            raise
        except ValueError as e:
            raise MealPlanError(ErrorCode.VALIDATION_ERROR, f"Planner returned malformed output: {e}",
                                {"deferred": len(deferred)}) from e
        except Exception as e:
            raise MealPlanError(ErrorCode.AGENT_ERROR, f"Generative planner failed: {e}",
                                {"deferred": len(deferred)}) from e

        blocked: List[Tuple[str, str]] = []
        for day, slot in deferred:
            proposal = self._proposal_for(generated, day, slot)
            accepted = None
            if proposal is not None:
                accepted = await self._validated(plan, proposal, day, slot, rules, request)
            if accepted is None:
                blocked.append((day, slot))
                result.fallback_reasons[REASON_AI_BLOCKED] += 1
                result.slot_provenance[cell_key(day, slot)] = SlotProvenance(TIER_AI, REASON_AI_BLOCKED)
                continue
            plan.day(day).set_meal(slot, accepted)
            result.ai_cells.append((day, slot))

        logger.info(f"🤖 Generative fallback: {len(result.ai_cells)}/{len(deferred)} filled, {len(blocked)} blocked")
        assert_no_placeholders(plan, request)
        return result

    @staticmethod
    def _proposal_for(generated: Optional[MealPlan], day: str, slot: str) -> Optional[Meal]:
        if generated is None:
            return None
        plan_day = generated.day(day)
        meal = plan_day.meal_for(slot) if plan_day else None
        if meal is None or meal.is_placeholder() or not meal.has_ingredients():
            return None
        return meal

    async def _validated(self, plan: MealPlan, proposal: Meal, day: str, slot: str,
                         rules: DietRuleSet, request: PlanRequest) -> Optional[Meal]:
        meal = copy.deepcopy(proposal)
        meal.date = day
        meal.slot = slot
        meal.recipe_source = meal.recipe_source or "ai"
        scratch = plan.clone()
        scratch.day(day).set_meal(slot, meal)
        issues = await self.validator.validate(scratch, rules, request)
        if issues:
            logger.debug(f"🔍 AI proposal '{meal.name}' blocked for {day}/{slot}: {[i.code for i in issues]}")
            return None
        return meal
