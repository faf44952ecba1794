"""
Generative Meal Planner (LLM)
=============================

Default GenerativePlanner: asks an OpenRouter chat model for meals for a set
of (date, slot) cells and turns the JSON answer into a MealPlan.

Generated meals carry ``recipe_source = 'ai'`` and a stable
``base_id = 'ai-<slug of name>'`` so the repeat window treats two proposals
with the same name as the same recipe.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from llm_client import LLMClient
from plan_types import IngredientRef, Meal, MealPlan, MealPlanDay, PlanRequest
from prompts import (
    MEAL_PLAN_SYSTEM_PROMPT,
    build_meal_plan_generation_prompt,
    estimate_token_usage,
)
from tools.logging_utils import get_logger

logger = get_logger(__name__)

AI_SOURCE = "ai"
MAX_INGREDIENTS_PER_MEAL = 15


@dataclass
class GenerateOptions:
    """
    Inputs for one planner call.

    prefilled: plan so far (cells the database already filled)
    only_slots: cells to generate; None means every cell of the request
    variety_hints: variety shortfall from the previous attempt
    constraints_text: rendered hard constraints for the prompt
    """
    prefilled: Optional[MealPlan] = None
    only_slots: Optional[List[Tuple[str, str]]] = None
    variety_hints: Optional[Dict[str, Any]] = None
    constraints_text: str = ""


class GenerativePlanner(Protocol):
    model: str

    async def generate(self, request: PlanRequest, locale: str, options: GenerateOptions) -> MealPlan:
        ...


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug or "meal"


def _schema_meal_plan() -> dict:
    """Schema for LLM to return meals for the requested cells."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "meal_plan_cells",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "meals": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "date": {"type": "string", "description": "YYYY-MM-DD, as listed in the task"},
                                "slot": {"type": "string", "description": "Slot name, as listed in the task"},
                                "name": {"type": "string", "description": "Short meal name"},
                                "servings": {"type": "integer", "description": "Servings the quantities are for"},
                                "ingredient_refs": {
                                    "type": "array",
                                    "items": {
                                        "type": "object",
                                        "properties": {
                                            "food_code": {"type": "string"},
                                            "display_name": {"type": "string"},
                                            "quantity_g": {"type": "number"},
                                        },
                                        "required": ["food_code", "display_name", "quantity_g"],
                                        "additionalProperties": False,
                                    },
                                },
                            },
                            "required": ["date", "slot", "name", "servings", "ingredient_refs"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": ["meals"],
                "additionalProperties": False,
            },
        },
    }


def _parse_ingredient(raw: Dict[str, Any]) -> Optional[IngredientRef]:
    code = str(raw.get("food_code") or "").strip().lower()
    if not code:
        return None
    try:
        grams = int(round(float(raw.get("quantity_g") or 0)))
    except (TypeError, ValueError):
        grams = 0
    return IngredientRef(
        food_code=code,
        quantity_g=max(1, grams),
        display_name=(raw.get("display_name") or "").strip() or None,
    )


def parse_generated_meals(data: Dict[str, Any], cells: List[Tuple[str, str]]) -> Dict[Tuple[str, str], Meal]:
    """
    Map the model's answer onto the requested cells.

    Entries for cells that were not asked for are dropped; the first entry
    per cell wins.
    """
    wanted = set(cells)
    meals: Dict[Tuple[str, str], Meal] = {}
    for raw in data.get("meals") or []:
        if not isinstance(raw, dict):
            continue
        key = (str(raw.get("date") or ""), str(raw.get("slot") or ""))
        if key not in wanted or key in meals:
            continue
        name = str(raw.get("name") or "").strip()
        refs = [ref for ref in (_parse_ingredient(r) for r in raw.get("ingredient_refs") or [] if isinstance(r, dict))
                if ref is not None][:MAX_INGREDIENTS_PER_MEAL]
        servings = raw.get("servings")
        base_id = f"ai-{slugify(name)}"
        meals[key] = Meal(
            id=f"{base_id}-{key[0]}-{key[1]}",
            name=name,
            slot=key[1],
            date=key[0],
            ingredient_refs=refs,
            servings=servings if isinstance(servings, int) and servings > 0 else 1,
            recipe_source=AI_SOURCE,
            base_id=base_id,
        )
    return meals


class LLMMealPlanner:
    """OpenRouter-backed GenerativePlanner."""

    def __init__(self, client: LLMClient, model: Optional[str] = None):
        self.client = client
        self.model = model or client.settings.chat_model

    async def generate(self, request: PlanRequest, locale: str, options: GenerateOptions) -> MealPlan:
        """
        Generate meals for ``options.only_slots`` (or the whole request).

        Returns:
            MealPlan covering every requested date; cells the model skipped
            are placeholders.

        Raises:
            LLMCallError: the call failed after retries
            ValueError: the model answered with something other than JSON
        """
        cells = list(options.only_slots) if options.only_slots else [
            (day, slot) for day in request.dates() for slot in request.slots
        ]
        prompt = build_meal_plan_generation_prompt(
            request,
            options.constraints_text,
            cells,
            existing_plan=options.prefilled,
            variety_hints=options.variety_hints,
            locale=locale,
        )
        logger.info(f"🚀 Generating {len(cells)} meal(s) with {self.model} (~{estimate_token_usage(prompt)} tokens)")

        data = await self.client.call_json(
            prompt,
            system_prompt=MEAL_PLAN_SYSTEM_PROMPT,
            model=self.model,
            response_format=_schema_meal_plan(),
        )
        generated = parse_generated_meals(data, cells)
        if len(generated) < len(cells):
            logger.warning(f"⚠️  Model returned {len(generated)}/{len(cells)} requested meals")

        days = []
        for day in request.dates():
            meals = [generated.get((day, slot)) or Meal.placeholder(day, slot) for slot in request.slots]
            days.append(MealPlanDay(date=day, meals=meals))
        return MealPlan(request_id=options.prefilled.request_id if options.prefilled else "", days=days)
