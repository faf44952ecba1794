"""
Meal Planner Prompts Configuration
==================================

This module contains all LLM prompts used by the meal plan generator.
Separating prompts from code makes it easier to tune and experiment
with different prompt strategies without modifying the core logic.

Prompts:
- Meal plan generation (generative fallback for cells the database could not fill)
- Plan enrichment (cooking tips and prep times, best effort)
- Translation (meal names and enrichment text, read path only)
"""

import json
from typing import Dict, List, Optional, Tuple

from plan_types import DietRuleSet, MealPlan, PlanRequest


def estimate_token_usage(prompt: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return len(prompt) // 4


# =============================================================================
# MEAL PLAN GENERATION
# =============================================================================

MEAL_PLAN_SYSTEM_PROMPT = """You are a registered dietitian and home cook planning meals.

RULES:
- Only output valid JSON matching the requested schema
- Every meal needs a concrete name and at least one ingredient with a food code and grams
- Never use an ingredient that is listed as an allergen or excluded
- Prefer variety: different proteins, vegetables and fruits across the days
"""


def build_constraints_text(rules: DietRuleSet, request: PlanRequest) -> str:
    """Human-readable hard constraints for the prompt. Empty when there are none."""
    lines = []
    if rules.allergen_terms:
        lines.append(f"- ALLERGENS (never use): {', '.join(rules.allergen_terms)}")
    if rules.excluded_terms:
        lines.append(f"- EXCLUDED for diet '{rules.diet_key}': {', '.join(rules.excluded_terms)}")
    if rules.excluded_food_codes:
        lines.append(f"- EXCLUDED food codes: {', '.join(rules.excluded_food_codes)}")
    if rules.required_daily_categories:
        lines.append(f"- REQUIRED every day: {', '.join(rules.required_daily_categories)}")
    if rules.daily_kcal_max is not None:
        low = f"{rules.daily_kcal_min}-" if rules.daily_kcal_min is not None else "at most "
        lines.append(f"- Daily energy: {low}{rules.daily_kcal_max} kcal")
    if rules.daily_protein_min_g is not None:
        lines.append(f"- Daily protein: at least {rules.daily_protein_min_g} g")
    if request.profile.dislikes:
        lines.append(f"- DISLIKED (never use): {', '.join(request.profile.dislikes)}")
    return "\n".join(lines)


def _describe_existing(plan: Optional[MealPlan]) -> str:
    if plan is None:
        return "(none)"
    rows = [f"- {m.date} {m.slot}: {m.name}" for m in plan.iter_meals() if not m.is_placeholder()]
    return "\n".join(rows) if rows else "(none)"


def build_meal_plan_generation_prompt(
    request: PlanRequest,
    constraints_text: str,
    cells: List[Tuple[str, str]],
    existing_plan: Optional[MealPlan] = None,
    variety_hints: Optional[Dict] = None,
    locale: str = "en",
) -> str:
    """
    Build prompt for generating meals for specific (date, slot) cells.

    Args:
        request: Frozen plan request (dates, slots, profile)
        constraints_text: Output of build_constraints_text()
        cells: (date, slot) pairs the model must fill
        existing_plan: Plan so far, listed so the model avoids repeats
        variety_hints: Variety targets/shortfall from a previous attempt
        locale: Language for meal names

    Returns:
        Formatted prompt string
    """
    cell_lines = "\n".join(f"- {day} {slot}" for day, slot in cells)
    preferences = {
        slot: prefs for slot, prefs in request.profile.meal_preferences.items() if prefs
    }
    preference_section = ""
    if preferences:
        preference_section = (
            f"\n- Slot preferences (every meal must match one for its slot): "
            f"{json.dumps(preferences, ensure_ascii=False)}"
        )
    if request.slot_preferences:
        preference_section += f"\n- Slot styles: {json.dumps(request.slot_preferences, ensure_ascii=False)}"

    variety_section = ""
    if variety_hints:
        variety_section = f"""

## VARIETY
The previous attempt missed these variety targets, improve on them:
{json.dumps(variety_hints, ensure_ascii=False)}"""

    return f"""## TASK
Create one meal for EACH of these cells:
{cell_lines}

## CONTEXT
- Diet: {request.profile.diet_key}
- Period: {request.date_from} to {request.date_to}
- Language for meal names: {locale}{preference_section}

## HARD CONSTRAINTS
{constraints_text or "- (none beyond a sensible balanced diet)"}

## ALREADY PLANNED (do not repeat these)
{_describe_existing(existing_plan)}{variety_section}

## REQUIREMENTS
1. Return exactly one meal per listed cell, using the same date and slot strings
2. Each meal has a short name and 2-10 ingredients
3. Each ingredient has a food_code (short lowercase identifier such as "chicken_breast"),
   a display_name and quantity_g in grams for ONE serving
4. Do not repeat a meal from the already planned list"""


# =============================================================================
# ENRICHMENT
# =============================================================================

ENRICHMENT_SYSTEM_PROMPT = """You are a practical home cook writing short cooking notes.
Only output valid JSON. Keep tips concrete and under 20 words each."""


def build_enrichment_prompt(plan: MealPlan, locale: str = "en", max_tips: int = 3) -> str:
    """
    Build prompt for per-meal cooking tips and prep time estimates.

    Args:
        plan: Persisted plan
        locale: Output language
        max_tips: Maximum tips per meal
    """
    meals = "\n".join(
        f"- {m.date} {m.slot}: {m.name} ({', '.join(r.display_name or r.food_code for r in m.ingredient_refs)})"
        for m in plan.iter_meals() if not m.is_placeholder()
    )
    return f"""## TASK
For each meal below write up to {max_tips} cooking tips and estimate prep time in minutes.

## MEALS
{meals}

## REQUIREMENTS
1. Use the same date and slot strings
2. Write in language: {locale}
3. prep_time_minutes is an integer between 5 and 180"""


# =============================================================================
# TRANSLATION
# =============================================================================

TRANSLATION_SYSTEM_PROMPT = """You are a culinary translator. Translate dish names and cooking notes
naturally, keeping ingredient names recognisable. Only output valid JSON."""


def build_translation_prompt(texts: Dict[str, str], target_language: str) -> str:
    """
    Build prompt for translating a key -> text mapping.

    Args:
        texts: Stable keys mapped to source text
        target_language: ISO language code
    """
    return f"""## TASK
Translate every value of this JSON object into language '{target_language}'.
Keep the keys unchanged.

## INPUT
{json.dumps(texts, ensure_ascii=False, indent=2)}

## REQUIREMENTS
1. Return {{"translations": {{key: translated text}}}} with every input key
2. Do not add or drop keys"""
