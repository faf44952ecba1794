"""
Diet Rules, Constraint Validation and Guardrails
================================================

- derive_rule_set(profile): hard constraints for a diet profile
- HardConstraintValidator: whole-plan validation returning Issues
- RulesetGuardrailsEvaluator: content-hash + allow/block metadata

The validator is called on partial plans while cells are being filled.
Meal-level rules (allergens, dislikes, diet exclusions, slot meal
preferences, known food codes) apply to every filled cell. Placeholders are
skipped, and day-level rules (required categories, daily
calorie/protein bounds) are only checked once every slot of a day is filled.
"""

import functools
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from plan_db import PlanDatabase
from plan_types import DietRuleSet, Issue, Meal, MealPlan, PlanRequest, Profile
from tools.logging_utils import get_logger

logger = get_logger(__name__)

GUARDRAILS_VERSION = "rules-v1"

# Tolerance around the profile calorie target for a full day
KCAL_LOWER_TOLERANCE = 0.7
KCAL_UPPER_TOLERANCE = 1.2


# =============================================================================
# CATEGORY VOCABULARY (English + Dutch)
# =============================================================================

CATEGORY_TERMS: Dict[str, List[str]] = {
    "meat": ["beef", "pork", "lamb", "veal", "bacon", "ham", "sausage", "steak", "mince",
             "rund", "varken", "gehakt", "spek", "worst", "lam"],
    "poultry": ["chicken", "turkey", "duck", "kip", "kalkoen", "eend"],
    "fish": ["fish", "salmon", "tuna", "cod", "mackerel", "herring", "trout", "shrimp", "prawn",
             "vis", "zalm", "tonijn", "kabeljauw", "makreel", "haring", "garnal", "garnaal"],
    "dairy": ["milk", "cheese", "yogurt", "yoghurt", "butter", "cream", "kefir",
              "melk", "kaas", "kwark", "boter", "room"],
    "eggs": ["egg", "eieren", "omelet"],
    "honey": ["honey", "honing"],
    "grains": ["wheat", "bread", "pasta", "rice", "oat", "barley", "rye", "flour", "couscous",
               "spelt", "tarwe", "brood", "rijst", "haver", "gerst", "rogge", "meel"],
    "sugar": ["sugar", "syrup", "suiker", "stroop"],
    "starchy_vegetables": ["potato", "corn", "aardappel", "mais"],
    "legumes": ["bean", "lentil", "chickpea", "peas", "soy", "peanut",
                "boon", "bonen", "linzen", "kikkererwt", "erwt", "soja", "pinda"],
    "plant_protein": ["tofu", "tempeh", "seitan", "bean", "lentil", "chickpea", "nut", "seed",
                      "boon", "bonen", "linzen", "kikkererwt", "noot", "noten", "zaad"],
    "vegetables": ["tomato", "carrot", "onion", "spinach", "broccoli", "pepper", "zucchini",
                   "cucumber", "lettuce", "kale", "cabbage", "cauliflower", "leek", "mushroom",
                   "tomaat", "wortel", "ui", "spinazie", "paprika", "courgette", "komkommer",
                   "sla", "boerenkool", "kool", "bloemkool", "prei", "champignon"],
    "seaweed": ["seaweed", "kelp", "nori", "wakame", "zeewier"],
}


@dataclass
class DietDefinition:
    """Static per-diet rules; ``strict_*`` entries only apply for strict profiles."""
    excluded_categories: List[str] = field(default_factory=list)
    required_daily_categories: List[str] = field(default_factory=list)
    strict_required_daily_categories: List[str] = field(default_factory=list)
    strict_daily_protein_min_g: Optional[float] = None


DIET_DEFINITIONS: Dict[str, DietDefinition] = {
    "balanced": DietDefinition(strict_daily_protein_min_g=50),
    "vegetarian": DietDefinition(excluded_categories=["meat", "poultry", "fish"],
                                 strict_daily_protein_min_g=50),
    "vegan": DietDefinition(excluded_categories=["meat", "poultry", "fish", "dairy", "eggs", "honey"],
                            strict_required_daily_categories=["plant_protein"],
                            strict_daily_protein_min_g=60),
    "keto": DietDefinition(excluded_categories=["grains", "sugar", "starchy_vegetables"],
                           strict_daily_protein_min_g=70),
    "mediterranean": DietDefinition(strict_required_daily_categories=["vegetables"],
                                    strict_daily_protein_min_g=80),
    "wahls_paleo_plus": DietDefinition(excluded_categories=["grains", "dairy", "legumes", "sugar"],
                                       required_daily_categories=["seaweed"],
                                       strict_daily_protein_min_g=100),
}


@functools.lru_cache(maxsize=1024)
def _term_pattern(term: str) -> "re.Pattern":
    # Prefix match at a word start: "egg" hits "eggs" but "ei" never hits "protein"
    return re.compile(r"(?<![a-z0-9])" + re.escape(term.lower()))


def term_matches(text: str, term: str) -> bool:
    if not text or not term or not term.strip():
        return False
    return _term_pattern(term.strip()).search(text.lower()) is not None


def meal_text(meal: Meal) -> str:
    """Searchable text: meal name plus ingredient display names."""
    parts = [meal.name or ""]
    parts.extend(ref.display_name or "" for ref in meal.ingredient_refs)
    return " | ".join(parts).lower()


def meal_in_category(meal: Meal, category: str) -> bool:
    text = meal_text(meal)
    return any(term_matches(text, term) for term in CATEGORY_TERMS.get(category, []))


def meal_preference_terms(profile: Profile, slot: str) -> List[str]:
    """The profile's required meal preferences for a slot, ignoring blanks and 'any'."""
    terms = profile.meal_preferences.get(slot) or []
    return [t.strip() for t in terms if t and t.strip() and t.strip().lower() != "any"]


def matches_slot_preferences(meal: Meal, terms: List[str]) -> bool:
    """No preferences means anything goes; otherwise any one term must appear in the meal."""
    if not terms:
        return True
    text = meal_text(meal)
    return any(term_matches(text, term) for term in terms)


# =============================================================================
# RULE DERIVATION
# =============================================================================

def derive_rule_set(profile: Profile) -> DietRuleSet:
    """
    Derive the hard-constraint rule set for a profile.

    Unknown diets fall back to 'balanced'. Allergies and dislikes are both
    hard: a meal naming either is rejected wherever it came from.
    """
    diet_key = profile.diet_key if profile.diet_key in DIET_DEFINITIONS else "balanced"
    definition = DIET_DEFINITIONS[diet_key]
    strict = profile.strictness == "strict"

    excluded_terms: List[str] = []
    for category in definition.excluded_categories:
        excluded_terms.extend(CATEGORY_TERMS.get(category, []))

    required = list(definition.required_daily_categories)
    if strict:
        required.extend(definition.strict_required_daily_categories)

    kcal_min = kcal_max = None
    if profile.calorie_target:
        kcal_max = round(profile.calorie_target * KCAL_UPPER_TOLERANCE)
        if strict:
            kcal_min = round(profile.calorie_target * KCAL_LOWER_TOLERANCE)

    return DietRuleSet(
        diet_key=profile.diet_key,
        allergen_terms=[a.strip().lower() for a in profile.allergies if a and a.strip()],
        disliked_terms=[d.strip().lower() for d in profile.dislikes if d and d.strip()],
        excluded_terms=sorted(set(excluded_terms)),
        required_daily_categories=required,
        daily_kcal_min=kcal_min,
        daily_kcal_max=kcal_max,
        daily_protein_min_g=definition.strict_daily_protein_min_g if strict else None,
    )


# =============================================================================
# NUTRIENTS
# =============================================================================

class FoodNutrientTable:
    """Per-100g kcal/protein lookup from ``food_nutrients``; known codes are cached in memory."""

    def __init__(self, db: PlanDatabase):
        self.db = db
        self._cache: Dict[str, Tuple[float, float]] = {}

    def get_many(self, codes: List[str]) -> Dict[str, Optional[Tuple[float, float]]]:
        missing = [c for c in set(codes) if c not in self._cache]
        if missing:
            placeholders = ",".join("?" * len(missing))
            with self.db.connect() as conn:
                rows = conn.execute(
                    f'SELECT food_code, kcal_per_100g, protein_g_per_100g FROM food_nutrients '
                    f'WHERE food_code IN ({placeholders})',
                    missing
                ).fetchall()
            for r in rows:
                self._cache[r["food_code"]] = (r["kcal_per_100g"] or 0.0, r["protein_g_per_100g"] or 0.0)
        return {c: self._cache.get(c) for c in codes}


# =============================================================================
# VALIDATION
# =============================================================================

class ConstraintValidator(Protocol):
    async def validate(self, plan: MealPlan, rules: DietRuleSet, request: PlanRequest) -> List[Issue]:
        ...


class HardConstraintValidator:
    """Default whole-plan validator for a DietRuleSet."""

    def __init__(self, nutrients: Optional[FoodNutrientTable] = None):
        self.nutrients = nutrients

    async def validate(self, plan: MealPlan, rules: DietRuleSet, request: PlanRequest) -> List[Issue]:
        return self.validate_sync(plan, rules, request)

    def validate_sync(self, plan: MealPlan, rules: DietRuleSet, request: PlanRequest) -> List[Issue]:
        issues: List[Issue] = []
        for plan_day in plan.days:
            for meal in plan_day.meals:
                if meal.is_placeholder():
                    continue
                issues.extend(self._meal_issues(meal, rules, request))
            issues.extend(self._day_issues(plan_day.date, plan_day.meals, rules, request))
        return issues

    def _meal_issues(self, meal: Meal, rules: DietRuleSet, request: PlanRequest) -> List[Issue]:
        issues = []
        text = meal_text(meal)

        if not (meal.name or "").strip():
            issues.append(Issue("MISSING_NAME", "Meal has ingredients but no name", meal.date, meal.slot))
        if len(meal.ingredient_refs) < rules.min_ingredients_per_meal:
            issues.append(Issue(
                "TOO_FEW_INGREDIENTS",
                f"{meal.name}: {len(meal.ingredient_refs)} ingredient(s), need {rules.min_ingredients_per_meal}",
                meal.date, meal.slot
            ))
        for term in rules.allergen_terms:
            if term_matches(text, term):
                issues.append(Issue("ALLERGEN_PRESENT", f"{meal.name} contains '{term}'", meal.date, meal.slot))
        for term in rules.disliked_terms:
            if term_matches(text, term):
                issues.append(Issue("DISLIKED_INGREDIENT", f"{meal.name} contains disliked '{term}'",
                                    meal.date, meal.slot))
        for term in rules.excluded_terms:
            if term_matches(text, term):
                issues.append(Issue("EXCLUDED_INGREDIENT", f"{meal.name} contains excluded '{term}'",
                                    meal.date, meal.slot))
        excluded_codes = set(rules.excluded_food_codes)
        for ref in meal.ingredient_refs:
            if ref.food_code in excluded_codes:
                issues.append(Issue("EXCLUDED_FOOD_CODE", f"{meal.name} uses excluded food {ref.food_code}",
                                    meal.date, meal.slot))

        preferences = meal_preference_terms(request.profile, meal.slot)
        if not matches_slot_preferences(meal, preferences):
            issues.append(Issue("MEAL_PREFERENCE_MISS",
                                f"{meal.name} matches none of {meal.slot} preferences: {', '.join(preferences)}",
                                meal.date, meal.slot))

        if self.nutrients is not None and meal.ingredient_refs:
            known = self.nutrients.get_many([ref.food_code for ref in meal.ingredient_refs])
            for ref in meal.ingredient_refs:
                if known.get(ref.food_code) is None:
                    issues.append(Issue("UNKNOWN_FOOD_CODE",
                                        f"{meal.name}: food code '{ref.food_code}' not in the nutrient table",
                                        meal.date, meal.slot))
        return issues

    def _day_issues(self, day: str, meals: List[Meal], rules: DietRuleSet, request: PlanRequest) -> List[Issue]:
        issues = []
        filled = [m for m in meals if not m.is_placeholder()]

        counts: Dict[str, int] = {}
        for meal in filled:
            key = (meal.base_id or meal.name or meal.id).strip().lower()
            counts[key] = counts.get(key, 0) + 1
        for key, count in counts.items():
            if count > rules.max_same_meal_per_day:
                issues.append(Issue("DUPLICATE_MEAL_IN_DAY", f"'{key}' appears {count} times", day))

        filled_slots = {m.slot for m in filled}
        if not set(request.slots) <= filled_slots:
            return issues

        for category in rules.required_daily_categories:
            if not any(meal_in_category(m, category) for m in filled):
                issues.append(Issue("REQUIRED_CATEGORY_MISSING", f"No {category} on {day}", day))

        totals = self._day_totals(filled)
        if totals is not None:
            kcal, protein = totals
            if rules.daily_kcal_max is not None and kcal > rules.daily_kcal_max:
                issues.append(Issue("DAILY_CALORIES_ABOVE_MAX", f"{kcal:.0f} kcal > {rules.daily_kcal_max}", day))
            if rules.daily_kcal_min is not None and kcal < rules.daily_kcal_min:
                issues.append(Issue("DAILY_CALORIES_BELOW_MIN", f"{kcal:.0f} kcal < {rules.daily_kcal_min}", day))
            if rules.daily_protein_min_g is not None and protein < rules.daily_protein_min_g:
                issues.append(Issue("DAILY_PROTEIN_BELOW_MIN",
                                    f"{protein:.0f} g protein < {rules.daily_protein_min_g}", day))
        return issues

    def _day_totals(self, meals: List[Meal]) -> Optional[Tuple[float, float]]:
        """kcal/protein for a day, or None when any ingredient lacks nutrient data."""
        if self.nutrients is None:
            return None
        refs = [ref for meal in meals for ref in meal.ingredient_refs]
        table = self.nutrients.get_many([ref.food_code for ref in refs])
        kcal = protein = 0.0
        for ref in refs:
            values = table.get(ref.food_code)
            if values is None:
                return None
            kcal += values[0] * ref.quantity_g / 100.0
            protein += values[1] * ref.quantity_g / 100.0
        return kcal, protein


# =============================================================================
# GUARDRAILS (metadata only)
# =============================================================================

@dataclass
class GuardrailsDecision:
    allowed: bool
    content_hash: str
    version: str
    reason_codes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "allowed": self.allowed,
            "content_hash": self.content_hash,
            "version": self.version,
            "reason_codes": list(self.reason_codes),
        }


def rules_content_hash(rules: DietRuleSet) -> str:
    payload = json.dumps(rules.to_dict(), sort_keys=True)
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


class RulesetGuardrailsEvaluator:
    """Hashes the rule set and re-validates the final plan for the run ledger."""

    def __init__(self, validator: ConstraintValidator):
        self.validator = validator

    async def evaluate(self, plan: MealPlan, rules: DietRuleSet, request: PlanRequest,
                       locale: str = "en") -> GuardrailsDecision:
        issues = await self.validator.validate(plan, rules, request)
        return GuardrailsDecision(
            allowed=not issues,
            content_hash=rules_content_hash(rules),
            version=GUARDRAILS_VERSION,
            reason_codes=sorted({issue.code for issue in issues}),
        )
