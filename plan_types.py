"""
Meal Plan Data Model
====================

Dataclasses shared by every stage of plan generation, plus the tagged and
versioned snapshot envelopes used for the JSON columns of ``meal_plans``.

Dict conversion uses snake_case keys throughout; ``from_dict`` helpers
ignore unknown keys so older rows keep loading.
"""

import copy
import json
from dataclasses import dataclass, field, asdict, fields
from datetime import date, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from plan_errors import SnapshotError


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# =============================================================================
# PLAN CONTENT
# =============================================================================

@dataclass
class IngredientRef:
    """One ingredient of a meal, keyed by an external food code."""
    food_code: str
    quantity_g: int
    display_name: Optional[str] = None
    # Pre-scaling quantity, set by the household scaler
    base_quantity_g: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngredientRef":
        return cls(**_known_fields(cls, data))


@dataclass
class Meal:
    """A concrete recipe instance placed in one (date, slot) cell."""
    id: str
    name: str
    slot: str
    date: str
    ingredient_refs: List[IngredientRef] = field(default_factory=list)
    servings: Optional[int] = None
    base_servings: Optional[int] = None
    recipe_source: Optional[str] = None
    base_id: Optional[str] = None

    def is_placeholder(self) -> bool:
        return not (self.name or "").strip() and not self.ingredient_refs

    def has_ingredients(self) -> bool:
        return bool(self.ingredient_refs)

    @property
    def identity(self) -> str:
        """Candidate identity used for repeat-window and per-day uniqueness."""
        return self.base_id or self.id

    @classmethod
    def placeholder(cls, day: str, slot: str) -> "Meal":
        return cls(id=f"placeholder-{day}-{slot}", name="", slot=slot, date=day)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Meal":
        data = dict(data)
        refs = [IngredientRef.from_dict(r) for r in data.pop("ingredient_refs", None) or []]
        return cls(ingredient_refs=refs, **_known_fields(cls, data))


@dataclass
class MealPlanDay:
    date: str
    meals: List[Meal] = field(default_factory=list)

    def meal_for(self, slot: str) -> Optional[Meal]:
        for meal in self.meals:
            if meal.slot == slot:
                return meal
        return None

    def set_meal(self, slot: str, meal: Meal) -> None:
        for i, existing in enumerate(self.meals):
            if existing.slot == slot:
                self.meals[i] = meal
                return
        self.meals.append(meal)


@dataclass
class MealPlan:
    """A generated plan (days x slots) plus its metadata bag."""
    request_id: str
    days: List[MealPlanDay] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def clone(self) -> "MealPlan":
        return copy.deepcopy(self)

    def day(self, day: str) -> Optional[MealPlanDay]:
        for plan_day in self.days:
            if plan_day.date == day:
                return plan_day
        return None

    def iter_meals(self) -> Iterator[Meal]:
        for plan_day in self.days:
            for meal in plan_day.meals:
                yield meal

    def cells(self) -> List[Tuple[str, str]]:
        return [(m.date, m.slot) for m in self.iter_meals()]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MealPlan":
        days = [
            MealPlanDay(date=d["date"], meals=[Meal.from_dict(m) for m in d.get("meals", [])])
            for d in data.get("days", [])
        ]
        return cls(request_id=data.get("request_id", ""), days=days, metadata=dict(data.get("metadata") or {}))


# =============================================================================
# REQUEST & PROFILE
# =============================================================================

@dataclass
class Profile:
    diet_key: str = "balanced"
    allergies: List[str] = field(default_factory=list)
    dislikes: List[str] = field(default_factory=list)
    meal_preferences: Dict[str, List[str]] = field(default_factory=dict)
    calorie_target: Optional[int] = None
    # 'strict' turns diet minimums into hard constraints
    strictness: str = "flexible"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        return cls(**_known_fields(cls, data))


@dataclass
class PlanRequest:
    """Frozen description of what to generate; stored as the request snapshot."""
    date_from: str
    date_to: str
    slots: List[str]
    profile: Profile
    slot_preferences: Dict[str, str] = field(default_factory=dict)
    therapeutic_targets: Optional[Dict[str, Any]] = None

    def dates(self) -> List[str]:
        start = date.fromisoformat(self.date_from)
        end = date.fromisoformat(self.date_to)
        return [(start + timedelta(days=i)).isoformat() for i in range((end - start).days + 1)]

    @property
    def num_days(self) -> int:
        return len(self.dates())

    @property
    def total_slots(self) -> int:
        return self.num_days * len(self.slots)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanRequest":
        data = dict(data)
        profile = Profile.from_dict(data.pop("profile", None) or {})
        return cls(profile=profile, **_known_fields(cls, data))


@dataclass
class DietRuleSet:
    """Hard constraints derived once from a profile."""
    diet_key: str
    allergen_terms: List[str] = field(default_factory=list)
    disliked_terms: List[str] = field(default_factory=list)
    excluded_terms: List[str] = field(default_factory=list)
    excluded_food_codes: List[str] = field(default_factory=list)
    required_daily_categories: List[str] = field(default_factory=list)
    daily_kcal_min: Optional[float] = None
    daily_kcal_max: Optional[float] = None
    daily_protein_min_g: Optional[float] = None
    min_ingredients_per_meal: int = 1
    max_same_meal_per_day: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DietRuleSet":
        return cls(**_known_fields(cls, data))


@dataclass
class Issue:
    code: str
    detail: str
    date: Optional[str] = None
    slot: Optional[str] = None


@dataclass
class RunRecord:
    id: str
    user_id: str
    run_type: str
    status: str
    model: str = ""
    meal_plan_id: Optional[str] = None
    duration_ms: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    constraints_in_prompt: Optional[bool] = None
    guardrails_content_hash: Optional[str] = None
    guardrails_version: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "RunRecord":
        data = dict(row)
        if data.get("constraints_in_prompt") is not None:
            data["constraints_in_prompt"] = bool(data["constraints_in_prompt"])
        return cls(**_known_fields(cls, data))


# =============================================================================
# VERSIONED SNAPSHOTS
# =============================================================================

@dataclass
class RequestSnapshot:
    kind = "request"
    version = 1
    request: PlanRequest

    def data(self) -> Dict[str, Any]:
        return self.request.to_dict()

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "RequestSnapshot":
        return cls(request=PlanRequest.from_dict(data))


@dataclass
class RulesSnapshot:
    kind = "rules"
    version = 1
    rules: DietRuleSet

    def data(self) -> Dict[str, Any]:
        return self.rules.to_dict()

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "RulesSnapshot":
        return cls(rules=DietRuleSet.from_dict(data))


@dataclass
class PlanSnapshot:
    kind = "plan"
    version = 1
    plan: MealPlan

    def data(self) -> Dict[str, Any]:
        return self.plan.to_dict()

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "PlanSnapshot":
        return cls(plan=MealPlan.from_dict(data))


@dataclass
class EnrichmentSnapshot:
    kind = "enrichment"
    version = 1
    enrichment: Dict[str, Any]

    def data(self) -> Dict[str, Any]:
        return self.enrichment

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "EnrichmentSnapshot":
        return cls(enrichment=dict(data))


SNAPSHOT_TYPES = {
    (snapshot_cls.kind, snapshot_cls.version): snapshot_cls
    for snapshot_cls in (RequestSnapshot, RulesSnapshot, PlanSnapshot, EnrichmentSnapshot)
}


def encode_snapshot(snapshot) -> str:
    """Serialize a snapshot as a tagged envelope."""
    return json.dumps({"kind": snapshot.kind, "version": snapshot.version, "data": snapshot.data()})


def decode_snapshot(raw: Optional[str], expected_kind: str):
    """
    Decode a tagged envelope into its snapshot class.

    Returns None for an empty column.

    Raises:
        SnapshotError: malformed JSON, kind mismatch or unknown version
    """
    if not raw:
        return None
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Snapshot is not valid JSON: {e}", {"kind": expected_kind}) from e

    if not isinstance(envelope, dict) or "kind" not in envelope:
        raise SnapshotError("Snapshot is missing its kind tag", {"kind": expected_kind})

    kind = envelope.get("kind")
    version = envelope.get("version")
    if kind != expected_kind:
        raise SnapshotError(f"Expected {expected_kind} snapshot, got {kind}", {"kind": kind})

    snapshot_cls = SNAPSHOT_TYPES.get((kind, version))
    if snapshot_cls is None:
        raise SnapshotError(f"Unsupported {kind} snapshot version {version}", {"kind": kind, "version": version})
    return snapshot_cls.from_data(envelope.get("data") or {})


@dataclass
class MealPlanRecord:
    """A loaded ``meal_plans`` row with decoded snapshots."""
    id: str
    user_id: str
    diet_key: str
    date_from: str
    days: int
    request: PlanRequest
    rules: DietRuleSet
    plan: MealPlan
    status: str = "draft"
    enrichment: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
