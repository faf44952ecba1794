"""
Plan Enrichment (LLM)
=====================

Best-effort cooking tips and prep-time estimates for a persisted plan.
Runs as a post-commit task; its result is stored as the enrichment snapshot
and a failure never affects the plan itself.
"""

from dataclasses import dataclass
from typing import Any, Dict, Protocol

from db_first_fill import cell_key
from llm_client import LLMClient
from plan_types import MealPlan
from prompts import ENRICHMENT_SYSTEM_PROMPT, build_enrichment_prompt
from tools.logging_utils import get_logger

logger = get_logger(__name__)


@dataclass
class EnrichmentOptions:
    max_tips: int = 3


class EnrichmentService(Protocol):
    model: str

    async def enrich(self, plan: MealPlan, options: EnrichmentOptions, locale: str) -> Dict[str, Any]:
        ...


def _schema_enrichment() -> dict:
    """Schema for LLM to return per-meal tips."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "meal_plan_enrichment",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "meals": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "date": {"type": "string"},
                                "slot": {"type": "string"},
                                "tips": {"type": "array", "items": {"type": "string"}},
                                "prep_time_minutes": {"type": "integer"},
                            },
                            "required": ["date", "slot", "tips", "prep_time_minutes"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": ["meals"],
                "additionalProperties": False,
            },
        },
    }


class LLMEnrichmentService:
    def __init__(self, client: LLMClient, model: str = None):
        self.client = client
        self.model = model or client.settings.chat_model

    async def enrich(self, plan: MealPlan, options: EnrichmentOptions, locale: str = "en") -> Dict[str, Any]:
        """
        Returns:
            {"locale": ..., "model": ..., "meals": {"<date>-<slot>": {"tips": [...], "prep_time_minutes": n}}}
        """
        prompt = build_enrichment_prompt(plan, locale, options.max_tips)
        data = await self.client.call_json(
            prompt,
            system_prompt=ENRICHMENT_SYSTEM_PROMPT,
            model=self.model,
            response_format=_schema_enrichment(),
        )

        cells = set(plan.cells())
        meals: Dict[str, Dict[str, Any]] = {}
        for raw in data.get("meals") or []:
            key = (str(raw.get("date") or ""), str(raw.get("slot") or ""))
            if key not in cells:
                continue
            tips = [str(t).strip() for t in raw.get("tips") or [] if str(t).strip()][:options.max_tips]
            prep = raw.get("prep_time_minutes")
            meals[cell_key(*key)] = {
                "tips": tips,
                "prep_time_minutes": prep if isinstance(prep, int) and prep > 0 else None,
            }

        logger.info(f"✅ Enriched {len(meals)}/{len(cells)} meal(s)")
        return {"locale": locale, "model": self.model, "meals": meals}
