"""
Translation (LLM, read path only)
=================================

Translates meal names and enrichment tips when a plan is loaded in a
language other than the one it was generated in. Plans are never rewritten;
the caller gets translated copies.
"""

from typing import Any, Dict, Protocol

from llm_client import LLMClient, LLMQuotaError
from plan_errors import TranslationQuotaError
from plan_types import MealPlan
from prompts import TRANSLATION_SYSTEM_PROMPT, build_translation_prompt
from tools.logging_utils import get_logger

logger = get_logger(__name__)


class TranslationService(Protocol):
    async def translate_meals(self, plan: MealPlan, target_language: str) -> MealPlan:
        ...

    async def translate_enrichment(self, enrichment: Dict[str, Any], target_language: str) -> Dict[str, Any]:
        ...


class LLMTranslationService:
    def __init__(self, client: LLMClient):
        self.client = client

    async def _translate(self, texts: Dict[str, str], target_language: str) -> Dict[str, str]:
        if not texts:
            return {}
        try:
            data = await self.client.call_json(
                build_translation_prompt(texts, target_language),
                system_prompt=TRANSLATION_SYSTEM_PROMPT,
                temperature=0.0,
            )
        except LLMQuotaError as e:
            raise TranslationQuotaError(str(e)) from e
        translations = data.get("translations") or {}
        return {key: str(translations.get(key) or text) for key, text in texts.items()}

    async def translate_meals(self, plan: MealPlan, target_language: str) -> MealPlan:
        """
        Raises:
            TranslationQuotaError: the provider refused for quota reasons
        """
        texts = {meal.id: meal.name for meal in plan.iter_meals() if meal.name}
        translated = await self._translate(texts, target_language)
        result = plan.clone()
        for meal in result.iter_meals():
            meal.name = translated.get(meal.id, meal.name)
        return result

    async def translate_enrichment(self, enrichment: Dict[str, Any], target_language: str) -> Dict[str, Any]:
        texts = {}
        for cell, entry in (enrichment.get("meals") or {}).items():
            for i, tip in enumerate(entry.get("tips") or []):
                texts[f"{cell}|{i}"] = tip
        translated = await self._translate(texts, target_language)

        result = dict(enrichment)
        result["meals"] = {
            cell: {**entry, "tips": [translated.get(f"{cell}|{i}", tip) for i, tip in enumerate(entry.get("tips") or [])]}
            for cell, entry in (enrichment.get("meals") or {}).items()
        }
        result["locale"] = target_language
        return result
