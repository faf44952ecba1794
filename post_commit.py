"""
Post-Commit Tasks
=================

Work that runs only after a plan row is durable:

1. history extraction (remember the plan's meals for future reuse)
2. usage recording (for meals reused from history)
3. enrichment (LLM tips, stored as the enrichment snapshot, logged as an
   'enrich' run)

Each task is contained on its own: a failure is logged and reported in the
summary, never raised, and never touches the persisted plan.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from enrichment import EnrichmentOptions, EnrichmentService
from meal_history import MealHistoryStore
from plan_db import PlanDatabase
from plan_errors import ErrorCode
from plan_types import EnrichmentSnapshot, MealPlan, encode_snapshot
from run_ledger import RunLedger
from tools.logging_utils import elapsed_ms, get_logger, log_with_emoji

logger = get_logger(__name__)


@dataclass
class PostCommitReport:
    history_inserted: int = 0
    usage_recorded: int = 0
    enriched: bool = False
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class PostCommitTasks:
    def __init__(self, db: PlanDatabase, ledger: RunLedger, history_store: MealHistoryStore,
                 enrichment: Optional[EnrichmentService] = None):
        self.db = db
        self.ledger = ledger
        self.history_store = history_store
        self.enrichment = enrichment

    async def run(self, user_id: str, plan_id: str, plan: MealPlan, diet_key: str,
                  locale: str = "en", used_history_ids: Optional[List[str]] = None) -> PostCommitReport:
        report = PostCommitReport()

        try:
            report.history_inserted = self.history_store.extract_and_store(user_id, plan, diet_key)
        except Exception as e:
            logger.warning(f"⚠️  History extraction failed for plan {plan_id}: {e}")
            report.failures["history"] = str(e)

        for meal_id in used_history_ids or []:
            try:
                self.history_store.record_usage(user_id, meal_id)
                report.usage_recorded += 1
            except Exception as e:
                logger.warning(f"⚠️  Usage recording failed for {meal_id}: {e}")
                report.failures[f"usage:{meal_id}"] = str(e)

        if self.enrichment is not None:
            report.enriched = await self._enrich(user_id, plan_id, plan, locale, report)

        status = "✅" if report.ok else "⚠️"
        log_with_emoji(
            logger,
            f"{status} Post-commit for plan {plan_id}: history +{report.history_inserted}, "
            f"usage {report.usage_recorded}, enriched={report.enriched}, failures={len(report.failures)}"
        )
        return report

    async def _enrich(self, user_id: str, plan_id: str, plan: MealPlan, locale: str,
                      report: PostCommitReport) -> bool:
        model = getattr(self.enrichment, "model", "")
        start = time.time()
        try:
            enrichment = await self.enrichment.enrich(plan, EnrichmentOptions(), locale)
            self.db.update_plan(plan_id, enrichment_snapshot=encode_snapshot(EnrichmentSnapshot(enrichment)))
        except Exception as e:
            duration_ms = elapsed_ms(start)
            logger.warning(f"⚠️  Enrichment failed for plan {plan_id}: {e}")
            report.failures["enrich"] = str(e)
            try:
                self.ledger.log_run(user_id, "enrich", "error", model=model, meal_plan_id=plan_id,
                                    duration_ms=duration_ms, error_code=ErrorCode.AGENT_ERROR,
                                    error_message=str(e))
            except Exception as log_error:
                logger.warning(f"⚠️  Could not record failed enrich run: {log_error}")
            return False

        duration_ms = elapsed_ms(start)
        try:
            self.ledger.log_run(user_id, "enrich", "success", model=model, meal_plan_id=plan_id,
                                duration_ms=duration_ms)
        except Exception as e:
            logger.warning(f"⚠️  Could not record enrich run: {e}")
        return True
