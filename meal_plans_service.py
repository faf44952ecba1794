"""
Meal Plans Service
==================

The plan-generation orchestrator. One instance owns a PlannerConfig and the
collaborators built from it; ``with_config()`` returns a re-configured copy.

Create:
    validate input -> guard (stale reclaim, quota, lock) -> idempotency
    -> 'running' run -> attempts (history reuse | DB-first fill + generative
    fallback, structural checks, variety) -> guardrails -> household scaling
    -> persist -> finish run -> post-commit tasks

Regenerate replaces every day, or only ``only_date``, of an existing plan
and writes it back over the same row.

Every failure after the run row exists marks the run as 'error' (message
truncated to 500 chars) before the MealPlanError is raised to the caller.
"""

import math
import random
import sqlite3
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from candidate_source import CandidateSource
from config import PlannerConfig, get_openrouter_api_key, load_planner_config
from db_first_fill import (
    REASON_DB_FIRST_DISABLED,
    REASON_NO_CANDIDATES,
    TIER_AI,
    TIER_DB,
    TIER_HISTORY,
    DbFirstFiller,
    SlotProvenance,
    build_skeleton,
    cell_key,
    tier_for,
)
from diet_rules import (
    ConstraintValidator,
    FoodNutrientTable,
    GuardrailsDecision,
    HardConstraintValidator,
    RulesetGuardrailsEvaluator,
    derive_rule_set,
)
from enrichment import EnrichmentService, LLMEnrichmentService
from generative_fallback import GenerativeFallback, assert_no_placeholders
from history_reuse import try_reuse_from_history
from household import resolve_household, scale_plan_to_household, unscale_plan
from llm_client import LLMClient
from llm_planner import GenerativePlanner, LLMMealPlanner
from meal_history import MealHistoryStore
from plan_db import PlanDatabase, utc_now
from plan_errors import ErrorCode, MealPlanError, TranslationQuotaError
from plan_types import (
    Meal,
    MealPlan,
    MealPlanRecord,
    PlanRequest,
    PlanSnapshot,
    RequestSnapshot,
    RulesSnapshot,
    DietRuleSet,
    decode_snapshot,
    encode_snapshot,
)
from post_commit import PostCommitTasks
from profile_provider import ProfileProvider, SqliteProfileProvider
from run_ledger import RunGuard, RunLedger
from translation import LLMTranslationService, TranslationService
from variety import (
    Attempt,
    AttemptOutcome,
    Fail,
    OutcomeKind,
    build_variety_scorecard,
    classify_error,
    next_state,
    targets_met,
    variety_hints,
)
from tools.logging_utils import elapsed_ms, get_logger

logger = get_logger(__name__)

REFERENCE_DAYS = 7
MODE_DB_FIRST = "db_first"
MODE_HISTORY_REUSE = "history_reuse"


# =============================================================================
# INPUTS
# =============================================================================

@dataclass
class CreatePlanInput:
    date_from: str
    days: int = 7
    calorie_target: Optional[int] = None


@dataclass
class RegeneratePlanInput:
    plan_id: str
    # Regenerate a single day; None regenerates the whole plan
    only_date: Optional[str] = None


def _validation_error(message: str, **details) -> MealPlanError:
    return MealPlanError(ErrorCode.VALIDATION_ERROR, message, details)


def _parse_date(value: Any, field_name: str) -> date:
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise _validation_error(f"{field_name} must be an ISO date (YYYY-MM-DD)", **{field_name: value})


def validate_create_input(data: CreatePlanInput, max_plan_days: int) -> None:
    """
    Raises:
        MealPlanError(VALIDATION_ERROR): malformed request
    """
    _parse_date(data.date_from, "date_from")
    if isinstance(data.days, bool) or not isinstance(data.days, int) or not 1 <= data.days <= max_plan_days:
        raise _validation_error(f"days must be between 1 and {max_plan_days}", days=data.days)
    if data.calorie_target is not None:
        if isinstance(data.calorie_target, bool) or not isinstance(data.calorie_target, int) \
                or data.calorie_target <= 0:
            raise _validation_error("calorie_target must be a positive integer", calorie_target=data.calorie_target)


# =============================================================================
# GENERATION STATE
# =============================================================================

@dataclass
class GenerationContext:
    user_id: str
    plan_id: str
    request: PlanRequest
    rules: DietRuleSet
    cfg: PlannerConfig
    locale: str
    base_plan: MealPlan
    allow_history_reuse: bool = True
    # slot_provenance entries of cells that are kept as-is
    kept_provenance: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def diet_key(self) -> str:
        return self.request.profile.diet_key


@dataclass
class BuiltPlan:
    plan: MealPlan
    mode: str
    used_history_ids: List[str] = field(default_factory=list)
    constraints_in_prompt: bool = False


@dataclass
class GenerationResult:
    plan: MealPlan
    mode: str
    attempts: int
    shortfall: bool = False
    retry_reason: Optional[str] = None
    used_history_ids: List[str] = field(default_factory=list)
    constraints_in_prompt: bool = False


# =============================================================================
# SERVICE
# =============================================================================

class MealPlansService:
    """
    Usage:
        cfg = load_planner_config()
        service = MealPlansService(cfg, planner=my_planner)
        plan_id = await service.create_plan_for_user("user-1", CreatePlanInput("2026-01-05", 7))

    Collaborators left as None get SQLite-backed defaults; the planner,
    enrichment and translation services have no default here (see
    ``build_service`` for the LLM-wired instance).
    """

    def __init__(self, cfg: PlannerConfig, db: Optional[PlanDatabase] = None,
                 profile_provider: Optional[ProfileProvider] = None,
                 validator: Optional[ConstraintValidator] = None,
                 planner: Optional[GenerativePlanner] = None,
                 enrichment: Optional[EnrichmentService] = None,
                 translation: Optional[TranslationService] = None,
                 now_fn: Callable[[], datetime] = utc_now,
                 rng: Optional[random.Random] = None):
        self.cfg = cfg
        self._injected = {
            "profile_provider": profile_provider,
            "validator": validator,
            "planner": planner,
            "enrichment": enrichment,
            "translation": translation,
            "now_fn": now_fn,
            "rng": rng,
        }
        self.db = db or PlanDatabase(cfg.db_path)
        self.now_fn = now_fn
        self.rng = rng or random.Random()

        self.ledger = RunLedger(self.db, now_fn)
        self.guard = RunGuard(self.ledger)
        self.history_store = MealHistoryStore(self.db, now_fn)
        self.profiles = profile_provider or SqliteProfileProvider(self.db)
        self.validator = validator or HardConstraintValidator(FoodNutrientTable(self.db))
        self.guardrails = RulesetGuardrailsEvaluator(self.validator)
        self.planner = planner
        self.enrichment = enrichment
        self.translation = translation
        self.post_commit = PostCommitTasks(self.db, self.ledger, self.history_store, enrichment)

    def with_config(self, cfg: PlannerConfig) -> "MealPlansService":
        """Same collaborators, different configuration."""
        db = self.db if cfg.db_path == self.cfg.db_path else None
        return MealPlansService(cfg, db=db, **self._injected)

    @property
    def model_name(self) -> str:
        return getattr(self.planner, "model", "") or ""

    # =========================================================================
    # Public operations
    # =========================================================================

    async def create_plan_for_user(self, user_id: str, data: CreatePlanInput) -> str:
        """
        Generate and persist a plan.

        Returns:
            The plan id (an existing one for an identical request)

        Raises:
            MealPlanError: RATE_LIMIT, CONFLICT, VALIDATION_ERROR, INSUFFICIENT_CANDIDATES,
                AI_BUDGET_EXCEEDED, DB_COVERAGE_TOO_LOW, AGENT_ERROR, DB_ERROR
        """
        validate_create_input(data, self.cfg.max_plan_days)
        self.guard.check(user_id)

        profile = self.profiles.load_profile(user_id)
        if data.calorie_target:
            profile = replace(profile, calorie_target=data.calorie_target)
        cfg = self.cfg.for_diet(profile.diet_key)

        start_date = date.fromisoformat(data.date_from)
        request = PlanRequest(
            date_from=start_date.isoformat(),
            date_to=(start_date + timedelta(days=data.days - 1)).isoformat(),
            slots=list(cfg.slots),
            profile=profile,
            slot_preferences=self.profiles.load_slot_styles(user_id),
        )

        existing_id = self.db.find_plan_id(user_id, request.date_from, data.days, profile.diet_key)
        if existing_id:
            self.ledger.log_run(user_id, "generate", "success", model=self.model_name,
                                meal_plan_id=existing_id, duration_ms=0)
            logger.info(f"✅ Returning existing plan {existing_id} for {user_id} (idempotent)")
            return existing_id

        start = time.time()
        run_id = self.ledger.start_run(user_id, "generate", model=self.model_name)
        logger.info(f"🚀 Generating {data.days}-day plan for {user_id} ({profile.diet_key})")
        try:
            locale = self.profiles.get_language(user_id)
            rules = derive_rule_set(profile)
            plan_id = str(uuid.uuid4())
            ctx = GenerationContext(
                user_id=user_id,
                plan_id=plan_id,
                request=request,
                rules=rules,
                cfg=cfg,
                locale=locale,
                base_plan=build_skeleton(request, plan_id),
            )
            result = await self._generate(ctx)
            plan, decision = await self._finalize(ctx, result)
            self.db.insert_plan(
                plan_id, user_id, profile.diet_key, request.date_from, data.days,
                encode_snapshot(RequestSnapshot(request)),
                encode_snapshot(RulesSnapshot(rules)),
                encode_snapshot(PlanSnapshot(plan)),
            )
        except BaseException as e:
            # Cancellation still closes the run; it propagates unchanged
            error = self._fail_run(run_id, start, e)
            if error is e or not isinstance(e, Exception):
                raise
            raise error from e

        self._succeed_run(run_id, start, plan_id, result, decision)
        await self.post_commit.run(user_id, plan_id, plan, profile.diet_key, locale, result.used_history_ids)
        return plan_id

    async def regenerate_plan_for_user(self, user_id: str, data: RegeneratePlanInput) -> str:
        """
        Regenerate a whole plan or one day of it, keeping the plan id.

        Raises:
            MealPlanError: NOT_FOUND, VALIDATION_ERROR, plus everything create raises
        """
        if not data.plan_id:
            raise _validation_error("plan_id is required")
        self.guard.check(user_id, data.plan_id)

        record = self._load_record(user_id, data.plan_id)
        request, rules = record.request, record.rules
        if data.only_date is not None:
            only_date = _parse_date(data.only_date, "only_date").isoformat()
            if only_date not in request.dates():
                raise _validation_error("only_date is outside the plan", only_date=only_date,
                                        date_from=request.date_from, date_to=request.date_to)
        else:
            only_date = None
        cfg = self.cfg.for_diet(request.profile.diet_key)

        start = time.time()
        run_id = self.ledger.start_run(user_id, "regenerate", model=self.model_name, meal_plan_id=data.plan_id)
        logger.info(f"🚀 Regenerating plan {data.plan_id}" + (f" day {only_date}" if only_date else ""))
        try:
            locale = self.profiles.get_language(user_id)
            if only_date:
                base_plan = unscale_plan(record.plan)
                base_plan.request_id = data.plan_id
                base_plan.day(only_date).meals = [Meal.placeholder(only_date, slot) for slot in request.slots]
                kept = {
                    key: entry for key, entry in (record.plan.metadata.get("slot_provenance") or {}).items()
                    if not key.startswith(f"{only_date}-")
                }
                ctx = GenerationContext(user_id, data.plan_id, request, rules, cfg, locale, base_plan,
                                        allow_history_reuse=False, kept_provenance=kept)
            else:
                ctx = GenerationContext(user_id, data.plan_id, request, rules, cfg, locale,
                                        build_skeleton(request, data.plan_id))
            result = await self._generate(ctx)
            plan, decision = await self._finalize(ctx, result)
            self.db.update_plan(data.plan_id, plan_snapshot=encode_snapshot(PlanSnapshot(plan)),
                                clear_enrichment=True)
        except BaseException as e:
            # Cancellation still closes the run; it propagates unchanged
            error = self._fail_run(run_id, start, e)
            if error is e or not isinstance(e, Exception):
                raise
            raise error from e

        self._succeed_run(run_id, start, data.plan_id, result, decision)
        await self.post_commit.run(user_id, data.plan_id, plan, request.profile.diet_key, locale,
                                   result.used_history_ids)
        return data.plan_id

    async def load_plan_for_user(self, user_id: str, plan_id: str, translate: bool = False) -> MealPlanRecord:
        """
        Load a plan; with ``translate`` the meals (and tips) come back in the
        user's language. Translation problems never fail the load.

        Raises:
            MealPlanError(NOT_FOUND): no such plan for this user
        """
        record = self._load_record(user_id, plan_id)
        if not translate or self.translation is None:
            return record

        language = self.profiles.get_language(user_id)
        if language == record.plan.metadata.get("locale", language):
            return record
        try:
            record.plan = await self.translation.translate_meals(record.plan, language)
            if record.enrichment:
                record.enrichment = await self.translation.translate_enrichment(record.enrichment, language)
        except TranslationQuotaError:
            logger.debug(f"🔍 Translation quota reached, returning plan {plan_id} untranslated")
        except Exception as e:
            logger.warning(f"⚠️  Translation failed for plan {plan_id}, returning untranslated: {e}")
        return record

    def list_plans_for_user(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        return self.db.list_plan_rows(user_id, limit)

    def delete_plan_for_user(self, user_id: str, plan_id: str) -> None:
        if not self.db.delete_plan(user_id, plan_id):
            raise MealPlanError(ErrorCode.NOT_FOUND, "Meal plan not found", {"plan_id": plan_id})
        logger.info(f"✅ Deleted plan {plan_id} for {user_id}")

    def rate_meal_for_user(self, user_id: str, meal_id: str, rating: int) -> float:
        """Rate a history meal 1-5; returns its new combined score."""
        return self.history_store.rate_meal(user_id, meal_id, rating)

    # =========================================================================
    # Attempt loop
    # =========================================================================

    async def _generate(self, ctx: GenerationContext) -> GenerationResult:
        state = Attempt(1)
        hints = None
        built = None
        attempts = 0
        retry_reason = None

        while isinstance(state, Attempt):
            attempts = state.number
            retry_reason = state.retry_reason or retry_reason
            try:
                built = await self._build_plan(ctx, state, hints)
            except MealPlanError as e:
                logger.warning(f"⚠️  Attempt {state.number} failed: {e}")
                outcome = AttemptOutcome(classify_error(e), error=e)
            else:
                scorecard = build_variety_scorecard(built.plan, ctx.cfg.variety)
                built.plan.metadata["variety_scorecard"] = scorecard
                if targets_met(scorecard):
                    outcome = AttemptOutcome(OutcomeKind.SUCCESS, plan=built.plan)
                else:
                    hints = variety_hints(scorecard)
                    outcome = AttemptOutcome(OutcomeKind.VARIETY_UNMET, plan=built.plan)

            state = next_state(state, outcome)
            if isinstance(state, Attempt):
                logger.info(f"🔧 Retrying generation (attempt {state.number}, {state.retry_reason})")

        if isinstance(state, Fail):
            raise state.error

        plan = state.plan
        plan.metadata["variety_scorecard"]["shortfall"] = state.shortfall
        plan.metadata["generator"] = {"attempts": attempts, "retry_reason": retry_reason, "mode": built.mode}
        return GenerationResult(
            plan=plan,
            mode=built.mode,
            attempts=attempts,
            shortfall=state.shortfall,
            retry_reason=retry_reason,
            used_history_ids=built.used_history_ids,
            constraints_in_prompt=built.constraints_in_prompt,
        )

    async def _build_plan(self, ctx: GenerationContext, attempt: Attempt,
                          hints: Optional[Dict[str, Any]]) -> BuiltPlan:
        gen = ctx.cfg.generator
        plan = ctx.base_plan.clone()
        built = BuiltPlan(plan=plan, mode=MODE_DB_FIRST)

        if ctx.allow_history_reuse and not attempt.is_retry and gen.history_reuse.enabled:
            reuse = await try_reuse_from_history(
                ctx.user_id, ctx.request, ctx.diet_key, plan, self.history_store,
                self.validator, ctx.rules, gen.history_reuse,
            )
            if reuse.can_reuse:
                plan = reuse.plan
                built.plan = plan
                built.mode = MODE_HISTORY_REUSE
                built.used_history_ids = reuse.used_meal_ids

        slot_provenance: Dict[str, SlotProvenance] = {}
        fallback_reasons: Counter = Counter()
        if any(meal.is_placeholder() for meal in plan.iter_meals()):
            if gen.use_db_first:
                source = CandidateSource(self.db, self.history_store, gen)
                candidates = await source.load_prefilled_by_slot(ctx.user_id, ctx.request, ctx.diet_key)
                empty_reason = REASON_NO_CANDIDATES
            else:
                candidates, empty_reason = {}, REASON_DB_FIRST_DISABLED

            filler = DbFirstFiller(self.validator, gen.repeat_window_days, self.rng)
            fill = await filler.fill(plan, ctx.request, ctx.rules, candidates,
                                     attempt=attempt.number, empty_pool_reason=empty_reason)
            fallback = await GenerativeFallback(self.planner, self.validator).run(
                fill, ctx.request, ctx.rules,
                locale=ctx.locale,
                fill_mode=gen.ai_fill_mode,
                variety_hints=hints,
                full_plan=attempt.retry_reason == OutcomeKind.TRANSIENT_ERROR.value,
            )
            plan = fallback.plan
            built.plan = plan
            built.constraints_in_prompt = fallback.constraints_in_prompt
            slot_provenance = fallback.slot_provenance
            fallback_reasons = fallback.fallback_reasons

        assert_no_placeholders(plan, ctx.request)
        self._attach_metadata(ctx, plan, slot_provenance, fallback_reasons)
        self._check_ai_budget(ctx, plan)
        self._check_db_coverage(ctx, plan)
        return built

    # =========================================================================
    # Metadata & structural checks
    # =========================================================================

    def _attach_metadata(self, ctx: GenerationContext, plan: MealPlan,
                         slot_provenance: Dict[str, SlotProvenance], fallback_reasons: Counter) -> None:
        provenance: Dict[str, Dict[str, Any]] = {}
        for meal in plan.iter_meals():
            key = cell_key(meal.date, meal.slot)
            if key in ctx.kept_provenance:
                provenance[key] = dict(ctx.kept_provenance[key])
            elif key in slot_provenance:
                provenance[key] = slot_provenance[key].to_dict()
            else:
                provenance[key] = SlotProvenance(tier_for(meal)).to_dict()

        counts = Counter(entry["source"] for entry in provenance.values())
        total = ctx.request.total_slots
        reused = counts[TIER_DB] + counts[TIER_HISTORY]
        plan.metadata.update({
            "generated_at": self.now_fn().isoformat(),
            "diet_key": ctx.diet_key,
            "locale": ctx.locale,
            "total_days": ctx.request.num_days,
            "total_meals": total,
            "provenance": {"reused_recipe_count": reused, "generated_recipe_count": counts[TIER_AI]},
            "slot_provenance": provenance,
            "db_coverage": {
                "db_slots": counts[TIER_DB],
                "history_slots": counts[TIER_HISTORY],
                "ai_slots": counts[TIER_AI],
                "total_slots": total,
                "percent": round(counts[TIER_DB] / total * 100) if total else 0,
            },
            "fallback_reasons": dict(fallback_reasons),
        })
        plan.metadata.pop("db_coverage_below_target", None)

    def _check_ai_budget(self, ctx: GenerationContext, plan: MealPlan) -> None:
        """
        Raises:
            MealPlanError(AI_BUDGET_EXCEEDED): more AI slots than the prorated weekly maximum
        """
        max_per_week = ctx.cfg.generator.max_ai_generated_slots_per_week
        if max_per_week is None:
            return
        limit = math.ceil(max_per_week * ctx.request.num_days / REFERENCE_DAYS)
        generated = plan.metadata["db_coverage"]["ai_slots"]
        if generated > limit:
            raise MealPlanError(
                ErrorCode.AI_BUDGET_EXCEEDED,
                "Too many AI-generated meals for this plan",
                {"generated": generated, "max_allowed": limit},
            )

    def _check_db_coverage(self, ctx: GenerationContext, plan: MealPlan) -> None:
        """
        Raises:
            MealPlanError(DB_COVERAGE_TOO_LOW): too few database-backed slots and no fallback allowed
        """
        gen = ctx.cfg.generator
        ratio = gen.min_db_recipe_coverage_ratio
        total = ctx.request.total_slots
        if ratio <= 0 or not total:
            return
        coverage = plan.metadata["db_coverage"]
        reused = plan.metadata["provenance"]["reused_recipe_count"]
        required = math.ceil(total * ratio)
        if reused >= required:
            return
        if gen.allow_db_coverage_fallback:
            plan.metadata["db_coverage_below_target"] = True
            return
        raise MealPlanError(
            ErrorCode.DB_COVERAGE_TOO_LOW,
            "Too few meals from the recipe database",
            {"db_slots": coverage["db_slots"], "history_slots": coverage["history_slots"],
             "reused_slots": reused, "total_slots": total, "required_ratio": ratio,
             "actual_ratio": round(reused / total, 3)},
        )

    async def _finalize(self, ctx: GenerationContext, result: GenerationResult):
        """Guardrails metadata on the unscaled plan, then household scaling."""
        plan = result.plan
        plan.request_id = ctx.plan_id
        decision = await self.guardrails.evaluate(plan, ctx.rules, ctx.request, ctx.locale)
        plan.metadata["guardrails"] = decision.to_dict()
        if not decision.allowed:
            logger.warning(f"⚠️  Guardrails flagged plan {ctx.plan_id}: {decision.reason_codes}")

        size, policy = resolve_household(self.db, ctx.user_id)
        plan = scale_plan_to_household(plan, size, policy)
        return plan, decision

    # =========================================================================
    # Run bookkeeping
    # =========================================================================

    @staticmethod
    def _classify(error: BaseException) -> MealPlanError:
        if isinstance(error, MealPlanError):
            return error
        if isinstance(error, sqlite3.Error):
            return MealPlanError(ErrorCode.DB_ERROR, f"Database error: {error}")
        if isinstance(error, ValueError):
            return MealPlanError(ErrorCode.VALIDATION_ERROR, str(error))
        return MealPlanError(ErrorCode.AGENT_ERROR, str(error) or type(error).__name__)

    def _fail_run(self, run_id: str, start: float, error: BaseException) -> MealPlanError:
        classified = self._classify(error)
        duration_ms = elapsed_ms(start)
        logger.error(f"❌ Run {run_id} failed: {classified}")
        try:
            self.ledger.finish_run(run_id, "error", duration_ms,
                                   error_code=classified.code, error_message=classified.message)
        except sqlite3.Error as e:
            logger.error(f"❌ Could not mark run {run_id} as failed: {e}")
        return classified

    def _succeed_run(self, run_id: str, start: float, plan_id: str, result: GenerationResult,
                     decision: GuardrailsDecision) -> None:
        duration_ms = elapsed_ms(start)
        self.ledger.finish_run(
            run_id, "success", duration_ms,
            meal_plan_id=plan_id,
            constraints_in_prompt=result.constraints_in_prompt,
            guardrails_content_hash=decision.content_hash,
            guardrails_version=decision.version,
        )
        coverage = result.plan.metadata.get("db_coverage", {})
        logger.info(
            f"✅ Plan {plan_id} ready in {duration_ms}ms ({result.mode}, {result.attempts} attempt(s), "
            f"db={coverage.get('db_slots')} history={coverage.get('history_slots')} ai={coverage.get('ai_slots')})"
        )

    def _load_record(self, user_id: str, plan_id: str) -> MealPlanRecord:
        row = self.db.get_plan_row(user_id, plan_id)
        if row is None:
            raise MealPlanError(ErrorCode.NOT_FOUND, "Meal plan not found", {"plan_id": plan_id})
        enrichment = decode_snapshot(row.get("enrichment_snapshot"), "enrichment")
        return MealPlanRecord(
            id=row["id"],
            user_id=row["user_id"],
            diet_key=row["diet_key"],
            date_from=row["date_from"],
            days=row["days"],
            request=decode_snapshot(row["request_snapshot"], "request").request,
            rules=decode_snapshot(row["rules_snapshot"], "rules").rules,
            plan=decode_snapshot(row["plan_snapshot"], "plan").plan,
            status=row.get("status") or "draft",
            enrichment=enrichment.enrichment if enrichment else None,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


def build_service(cfg: Optional[PlannerConfig] = None) -> MealPlansService:
    """Service wired with the OpenRouter planner, enrichment and translation."""
    cfg = cfg or load_planner_config()
    api_key = get_openrouter_api_key()
    if not api_key:
        logger.warning("⚠️  OPENROUTER_API_KEY not set: generative fallback, enrichment and translation disabled")
        return MealPlansService(cfg)

    client = LLMClient(cfg.llm, api_key)
    return MealPlansService(
        cfg,
        planner=LLMMealPlanner(client),
        enrichment=LLMEnrichmentService(client),
        translation=LLMTranslationService(client),
    )
