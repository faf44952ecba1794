"""
Run Ledger and Quota/Concurrency Guard
======================================

Every generation attempt is recorded as a row in ``meal_plan_runs``:
inserted as ``running`` before any work starts, then finished as ``success``
or ``error``. The same rows drive the guard:

- Stale reclaim: ``running`` rows older than 10 minutes become errors (TIMEOUT)
- Quota: at most 10 completed generate/regenerate runs per rolling hour
- Lock: a fresh ``running`` row blocks a second generation (CONFLICT)

The guard fails open: when the ledger itself cannot be read the check is
logged and skipped.
"""

import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from plan_db import PlanDatabase, format_ts, utc_now
from plan_errors import MealPlanError, ErrorCode
from plan_types import RunRecord
from tools.logging_utils import get_logger

logger = get_logger(__name__)

QUOTA_MAX_RUNS_PER_HOUR = 10
QUOTA_WINDOW = timedelta(hours=1)
STALE_RUN_AFTER = timedelta(minutes=10)
ERROR_MESSAGE_MAX_LENGTH = 500
STALE_RUN_MESSAGE = "Run timed out or was abandoned"

GENERATION_RUN_TYPES = ("generate", "regenerate")
RUN_TYPES = GENERATION_RUN_TYPES + ("enrich",)
RUN_STATUSES = ("running", "success", "error")


def truncate_message(message: Optional[str], limit: int = ERROR_MESSAGE_MAX_LENGTH) -> Optional[str]:
    if message is None:
        return None
    return message[:limit]


class RunLedger:
    """Append/update access to ``meal_plan_runs`` with an injectable clock."""

    def __init__(self, db: PlanDatabase, now_fn: Callable[[], datetime] = utc_now):
        self.db = db
        self.now_fn = now_fn

    def start_run(self, user_id: str, run_type: str, model: str = "",
                  meal_plan_id: Optional[str] = None, exclusive: bool = True) -> str:
        """
        Insert a ``running`` row and return its id.

        With ``exclusive`` the active-run check is repeated inside the same
        write transaction, so two processes cannot both start a run.

        Raises:
            MealPlanError(CONFLICT): another fresh run is active
        """
        if run_type not in RUN_TYPES:
            raise ValueError(f"Unknown run type: {run_type}")

        run_id = str(uuid.uuid4())
        now = self.now_fn()
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            if exclusive:
                active = self._find_active(conn, user_id, now - STALE_RUN_AFTER, meal_plan_id)
                if active is not None:
                    raise MealPlanError(
                        ErrorCode.CONFLICT,
                        "A meal plan generation is already running for this user",
                        {"active_run_id": active["id"]}
                    )
            conn.execute(
                '''INSERT INTO meal_plan_runs (id, user_id, meal_plan_id, run_type, model, status,
                   duration_ms, created_at) VALUES (?, ?, ?, ?, ?, 'running', 0, ?)''',
                (run_id, user_id, meal_plan_id, run_type, model, format_ts(now))
            )
        logger.debug(f"🔍 Run {run_id} started ({run_type}) for user {user_id}")
        return run_id

    def finish_run(self, run_id: str, status: str, duration_ms: int,
                   meal_plan_id: Optional[str] = None, error_code: Optional[str] = None,
                   error_message: Optional[str] = None, constraints_in_prompt: Optional[bool] = None,
                   guardrails_content_hash: Optional[str] = None,
                   guardrails_version: Optional[str] = None) -> None:
        """Move a run to its terminal status."""
        if status not in ("success", "error"):
            raise ValueError(f"Terminal status must be success or error, got {status}")

        updates = ['status = ?', 'duration_ms = ?']
        params = [status, int(duration_ms)]

        if meal_plan_id is not None:
            updates.append('meal_plan_id = ?')
            params.append(meal_plan_id)
        if error_code is not None:
            updates.append('error_code = ?')
            params.append(error_code)
        if error_message is not None:
            updates.append('error_message = ?')
            params.append(truncate_message(error_message))
        if constraints_in_prompt is not None:
            updates.append('constraints_in_prompt = ?')
            params.append(int(constraints_in_prompt))
        if guardrails_content_hash is not None:
            updates.append('guardrails_content_hash = ?')
            params.append(guardrails_content_hash)
        if guardrails_version is not None:
            updates.append('guardrails_version = ?')
            params.append(guardrails_version)

        params.append(run_id)
        with self.db.connect() as conn:
            conn.execute(f'UPDATE meal_plan_runs SET {", ".join(updates)} WHERE id = ?', params)

    def log_run(self, user_id: str, run_type: str, status: str, model: str = "",
                meal_plan_id: Optional[str] = None, duration_ms: int = 0,
                error_code: Optional[str] = None, error_message: Optional[str] = None) -> str:
        """Record an already completed run in a single insert."""
        run_id = str(uuid.uuid4())
        with self.db.connect() as conn:
            conn.execute(
                '''INSERT INTO meal_plan_runs (id, user_id, meal_plan_id, run_type, model, status,
                   duration_ms, error_code, error_message, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (run_id, user_id, meal_plan_id, run_type, model, status, int(duration_ms),
                 error_code, truncate_message(error_message), format_ts(self.now_fn()))
            )
        return run_id

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self.db.connect() as conn:
            row = conn.execute('SELECT * FROM meal_plan_runs WHERE id = ?', (run_id,)).fetchone()
        return RunRecord.from_row(row) if row else None

    def list_runs(self, user_id: str, limit: int = 20) -> List[RunRecord]:
        with self.db.connect() as conn:
            rows = conn.execute(
                'SELECT * FROM meal_plan_runs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?',
                (user_id, limit)
            ).fetchall()
        return [RunRecord.from_row(r) for r in rows]

    def reclaim_stale(self, user_id: str) -> int:
        """Mark abandoned ``running`` rows as TIMEOUT errors. Returns the count."""
        cutoff = format_ts(self.now_fn() - STALE_RUN_AFTER)
        with self.db.connect() as conn:
            cursor = conn.execute(
                f'''UPDATE meal_plan_runs SET status = 'error', error_code = ?, error_message = ?
                    WHERE user_id = ? AND status = 'running' AND created_at < ?
                    AND run_type IN ({",".join("?" * len(GENERATION_RUN_TYPES))})''',
                (ErrorCode.TIMEOUT, STALE_RUN_MESSAGE, user_id, cutoff, *GENERATION_RUN_TYPES)
            )
            return cursor.rowcount

    def count_completed_since(self, user_id: str, since: datetime) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                f'''SELECT COUNT(*) AS n FROM meal_plan_runs
                    WHERE user_id = ? AND status IN ('success', 'error') AND created_at >= ?
                    AND run_type IN ({",".join("?" * len(GENERATION_RUN_TYPES))})''',
                (user_id, format_ts(since), *GENERATION_RUN_TYPES)
            ).fetchone()
        return int(row["n"])

    def find_active(self, user_id: str, meal_plan_id: Optional[str] = None) -> Optional[RunRecord]:
        with self.db.connect() as conn:
            row = self._find_active(conn, user_id, self.now_fn() - STALE_RUN_AFTER, meal_plan_id)
        return RunRecord.from_row(row) if row else None

    @staticmethod
    def _find_active(conn: sqlite3.Connection, user_id: str, since: datetime,
                     meal_plan_id: Optional[str]):
        sql = f'''SELECT * FROM meal_plan_runs
                  WHERE user_id = ? AND status = 'running' AND created_at >= ?
                  AND run_type IN ({",".join("?" * len(GENERATION_RUN_TYPES))})'''
        params = [user_id, format_ts(since), *GENERATION_RUN_TYPES]
        if meal_plan_id is not None:
            sql += ' AND (meal_plan_id IS NULL OR meal_plan_id = ?)'
            params.append(meal_plan_id)
        sql += ' ORDER BY created_at DESC LIMIT 1'
        return conn.execute(sql, params).fetchone()


class RunGuard:
    """Admission control in front of every generation."""

    def __init__(self, ledger: RunLedger):
        self.ledger = ledger

    def reclaim_stale_runs(self, user_id: str) -> int:
        try:
            reclaimed = self.ledger.reclaim_stale(user_id)
        except sqlite3.Error as e:
            logger.warning(f"⚠️  Stale run cleanup failed for {user_id}, continuing: {e}")
            return 0
        if reclaimed:
            logger.info(f"🔧 Reclaimed {reclaimed} stale run(s) for user {user_id}")
        return reclaimed

    def assert_within_quota(self, user_id: str) -> None:
        """
        Raises:
            MealPlanError(RATE_LIMIT): 10 or more completed runs in the last hour
        """
        since = self.ledger.now_fn() - QUOTA_WINDOW
        try:
            count = self.ledger.count_completed_since(user_id, since)
        except sqlite3.Error as e:
            logger.warning(f"⚠️  Quota check failed for {user_id}, allowing request: {e}")
            return
        if count >= QUOTA_MAX_RUNS_PER_HOUR:
            raise MealPlanError(
                ErrorCode.RATE_LIMIT,
                f"Too many meal plan generations in the last hour (max {QUOTA_MAX_RUNS_PER_HOUR})",
                {"count": count, "limit": QUOTA_MAX_RUNS_PER_HOUR}
            )

    def assert_no_active_run(self, user_id: str, meal_plan_id: Optional[str] = None) -> None:
        """
        Raises:
            MealPlanError(CONFLICT): a fresh ``running`` row exists
        """
        try:
            active = self.ledger.find_active(user_id, meal_plan_id)
        except sqlite3.Error as e:
            logger.warning(f"⚠️  Active run check failed for {user_id}, allowing request: {e}")
            return
        if active is not None:
            raise MealPlanError(
                ErrorCode.CONFLICT,
                "A meal plan generation is already running for this user",
                {"active_run_id": active.id}
            )

    def check(self, user_id: str, meal_plan_id: Optional[str] = None) -> None:
        """Stale reclaim, then quota, then lock."""
        self.reclaim_stale_runs(user_id)
        self.assert_within_quota(user_id)
        self.assert_no_active_run(user_id, meal_plan_id)
