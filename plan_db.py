"""
Meal Plan SQLite Storage
========================

Owns the database file, the schema and the ``meal_plans`` table.

Other components issue their own queries against the tables they own
(runs in run_ledger, history in meal_history, candidate lookups in
candidate_source) through ``PlanDatabase.connect()``.

Timestamps are stored as UTC strings (``YYYY-MM-DD HH:MM:SS.ffffff``) so
that lexical comparison matches chronological order.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from tools.logging_utils import get_logger

logger = get_logger(__name__)

TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(TS_FORMAT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS meal_plans (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        diet_key TEXT NOT NULL,
        date_from TEXT NOT NULL,
        days INTEGER NOT NULL,
        request_snapshot TEXT NOT NULL,
        rules_snapshot TEXT NOT NULL,
        plan_snapshot TEXT NOT NULL,
        enrichment_snapshot TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_meal_plans_key ON meal_plans(user_id, date_from, days, diet_key)',
    '''
    CREATE TABLE IF NOT EXISTS meal_plan_runs (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        meal_plan_id TEXT,
        run_type TEXT NOT NULL,
        model TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        error_code TEXT,
        error_message TEXT,
        constraints_in_prompt INTEGER,
        guardrails_content_hash TEXT,
        guardrails_version TEXT,
        created_at TEXT NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_runs_user_status ON meal_plan_runs(user_id, status, created_at)',
    '''
    CREATE TABLE IF NOT EXISTS custom_meals (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        meal_slot TEXT NOT NULL,
        meal_data TEXT NOT NULL DEFAULT '{}',
        consumption_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS recipe_ingredients (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        recipe_id TEXT NOT NULL,
        food_code TEXT,
        name TEXT,
        quantity REAL,
        unit TEXT
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_recipe_ingredients_recipe ON recipe_ingredients(recipe_id)',
    '''
    CREATE TABLE IF NOT EXISTS meal_history (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        meal_id TEXT NOT NULL,
        meal_name TEXT NOT NULL,
        meal_slot TEXT NOT NULL,
        diet_key TEXT,
        meal_data TEXT NOT NULL,
        usage_count INTEGER NOT NULL DEFAULT 0,
        first_used_at TEXT,
        last_used_at TEXT,
        user_rating INTEGER,
        nutrition_score REAL,
        variety_score REAL,
        combined_score REAL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(user_id, meal_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS user_preferences (
        user_id TEXT PRIMARY KEY,
        favorite_meal_ids TEXT NOT NULL DEFAULT '[]',
        household_id TEXT,
        slot_styles TEXT NOT NULL DEFAULT '{}',
        updated_at TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS households (
        id TEXT PRIMARY KEY,
        household_size INTEGER,
        servings_policy TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS household_avoid_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        household_id TEXT NOT NULL,
        match_mode TEXT NOT NULL,
        match_value TEXT NOT NULL,
        strictness TEXT NOT NULL DEFAULT 'hard'
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS user_profiles (
        user_id TEXT PRIMARY KEY,
        diet_key TEXT NOT NULL DEFAULT 'balanced',
        allergies TEXT NOT NULL DEFAULT '[]',
        dislikes TEXT NOT NULL DEFAULT '[]',
        meal_preferences TEXT NOT NULL DEFAULT '{}',
        calorie_target INTEGER,
        strictness TEXT NOT NULL DEFAULT 'flexible',
        language TEXT NOT NULL DEFAULT 'en'
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS food_nutrients (
        food_code TEXT PRIMARY KEY,
        name TEXT,
        kcal_per_100g REAL,
        protein_g_per_100g REAL,
        carbs_g_per_100g REAL,
        fat_g_per_100g REAL
    )
    ''',
]

# Columns added after the first release
MIGRATIONS = [
    'ALTER TABLE meal_plans ADD COLUMN draft_plan_snapshot TEXT',
    'ALTER TABLE meal_plans ADD COLUMN draft_created_at TEXT',
    'ALTER TABLE meal_plans ADD COLUMN applied_at TEXT',
]


class PlanDatabase:
    """
    SQLite-backed storage for meal plans and the lookup tables.

    Usage:
        db = PlanDatabase(cfg.db_path)
        with db.connect() as conn:
            conn.execute(...)
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, roll back on error."""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self) -> None:
        with self.connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            for migration in MIGRATIONS:
                try:
                    conn.execute(migration)
                except sqlite3.OperationalError:
                    pass  # Column already exists
        logger.debug(f"💾 Database ready at {self.db_path}")

    # =========================================================================
    # meal_plans
    # =========================================================================

    def insert_plan(self, plan_id: str, user_id: str, diet_key: str, date_from: str, days: int,
                    request_snapshot: str, rules_snapshot: str, plan_snapshot: str,
                    status: str = "draft") -> None:
        now = format_ts(utc_now())
        with self.connect() as conn:
            conn.execute(
                '''INSERT INTO meal_plans (id, user_id, diet_key, date_from, days, request_snapshot,
                   rules_snapshot, plan_snapshot, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (plan_id, user_id, diet_key, date_from, days, request_snapshot,
                 rules_snapshot, plan_snapshot, status, now, now)
            )

    def update_plan(self, plan_id: str, plan_snapshot: Optional[str] = None,
                    rules_snapshot: Optional[str] = None, enrichment_snapshot: Optional[str] = None,
                    clear_enrichment: bool = False) -> None:
        """Update snapshot columns of an existing plan row in one statement."""
        updates = ['updated_at = ?']
        params: List[Any] = [format_ts(utc_now())]

        if plan_snapshot is not None:
            updates.append('plan_snapshot = ?')
            params.append(plan_snapshot)
        if rules_snapshot is not None:
            updates.append('rules_snapshot = ?')
            params.append(rules_snapshot)
        if enrichment_snapshot is not None:
            updates.append('enrichment_snapshot = ?')
            params.append(enrichment_snapshot)
        elif clear_enrichment:
            updates.append('enrichment_snapshot = NULL')

        params.append(plan_id)
        with self.connect() as conn:
            conn.execute(f'UPDATE meal_plans SET {", ".join(updates)} WHERE id = ?', params)

    def find_plan_id(self, user_id: str, date_from: str, days: int, diet_key: str) -> Optional[str]:
        """Idempotency lookup on (user, start date, length, diet)."""
        with self.connect() as conn:
            row = conn.execute(
                '''SELECT id FROM meal_plans
                   WHERE user_id = ? AND date_from = ? AND days = ? AND diet_key = ?
                   ORDER BY created_at DESC LIMIT 1''',
                (user_id, date_from, days, diet_key)
            ).fetchone()
        return row["id"] if row else None

    def get_plan_row(self, user_id: str, plan_id: str) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            row = conn.execute(
                'SELECT * FROM meal_plans WHERE id = ? AND user_id = ?',
                (plan_id, user_id)
            ).fetchone()
        return dict(row) if row else None

    def list_plan_rows(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest first, without the heavy snapshot columns."""
        with self.connect() as conn:
            rows = conn.execute(
                '''SELECT id, user_id, diet_key, date_from, days, status, created_at, updated_at
                   FROM meal_plans WHERE user_id = ?
                   ORDER BY created_at DESC LIMIT ?''',
                (user_id, limit)
            ).fetchall()
        return [dict(r) for r in rows]

    def delete_plan(self, user_id: str, plan_id: str) -> bool:
        with self.connect() as conn:
            cursor = conn.execute(
                'DELETE FROM meal_plans WHERE id = ? AND user_id = ?',
                (plan_id, user_id)
            )
            return cursor.rowcount > 0
