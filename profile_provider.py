"""
Profile Provider
================

Reads the diet profile, UI language and slot styles for a user from the
``user_profiles`` and ``user_preferences`` tables. A user without a row
gets the default balanced profile.
"""

import json
from typing import Dict, List, Protocol

from plan_db import PlanDatabase
from plan_types import Profile
from tools.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_LANGUAGE = "en"


class ProfileProvider(Protocol):
    def load_profile(self, user_id: str) -> Profile:
        ...

    def get_language(self, user_id: str) -> str:
        ...

    def load_slot_styles(self, user_id: str) -> Dict[str, str]:
        ...


def _json_list(raw) -> List[str]:
    values = json.loads(raw or "[]")
    return [str(v).strip() for v in values if v and str(v).strip()]


class SqliteProfileProvider:
    def __init__(self, db: PlanDatabase):
        self.db = db

    def load_profile(self, user_id: str) -> Profile:
        with self.db.connect() as conn:
            row = conn.execute('SELECT * FROM user_profiles WHERE user_id = ?', (user_id,)).fetchone()
        if row is None:
            logger.debug(f"🔍 No profile for {user_id}, using defaults")
            return Profile()

        preferences = json.loads(row["meal_preferences"] or "{}")
        return Profile(
            diet_key=row["diet_key"] or "balanced",
            allergies=_json_list(row["allergies"]),
            dislikes=_json_list(row["dislikes"]),
            meal_preferences={slot: [str(p) for p in prefs or []] for slot, prefs in preferences.items()},
            calorie_target=row["calorie_target"],
            strictness=row["strictness"] or "flexible",
        )

    def get_language(self, user_id: str) -> str:
        with self.db.connect() as conn:
            row = conn.execute('SELECT language FROM user_profiles WHERE user_id = ?', (user_id,)).fetchone()
        return (row["language"] if row else None) or DEFAULT_LANGUAGE

    def load_slot_styles(self, user_id: str) -> Dict[str, str]:
        """Per-slot style preference ('any' means no preference)."""
        with self.db.connect() as conn:
            row = conn.execute('SELECT slot_styles FROM user_preferences WHERE user_id = ?', (user_id,)).fetchone()
        if row is None:
            return {}
        styles = json.loads(row["slot_styles"] or "{}")
        return {slot: str(style) for slot, style in styles.items() if style}
