"""
Meal Plan Error Taxonomy
========================

Every failure surfaced by the generator is a MealPlanError carrying a stable
code, a human readable message and a details dict. Codes are split into
structural (never retried) and transient (retried once via the fuller path).
"""

from typing import Any, Dict, Optional


class ErrorCode:
    """Stable error codes persisted on failed runs."""
    RATE_LIMIT = "RATE_LIMIT"
    CONFLICT = "CONFLICT"
    INSUFFICIENT_CANDIDATES = "INSUFFICIENT_CANDIDATES"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AGENT_ERROR = "AGENT_ERROR"
    DB_ERROR = "DB_ERROR"
    CONFIG_INVALID = "CONFIG_INVALID"
    AI_BUDGET_EXCEEDED = "AI_BUDGET_EXCEEDED"
    DB_COVERAGE_TOO_LOW = "DB_COVERAGE_TOO_LOW"
    NOT_FOUND = "NOT_FOUND"
    # Only written to the ledger by stale-run reclamation
    TIMEOUT = "TIMEOUT"


STRUCTURAL_CODES = frozenset({
    ErrorCode.INSUFFICIENT_CANDIDATES,
    ErrorCode.CONFIG_INVALID,
    ErrorCode.AI_BUDGET_EXCEEDED,
    ErrorCode.DB_COVERAGE_TOO_LOW,
})

TRANSIENT_CODES = frozenset({
    ErrorCode.AGENT_ERROR,
    ErrorCode.VALIDATION_ERROR,
})


class MealPlanError(Exception):
    """
    Base exception for meal plan generation.

    Attributes:
        code: One of ErrorCode
        message: Human-readable error message
        details: Additional context (unfilled slots, counts, limits, ...)
    """

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = f"[{self.code}] {self.message}"
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            msg += f" ({detail_str})"
        return msg

    @property
    def is_structural(self) -> bool:
        return self.code in STRUCTURAL_CODES

    @property
    def is_transient(self) -> bool:
        return self.code in TRANSIENT_CODES


class SnapshotError(MealPlanError):
    """A persisted snapshot has an unknown kind or version."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.DB_ERROR, message, details)


class TranslationQuotaError(Exception):
    """The translation backend refused the call for quota reasons."""
