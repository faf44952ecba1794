"""
Run Ledger & Guard Tests
========================

Quota, lock and stale-run behaviour of RunLedger / RunGuard with a fake clock.
"""

import pytest


@pytest.fixture
def ledger(db, clock):
    from run_ledger import RunLedger
    return RunLedger(db, clock)


@pytest.fixture
def guard(ledger):
    from run_ledger import RunGuard
    return RunGuard(ledger)


def _complete_runs(ledger, user_id, count, status="success", run_type="generate"):
    for _ in range(count):
        ledger.log_run(user_id, run_type, status, duration_ms=5)


class TestRunLedger:

    @pytest.mark.creates_data
    def test_start_and_finish(self, ledger):
        run_id = ledger.start_run("u1", "generate", model="m")

        assert ledger.get_run(run_id).status == "running"

        ledger.finish_run(run_id, "success", 1234, meal_plan_id="p1", constraints_in_prompt=True,
                          guardrails_content_hash="abc", guardrails_version="rules-v1")
        run = ledger.get_run(run_id)

        assert run.status == "success"
        assert run.duration_ms == 1234
        assert run.meal_plan_id == "p1"
        assert run.constraints_in_prompt is True
        assert run.guardrails_content_hash == "abc"

    @pytest.mark.creates_data
    def test_error_message_truncated(self, ledger):
        run_id = ledger.start_run("u1", "generate")

        ledger.finish_run(run_id, "error", 10, error_code="AGENT_ERROR", error_message="e" * 700)

        assert len(ledger.get_run(run_id).error_message) == 500

    @pytest.mark.creates_data
    def test_exclusive_start_conflicts(self, ledger):
        from plan_errors import MealPlanError

        ledger.start_run("u1", "generate")

        with pytest.raises(MealPlanError) as excinfo:
            ledger.start_run("u1", "regenerate", meal_plan_id="p1")

        assert excinfo.value.code == "CONFLICT"

    @pytest.mark.creates_data
    def test_enrich_runs_never_lock(self, ledger):
        ledger.log_run("u1", "enrich", "success")

        assert ledger.find_active("u1") is None
        assert ledger.start_run("u1", "generate")

    @pytest.mark.readonly
    def test_invalid_terminal_status(self, ledger):
        with pytest.raises(ValueError):
            ledger.finish_run("r1", "running", 0)

    @pytest.mark.readonly
    def test_unknown_run_type(self, ledger):
        with pytest.raises(ValueError):
            ledger.start_run("u1", "translate")


class TestRunGuard:
    """Stale reclaim, then quota, then lock."""

    @pytest.mark.creates_data
    def test_quota_allows_ten(self, guard, ledger):
        _complete_runs(ledger, "u1", 9)

        guard.check("u1")

    @pytest.mark.creates_data
    def test_quota_blocks_eleventh(self, guard, ledger):
        from plan_errors import MealPlanError

        _complete_runs(ledger, "u1", 5)
        _complete_runs(ledger, "u1", 5, status="error")

        with pytest.raises(MealPlanError) as excinfo:
            guard.check("u1")

        assert excinfo.value.code == "RATE_LIMIT"
        assert excinfo.value.details == {"count": 10, "limit": 10}

    @pytest.mark.creates_data
    def test_quota_window_slides(self, guard, ledger, clock):
        _complete_runs(ledger, "u1", 10)
        clock.advance(minutes=61)

        guard.check("u1")

    @pytest.mark.creates_data
    def test_enrich_runs_do_not_count(self, guard, ledger):
        _complete_runs(ledger, "u1", 12, run_type="enrich")

        guard.check("u1")

    @pytest.mark.creates_data
    def test_running_row_blocks(self, guard, ledger):
        from plan_errors import MealPlanError

        ledger.start_run("u1", "generate")

        with pytest.raises(MealPlanError) as excinfo:
            guard.check("u1")

        assert excinfo.value.code == "CONFLICT"

    @pytest.mark.creates_data
    def test_lock_scoped_to_plan(self, guard, ledger):
        """A regenerate of one plan does not block a regenerate of another."""
        ledger.start_run("u1", "regenerate", meal_plan_id="p1")

        guard.check("u1", meal_plan_id="p2")

    @pytest.mark.creates_data
    def test_stale_run_reclaimed(self, guard, ledger, clock):
        run_id = ledger.start_run("u1", "generate")
        clock.advance(minutes=10, seconds=1)

        guard.check("u1")

        run = ledger.get_run(run_id)
        assert run.status == "error"
        assert run.error_code == "TIMEOUT"
        assert run.error_message == "Run timed out or was abandoned"

    @pytest.mark.creates_data
    def test_fresh_run_not_reclaimed(self, guard, ledger, clock):
        from plan_errors import MealPlanError

        ledger.start_run("u1", "generate")
        clock.advance(minutes=9)

        with pytest.raises(MealPlanError):
            guard.check("u1")
