"""
CLI Tests
=========

Argument parsing and exit codes of orchestrator.main against a temporary
database; no API key, so the service runs without the generative planner.
"""

import pytest

from conftest import run_async, seed_catalog, seed_history_meal


@pytest.fixture
def config_file(tmp_path, db_path, monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "planner:\n"
        f"  db_path: {db_path}\n"
        "  target_reuse_ratio: 1.0\n"
        "  min_db_recipe_coverage_ratio: 0.0\n"
        "  history_reuse:\n"
        "    enabled: false\n"
        "variety:\n"
        "  unique_veg_min: 1\n"
        "  unique_fruit_min: 1\n"
        "  protein_rotation_min_categories: 1\n"
    )
    return path


class TestParser:

    @pytest.mark.readonly
    def test_create_defaults(self):
        from orchestrator import build_parser

        args = build_parser().parse_args(["create", "--user", "u1"])

        assert (args.command, args.user, args.days, args.date_from, args.calorie_target) == \
            ("create", "u1", 7, None, None)

    @pytest.mark.readonly
    def test_regenerate_single_day(self):
        from orchestrator import build_parser

        args = build_parser().parse_args(["regenerate", "--user", "u1", "--plan-id", "p1",
                                          "--only-date", "2026-01-07"])

        assert (args.plan_id, args.only_date) == ("p1", "2026-01-07")

    @pytest.mark.readonly
    @pytest.mark.parametrize("argv", [
        ["create"],
        ["rate", "--user", "u1", "--meal-id", "m1", "--rating", "6"],
        ["show", "--user", "u1"],
        ["bake", "--user", "u1"],
        ["-v", "-q", "list", "--user", "u1"],
    ])
    def test_invalid_arguments(self, argv):
        from orchestrator import build_parser

        with pytest.raises(SystemExit):
            build_parser().parse_args(argv)

    @pytest.mark.readonly
    def test_next_monday(self):
        from datetime import date
        from orchestrator import next_monday

        monday = date.fromisoformat(next_monday())

        assert monday.weekday() == 0
        assert 1 <= (monday - date.today()).days <= 7


class TestMain:

    @pytest.mark.creates_data
    def test_create_and_list(self, config_file, db):
        from orchestrator import main

        seed_catalog(db, "u1", per_slot=3)

        assert run_async(main(["--config", str(config_file), "create", "--user", "u1",
                               "--date-from", "2026-01-05", "--days", "3"])) == 0
        assert run_async(main(["--config", str(config_file), "list", "--user", "u1"])) == 0
        assert run_async(main(["--config", str(config_file), "runs", "--user", "u1"])) == 0
        assert len(db.list_plan_rows("u1")) == 1

    @pytest.mark.creates_data
    def test_plan_error_exit_code(self, config_file):
        from orchestrator import main

        assert run_async(main(["--config", str(config_file), "delete", "--user", "u1", "--plan-id", "nope"])) == 1

    @pytest.mark.creates_data
    def test_empty_catalog_without_planner_fails(self, config_file):
        from orchestrator import main

        assert run_async(main(["--config", str(config_file), "create", "--user", "u1",
                               "--date-from", "2026-01-05", "--days", "1"])) == 1

    @pytest.mark.creates_data
    def test_rate(self, config_file, db):
        from orchestrator import main

        seed_history_meal(db, "u1", "m1", "Soup", "lunch")

        assert run_async(main(["--config", str(config_file), "rate", "--user", "u1",
                               "--meal-id", "m1", "--rating", "4"])) == 0

    @pytest.mark.readonly
    def test_config_error_exit_code(self, tmp_path):
        from orchestrator import main

        assert run_async(main(["--config", str(tmp_path / "missing.yaml"), "list", "--user", "u1"])) == 2
