"""
Logging Helper Tests
====================
"""

import logging
import time

import pytest


class TestLogWithEmoji:

    @pytest.mark.readonly
    @pytest.mark.parametrize("message,level", [
        ("✅ Plan persisted", logging.INFO),
        ("⚠️  Enrichment failed", logging.WARNING),
        ("❌ Run failed", logging.ERROR),
        ("🔍 Candidate blocked", logging.DEBUG),
        ("♻️  Reusing 7/7 meals", logging.INFO),
        ("plain message", logging.INFO),
    ])
    def test_level_from_prefix(self, caplog, message, level):
        from tools.logging_utils import get_logger, log_with_emoji

        logger = get_logger("tests.logging_utils")
        with caplog.at_level(logging.DEBUG, logger="tests.logging_utils"):
            log_with_emoji(logger, message)

        assert [(r.levelno, r.getMessage()) for r in caplog.records] == [(level, message)]


class TestConsoleLevel:

    @pytest.mark.readonly
    def test_only_console_handler_changes(self):
        from tools.logging_utils import set_console_level, setup_logging

        setup_logging()
        handlers = logging.getLogger().handlers
        before = {id(h): h.level for h in handlers}
        try:
            assert set_console_level("warning") == logging.WARNING
            for handler in handlers:
                if isinstance(handler, logging.FileHandler):
                    assert handler.level == before[id(handler)]
                elif isinstance(handler, logging.StreamHandler) and before[id(handler)] == logging.INFO:
                    assert handler.level == logging.WARNING
        finally:
            for handler in handlers:
                handler.setLevel(before[id(handler)])

    @pytest.mark.readonly
    def test_unknown_level(self):
        from tools.logging_utils import set_console_level

        with pytest.raises(ValueError):
            set_console_level("LOUD")


class TestElapsed:

    @pytest.mark.readonly
    def test_elapsed_ms(self):
        from tools.logging_utils import elapsed_ms

        assert 1900 <= elapsed_ms(time.time() - 2) <= 3000
        assert elapsed_ms(time.time() + 60) == 0
