"""Tests for structured logging configuration and the sync-run context."""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from briefings.core.logging import (
    add_sync_context,
    configure_logging,
    get_sync_context,
    sync_log_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSyncLogContext:
    def test_context_scoped_to_block(self):
        assert get_sync_context() is None
        with sync_log_context("conn-1", "run-1"):
            assert get_sync_context() == {"connection_id": "conn-1", "run_id": "run-1"}
        assert get_sync_context() is None

    def test_processor_injects_ids(self):
        with sync_log_context("conn-1", "run-1"):
            event = add_sync_context(None, "info", {"event": "hello"})
        assert event["connection_id"] == "conn-1"
        assert event["run_id"] == "run-1"

    def test_processor_without_context(self):
        assert add_sync_context(None, "info", {"event": "x"}) == {"event": "x"}

    async def test_concurrent_runs_do_not_leak(self):
        seen: dict[str, str] = {}

        async def run(name: str) -> None:
            with sync_log_context(name, f"run-{name}"):
                await asyncio.sleep(0)
                seen[name] = get_sync_context()["connection_id"]

        await asyncio.gather(run("a"), run("b"))
        assert seen == {"a": "a", "b": "b"}


class TestConfigureLogging:
    def test_json_lines_include_sync_ids(self, capsys, restore_root_logger):
        configure_logging("INFO", "json")
        with sync_log_context("conn-9", "run-9"):
            logging.getLogger("briefings.test").info("Sync run started")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "Sync run started"
        assert record["connection_id"] == "conn-9"
        assert record["run_id"] == "run-9"
        assert record["level"] == "info"

    def test_reconfigure_does_not_duplicate_handlers(self, restore_root_logger):
        configure_logging("DEBUG", "text")
        configure_logging("WARNING", "text")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
