"""
Tests: Logging configuration — formatters render every extra= field.
"""

import json
import logging

import pytest
from flask import Flask

import exception_tracker.services.exception_workflow as wf
import exception_tracker.services.sla_engine as sla
from exception_tracker.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    build_formatter,
    configure_logging,
    record_context,
)


def _record(msg="Exception escalated", args=(), **extra):
    return logging.getLogger("exception_tracker.tests").makeRecord(
        "exception_tracker.services.exception_workflow", logging.INFO,
        __file__, 10, msg, args, None, extra=extra,
    )


@pytest.fixture()
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


# ── Formatters ────────────────────────────────────────────────────────────────


def test_json_formatter_nests_every_extra_field():
    record = _record(
        severity="critical",
        old_status="open",
        new_status="in_progress",
        assigned_to=20,
        previous_assignee=None,
        exception_ids=[3, 4],
        level=2,
        hours=24,
    )

    entry = json.loads(JSONFormatter().format(record))

    assert entry["level"] == "INFO"
    assert entry["message"] == "Exception escalated"
    assert entry["context"] == {
        "severity": "critical",
        "old_status": "open",
        "new_status": "in_progress",
        "assigned_to": 20,
        "previous_assignee": None,
        "exception_ids": [3, 4],
        "level": 2,
        "hours": 24,
    }


def test_json_formatter_omits_context_without_extras():
    entry = json.loads(JSONFormatter().format(_record("plain")))
    assert "context" not in entry


def test_readable_formatter_appends_key_value_pairs():
    line = ReadableFormatter().format(_record(role="staff", fields=["title"]))
    assert "exception_tracker.services.exception_workflow: Exception escalated" in line
    assert line.endswith("| role=staff fields=['title']")
    assert "\033[" not in line


def test_record_context_ignores_standard_attributes():
    assert record_context(_record("Swept %d", (2,))) == {}


def test_build_formatter_rejects_unknown_format():
    with pytest.raises(ValueError, match="Unknown LOG_FORMAT"):
        build_formatter("xml")


# ── configure_logging ─────────────────────────────────────────────────────────


@pytest.mark.parametrize("config,expected", [
    ({"DEBUG": False, "TESTING": False}, JSONFormatter),
    ({"DEBUG": True}, ReadableFormatter),
    ({"DEBUG": True, "LOG_FORMAT": "json"}, JSONFormatter),
])
def test_configure_logging_picks_formatter(restore_root_logger, config, expected):
    bare = Flask("logging_check")
    bare.config.update(config)

    configure_logging(bare)

    assert len(restore_root_logger.handlers) == 1
    assert isinstance(restore_root_logger.handlers[0].formatter, expected)


def test_configure_logging_honours_level(restore_root_logger):
    bare = Flask("logging_check")
    bare.config.update(DEBUG=True, LOG_LEVEL="warning")

    configure_logging(bare)

    assert restore_root_logger.level == logging.WARNING


# ── Service context reaches the record ────────────────────────────────────────


def test_sla_sweep_log_carries_flagged_ids(admin, caplog):
    exc = wf.create_exception(admin, {
        "title": "Stale reconciliation",
        "description": "Ledger not balanced",
        "severity": "high",
        "vertical_id": 5,
        "due_date": "2020-01-01T00:00:00Z",
    })

    with caplog.at_level(logging.INFO, logger="exception_tracker.services.sla_engine"):
        sla.check_sla_breach()

    sweep = [r for r in caplog.records if r.getMessage().startswith("SLA sweep flagged")]
    assert len(sweep) == 1
    assert record_context(sweep[0]) == {"event_type": "sla_breach", "exception_ids": [exc["id"]]}
