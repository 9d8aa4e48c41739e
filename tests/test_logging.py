import io
import json
import logging

import pytest

from console_identity.audit import AuditEvent, LoggingAuditRecorder
from console_identity.utils.logger import EventFormatter, configure, get_logger, logging_context


@pytest.fixture
def captured():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(EventFormatter())
    target = logging.getLogger("console_identity.tests")
    target.addHandler(handler)
    target.setLevel(logging.DEBUG)
    yield lambda: [json.loads(line) for line in stream.getvalue().splitlines()]
    target.removeHandler(handler)


def test_keyword_fields_become_json_keys(captured):
    get_logger("console_identity.tests.fields").info(
        "Directory unavailable", event="directory.unavailable", host="dc01", action="bind"
    )
    (line,) = captured()
    assert line["message"] == "Directory unavailable"
    assert line["event"] == "directory.unavailable"
    assert line["host"] == "dc01"
    assert line["level"] == "INFO"
    assert line["logger"] == "console_identity.tests.fields"


def test_none_fields_are_omitted(captured):
    get_logger("console_identity.tests.none").info("x", event="test.none", identity_id=None)
    assert "identity_id" not in captured()[0]


def test_static_fields_apply_to_every_line(captured):
    logger = get_logger("console_identity.tests.static", component="auth")
    logger.info("one", event="test.one")
    logger.info("two", event="test.two", component="override")
    first, second = captured()
    assert first["component"] == "auth"
    assert second["component"] == "override"


def test_context_fields_are_scoped(captured):
    logger = get_logger("console_identity.tests.context")
    with logging_context(command="sync-groups"):
        logger.warning("inside", event="test.inside")
    logger.warning("outside", event="test.outside")
    inside, outside = captured()
    assert inside["command"] == "sync-groups"
    assert "command" not in outside


def test_exceptions_are_rendered(captured):
    logger = get_logger("console_identity.tests.errors")
    try:
        raise RuntimeError("database is locked")
    except RuntimeError:
        logger.error("Unexpected error", event="test.error", exc_info=True)
    line = captured()[0]
    assert "RuntimeError: database is locked" in line["exception"]


def test_configure_replaces_root_handlers():
    root = logging.getLogger()
    saved, level = root.handlers[:], root.level
    stream = io.StringIO()
    try:
        configure(level="warning", handlers=[logging.StreamHandler(stream)])
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        get_logger("console_identity.tests.root").warning("hello", event="test.root")
    finally:
        root.handlers = saved
        root.setLevel(level)
    assert json.loads(stream.getvalue())["event"] == "test.root"


def test_audit_events_are_logged(captured):
    LoggingAuditRecorder("console_identity.tests.audit").record(
        AuditEvent(actor="root", action="password_reset", target="alice")
    )
    line = captured()[0]
    assert line["event"] == "audit.password_reset"
    assert line["actor"] == "root"
    assert line["outcome"] == "success"
    assert line["component"] == "audit"
