"""Tests for structured JSON logging."""

import json
import logging
import sys

from conftest import fast_config

from opsledger.core.event import BuildEvent
from opsledger.core.logging import JSONFormatter, get_logger
from opsledger.core.queue import SubmissionQueue
from opsledger.core.writer import LedgerWriter


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="opsledger.writer",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Build %s confirmed",
        args=("b1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_shape(self):
        data = json.loads(JSONFormatter().format(_record()))
        assert data["level"] == "INFO"
        assert data["message"] == "Build b1 confirmed"
        assert data["logger"] == "opsledger.writer"
        assert data["timestamp"].endswith("+00:00")

    def test_extra_fields_included(self):
        data = json.loads(
            JSONFormatter().format(_record(idempotency_key="abc", sequence=5, custom=[1, 2]))
        )
        assert data["idempotency_key"] == "abc"
        assert data["sequence"] == 5
        assert data["custom"] == [1, 2]

    def test_unserializable_values_use_str(self):
        data = json.loads(JSONFormatter().format(_record(obj=object())))
        assert data["obj"].startswith("<object object")

    def test_exception_info(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in data["exc_info"]


class TestGetLogger:
    def test_single_handler_on_root(self):
        get_logger("opsledger.a")
        get_logger("opsledger.b")
        root = logging.getLogger("opsledger")
        json_handlers = [h for h in root.handlers if isinstance(h.formatter, JSONFormatter)]
        assert len(json_handlers) <= 1
        assert root.propagate is False

    def test_child_loggers_propagate_to_root(self):
        assert get_logger("opsledger.writer").propagate is True
        assert get_logger() is logging.getLogger("opsledger")


async def test_writer_logs_carry_submission_fields(ledger, log_capture):
    queue = SubmissionQueue(salt="s")
    writer = LedgerWriter(queue, ledger, fast_config())
    key = await queue.enqueue(BuildEvent(build_id="b1", status="Success", developer="alice"))

    await writer.submit_pending()

    confirmed = [r for r in log_capture.records if "confirmed at position" in r.getMessage()]
    assert len(confirmed) == 1
    record = confirmed[0]
    assert record.idempotency_key == key
    assert record.build_id == "b1"
    assert record.sequence == 0
    assert record.levelno == logging.INFO
