"""
Tests for structured logging and connection correlation.
"""

import json
import logging

import pytest

from chat_common.config.logging import (
    DevelopmentFormatter,
    StructuredFormatter,
    StructuredLogger,
    get_logger,
    setup_logging,
)
from chat_common.infrastructure.correlation import (
    ConnectionIdFilter,
    connection_id_var,
    get_connection_id,
)


def make_record(**attributes):
    record = logging.LogRecord(
        name="chat_realtime.session",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Channel lost during resync",
        args=(),
        exc_info=None,
    )
    for key, value in attributes.items():
        setattr(record, key, value)
    return record


class TestStructuredLogger:
    def test_keyword_arguments_become_extra_data(self, caplog):
        logger = get_logger("chat_realtime.tests")

        with caplog.at_level(logging.DEBUG, logger="chat_realtime.tests"):
            logger.info("Watching channel", cid="messaging:general")

        assert isinstance(logger, StructuredLogger)
        (record,) = caplog.records
        assert record.extra_data == {"cid": "messaging:general"}

    def test_disabled_level_is_skipped(self, caplog):
        logger = get_logger("chat_realtime.tests.quiet")

        with caplog.at_level(logging.WARNING, logger="chat_realtime.tests.quiet"):
            logger.debug("Frame received", size=10)

        assert caplog.records == []


class TestFormatters:
    def test_json_formatter(self):
        record = make_record(extra_data={"cid": "messaging:general"}, connection_id="3")

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["logger"] == "chat_realtime.session"
        assert data["message"] == "Channel lost during resync"
        assert data["connection_id"] == "3"
        assert data["data"] == {"cid": "messaging:general"}

    def test_json_formatter_without_connection(self):
        data = json.loads(StructuredFormatter().format(make_record(connection_id="-")))
        assert "connection_id" not in data

    def test_development_formatter(self):
        record = make_record(extra_data={"cid": "messaging:general"}, connection_id="3")

        line = DevelopmentFormatter().format(record)

        assert "[conn 3]" in line
        assert "Channel lost during resync" in line
        assert "cid=messaging:general" in line


class TestConnectionCorrelation:
    def test_filter_adds_connection_id(self):
        token = connection_id_var.set("7")
        try:
            record = make_record()
            assert ConnectionIdFilter().filter(record) is True
            assert record.connection_id == "7"
            assert get_connection_id() == "7"
        finally:
            connection_id_var.reset(token)

    def test_filter_without_connection(self):
        record = make_record()
        ConnectionIdFilter().filter(record)
        assert record.connection_id == "-"


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_installs_filtered_handler(restore_root_logger):
    setup_logging()

    (handler,) = restore_root_logger.handlers
    assert any(isinstance(f, ConnectionIdFilter) for f in handler.filters)
    assert isinstance(handler.formatter, (DevelopmentFormatter, StructuredFormatter))
    assert logging.getLogger("websockets").level == logging.WARNING
