"""
Unit Tests for Structured Logging Setup
"""

import json

import pytest
import structlog

from basex_wire.logging_config import configure_logging

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_output(capsys):
    configure_logging(level="INFO", json_format=True)

    structlog.get_logger().info("Connected to BaseX", host="localhost", port=1984)

    event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert event["event"] == "Connected to BaseX"
    assert event["level"] == "info"
    assert event["port"] == 1984
    assert "timestamp" in event


def test_level_filters_debug(capsys):
    configure_logging(level="WARNING", json_format=True)

    structlog.get_logger().debug("Query request", opcode="bind")

    assert capsys.readouterr().err == ""


def test_console_output(capsys):
    configure_logging(level="DEBUG", json_format=False)

    structlog.get_logger().debug("Query created", query_id="test")

    assert "Query created" in capsys.readouterr().err
