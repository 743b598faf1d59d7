from __future__ import annotations

import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from cligate.logging_config import LOG_FORMAT, LocalTimezoneFormatter


def _record() -> logging.LogRecord:
    record = logging.LogRecord("cligate.test", logging.INFO, __file__, 1, "hello %s", ("x",), None)
    record.created = 0.0
    return record


def test_formatter_uses_configured_timezone():
    try:
        ZoneInfo("UTC")
    except ZoneInfoNotFoundError:
        pytest.skip("no tz database available")
    formatter = LocalTimezoneFormatter(LOG_FORMAT, timezone_name="UTC")
    assert formatter.formatTime(_record()) == "1970-01-01T00:00:00.000+00:00"
    assert formatter.format(_record()).endswith("[INFO] cligate.test - hello x")


def test_formatter_falls_back_on_unknown_timezone():
    formatter = LocalTimezoneFormatter(LOG_FORMAT, timezone_name="Not/AZone")
    assert formatter.formatTime(_record(), "%Y") in {"1969", "1970"}
