import json
import logging

import pytest
import structlog

from rentaldesk.app.core.logging_config import build_formatter, configure_logging


def _record(**extra):
    return logging.makeLogRecord(
        {
            "name": "rentaldesk.app.services.locks",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "slot_lock.busy",
            **extra,
        }
    )


def test_key_value_output_carries_extra_fields():
    line = build_formatter(json=False).format(_record(vehicle_id=3))

    assert "event='slot_lock.busy'" in line
    assert "level='info'" in line
    assert "logger='rentaldesk.app.services.locks'" in line
    assert "vehicle_id=3" in line
    assert line.startswith("timestamp=")


def test_json_output_carries_extra_fields():
    payload = json.loads(build_formatter(json=True).format(_record(vehicle_id=3, reservation_id="r-1")))

    assert payload["event"] == "slot_lock.busy"
    assert payload["level"] == "info"
    assert payload["vehicle_id"] == 3
    assert payload["reservation_id"] == "r-1"
    assert "timestamp" in payload


@pytest.fixture
def rentaldesk_logger():
    logger = logging.getLogger("rentaldesk")
    before = list(logger.handlers), logger.level
    yield logger
    logger.handlers[:] = before[0]
    logger.setLevel(before[1])
    structlog.reset_defaults()


def test_configure_logging_installs_one_structlog_handler(rentaldesk_logger):
    configure_logging("debug")
    configure_logging("warning")

    installed = [h for h in rentaldesk_logger.handlers if getattr(h, "_rentaldesk", False)]
    assert len(installed) == 1
    assert isinstance(installed[0].formatter, structlog.stdlib.ProcessorFormatter)
    assert rentaldesk_logger.level == logging.WARNING
