import json
import logging

from core.config import Settings
from core.logging import (
    RefreshJSONFormatter,
    RefreshTextFormatter,
    build_formatter,
    record_context,
    setup_logging,
)


def make_record(msg="Refresh of asin_performance_data completed", **extra):
    record = logging.makeLogRecord({
        "name": "refresh.worker",
        "levelno": logging.INFO,
        "levelname": "INFO",
        "msg": msg,
    })
    record.__dict__.update(extra)
    return record


def test_record_context_only_returns_extra_fields():
    record = make_record(table_name="asin_performance_data", audit_log_id=7)
    assert record_context(record) == {"table_name": "asin_performance_data", "audit_log_id": 7}


def test_json_formatter_lifts_refresh_fields():
    record = make_record(table_name="asin_performance_data", audit_log_id=7, rows=3)

    payload = json.loads(RefreshJSONFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "refresh.worker"
    assert payload["message"] == "Refresh of asin_performance_data completed"
    assert payload["table_name"] == "asin_performance_data"
    assert payload["audit_log_id"] == 7
    assert payload["rows"] == 3


def test_text_formatter_appends_table_and_audit():
    line = RefreshTextFormatter().format(make_record(table_name="asin_performance_data", audit_log_id=7))
    assert line.endswith("[table=asin_performance_data audit=7]")


def test_text_formatter_without_context_is_plain():
    line = RefreshTextFormatter().format(make_record(msg="Starting"))
    assert line.endswith("| refresh.worker | Starting")


def test_setup_logging_installs_one_handler():
    settings = Settings(DATABASE_URL="sqlite+aiosqlite://", LOG_LEVEL="DEBUG", LOG_FORMAT="json")
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    try:
        setup_logging(settings)
        setup_logging(settings)

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, RefreshJSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.setLevel(saved[0])
        root.handlers[:] = saved[1]


def test_unknown_format_falls_back_to_text():
    assert isinstance(build_formatter("yaml"), RefreshTextFormatter)
