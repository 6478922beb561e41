import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import logging_utils
from logging_utils import JsonFormatter, bind_request_id, current_request_id, refresh_secret_cache, reset_request_id


def _record(msg: str, meta=None, level: int = logging.INFO) -> logging.LogRecord:
    record = logging.LogRecord("ledger", level, __file__, 10, msg, None, None)
    if meta is not None:
        record.meta = meta
    return record


def test_json_formatter_emits_meta():
    payload = json.loads(JsonFormatter().format(_record("ledger.spend", {"account_id": "a1", "amount": -105})))

    assert payload["level"] == "INFO"
    assert payload["msg"] == "ledger.spend"
    assert payload["meta"]["account_id"] == "a1"
    assert payload["meta"]["amount"] == -105
    assert payload["meta"]["logger"] == "ledger"


def test_bearer_tokens_are_redacted():
    record = _record("auth header", {"header": "Bearer eyJhbGciOiJIUzI1NiJ9.payload.sig"})
    payload = json.loads(JsonFormatter().format(record))
    assert payload["meta"]["header"] == "Bearer ***"


def test_secret_env_values_are_redacted(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_live_supersecret")
    refresh_secret_cache()
    try:
        record = _record("calling stripe with sk_live_supersecret", {"nested": ["sk_live_supersecret"]})
        payload = json.loads(JsonFormatter().format(record))
    finally:
        monkeypatch.delenv("STRIPE_SECRET_KEY")
        refresh_secret_cache()

    assert "sk_live_supersecret" not in payload["msg"]
    assert payload["meta"]["nested"] == ["***"]


def test_long_values_are_truncated(monkeypatch):
    monkeypatch.setattr(logging_utils, "MAX_IN_LOG_BODY", 16)
    payload = json.loads(JsonFormatter().format(_record("x", {"body": "a" * 100})))
    assert payload["meta"]["body"].startswith("a" * 16)
    assert payload["meta"]["body"].endswith("(truncated)")


def test_exception_info_is_included():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("ledger", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
    payload = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in payload["meta"]["exc_info"]


def test_stripe_credentials_are_redacted():
    record = _record("retrying", {"header": "t=1700000000,v1=" + "ab" * 32, "key": "sk_test_4eC39HqLyjWDarjtT1zdp7dc"})
    payload = json.loads(JsonFormatter().format(record))
    assert payload["meta"]["header"] == "t=1700000000,v1=***"
    assert payload["meta"]["key"] == "***"


def test_bound_request_id_is_attached():
    token = bind_request_id("req-123")
    try:
        payload = json.loads(JsonFormatter().format(_record("ledger.spend", {"account_id": "a1"})))
    finally:
        reset_request_id(token)

    assert payload["meta"]["request_id"] == "req-123"
    assert current_request_id() is None
