import logging

from paysign.logging_config import RequestIdFilter
from paysign.middleware import request_id_var


def make_record():
    return logging.LogRecord("paysign.test", logging.INFO, __file__, 1, "hello", None, None)


def test_records_carry_the_current_request_id():
    record = make_record()
    token = request_id_var.set("req-42")
    try:
        assert RequestIdFilter().filter(record) is True
    finally:
        request_id_var.reset(token)
    assert record.request_id == "req-42"


def test_records_outside_a_request_have_no_id():
    record = make_record()
    RequestIdFilter().filter(record)
    assert record.request_id is None


def test_request_id_is_echoed(client):
    resp = client.get("/api/health", headers={"X-Request-Id": "abc-123"})
    assert resp.headers["X-Request-Id"] == "abc-123"
