import logging
import re
import uuid
from typing import NamedTuple

import pytest
from werkzeug.datastructures import Headers
from werkzeug.http import HTTP_STATUS_CODES
from werkzeug.test import EnvironBuilder

from contrafactory.logging_middleware import (
    REQUEST_ID_KEY,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    get_request_id,
)
from contrafactory.realip import RealIPConfig, RealIPMiddleware


class _Result(NamedTuple):
    status: int
    headers: Headers
    body: bytes


class _Collector(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    logger = logging.getLogger(f"tests.request_logging.{uuid.uuid4().hex}")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    handler = _Collector()
    logger.addHandler(handler)
    yield logger, handler.records
    logger.removeHandler(handler)


def _call(app, path="/", method="GET", remote_addr="127.0.0.1:8080", headers=None, extra=None):
    environ = EnvironBuilder(path=path, method=method, headers=headers).get_environ()
    environ["REMOTE_ADDR"] = remote_addr
    if extra:
        environ.update(extra)
    state = {}
    chunks = []

    def start_response(status, response_headers, exc_info=None):
        state["status"] = int(status.split(" ", 1)[0])
        state["headers"] = Headers(response_headers)
        return chunks.append

    result = app(environ, start_response)
    try:
        chunks.extend(result)
    finally:
        close = getattr(result, "close", None)
        if close is not None:
            close()
    return _Result(state["status"], state["headers"], b"".join(chunks))


def _text_app(status, body):
    def app(environ, start_response):
        start_response(f"{status} {HTTP_STATUS_CODES[status]}", [("Content-Type", "text/plain")])
        return [body.encode()]

    return app


def test_logs_requests(captured):
    logger, records = captured
    app = RequestLoggingMiddleware(_text_app(200, "hello"), logger)
    result = _call(app, "/api/test", remote_addr="192.168.1.100:12345")

    assert result.status == 200
    assert result.body == b"hello"
    assert len(records) == 1
    record = records[0]
    assert record.getMessage().startswith("request")
    assert record.method == "GET"
    assert record.path == "/api/test"
    assert record.status == 200
    assert record.bytes == 5
    assert record.duration
    assert record.client_ip == "192.168.1.100"


def test_logs_error_status(captured):
    logger, records = captured
    app = RequestLoggingMiddleware(_text_app(500, "error"), logger)
    result = _call(app, "/api/error", method="POST", remote_addr="10.0.0.1:12345")

    assert result.status == 500
    assert records[0].method == "POST"
    assert records[0].path == "/api/error"
    assert records[0].status == 500


def test_captures_response_bytes(captured):
    logger, records = captured
    large_body = "This is a larger response body for testing"
    app = RequestLoggingMiddleware(_text_app(200, large_body), logger)
    result = _call(app)
    assert result.status == 200
    assert result.body == large_body.encode()
    assert records[0].bytes == len(large_body)


def test_includes_generated_request_id(captured):
    logger, records = captured
    app = RequestIDMiddleware(RequestLoggingMiddleware(_text_app(200, ""), logger))
    first = _call(app)
    second = _call(app)
    assert first.status == 200
    assert second.body == b""
    assert records[0].request_id.endswith("-000001")
    assert records[1].request_id.endswith("-000002")
    assert records[0].request_id.split("-")[0] == records[1].request_id.split("-")[0]


def test_request_id_header_is_reused(captured):
    logger, records = captured
    app = RequestIDMiddleware(RequestLoggingMiddleware(_text_app(200, ""), logger))
    result = _call(app, headers={"X-Request-Id": "abc-123"})
    assert result.status == 200
    assert records[0].request_id == "abc-123"


def test_uses_request_id_already_in_environ(captured):
    logger, records = captured
    app = RequestLoggingMiddleware(_text_app(200, ""), logger)
    result = _call(app, extra={REQUEST_ID_KEY: "test-request-id-123"})
    assert result.status == 200
    assert records[0].request_id == "test-request-id-123"


def test_get_request_id_reads_environ():
    seen = {}

    def inner(environ, start_response):
        seen["id"] = get_request_id(environ)
        start_response("200 OK", [])
        return []

    _call(RequestIDMiddleware(inner))
    assert seen["id"].endswith("-000001")
    assert get_request_id({}) == ""


def test_uses_real_ip_from_environ(captured):
    logger, records = captured
    app = RealIPMiddleware(
        RequestLoggingMiddleware(_text_app(200, ""), logger),
        RealIPConfig(trust_proxy=True, trusted_proxies=["10.0.0.0/8"]),
    )
    result = _call(app, remote_addr="10.0.0.1:12345", headers={"X-Forwarded-For": "203.0.113.50"})
    assert result.status == 200
    assert records[0].client_ip == "203.0.113.50"


def test_counts_bytes_from_write_callable(captured):
    logger, records = captured

    def app(environ, start_response):
        write = start_response("200 OK", [])
        write(b"test")
        write(b"more")
        return []

    result = _call(RequestLoggingMiddleware(app, logger))
    assert result.body == b"testmore"
    assert records[0].status == 200
    assert records[0].bytes == 8


def test_logs_duration_string(captured):
    logger, records = captured
    result = _call(RequestLoggingMiddleware(_text_app(200, ""), logger))
    assert result.status == 200
    duration = records[0].duration
    assert isinstance(duration, str)
    assert re.fullmatch(r"(\d+h)?(\d+m)?\d+(\.\d+)?(ns|µs|ms|s)", duration)


def test_logs_once_when_body_closed_early(captured):
    logger, records = captured

    def app(environ, start_response):
        start_response("200 OK", [])
        return iter([b"abc", b"defgh"])

    environ = EnvironBuilder(path="/").get_environ()
    body = RequestLoggingMiddleware(app, logger)(environ, lambda *a: None)
    iterator = iter(body)
    assert next(iterator) == b"abc"
    body.close()
    body.close()
    assert len(records) == 1
    assert records[0].bytes == 3


def test_logs_when_app_raises(captured):
    logger, records = captured

    def app(environ, start_response):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        _call(RequestLoggingMiddleware(app, logger), "/explode")
    assert len(records) == 1
    assert records[0].path == "/explode"