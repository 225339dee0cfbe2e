"""WSGI middleware for request IDs and structured request logging."""

from __future__ import annotations

import itertools
import logging
import secrets
import socket
import string
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional

from contrafactory.realip import get_client_ip

REQUEST_ID_KEY = "contrafactory.request_id"
_REQUEST_ID_HEADER = "HTTP_X_REQUEST_ID"
_ID_ALPHABET = string.ascii_letters + string.digits

WSGIApp = Callable[..., Iterable[bytes]]


def _request_id_prefix() -> str:
    hostname = socket.gethostname() or "localhost"
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(10))
    return f"{hostname}/{suffix}"


def get_request_id(environ: dict[str, Any]) -> str:
    """Return the request ID stored in environ, or "" if there is none."""
    request_id = environ.get(REQUEST_ID_KEY)
    return request_id if isinstance(request_id, str) else ""


class RequestIDMiddleware:
    """Gives every request an ID, reusing one sent in X-Request-Id."""

    def __init__(self, app: WSGIApp) -> None:
        self.app = app
        self._prefix = _request_id_prefix()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        request_id = environ.get(_REQUEST_ID_HEADER, "")
        if not request_id:
            with self._lock:
                number = next(self._counter)
            request_id = f"{self._prefix}-{number:06d}"
        environ[REQUEST_ID_KEY] = request_id
        return self.app(environ, start_response)


def _fraction(value: int, unit: int) -> str:
    whole, rest = divmod(value, unit)
    if not rest:
        return str(whole)
    width = len(str(unit)) - 1
    return f"{whole}.{str(rest).rjust(width, '0').rstrip('0')}"


def _format_duration(nanoseconds: int) -> str:
    """Format a duration the way the rest of the logs do, e.g. "1.5ms" or "1m2.5s"."""
    if nanoseconds <= 0:
        return "0s"
    if nanoseconds < 1_000:
        return f"{nanoseconds}ns"
    if nanoseconds < 1_000_000:
        return _fraction(nanoseconds, 1_000) + "µs"
    if nanoseconds < 1_000_000_000:
        return _fraction(nanoseconds, 1_000_000) + "ms"
    total_seconds, rest = divmod(nanoseconds, 1_000_000_000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    text = ""
    if hours:
        text += f"{hours}h"
    if hours or minutes:
        text += f"{minutes}m"
    return text + _fraction(seconds * 1_000_000_000 + rest, 1_000_000_000) + "s"


@dataclass
class _Exchange:
    status: int = 200
    bytes: int = 0
    finished: bool = False


class _LoggedBody:
    """Counts bytes of a response body and reports when it is done."""

    def __init__(self, body: Iterable[bytes], exchange: _Exchange, finish: Callable[[], None]) -> None:
        self._body = body
        self._exchange = exchange
        self._finish = finish

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._body:
            self._exchange.bytes += len(chunk)
            yield chunk
        self._finish()

    def close(self) -> None:
        try:
            close = getattr(self._body, "close", None)
            if close is not None:
                close()
        finally:
            self._finish()


class RequestLoggingMiddleware:
    """Logs one record per request with method, path, status, size, time and client IP."""

    def __init__(self, app: WSGIApp, logger: Optional[logging.Logger] = None) -> None:
        self.app = app
        self.logger = logger or logging.getLogger("contrafactory.http")

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        started = time.perf_counter_ns()
        exchange = _Exchange()

        def finish() -> None:
            if exchange.finished:
                return
            exchange.finished = True
            fields = {
                "request_id": get_request_id(environ),
                "method": environ.get("REQUEST_METHOD", ""),
                "path": environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", ""),
                "status": exchange.status,
                "bytes": exchange.bytes,
                "duration": _format_duration(time.perf_counter_ns() - started),
                "client_ip": get_client_ip(environ),
            }
            self.logger.info(
                "request method=%s path=%s status=%d bytes=%d duration=%s client_ip=%s request_id=%s",
                fields["method"],
                fields["path"],
                fields["status"],
                fields["bytes"],
                fields["duration"],
                fields["client_ip"],
                fields["request_id"],
                extra=fields,
            )

        def logging_start_response(status: str, headers: list, exc_info: Any = None) -> Callable[[bytes], Any]:
            try:
                exchange.status = int(status.split(" ", 1)[0])
            except ValueError:
                pass
            if exc_info is None:
                write = start_response(status, headers)
            else:
                write = start_response(status, headers, exc_info)

            def counting_write(data: bytes) -> Any:
                exchange.bytes += len(data)
                return write(data)

            return counting_write

        try:
            body = self.app(environ, logging_start_response)
        except BaseException:
            finish()
            raise
        return _LoggedBody(body, exchange, finish)