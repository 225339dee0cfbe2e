"""WSGI middleware that blocks scanner traffic and limits request body size."""

from __future__ import annotations

import io
import re
from typing import Any, BinaryIO, Callable, Iterable, Iterator, Optional
from urllib.parse import unquote, urlsplit

from contrafactory.responses import error_response

HEALTH_CHECK_PATHS = frozenset({"/health", "/healthz", "/readyz"})

BLOCKED_PATH_PREFIXES = (
    "/.php",
    "/wp-admin",
    "/wp-includes",
    "/wp-content",
    "/wp-login",
    "/.git/",
    "/.env",
    "/web-inf/",
    "/cgi-bin/",
    "/admin/",
    "/phpmyadmin",
    "/phpinfo",
    "/shell",
    "/config.",
    "/.htaccess",
    "/.htpasswd",
    "/server-status",
    "/xmlrpc.php",
)

BLOCKED_PATH_PATTERNS = (
    "../",
    "..%2f",
    "..%5c",
    "%2e%2e/",
    "%00",
)

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")

WSGIApp = Callable[..., Iterable[bytes]]


def _path_unescape(raw: str) -> str:
    if _BAD_ESCAPE.search(raw):
        raise ValueError(f"invalid escape in {raw!r}")
    return unquote(raw, errors="replace")


def is_blocked_path(path: str, raw_path: Optional[str] = None) -> bool:
    """Return True if a request path looks like a scanner probe or traversal attempt.

    path is the decoded request path; raw_path is the path as sent, if known.
    """
    lowered = path.lower()
    if lowered.startswith(BLOCKED_PATH_PREFIXES):
        return True
    if any(pattern in lowered for pattern in BLOCKED_PATH_PATTERNS):
        return True
    try:
        decoded = _path_unescape(raw_path or path)
    except ValueError:
        return False
    if decoded != lowered:
        decoded_lower = decoded.lower()
        return any(pattern in decoded_lower for pattern in BLOCKED_PATH_PATTERNS)
    return False


def _request_path(environ: dict[str, Any]) -> str:
    wsgi_path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
    try:
        return wsgi_path.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return wsgi_path


def _raw_path(environ: dict[str, Any]) -> str:
    uri = environ.get("REQUEST_URI") or environ.get("RAW_URI") or ""
    raw = uri.split("?", 1)[0].split("#", 1)[0]
    if "://" in raw:
        raw = urlsplit(raw).path
    return raw


class SecurityFilterMiddleware:
    """Answers 400 to requests for paths that only attackers ask for."""

    def __init__(self, app: WSGIApp, enabled: bool = True) -> None:
        self.app = app
        self.enabled = enabled

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        if not self.enabled:
            return self.app(environ, start_response)
        path = _request_path(environ)
        if path in HEALTH_CHECK_PATHS:
            return self.app(environ, start_response)
        if is_blocked_path(path, _raw_path(environ)):
            response = error_response(400, "BAD_REQUEST", "Invalid request")
            return response(environ, start_response)
        return self.app(environ, start_response)


class BodyTooLargeError(OSError):
    """The request body is larger than the allowed size."""

    def __init__(self, message: str = "request body too large") -> None:
        super().__init__(message)


class MaxBytesReader:
    """A read-only stream that fails once more than limit bytes would be read."""

    def __init__(self, stream: BinaryIO, limit: int) -> None:
        self._stream = stream
        self._remaining = limit
        self._exceeded = False

    def _fail(self) -> BodyTooLargeError:
        self._exceeded = True
        return BodyTooLargeError()

    def read(self, size: Optional[int] = -1) -> bytes:
        """Read up to size bytes, or everything when size is negative."""
        if self._exceeded:
            raise BodyTooLargeError()
        if size is None or size < 0:
            chunks = []
            while True:
                chunk = self._stream.read(self._remaining + 1)
                if not chunk:
                    break
                if len(chunk) > self._remaining:
                    raise self._fail()
                self._remaining -= len(chunk)
                chunks.append(chunk)
            return b"".join(chunks)
        if size == 0:
            return b""
        data = self._stream.read(min(size, self._remaining + 1))
        if len(data) > self._remaining:
            raise self._fail()
        self._remaining -= len(data)
        return data

    def readline(self, size: Optional[int] = -1) -> bytes:
        """Read one line, bounded by the remaining allowance."""
        if self._exceeded:
            raise BodyTooLargeError()
        want = self._remaining + 1
        if size is not None and size >= 0:
            want = min(size, want)
        line = self._stream.readline(want)
        if len(line) > self._remaining:
            raise self._fail()
        self._remaining -= len(line)
        return line

    def __iter__(self) -> Iterator[bytes]:
        while True:
            line = self.readline()
            if not line:
                return
            yield line

    def close(self) -> None:
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()


class MaxBodySizeMiddleware:
    """Limits how much of the request body the wrapped application can read."""

    def __init__(self, app: WSGIApp, max_size_mb: int) -> None:
        self.app = app
        self.max_bytes = max_size_mb * 1024 * 1024

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        stream = environ.get("wsgi.input") or io.BytesIO()
        environ["wsgi.input"] = MaxBytesReader(stream, self.max_bytes)
        return self.app(environ, start_response)