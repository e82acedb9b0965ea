"""Minimal HTTP/1.1 framing over asyncio streams.

Only what the daemon needs: one request per connection, a
Content-Length body, buffered JSON responses and Server-Sent Events.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from hearth.exceptions import HTTPError, MalformedRequestError, PayloadTooLargeError

REASONS = {
    200: "OK",
    400: "Bad Request",
    401: "Unauthorized",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    413: "Payload Too Large",
    429: "Too Many Requests",
    431: "Request Header Fields Too Large",
    500: "Internal Server Error",
    503: "Service Unavailable",
}

READ_CHUNK_BYTES = 64 * 1024


@dataclass
class HttpRequest:
    """A parsed request. `path` never carries the query string."""

    method: str
    path: str
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    def json(self) -> dict[str, Any]:
        """Decode the body as a JSON object; an empty body is `{}`.

        Raises:
            MalformedRequestError if the body is not a JSON object
        """
        if not self.body.strip():
            return {}
        try:
            data = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedRequestError(f"Invalid JSON body: {e}") from e
        if not isinstance(data, dict):
            raise MalformedRequestError("JSON body must be an object")
        return data


def _parse_head(raw: bytes) -> tuple[str, str, dict[str, str], dict[str, str]]:
    try:
        text = raw.decode("latin-1")
    except UnicodeDecodeError as e:
        raise MalformedRequestError("Undecodable request head") from e
    lines = text.split("\r\n")
    parts = lines[0].split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise MalformedRequestError(f"Malformed request line: {lines[0][:100]!r}")
    method, target, _version = parts

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise MalformedRequestError(f"Malformed header line: {line[:100]!r}")
        headers[name.strip().lower()] = value.strip()

    split = urlsplit(target)
    path = split.path or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    query = dict(parse_qsl(split.query, keep_blank_values=True))
    return method.upper(), path, query, headers


async def read_request(
    reader: asyncio.StreamReader,
    max_body: int = 1_048_576,
    max_header: int = 65_536,
    timeout: float = 30.0,
) -> HttpRequest | None:
    """Read one request from the stream.

    Returns None when the peer closed before sending anything.

    Raises:
        MalformedRequestError: unparseable head or bad Content-Length
        PayloadTooLargeError: declared body larger than `max_body`
        HTTPError: (431) request head larger than `max_header`
        asyncio.TimeoutError: the peer stalled mid-request
    """
    try:
        head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout)
    except asyncio.IncompleteReadError as e:
        if not e.partial.strip():
            return None
        raise MalformedRequestError("Connection closed mid-header") from e
    except asyncio.LimitOverrunError as e:
        raise HTTPError(431, "Request head too large") from e
    if len(head) > max_header:
        raise HTTPError(431, "Request head too large")

    method, path, query, headers = _parse_head(head[:-4])

    raw_length = headers.get("content-length", "0") or "0"
    try:
        length = int(raw_length)
    except ValueError as e:
        raise MalformedRequestError(f"Invalid Content-Length: {raw_length!r}") from e
    if length < 0:
        raise MalformedRequestError(f"Invalid Content-Length: {raw_length!r}")
    if length > max_body:
        raise PayloadTooLargeError(length, max_body)

    # Large bodies arrive over several reads.
    chunks: list[bytes] = []
    remaining = length
    while remaining > 0:
        chunk = await asyncio.wait_for(reader.read(min(remaining, READ_CHUNK_BYTES)), timeout)
        if not chunk:
            raise MalformedRequestError(
                f"Connection closed after {length - remaining} of {length} body bytes"
            )
        chunks.append(chunk)
        remaining -= len(chunk)

    return HttpRequest(method=method, path=path, query=query, headers=headers, body=b"".join(chunks))


@dataclass
class HttpResponse:
    status: int = 200
    body: bytes = b""
    content_type: str = "application/json"
    headers: dict[str, str] = field(default_factory=dict)

    def encode(self) -> bytes:
        reason = REASONS.get(self.status, "OK")
        lines = [
            f"HTTP/1.1 {self.status} {reason}",
            f"Content-Type: {self.content_type}",
            f"Content-Length: {len(self.body)}",
            "X-Content-Type-Options: nosniff",
            "Connection: close",
        ]
        lines.extend(f"{name}: {value}" for name, value in self.headers.items())
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + self.body


def json_response(data: Any, status: int = 200, headers: dict[str, str] | None = None) -> HttpResponse:
    body = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
    return HttpResponse(status=status, body=body, headers=dict(headers or {}))


def error_response(status: int, message: str) -> HttpResponse:
    return json_response({"error": message}, status=status)


SSE_HEAD = (
    "HTTP/1.1 200 OK\r\n"
    "Content-Type: text/event-stream; charset=utf-8\r\n"
    "Cache-Control: no-cache\r\n"
    "X-Content-Type-Options: nosniff\r\n"
    "X-Accel-Buffering: no\r\n"
    "Connection: close\r\n"
    "\r\n"
).encode("latin-1")


def format_sse(event: str, data: Any) -> bytes:
    """One SSE frame. JSON encoding escapes newlines, so a frame is one data line."""
    payload = json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")
