"""Loopback → public hostname substitutions for DevTools responses."""
from __future__ import annotations

import re

_TEXTUAL_MARKERS = ("application/json", "text/", "javascript")
_STREAMING_TYPES = ("text/event-stream",)


def is_rewritable(content_type: str | None, content_encoding: str | None = None) -> bool:
    """True for textual, non-streaming, uncompressed bodies."""
    ct = (content_type or "").lower()
    if not any(marker in ct for marker in _TEXTUAL_MARKERS):
        return False
    if any(ct.startswith(t) for t in _STREAMING_TYPES):
        return False
    return (content_encoding or "identity").lower() == "identity"


def build_rules(hostname: str, debug_port: int) -> list[tuple[re.Pattern, str]]:
    """Ordered (pattern, replacement) pairs for one hostname/port."""
    port = re.escape(str(debug_port))
    return [
        (re.compile(rf"ws://127\.0\.0\.1:{port}"), f"wss://{hostname}"),
        (re.compile(rf"ws://localhost:{port}"), f"wss://{hostname}"),
        (re.compile(rf"http://127\.0\.0\.1:{port}"), f"https://{hostname}"),
        (re.compile(rf"http://localhost:{port}"), f"https://{hostname}"),
        (re.compile(rf"ws=localhost:{port}"), f"ws={hostname}"),
        # devtoolsFrontendUrl query form, with plain or backslash-escaped dots
        (re.compile(rf"ws=127\\?\.0\\?\.0\\?\.1:{port}"), f"ws={hostname}"),
    ]


def rewrite_text(text: str, rules: list[tuple[re.Pattern, str]]) -> str:
    for pattern, replacement in rules:
        text = pattern.sub(lambda _m, r=replacement: r, text)
    return text


def rewrite_body(body: bytes, hostname: str, debug_port: int, charset: str | None = None) -> bytes:
    """Rewrite a buffered response body.

    Raises ``UnicodeDecodeError`` if the body is not valid text in *charset*.
    """
    encoding = charset or "utf-8"
    text = body.decode(encoding)
    return rewrite_text(text, build_rules(hostname, debug_port)).encode(encoding)
