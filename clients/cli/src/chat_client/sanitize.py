"""Outgoing message text sanitization."""

from __future__ import annotations

import re

from .errors import EmptyMessage, MessageTooLong

MAX_MESSAGE_CHARS = 1000

_ANGLE_RE = re.compile(r"[<>]")
_JS_PROTOCOL_RE = re.compile(r"javascript:", flags=re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+=", flags=re.IGNORECASE)


def sanitize_input(text: str) -> str:
    """Strip markup fragments that could script a rendering client."""

    if not isinstance(text, str):
        return ""
    cleaned = _ANGLE_RE.sub("", text)
    cleaned = _JS_PROTOCOL_RE.sub("", cleaned)
    cleaned = _EVENT_HANDLER_RE.sub("", cleaned)
    return cleaned.strip()


def prepare_outgoing(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> str:
    """Return sanitized text ready for encryption or raise a send error."""

    if not isinstance(text, str) or not text.strip():
        raise EmptyMessage("message cannot be empty")
    cleaned = sanitize_input(text.strip())
    if not cleaned:
        raise EmptyMessage("message cannot be empty")
    if len(cleaned) > max_chars:
        raise MessageTooLong(f"message exceeds {max_chars} characters")
    return cleaned
