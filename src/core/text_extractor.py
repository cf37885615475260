"""User-visible text extraction from message envelopes.

Envelopes are deeply variant nested mappings. Every access below goes through
``_dig`` so a missing or oddly-typed field is "no candidate", never an error.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from core.models import Envelope

# (path, ...) tried in order against one message body.
_TEXT_CANDIDATES: tuple[tuple[str, ...], ...] = (
    ("conversation",),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
    ("documentMessage", "caption"),
    ("buttonsResponseMessage", "selectedDisplayText"),
    ("buttonsResponseMessage", "selectedButtonId"),
    ("templateButtonReplyMessage", "selectedDisplayText"),
    ("templateButtonReplyMessage", "selectedId"),
    ("listResponseMessage", "title"),
    ("listResponseMessage", "singleSelectReply", "selectedRowId"),
)

# Wrappers whose inner body lives under "<wrapper>.message".
_WRAPPERS: tuple[str, ...] = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "deviceSentMessage",
    "documentWithCaptionMessage",
    "editedMessage",
)

# Bodies that may carry a contextInfo with a quoted message.
_CONTEXT_CARRIERS: tuple[str, ...] = (
    "extendedTextMessage",
    "imageMessage",
    "videoMessage",
    "documentMessage",
    "buttonsResponseMessage",
    "listResponseMessage",
)

_MAX_DEPTH = 8


def _dig(node: Any, *path: str) -> Any:
    """Follow ``path`` through mappings or attributes, returning None on any miss."""

    current = node
    for key in path:
        if current is None:
            return None
        try:
            if isinstance(current, dict) or hasattr(current, "get"):
                current = current.get(key)
            else:
                current = getattr(current, key, None)
        except Exception:
            return None
    return current


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _first_text(body: Any, paths: Iterable[tuple[str, ...]]) -> Optional[str]:
    for path in paths:
        text = _clean(_dig(body, *path))
        if text:
            return text
    return None


def _extract_body(body: Any, depth: int) -> Optional[str]:
    if body is None or depth > _MAX_DEPTH:
        return None

    text = _first_text(body, _TEXT_CANDIDATES)
    if text:
        return text

    for wrapper in _WRAPPERS:
        inner = _dig(body, wrapper, "message")
        if inner is not None:
            text = _extract_body(inner, depth + 1)
            if text:
                return text

    for carrier in _CONTEXT_CARRIERS:
        quoted = _dig(body, carrier, "contextInfo", "quotedMessage")
        if quoted is not None:
            text = _extract_body(quoted, depth + 1)
            if text:
                return text
    return None


def extract_text(envelope: Optional[Envelope]) -> Optional[str]:
    """Return the first non-empty user-visible text in ``envelope``, or None.

    Order: direct text, extended text, media captions, interactive replies,
    then known wrappers (recursively), then the quoted message.
    """

    try:
        return _extract_body(_dig(envelope, "message"), 0)
    except Exception:
        return None
