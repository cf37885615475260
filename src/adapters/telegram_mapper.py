"""Telegram-to-envelope mapping adapter.

This keeps Telethon-specific details out of the core pipeline: every incoming
Telethon message becomes a plain nested mapping in the envelope shape the
dispatcher and text extractor understand.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from telethon.tl.custom import Message

CHAT_PREFIX = "chat_id:"
USER_PREFIX = "user:"


def chat_key(chat_id: Optional[int]) -> str:
    return f"{CHAT_PREFIX}{chat_id}"


def user_key(user_id: Optional[int]) -> str:
    return f"{USER_PREFIX}{user_id}"


def parse_peer_key(key: str) -> Union[int, str]:
    """Turn ``chat_id:<id>`` / ``user:<id>`` back into an entity Telethon accepts."""

    for prefix in (CHAT_PREFIX, USER_PREFIX):
        if key.startswith(prefix):
            raw = key[len(prefix):]
            try:
                return int(raw)
            except ValueError:
                return raw
    return key


def _reply_to_id(message: Message) -> Optional[int]:
    reply_to = getattr(message, "reply_to", None)
    if reply_to is None:
        return None
    return getattr(reply_to, "reply_to_msg_id", None)


def _message_body(message: Message) -> dict[str, Any]:
    text = getattr(message, "raw_text", None) or ""
    context_info: dict[str, Any] = {}
    reply_id = _reply_to_id(message)
    if reply_id is not None:
        context_info["stanzaId"] = reply_id

    media_type = None
    if getattr(message, "photo", None):
        media_type = "imageMessage"
    elif getattr(message, "video", None):
        media_type = "videoMessage"
    elif getattr(message, "document", None):
        media_type = "documentMessage"

    if media_type:
        body: dict[str, Any] = {"caption": text}
        if context_info:
            body["contextInfo"] = context_info
        return {media_type: body}
    if context_info:
        return {"extendedTextMessage": {"text": text, "contextInfo": context_info}}
    return {"conversation": text}


def build_envelope(message: Message) -> dict[str, Any]:
    """Build a message envelope from a Telethon Message."""

    chat_id = getattr(message, "chat_id", None)
    is_group = bool(getattr(message, "is_group", False))
    # Channels that are not megagroups are one-way broadcasts.
    is_broadcast = bool(getattr(message, "is_channel", False)) and not is_group
    sender_id = getattr(message, "sender_id", None)

    key: dict[str, Any] = {
        "remoteJid": chat_key(chat_id),
        "fromMe": bool(getattr(message, "out", False)),
        "id": getattr(message, "id", None),
        "isGroup": is_group,
        "broadcast": is_broadcast,
    }
    if sender_id is not None:
        key["participant"] = user_key(sender_id)

    date = getattr(message, "date", None)
    return {
        "key": key,
        "messageTimestamp": int(date.timestamp()) if date is not None else None,
        "message": _message_body(message),
    }
