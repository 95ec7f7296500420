"""
Message Classifier

Maps one WhatsApp Cloud API message object (plus its contact) to a
normalized inbox message and the preview shown in conversation lists.

| provider type              | preview                 | text             | media |
|----------------------------|-------------------------|------------------|-------|
| text                       | body                    | body             | -     |
| interactive.button_reply   | button title            | button title     | -     |
| image / video / document   | label (+ ": caption")   | caption or ""    | id    |
| audio / sticker            | label                   | ""               | id    |
| anything else              | Ignorable               |                  |       |
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from models import MESSAGE_ID_MAX_LENGTH, PHONE_MAX_LENGTH, Sender
from schemas import MessageRecord


class MessageKind(str, enum.Enum):
    TEXT = "text"
    BUTTON_REPLY = "button_reply"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    STICKER = "sticker"
    DOCUMENT = "document"


MEDIA_LABELS = {
    MessageKind.IMAGE: "📷 Image",
    MessageKind.VIDEO: "📹 Video",
    MessageKind.AUDIO: "🎤 Voice Message",
    MessageKind.STICKER: "Sticker",
}

# Kinds whose caption is carried into the message text
CAPTIONED = (MessageKind.IMAGE, MessageKind.VIDEO, MessageKind.DOCUMENT)


@dataclass
class ClassifiedMessage:
    kind: MessageKind
    message: MessageRecord
    preview: str
    phone: str
    display_name: Optional[str] = None
    media_id: Optional[str] = None
    file_name: Optional[str] = None

    @property
    def has_media(self) -> bool:
        return self.media_id is not None


@dataclass
class Ignorable:
    reason: str


Classification = Union[ClassifiedMessage, Ignorable]


def provider_timestamp(raw: Any) -> datetime:
    """Epoch seconds (string or int) -> aware UTC datetime; now() if unusable."""
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def _with_caption(label: str, caption: str) -> str:
    return f"{label}: {caption}" if caption else label


def _object(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def classify(message: Dict[str, Any], contact: Optional[Dict[str, Any]] = None) -> Classification:
    if not isinstance(message, dict):
        return Ignorable("message is not an object")

    message_id = _text(message.get("id"))
    phone = _text(message.get("from"))
    if not message_id or not phone:
        return Ignorable("message id or sender missing")
    if len(message_id) > MESSAGE_ID_MAX_LENGTH or len(phone) > PHONE_MAX_LENGTH:
        return Ignorable("message id or sender too long")

    display_name = _text(_object(_object(contact).get("profile")).get("name"))
    msg_type = message.get("type")

    kind = None
    text = ""
    preview = ""
    media_id = None
    file_name = None

    if msg_type == "text":
        body = _object(message.get("text")).get("body")
        if not isinstance(body, str):
            return Ignorable("text message without body")
        kind, text, preview = MessageKind.TEXT, body, body

    elif msg_type == "interactive":
        interactive = _object(message.get("interactive"))
        title = _text(_object(interactive.get("button_reply")).get("title"))
        if interactive.get("type") != "button_reply" or not title:
            return Ignorable(f"unsupported interactive type: {interactive.get('type')}")
        kind, text, preview = MessageKind.BUTTON_REPLY, title, title

    elif msg_type in (k.value for k in (
        MessageKind.IMAGE, MessageKind.VIDEO, MessageKind.AUDIO,
        MessageKind.STICKER, MessageKind.DOCUMENT,
    )):
        kind = MessageKind(msg_type)
        media = _object(message.get(msg_type))
        media_id = _text(media.get("id"))
        if not media_id:
            return Ignorable(f"{msg_type} message without media id")

        caption = (_text(media.get("caption")) or "") if kind in CAPTIONED else ""
        text = caption

        if kind == MessageKind.DOCUMENT:
            file_name = _text(media.get("filename"))
            preview = _with_caption(f"📄 {file_name or 'Document'}", caption)
        else:
            preview = _with_caption(MEDIA_LABELS[kind], caption)

    else:
        return Ignorable(f"unsupported message type: {msg_type}")

    record = MessageRecord(
        id=message_id,
        text=text,
        sender=Sender.CUSTOMER,
        timestamp=provider_timestamp(message.get("timestamp")),
    )
    return ClassifiedMessage(
        kind=kind,
        message=record,
        preview=preview,
        phone=phone,
        display_name=display_name,
        media_id=media_id,
        file_name=file_name,
    )
