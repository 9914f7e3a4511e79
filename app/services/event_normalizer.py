"""Map raw Z-API webhook payloads onto normalized inbound events.

Every message kind is a payload variant. The variant is picked from an ordered
table of extractors (text first, then reaction, media kinds, contact and
location); adding a new media kind means adding a ``MediaSpec`` entry.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.webhook import ZApiWebhookPayload

logger = get_logger("event_normalizer")

IGNORED_EVENT_TYPES = frozenset(
    {
        "MessageStatusCallback",
        "DeliveryCallback",
        "ReadCallback",
        "MessageStatus",
        "StatusCallback",
        "PresenceCallback",
        "AckCallback",
        "ReactionCallback",
    }
)

NO_TEXT_PLACEHOLDER = "[no text]"

_NAME_PREFIX_RE = re.compile(r"^\*[\w\s]+:\*\s*\n?")


def sanitize_content(text: Optional[str]) -> str:
    """Strip the leading ``*Name:*`` prefix added to relayed agent/AI messages."""
    if not text:
        return ""
    return _NAME_PREFIX_RE.sub("", text, count=1).strip()


def format_with_sender(name: Optional[str], text: str) -> str:
    """Inverse of ``sanitize_content``: prefix relayed text with the sender name."""
    if not name:
        return text
    return f"*{name}:*\n{text}"


@dataclass(frozen=True)
class MediaRef:
    source_url: str
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    suggested_name: Optional[str] = None


@dataclass(frozen=True)
class TextPayload:
    text: str
    kind: str = "text"

    def summary(self) -> str:
        return self.text


@dataclass(frozen=True)
class MediaPayload:
    kind: str
    label: str
    media: Optional[MediaRef]
    info: dict = field(default_factory=dict)

    def summary(self) -> str:
        return self.label


@dataclass(frozen=True)
class ContactPayload:
    display_name: Optional[str]
    vcard: Optional[str] = None
    kind: str = "contact"

    def summary(self) -> str:
        return f"👤 {self.display_name or 'Contact'}"


@dataclass(frozen=True)
class LocationPayload:
    latitude: Optional[float]
    longitude: Optional[float]
    address: Optional[str] = None
    kind: str = "location"

    def summary(self) -> str:
        return f"📍 {self.address or 'Location'}"


@dataclass(frozen=True)
class ReactionPayload:
    target_id: Optional[str]
    emoji: str
    removed: bool
    kind: str = "reaction"

    def summary(self) -> str:
        if self.removed:
            return "Removed a reaction from a message"
        return f"Reacted with {self.emoji} to a message"


@dataclass(frozen=True)
class EmptyPayload:
    kind: str = "empty"

    def summary(self) -> str:
        return NO_TEXT_PLACEHOLDER


Payload = Union[TextPayload, MediaPayload, ContactPayload, LocationPayload, ReactionPayload, EmptyPayload]


@dataclass(frozen=True)
class InboundEvent:
    provider_message_id: str
    contact_id: str
    from_agent: bool
    occurred_at: datetime
    payload: Payload
    sender_display_name: Optional[str] = None
    chat_name: Optional[str] = None
    quoted_message_id: Optional[str] = None
    photo_present: bool = False
    photo: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.payload.kind

    @property
    def content(self) -> str:
        """Sanitized, human-readable content of the event."""
        return sanitize_content(self.payload.summary())

    @property
    def has_content(self) -> bool:
        return not isinstance(self.payload, EmptyPayload) and bool(self.content)


@dataclass(frozen=True)
class IgnoredEvent:
    reason: str


@dataclass(frozen=True)
class MediaSpec:
    kind: str
    url_field: str
    icon: str
    default_label: str
    label_field: Optional[str] = None  # part field used instead of the default label
    caption_field: Optional[str] = None  # appended as ": caption"
    name_field: Optional[str] = None


MEDIA_SPECS = (
    MediaSpec("image", "imageUrl", "📷", "Image", caption_field="caption"),
    MediaSpec("audio", "audioUrl", "🎵", "Audio"),
    MediaSpec("video", "videoUrl", "🎬", "Video", caption_field="caption"),
    MediaSpec("document", "documentUrl", "📄", "Document", label_field="title", name_field="fileName"),
)


def _media_extractor(spec: MediaSpec) -> Callable[[Any], Payload]:
    def extract(part: Any) -> Payload:
        caption = getattr(part, spec.caption_field, None) if spec.caption_field else None
        label_value = getattr(part, spec.label_field, None) if spec.label_field else None
        label = f"{spec.icon} {label_value or spec.default_label}"
        if caption:
            label = f"{label}: {caption}"

        source_url = getattr(part, spec.url_field, None)
        info = part.model_dump(exclude_none=True)
        if not source_url:
            return TextPayload(text=label)

        suggested_name = None
        if spec.name_field:
            suggested_name = getattr(part, spec.name_field, None)
        if not suggested_name and label_value:
            suggested_name = label_value
        media = MediaRef(
            source_url=source_url,
            mime_type=getattr(part, "mimeType", None),
            caption=caption,
            suggested_name=suggested_name,
        )
        return MediaPayload(kind=spec.kind, label=label, media=media, info=info)

    return extract


def _extract_text(part: Any) -> Optional[Payload]:
    if not part.message:
        return None
    return TextPayload(text=part.message)


def _extract_reaction(part: Any) -> Payload:
    target_id = None
    if part.referencedMessage and part.referencedMessage.messageId:
        target_id = part.referencedMessage.messageId
    elif part.messageId:
        target_id = part.messageId
    emoji = part.value or ""
    return ReactionPayload(target_id=target_id, emoji=emoji, removed=emoji == "")


def _extract_contact(part: Any) -> Payload:
    return ContactPayload(display_name=part.displayName, vcard=part.vcard)


def _extract_location(part: Any) -> Payload:
    return LocationPayload(latitude=part.latitude, longitude=part.longitude, address=part.address)


EXTRACTORS: tuple[tuple[str, Callable[[Any], Optional[Payload]]], ...] = (
    ("text", _extract_text),
    ("reaction", _extract_reaction),
    *((spec.kind, _media_extractor(spec)) for spec in MEDIA_SPECS),
    ("contact", _extract_contact),
    ("location", _extract_location),
)


def extract_payload(body: ZApiWebhookPayload) -> Payload:
    for field_name, extractor in EXTRACTORS:
        part = getattr(body, field_name, None)
        if part is None:
            continue
        payload = extractor(part)
        if payload is not None:
            return payload
    return EmptyPayload()


def _parse_occurred_at(momment: Optional[float]) -> datetime:
    if momment:
        try:
            return datetime.fromtimestamp(momment / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Invalid event timestamp", extra={"context": {"momment": momment}})
    return datetime.now(timezone.utc)


def normalize_event(raw: dict) -> Union[InboundEvent, IgnoredEvent]:
    """Normalize a raw webhook body into an ``InboundEvent`` or an ``IgnoredEvent``."""
    if not isinstance(raw, dict):
        return IgnoredEvent("invalid_payload")

    event_type = raw.get("type") or ""
    if event_type in IGNORED_EVENT_TYPES:
        return IgnoredEvent("status_callback")

    try:
        body = ZApiWebhookPayload.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Webhook payload validation failed", extra={"context": {"error": str(exc)}})
        return IgnoredEvent("invalid_payload")

    if not body.phone or not body.messageId:
        return IgnoredEvent("missing_identifiers")

    quoted = body.referenceMessageId or (body.context.id if body.context else None)

    return InboundEvent(
        provider_message_id=body.messageId,
        contact_id=body.phone,
        from_agent=body.fromMe,
        occurred_at=_parse_occurred_at(body.momment),
        payload=extract_payload(body),
        sender_display_name=body.senderName,
        chat_name=body.chatName,
        quoted_message_id=quoted,
        photo_present="photo" in body.model_fields_set,
        photo=body.photo,
    )
