from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class _Part(BaseModel):
    model_config = ConfigDict(extra="allow")


class TextPart(_Part):
    message: Optional[str] = None


class ImagePart(_Part):
    imageUrl: Optional[str] = None
    caption: Optional[str] = None
    mimeType: Optional[str] = None


class AudioPart(_Part):
    audioUrl: Optional[str] = None
    mimeType: Optional[str] = None


class VideoPart(_Part):
    videoUrl: Optional[str] = None
    caption: Optional[str] = None
    mimeType: Optional[str] = None


class DocumentPart(_Part):
    documentUrl: Optional[str] = None
    title: Optional[str] = None
    fileName: Optional[str] = None
    mimeType: Optional[str] = None


class ContactPart(_Part):
    displayName: Optional[str] = None
    vcard: Optional[str] = None


class LocationPart(_Part):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None


class ReferencedMessage(_Part):
    messageId: Optional[str] = None


class ReactionPart(_Part):
    value: Optional[str] = Field(default=None, validation_alias=AliasChoices("value", "reaction"))
    messageId: Optional[str] = None
    referencedMessage: Optional[ReferencedMessage] = None


class QuoteContext(_Part):
    id: Optional[str] = None


class ZApiWebhookPayload(BaseModel):
    """Z-API "on message received" webhook body (also used for status callbacks)."""

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    phone: Optional[str] = None
    messageId: Optional[str] = None
    momment: Optional[float] = None
    fromMe: bool = False
    senderName: Optional[str] = None
    chatName: Optional[str] = None
    text: Optional[TextPart] = None
    reaction: Optional[ReactionPart] = None
    image: Optional[ImagePart] = None
    audio: Optional[AudioPart] = None
    video: Optional[VideoPart] = None
    document: Optional[DocumentPart] = None
    contact: Optional[ContactPart] = None
    location: Optional[LocationPart] = None
    referenceMessageId: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("referenceMessageId", "quotedMsgId"),
    )
    context: Optional[QuoteContext] = None
    photo: Optional[str] = None

    @field_validator("phone", "messageId", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        text = str(value).strip()
        return text or None

    @field_validator("fromMe", mode="before")
    @classmethod
    def _coerce_from_me(cls, value: Any) -> bool:
        return bool(value)


class WebhookResponse(BaseModel):
    success: Optional[bool] = None
    ignored: Optional[bool] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    message_id: Optional[str] = None
    contact_id: Optional[str] = None
    auto_reply: Optional[str] = None
