from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from app.models import Message


class MessageRole(str, Enum):
    INBOUND = "inbound"
    OUTBOUND_AGENT = "outbound-agent"
    OUTBOUND_AI = "outbound-ai"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


OUTBOUND_ROLES = (MessageRole.OUTBOUND_AGENT.value, MessageRole.OUTBOUND_AI.value)


class MessageNotFoundError(Exception):
    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


def new_local_id() -> str:
    return f"local_{uuid4().hex}"


def save_message(
    db: Session,
    conversation_id: str,
    role: str,
    content: str,
    *,
    message_id: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    sent_at: Optional[datetime] = None,
    delivery_status: str = DeliveryStatus.SENT.value,
    agent_name: Optional[str] = None,
    origin: Optional[str] = None,
    media_type: Optional[str] = None,
    media_url: Optional[str] = None,
    media_fallback: bool = False,
    media_info: Optional[dict] = None,
    reply_to: Optional[dict] = None,
) -> Message:
    """Save message to database."""
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation_id,
        id=message_id or new_local_id(),
        provider_message_id=provider_message_id,
        role=role,
        content=content,
        sent_at=sent_at or now,
        delivery_status=delivery_status,
        agent_name=agent_name,
        origin=origin,
        media_type=media_type,
        media_url=media_url,
        media_fallback=media_fallback,
        media_info=media_info,
        reply_to=reply_to,
        reactions=[],
        edited=False,
        deleted=False,
        created_at=now,
    )
    db.add(message)
    db.flush()
    return message


def find_by_local_id(db: Session, conversation_id: str, message_id: str) -> Optional[Message]:
    if not message_id:
        return None
    return db.query(Message).filter(Message.conversation_id == conversation_id, Message.id == message_id).first()


def find_by_provider_id(db: Session, conversation_id: str, provider_message_id: str) -> Optional[Message]:
    if not provider_message_id:
        return None
    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.provider_message_id == provider_message_id,
        )
        .first()
    )


def get_recent_messages(db: Session, conversation_id: str, limit: int = 10) -> list[Message]:
    """Last ``limit`` visible messages, oldest first."""
    rows = (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.role != MessageRole.SYSTEM.value,
            Message.deleted.is_(False),
        )
        .order_by(Message.sent_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def mark_delivery(message: Message, status: DeliveryStatus, provider_message_id: Optional[str] = None) -> None:
    message.delivery_status = status.value
    if provider_message_id:
        message.provider_message_id = provider_message_id


def edit_message(db: Session, conversation_id: str, message_id: str, content: str) -> Message:
    message = find_by_local_id(db, conversation_id, message_id)
    if not message:
        raise MessageNotFoundError(message_id)
    message.content = content
    message.edited = True
    db.flush()
    return message


def soft_delete_message(db: Session, conversation_id: str, message_id: str) -> Message:
    message = find_by_local_id(db, conversation_id, message_id)
    if not message:
        raise MessageNotFoundError(message_id)
    message.deleted = True
    db.flush()
    return message
