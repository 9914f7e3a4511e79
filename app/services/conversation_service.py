from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Conversation
from app.services.message_service import OUTBOUND_ROLES, MessageRole
from app.services.state_machine import (
    ConversationStage,
    ConversationStatus,
    StageAction,
    parse_action,
    target_stage,
)

logger = get_logger("conversation_service")


def get_conversation(db: Session, contact_id: str) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.contact_id == contact_id).first()


def ensure_conversation(
    db: Session,
    contact_id: str,
    display_name: Optional[str] = None,
    at: Optional[datetime] = None,
) -> Conversation:
    """Find the conversation for a contact or create it with the default AI-first setup.

    Concurrent first deliveries for the same contact race on the primary key;
    the loser re-reads the row created by the winner.
    """
    conversation = get_conversation(db, contact_id)
    if conversation:
        return conversation

    now = at or datetime.now(timezone.utc)
    conversation = Conversation(
        contact_id=contact_id,
        display_name=display_name or contact_id,
        last_message=None,
        last_message_at=None,
        unread_count=0,
        status=ConversationStatus.ACTIVE.value,
        ai_enabled=True,
        ai_paused=False,
        conversation_stage=ConversationStage.AI_ACTIVE.value,
        source="zapi",
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(conversation)
            db.flush()
    except IntegrityError:
        logger.info("Conversation created concurrently", extra={"context": {"contact_id": contact_id}})
        conversation = get_conversation(db, contact_id)
        if conversation is None:
            raise
        return conversation

    logger.info("Conversation created", extra={"context": {"contact_id": contact_id}})
    return conversation


def record_message(db: Session, contact_id: str, role: str, content: str, at: datetime) -> None:
    """Apply last-message and unread counters for a stored message as one atomic UPDATE."""
    values = {
        Conversation.last_message: content,
        Conversation.last_message_at: at,
        Conversation.updated_at: datetime.now(timezone.utc),
    }
    if role == MessageRole.INBOUND.value:
        values[Conversation.unread_count] = Conversation.unread_count + 1
    elif role in OUTBOUND_ROLES:
        values[Conversation.unread_count] = 0

    db.query(Conversation).filter(Conversation.contact_id == contact_id).update(
        values, synchronize_session=False
    )


def update_avatar(db: Session, contact_id: str, photo_present: bool, photo: Optional[str]) -> None:
    """Set the avatar when a photo is sent, clear it when sent empty, keep it when absent."""
    if not photo_present:
        return
    db.query(Conversation).filter(Conversation.contact_id == contact_id).update(
        {Conversation.avatar_url: photo or None}, synchronize_session=False
    )


def set_stage(conversation: Conversation, stage: ConversationStage) -> None:
    conversation.conversation_stage = stage.value
    conversation.updated_at = datetime.now(timezone.utc)


def apply_stage_action(
    db: Session,
    conversation: Conversation,
    action: str,
    agent_id: Optional[str] = None,
) -> tuple[str, str]:
    """Apply a conversation control action. Returns (old_stage, new_stage).

    Raises InvalidActionError for unknown actions.
    """
    parsed = parse_action(action)
    old_stage = conversation.conversation_stage
    now = datetime.now(timezone.utc)
    agent = agent_id or "unknown"

    if parsed in (StageAction.PAUSE_AI, StageAction.ASSUME_CHAT, StageAction.ASSIGN_AGENT):
        conversation.ai_paused = True
        conversation.paused_at = now
        conversation.paused_by = agent
        if parsed != StageAction.PAUSE_AI:
            conversation.assigned_agent = agent
    elif parsed in (StageAction.RESUME_AI, StageAction.RETURN_TO_AI):
        conversation.ai_paused = False
        conversation.ai_enabled = True
        conversation.assigned_agent = None
        conversation.paused_at = None
        conversation.paused_by = None
    elif parsed == StageAction.MARK_RESOLVED:
        conversation.ai_paused = True
        conversation.resolved_at = now
        conversation.resolved_by = agent
    elif parsed == StageAction.REOPEN_CHAT:
        conversation.ai_paused = False
        conversation.ai_enabled = True
        conversation.assigned_agent = None
        conversation.resolved_at = None
        conversation.resolved_by = None

    set_stage(conversation, target_stage(parsed))
    db.flush()

    logger.info(
        "Conversation stage changed",
        extra={
            "context": {
                "contact_id": conversation.contact_id,
                "action": parsed.value,
                "old_stage": old_stage,
                "new_stage": conversation.conversation_stage,
            }
        },
    )
    return old_stage, conversation.conversation_stage
