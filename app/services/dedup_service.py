"""Layered duplicate detection for webhook deliveries.

The gateway redelivers events and also echoes messages the system sent itself
(agent sends from the panel, AI replies), sometimes under a new provider id.
Checks run in order and stop at the first match:

1. local message id == provider id (webhook-created rows);
2. ``provider_message_id`` column (rows created locally before the echo);
3. agent-direction only: same outbound content within a short time window.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Message
from app.services.event_normalizer import InboundEvent
from app.services.message_service import (
    OUTBOUND_ROLES,
    DeliveryStatus,
    find_by_local_id,
    find_by_provider_id,
)

logger = get_logger("dedup")

DEFAULT_AGENT_NAMES = frozenset({"Atendente", "Agência B0om"})


class DedupOutcome(str, Enum):
    FIRST_SEEN = "first_seen"
    ALREADY_STORED = "already_stored"
    CONTENT_WINDOW_DUPLICATE = "content_window_duplicate"


@dataclass
class DedupDecision:
    outcome: DedupOutcome
    message: Optional[Message] = None
    reason: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.outcome != DedupOutcome.FIRST_SEEN


def _is_placeholder_name(name: Optional[str]) -> bool:
    return not name or name in DEFAULT_AGENT_NAMES or name == settings.ai_agent_name


def patch_agent_echo(message: Message, sender_name: Optional[str]) -> bool:
    """Narrow patch for an echoed agent message: upgrade its display name and promote it to sent."""
    changed = False
    if sender_name and _is_placeholder_name(message.agent_name):
        if message.agent_name != sender_name:
            message.agent_name = sender_name
            changed = True
    if message.delivery_status != DeliveryStatus.SENT.value:
        message.delivery_status = DeliveryStatus.SENT.value
        changed = True
    return changed


def find_recent_outbound_duplicate(
    db: Session,
    conversation_id: str,
    content: str,
    *,
    now: Optional[datetime] = None,
    window_seconds: Optional[int] = None,
) -> Optional[Message]:
    if not content:
        return None
    window = window_seconds if window_seconds is not None else settings.dedup_content_window_seconds
    since = (now or datetime.now(timezone.utc)) - timedelta(seconds=window)
    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.role.in_(OUTBOUND_ROLES),
            Message.content == content,
            Message.sent_at >= since,
        )
        .order_by(Message.sent_at.desc())
        .first()
    )


def classify_event(db: Session, event: InboundEvent, content: Optional[str] = None) -> DedupDecision:
    """Classify an event as first seen, already stored, or a content-window duplicate.

    Agent-direction matches get the narrow patch applied in place.
    """
    contact_id = event.contact_id
    provider_id = event.provider_message_id
    content = event.content if content is None else content

    checks = (
        ("already_processed", lambda: find_by_local_id(db, contact_id, provider_id)),
        ("already_processed_by_provider_id", lambda: find_by_provider_id(db, contact_id, provider_id)),
    )
    for reason, lookup in checks:
        existing = lookup()
        if existing is None:
            continue
        if event.from_agent and patch_agent_echo(existing, event.sender_display_name):
            db.flush()
        logger.info(
            "Duplicate delivery",
            extra={"context": {"contact_id": contact_id, "message_id": provider_id, "reason": reason}},
        )
        return DedupDecision(DedupOutcome.ALREADY_STORED, existing, reason)

    if event.from_agent:
        existing = find_recent_outbound_duplicate(db, contact_id, content)
        if existing is not None:
            if patch_agent_echo(existing, event.sender_display_name):
                db.flush()
            logger.info(
                "Outbound echo suppressed by content window",
                extra={"context": {"contact_id": contact_id, "message_id": provider_id, "matched": existing.id}},
            )
            return DedupDecision(
                DedupOutcome.CONTENT_WINDOW_DUPLICATE,
                existing,
                "already_processed_by_content_time",
            )

    return DedupDecision(DedupOutcome.FIRST_SEEN)
