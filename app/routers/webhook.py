import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from app.database import get_db, get_session_factory
from app.logging_config import LoggerAdapter, bind_logger, get_logger
from app.schemas.webhook import WebhookResponse
from app.services.alert_service import alert_error
from app.services.auto_reply_service import spawn_auto_reply
from app.services.conversation_service import ensure_conversation, record_message, update_avatar
from app.services.dedup_service import classify_event
from app.services.event_normalizer import (
    IgnoredEvent,
    InboundEvent,
    MediaPayload,
    ReactionPayload,
    normalize_event,
)
from app.services.media_service import materialize
from app.services.message_service import DeliveryStatus, MessageRole, save_message
from app.services.reaction_service import apply_reaction
from app.services.reply_service import resolve_reply
from app.services.state_machine import ai_can_respond
from app.services.throttle import get_reaction_throttle

logger = get_logger("webhook")

router = APIRouter()

DEFAULT_AGENT_NAME = "Atendente"


@dataclass
class StoredEvent:
    message_id: str
    contact_id: str
    content: str
    role: str
    engage_ai: bool


@dataclass
class MessageFields:
    role: str
    content: str
    origin: str
    agent_name: Optional[str] = None
    media_type: Optional[str] = None
    media_url: Optional[str] = None
    media_fallback: bool = False
    media_info: Optional[dict] = None
    reply_to: Optional[dict] = None


def _display_name(event: InboundEvent) -> Optional[str]:
    if event.from_agent:
        return event.chat_name
    return event.sender_display_name or event.chat_name


async def _build_fields(db: Session, event: InboundEvent, log: LoggerAdapter) -> MessageFields:
    """Turn the normalized payload into message columns (reaction, media, reply)."""
    payload = event.payload
    role = MessageRole.OUTBOUND_AGENT.value if event.from_agent else MessageRole.INBOUND.value
    origin = "device" if event.from_agent else "webhook"
    agent_name = (event.sender_display_name or DEFAULT_AGENT_NAME) if event.from_agent else None

    if isinstance(payload, ReactionPayload):
        outcome = await apply_reaction(
            db,
            event.contact_id,
            payload,
            by_identity=event.contact_id,
            by_name=event.sender_display_name,
            from_agent=event.from_agent,
            throttle=get_reaction_throttle(),
        )
        return MessageFields(
            role=MessageRole.SYSTEM.value,
            content=outcome.note,
            origin=origin,
            agent_name=agent_name,
            media_info={"reaction": {"target_id": payload.target_id, "emoji": payload.emoji, "applied": outcome.applied}},
        )

    fields = MessageFields(role=role, content=event.content, origin=origin, agent_name=agent_name)
    if isinstance(payload, MediaPayload) and payload.media:
        materialized = await materialize(payload.media.source_url, payload.kind, payload.media.suggested_name)
        fields.media_type = payload.kind
        fields.media_url = materialized.url
        fields.media_fallback = not materialized.durable
        fields.media_info = {**payload.info, "source_url": payload.media.source_url}
        if not materialized.durable:
            log.warning("Media stored with origin URL", context={"error": materialized.error})
    elif payload.kind in ("contact", "location"):
        fields.media_type = payload.kind
        fields.media_info = {k: v for k, v in vars(payload).items() if k != "kind" and v is not None}

    fields.reply_to = resolve_reply(db, event.contact_id, event.quoted_message_id)
    return fields


async def process_event(db: Session, event: InboundEvent, log: LoggerAdapter) -> WebhookResponse | StoredEvent:
    """Dedup, persist and account for a normalized event. Commits on success."""
    log = log.bind(kind=event.kind)
    decision = classify_event(db, event)
    if decision.is_duplicate:
        db.commit()
        return WebhookResponse(ignored=True, reason=decision.reason)

    if not event.has_content:
        log.info("Empty message ignored")
        return WebhookResponse(ignored=True, reason="empty_message")

    # Media download happens before the first write of the request transaction.
    fields = await _build_fields(db, event, log)
    conversation = ensure_conversation(db, event.contact_id, _display_name(event), event.occurred_at)

    try:
        with db.begin_nested():
            save_message(
                db,
                event.contact_id,
                fields.role,
                fields.content,
                message_id=event.provider_message_id,
                provider_message_id=event.provider_message_id,
                sent_at=event.occurred_at,
                delivery_status=DeliveryStatus.SENT.value,
                agent_name=fields.agent_name,
                origin=fields.origin,
                media_type=fields.media_type,
                media_url=fields.media_url,
                media_fallback=fields.media_fallback,
                media_info=fields.media_info,
                reply_to=fields.reply_to,
            )
    except IntegrityError:
        # Concurrent delivery of the same event won the insert.
        db.commit()
        log.info("Duplicate delivery lost insert race")
        return WebhookResponse(ignored=True, reason="already_processed")

    record_message(db, event.contact_id, fields.role, fields.content, event.occurred_at)
    update_avatar(db, event.contact_id, event.photo_present, event.photo)

    stored = StoredEvent(
        message_id=event.provider_message_id,
        contact_id=event.contact_id,
        content=fields.content,
        role=fields.role,
        engage_ai=fields.role == MessageRole.INBOUND.value
        and ai_can_respond(conversation.ai_enabled, conversation.ai_paused, conversation.conversation_stage),
    )
    db.commit()
    log.info("Message stored", context={"role": stored.role})
    return stored


@router.get("/webhook")
async def webhook_probe():
    return {
        "status": "ok",
        "message": "Webhook endpoint is working",
        "methods": ["POST"],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
async def handle_webhook(
    request: Request,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """Handle an inbound Z-API webhook delivery.

    Every outcome short of a database failure answers 200 so the gateway does
    not redeliver; write failures answer 500 so it does.
    """
    try:
        raw = await request.json()
    except ClientDisconnect:
        logger.info("Client disconnected before body was read")
        return WebhookResponse(ignored=True, reason="client_disconnect")
    except ValueError:
        return WebhookResponse(ignored=True, reason="invalid_payload")

    event = normalize_event(raw)
    if isinstance(event, IgnoredEvent):
        logger.debug("Webhook ignored", extra={"context": {"reason": event.reason}})
        return WebhookResponse(ignored=True, reason=event.reason)

    log = bind_logger(
        logger,
        contact_id=event.contact_id,
        message_id=event.provider_message_id,
        from_agent=event.from_agent,
    )

    try:
        outcome = await process_event(db, event, log)
    except SQLAlchemyError as e:
        db.rollback()
        log.error("Webhook store failed", context={"error": str(e)})
        alert_error("Webhook store failed", {"contact_id": event.contact_id, "error": str(e)[:300]})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="store_write_failed")

    if isinstance(outcome, WebhookResponse):
        return outcome

    auto_reply = "skipped"
    if outcome.engage_ai:
        task = spawn_auto_reply(session_factory, outcome.contact_id, outcome.content)
        result = await asyncio.shield(task)
        auto_reply = "sent" if result.ok else f"failed:{result.error_code}"

    return WebhookResponse(
        success=True,
        message="Message processed",
        message_id=outcome.message_id,
        contact_id=outcome.contact_id,
        auto_reply=auto_reply,
    )
