from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import bind_logger, get_logger
from app.schemas.conversation import (
    AIControlRequest,
    AIControlResponse,
    EditMessageRequest,
    MessageOut,
    SendMessageRequest,
)
from app.services.admin_config_service import ConfigMissingError, load_ai_settings
from app.services.alert_service import alert_warning
from app.services.conversation_service import apply_stage_action, get_conversation, record_message
from app.services.event_normalizer import format_with_sender
from app.services.message_service import (
    DeliveryStatus,
    MessageNotFoundError,
    MessageRole,
    edit_message,
    find_by_local_id,
    mark_delivery,
    save_message,
    soft_delete_message,
)
from app.services.state_machine import InvalidActionError, parse_action
from app.services.zapi_service import GatewayRelayError, send_text

logger = get_logger("conversations")

router = APIRouter(prefix="/conversations")


def _require_conversation(db: Session, contact_id: str):
    conversation = get_conversation(db, contact_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.post("/{contact_id}/ai-control", response_model=AIControlResponse)
def ai_control(contact_id: str, request: AIControlRequest, db: Session = Depends(get_db)):
    """Pause, resume, assign or resolve a conversation."""
    try:
        parse_action(request.action)
    except InvalidActionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    conversation = _require_conversation(db, contact_id)
    old_stage, new_stage = apply_stage_action(db, conversation, request.action, request.agent_id)
    response = AIControlResponse(
        success=True,
        contact_id=contact_id,
        action=request.action,
        previous_stage=old_stage,
        conversation_stage=new_stage,
        ai_paused=bool(conversation.ai_paused),
    )
    db.commit()
    return response


@router.post("/{contact_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_agent_message(contact_id: str, request: SendMessageRequest, db: Session = Depends(get_db)):
    """Persist an agent message as ``sending``, relay it, then record the delivery outcome."""
    _require_conversation(db, contact_id)
    log = bind_logger(logger, contact_id=contact_id, agent_id=request.agent_id)

    reply_to = None
    reply_provider_id = None
    if request.reply_to:
        reply_to = request.reply_to.model_dump()
        quoted = find_by_local_id(db, contact_id, request.reply_to.id)
        reply_provider_id = (quoted.provider_message_id or quoted.id) if quoted else request.reply_to.id

    now = datetime.now(timezone.utc)
    message = save_message(
        db,
        contact_id,
        MessageRole.OUTBOUND_AGENT.value,
        request.content,
        sent_at=now,
        delivery_status=DeliveryStatus.SENDING.value,
        agent_name=request.agent_name,
        origin="panel",
        reply_to=reply_to,
    )
    record_message(db, contact_id, MessageRole.OUTBOUND_AGENT.value, request.content, now)
    db.commit()

    config = load_ai_settings(db)
    try:
        sent = await send_text(
            config,
            contact_id,
            format_with_sender(request.agent_name, request.content),
            reply_to_provider_id=reply_provider_id,
        )
    except (ConfigMissingError, GatewayRelayError) as e:
        mark_delivery(message, DeliveryStatus.FAILED)
        db.commit()
        log.error("Agent message relay failed", context={"message_id": message.id, "error": e.message})
        alert_warning("Agent message relay failed", {"contact_id": contact_id, "error": e.message})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)

    mark_delivery(message, DeliveryStatus.SENT, sent.provider_message_id)
    db.commit()
    db.refresh(message)
    log.info("Agent message sent", context={"message_id": message.id})
    return message


@router.patch("/{contact_id}/messages/{message_id}", response_model=MessageOut)
def update_message(contact_id: str, message_id: str, request: EditMessageRequest, db: Session = Depends(get_db)):
    try:
        message = edit_message(db, contact_id, message_id, request.content)
    except MessageNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    db.commit()
    db.refresh(message)
    return message


@router.delete("/{contact_id}/messages/{message_id}", response_model=MessageOut)
def delete_message(contact_id: str, message_id: str, db: Session = Depends(get_db)):
    try:
        message = soft_delete_message(db, contact_id, message_id)
    except MessageNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    db.commit()
    db.refresh(message)
    return message
