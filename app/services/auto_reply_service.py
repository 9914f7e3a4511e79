"""LLM auto-reply for inbound customer messages.

The reply runs in its own database session as a tracked background task.
Callers await it through ``asyncio.shield`` so a dropped webhook request does
not cancel a reply that is already being generated or relayed.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import bind_logger, get_logger
from app.services.admin_config_service import AISettings, ConfigMissingError, load_ai_settings
from app.services.alert_service import alert_error
from app.services.conversation_service import get_conversation, record_message
from app.services.event_normalizer import format_with_sender
from app.services.llm import CompletionError, LLMProvider, OpenAIProvider
from app.services.message_service import (
    DeliveryStatus,
    MessageRole,
    get_recent_messages,
    mark_delivery,
    save_message,
)
from app.services.result import Result
from app.services.state_machine import ai_can_respond
from app.services.zapi_service import GatewayRelayError, send_text

logger = get_logger("auto_reply")

CONTEXT_LIMIT = 10

ProviderFactory = Callable[[AISettings], LLMProvider]


def _default_provider(config: AISettings) -> LLMProvider:
    return OpenAIProvider(api_key=config.openai_api_key, default_model=config.model)


def build_context(db: Session, contact_id: str, limit: int = CONTEXT_LIMIT) -> str:
    lines = []
    for message in get_recent_messages(db, contact_id, limit=limit):
        speaker = "Customer" if message.role == MessageRole.INBOUND.value else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines)


def build_completion_messages(config: AISettings, context: str, content: str) -> list[dict]:
    return [
        {"role": "system", "content": config.system_prompt},
        {"role": "user", "content": f"Conversation context:\n{context}\n\nNew message: {content}"},
    ]


async def generate_reply(
    db: Session,
    contact_id: str,
    content: str,
    config: AISettings,
    provider_factory: ProviderFactory = _default_provider,
) -> str:
    """Ask the completion model for a reply. Empty answers fall back to the configured message."""
    if not config.openai_api_key:
        raise ConfigMissingError("OpenAI API key not configured")

    messages = build_completion_messages(config, build_context(db, contact_id), content)
    provider = provider_factory(config)
    try:
        response = await asyncio.wait_for(
            provider.generate(
                messages,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout_seconds=settings.completion_timeout_seconds,
            ),
            timeout=settings.completion_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise CompletionError("Completion timed out") from e
    return response.content or config.fallback_message


async def run_auto_reply(
    db: Session,
    contact_id: str,
    content: str,
    *,
    provider_factory: ProviderFactory = _default_provider,
) -> Result[dict]:
    """Generate, persist and relay an AI reply to the latest inbound message.

    Expected failures are logged and returned as ``Result.failure``; anything
    else is caught by the task wrapper as ``auto_reply_error``.
    """
    log = bind_logger(logger, contact_id=contact_id)

    conversation = get_conversation(db, contact_id)
    if conversation is None:
        return Result.failure("Conversation not found", "conversation_missing")
    if not ai_can_respond(conversation.ai_enabled, conversation.ai_paused, conversation.conversation_stage):
        return Result.failure("AI is not active for this conversation", "ai_inactive")

    config = load_ai_settings(db)
    try:
        reply = await generate_reply(db, contact_id, content, config, provider_factory)
    except ConfigMissingError as e:
        log.warning("Auto-reply skipped", context={"error": e.message})
        return Result.from_exception(e, "config_missing")
    except CompletionError as e:
        log.error("Completion failed", context={"error": e.message})
        return Result.from_exception(e, "completion_error")

    agent_name = settings.ai_agent_name
    now = datetime.now(timezone.utc)
    try:
        message = save_message(
            db,
            contact_id,
            MessageRole.OUTBOUND_AI.value,
            reply,
            sent_at=now,
            delivery_status=DeliveryStatus.SENDING.value,
            agent_name=agent_name,
            origin="ai",
        )
        record_message(db, contact_id, MessageRole.OUTBOUND_AI.value, reply, now)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.error("Failed to store AI reply", context={"error": str(e)})
        return Result.from_exception(e, "store_error")

    message_id = message.id
    try:
        sent = await send_text(config, contact_id, format_with_sender(agent_name, reply))
    except (ConfigMissingError, GatewayRelayError) as e:
        mark_delivery(message, DeliveryStatus.FAILED)
        db.commit()
        log.error("AI reply relay failed", context={"message_id": message_id, "error": e.message})
        alert_error("AI reply relay failed", {"contact_id": contact_id, "message_id": message_id, "error": e.message})
        return Result.from_exception(e, "relay_failed")

    mark_delivery(message, DeliveryStatus.SENT, sent.provider_message_id)
    db.commit()
    log.info(
        "AI reply sent",
        context={"message_id": message_id, "provider_message_id": sent.provider_message_id},
    )
    return Result.success(
        {
            "message_id": message_id,
            "provider_message_id": sent.provider_message_id,
            "content": reply,
        }
    )


_pending_tasks: set[asyncio.Task] = set()


async def _run_in_session(session_factory: Callable[[], Session], contact_id: str, content: str) -> Result[dict]:
    db = session_factory()
    try:
        return await run_auto_reply(db, contact_id, content)
    except Exception as e:
        db.rollback()
        logger.exception("Auto-reply crashed", extra={"context": {"contact_id": contact_id}})
        alert_error("Auto-reply crashed", {"contact_id": contact_id, "error": str(e)[:300]})
        return Result.from_exception(e, "auto_reply_error")
    finally:
        db.close()


def spawn_auto_reply(session_factory: Callable[[], Session], contact_id: str, content: str) -> asyncio.Task:
    task = asyncio.create_task(_run_in_session(session_factory, contact_id, content))
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task


def pending_count() -> int:
    return len(_pending_tasks)


async def drain_auto_replies(timeout: Optional[float] = None) -> None:
    """Wait for in-flight replies, e.g. on shutdown."""
    if not _pending_tasks:
        return
    logger.info("Draining auto-replies", extra={"context": {"pending": len(_pending_tasks)}})
    _, pending = await asyncio.wait(set(_pending_tasks), timeout=timeout)
    if pending:
        logger.warning("Auto-replies still pending after drain", extra={"context": {"pending": len(pending)}})
