from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.services.message_service import OUTBOUND_ROLES, find_by_local_id, find_by_provider_id

logger = get_logger("reply_resolver")

UNAVAILABLE_TEXT = "message unavailable"


def resolve_reply(db: Session, conversation_id: str, quoted_message_id: Optional[str]) -> Optional[dict]:
    """Map a quoted provider id onto the stored message for display.

    Misses return a placeholder so the reply affordance still renders.
    """
    if not quoted_message_id:
        return None

    quoted = find_by_provider_id(db, conversation_id, quoted_message_id) or find_by_local_id(
        db, conversation_id, quoted_message_id
    )
    if quoted is None:
        logger.info(
            "Quoted message not found",
            extra={"context": {"contact_id": conversation_id, "quoted_id": quoted_message_id}},
        )
        return {"id": quoted_message_id, "text": UNAVAILABLE_TEXT, "author": "customer"}

    return {
        "id": quoted.id,
        "text": quoted.content,
        "author": "agent" if quoted.role in OUTBOUND_ROLES else "customer",
    }
