from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Message
from app.services.event_normalizer import ReactionPayload
from app.services.message_service import find_by_local_id, find_by_provider_id
from app.services.throttle import Throttle

logger = get_logger("reactions")


@dataclass
class ReactionOutcome:
    applied: bool
    note: str
    target: Optional[Message] = None


def find_reaction_target(db: Session, conversation_id: str, target_id: Optional[str]) -> Optional[Message]:
    if not target_id:
        return None
    return find_by_provider_id(db, conversation_id, target_id) or find_by_local_id(db, conversation_id, target_id)


def _same_identity(reaction: dict, by_identity: str, from_agent: bool) -> bool:
    return reaction.get("by_identity") == by_identity and bool(reaction.get("from_agent")) == from_agent


def remove_reaction(reactions: list[dict], by_identity: str, from_agent: bool) -> list[dict]:
    return [r for r in reactions if not _same_identity(r, by_identity, from_agent)]


def upsert_reaction(reactions: list[dict], reaction: dict) -> list[dict]:
    """Replace the reaction held by the same identity, or append a new one.

    One active reaction per (identity, from_agent), whatever the emoji.
    """
    updated = list(reactions)
    for index, existing in enumerate(updated):
        if _same_identity(existing, reaction["by_identity"], reaction["from_agent"]):
            updated[index] = reaction
            return updated
    updated.append(reaction)
    return updated


async def apply_reaction(
    db: Session,
    conversation_id: str,
    reaction: ReactionPayload,
    *,
    by_identity: str,
    by_name: Optional[str],
    from_agent: bool,
    throttle: Throttle,
) -> ReactionOutcome:
    """Apply an add/remove reaction event to its target message.

    A missing target is not an error: the event turns into a note and no
    reaction record is created.
    """
    if await throttle.allow(f"{reaction.target_id or ''}_{reaction.emoji}"):
        logger.info(
            "Reaction received",
            extra={
                "context": {
                    "contact_id": conversation_id,
                    "target_id": reaction.target_id,
                    "emoji": reaction.emoji,
                    "removed": reaction.removed,
                    "from_agent": from_agent,
                }
            },
        )

    target = find_reaction_target(db, conversation_id, reaction.target_id)
    if target is None:
        logger.warning(
            "Reaction target not found",
            extra={"context": {"contact_id": conversation_id, "target_id": reaction.target_id}},
        )
        if reaction.removed:
            note = "Removed a reaction from a removed/unknown message"
        else:
            note = f"Reacted with {reaction.emoji} to a removed/unknown message"
        return ReactionOutcome(applied=False, note=note)

    current = list(target.reactions or [])
    if reaction.removed:
        target.reactions = remove_reaction(current, by_identity, from_agent)
    else:
        entry = {
            "emoji": reaction.emoji,
            "by": by_name or ("Agent" if from_agent else "Customer"),
            "by_identity": by_identity,
            "from_agent": from_agent,
            "at": datetime.now(timezone.utc).isoformat(),
        }
        target.reactions = upsert_reaction(current, entry)
    db.flush()

    return ReactionOutcome(applied=True, note=reaction.summary(), target=target)
