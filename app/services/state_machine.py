from enum import Enum


class ConversationStage(str, Enum):
    WAITING = "waiting"
    AI_ACTIVE = "ai_active"
    AGENT_ASSIGNED = "agent_assigned"
    RESOLVED = "resolved"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class StageAction(str, Enum):
    PAUSE_AI = "pause_ai"
    RESUME_AI = "resume_ai"
    RETURN_TO_AI = "return_to_ai"
    ASSUME_CHAT = "assume_chat"
    ASSIGN_AGENT = "assign_agent"
    MARK_RESOLVED = "mark_resolved"
    REOPEN_CHAT = "reopen_chat"


# Stages form a flat set: any stage may move to any other via an explicit action.
ACTION_TARGETS = {
    StageAction.PAUSE_AI: ConversationStage.AGENT_ASSIGNED,
    StageAction.RESUME_AI: ConversationStage.AI_ACTIVE,
    StageAction.RETURN_TO_AI: ConversationStage.AI_ACTIVE,
    StageAction.ASSUME_CHAT: ConversationStage.AGENT_ASSIGNED,
    StageAction.ASSIGN_AGENT: ConversationStage.AGENT_ASSIGNED,
    StageAction.MARK_RESOLVED: ConversationStage.RESOLVED,
    StageAction.REOPEN_CHAT: ConversationStage.AI_ACTIVE,
}


class InvalidActionError(Exception):
    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Invalid conversation action: {action}")


def parse_action(action: str) -> StageAction:
    try:
        return StageAction(action)
    except ValueError:
        raise InvalidActionError(action) from None


def target_stage(action: StageAction) -> ConversationStage:
    """Stage a conversation ends up in after the given action."""
    return ACTION_TARGETS[action]


def ai_can_respond(ai_enabled: bool, ai_paused: bool, stage: str) -> bool:
    """Auto-reply engages only for enabled, unpaused conversations in ai_active."""
    return bool(ai_enabled) and not ai_paused and stage == ConversationStage.AI_ACTIVE.value
