from app.services.conversation_service import (
    apply_stage_action,
    ensure_conversation,
    get_conversation,
    record_message,
    update_avatar,
)
from app.services.message_service import (
    edit_message,
    save_message,
    soft_delete_message,
)
from app.services.state_machine import (
    ConversationStage,
    InvalidActionError,
    StageAction,
    ai_can_respond,
)
