from app.models.admin_config import AdminConfig
from app.models.conversation import Conversation
from app.models.message import Message

__all__ = [
    "AdminConfig",
    "Conversation",
    "Message",
]
