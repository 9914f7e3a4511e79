from app.schemas.conversation import (
    AIControlRequest,
    AIControlResponse,
    EditMessageRequest,
    MessageOut,
    SendMessageRequest,
)
from app.schemas.webhook import WebhookResponse, ZApiWebhookPayload

__all__ = [
    "AIControlRequest",
    "AIControlResponse",
    "EditMessageRequest",
    "MessageOut",
    "SendMessageRequest",
    "WebhookResponse",
    "ZApiWebhookPayload",
]
