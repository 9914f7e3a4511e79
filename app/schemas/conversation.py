from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AIControlRequest(BaseModel):
    action: str
    agent_id: Optional[str] = None


class AIControlResponse(BaseModel):
    success: bool
    contact_id: str
    action: str
    previous_stage: str
    conversation_stage: str
    ai_paused: bool


class ReplyTarget(BaseModel):
    id: str
    text: Optional[str] = None
    author: Optional[str] = None


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    agent_name: str
    agent_id: Optional[str] = None
    reply_to: Optional[ReplyTarget] = None


class EditMessageRequest(BaseModel):
    content: str = Field(min_length=1)


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    provider_message_id: Optional[str] = None
    role: str
    content: str
    sent_at: datetime
    delivery_status: str
    agent_name: Optional[str] = None
    origin: Optional[str] = None
    reply_to: Optional[dict] = None
    edited: bool = False
    deleted: bool = False
