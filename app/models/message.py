from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "provider_message_id", name="uq_messages_provider_id"),
        Index("ix_messages_conversation_sent_at", "conversation_id", "sent_at"),
    )

    conversation_id = Column(Text, ForeignKey("conversations.contact_id"), primary_key=True)
    id = Column(Text, primary_key=True)
    provider_message_id = Column(Text)
    role = Column(Text, nullable=False)  # inbound, outbound-agent, outbound-ai, system
    content = Column(Text, nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=False)
    delivery_status = Column(Text, nullable=False, default="sent")  # sending, sent, failed
    agent_name = Column(Text)
    origin = Column(Text)  # device, panel, ai, webhook
    media_type = Column(Text)  # image, audio, video, document, contact, location
    media_url = Column(Text)
    media_fallback = Column(Boolean, nullable=False, default=False)
    media_info = Column(JSONType)
    reply_to = Column(JSONType)
    reactions = Column(JSONType, nullable=False, default=list)
    edited = Column(Boolean, nullable=False, default=False)
    deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
