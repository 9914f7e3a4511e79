from sqlalchemy import Boolean, Column, DateTime, Integer, Text
from sqlalchemy.orm import relationship

from app.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    contact_id = Column(Text, primary_key=True)  # phone number
    display_name = Column(Text)
    last_message = Column(Text)
    last_message_at = Column(DateTime(timezone=True))
    unread_count = Column(Integer, nullable=False, default=0)
    status = Column(Text, nullable=False, default="active")  # active, closed, archived
    ai_enabled = Column(Boolean, nullable=False, default=True)
    ai_paused = Column(Boolean, nullable=False, default=False)
    conversation_stage = Column(Text, nullable=False, default="ai_active")  # waiting, ai_active, agent_assigned, resolved
    avatar_url = Column(Text)
    source = Column(Text, default="zapi")
    assigned_agent = Column(Text)
    paused_at = Column(DateTime(timezone=True))
    paused_by = Column(Text)
    resolved_at = Column(DateTime(timezone=True))
    resolved_by = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    messages = relationship("Message", back_populates="conversation")
