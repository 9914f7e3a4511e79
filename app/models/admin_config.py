from sqlalchemy import Column, DateTime, Text

from app.database import Base
from app.models.message import JSONType


class AdminConfig(Base):
    __tablename__ = "admin_config"

    key = Column(Text, primary_key=True)  # ai_settings
    data = Column(JSONType, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True))
