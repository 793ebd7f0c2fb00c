import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from setter_api.database import Base, JSONType


class AgentConfig(Base):
    """Qualification agent profile. Owned by configuration management, read-only here."""

    __tablename__ = "agent_configs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    system_prompt = Column(Text, nullable=False)
    qualification_criteria = Column(JSONType, nullable=False, default=dict)  # {description, minScore}
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    accounts = relationship("PlatformAccount", back_populates="agent_config", cascade="all, delete-orphan")
    conversations = relationship("Conversation", back_populates="agent_config", cascade="all, delete-orphan")
