import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import relationship

from setter_api.database import Base, JSONType

OPEN_CONVERSATION_FILTER = text("status IN ('PENDING', 'ACTIVE')")


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index(
            "uq_conversations_open_triple",
            "agent_config_id",
            "platform",
            "external_user_id",
            unique=True,
            postgresql_where=OPEN_CONVERSATION_FILTER,
            sqlite_where=OPEN_CONVERSATION_FILTER,
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_config_id = Column(Uuid, ForeignKey("agent_configs.id", ondelete="CASCADE"), nullable=False)
    platform = Column(Text, nullable=False)  # MESSENGER, INSTAGRAM, TEST
    external_user_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, ACTIVE, CLOSED
    message_count = Column(Integer, nullable=False, default=0)
    conversation_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True))

    agent_config = relationship("AgentConfig", back_populates="conversations")
    turns = relationship(
        "ConversationTurn",
        back_populates="conversation",
        order_by="ConversationTurn.seq",
        cascade="all, delete-orphan",
    )
    lead = relationship("ExtractedLead", back_populates="conversation", uselist=False, cascade="all, delete-orphan")
