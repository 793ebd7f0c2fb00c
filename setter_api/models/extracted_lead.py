import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from setter_api.database import Base, JSONType


class ExtractedLead(Base):
    __tablename__ = "extracted_leads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    contact_info = Column(JSONType, nullable=False, default=dict)
    qualification_score = Column(Integer, nullable=False)
    qualification_reason = Column(Text, nullable=False, default="")
    next_action = Column(Text, nullable=False, default="contact")
    booked_at = Column(DateTime(timezone=True))
    meeting_link = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="lead")
