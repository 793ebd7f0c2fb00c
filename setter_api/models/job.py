import uuid

from sqlalchemy import Column, DateTime, Index, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from setter_api.database import Base, JSONType


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        UniqueConstraint("name", "dedup_key", name="uq_jobs_name_dedup_key"),
        Index("ix_jobs_status_next_attempt", "status", "next_attempt_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)  # process-message, qualify-lead
    payload_json = Column(JSONType, nullable=False)
    serialization_key = Column(Text, nullable=False)
    dedup_key = Column(Text)
    agent_config_id = Column(Uuid)
    status = Column(Text, nullable=False, default="PENDING")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    next_attempt_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    result_json = Column(JSONType)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
