from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from setter_api.schemas.pipeline import ConversationRecord, LeadRecord


class TestMessageRequest(BaseModel):
    text: str = Field(min_length=1)
    external_user_id: str = "test_user"
    sender_name: Optional[str] = "Test User"


class TestMessageResponse(BaseModel):
    success: bool
    job_id: Optional[UUID] = None
    message: str


class ConversationDetail(BaseModel):
    conversation: ConversationRecord
    lead: Optional[LeadRecord] = None


class BookingRequest(BaseModel):
    meeting_link: str


class JobItem(BaseModel):
    id: UUID
    name: str
    status: str
    attempts: int
    max_attempts: int
    serialization_key: str
    last_error: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    count: int
    jobs: list[JobItem]


class JobActionResponse(BaseModel):
    success: bool
    affected: int = 0
    message: str


class ConversationListResponse(BaseModel):
    count: int
    conversations: list[ConversationDetail]


class LeadListResponse(BaseModel):
    count: int
    leads: list[LeadRecord]
