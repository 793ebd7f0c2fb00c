from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from setter_api.schemas.pipeline import Platform, build_serialization_key


class JobName(str, Enum):
    PROCESS_MESSAGE = "process-message"
    QUALIFY_LEAD = "qualify-lead"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    DEAD = "DEAD"
    CANCELLED = "CANCELLED"


class ConversationKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_config_id: UUID = Field(alias="agentConfigId")
    platform: Platform
    external_user_id: str = Field(alias="externalUserId")

    @property
    def serialization_key(self) -> str:
        return build_serialization_key(self.agent_config_id, self.platform, self.external_user_id)


class SenderInfo(BaseModel):
    id: str
    name: Optional[str] = None


class ProcessMessagePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_key: Optional[ConversationKey] = Field(default=None, alias="conversationKey")
    conversation_id: Optional[UUID] = Field(default=None, alias="conversationId")
    text: str
    sender: SenderInfo
    attachments: list[Any] = Field(default_factory=list)
    timestamp: Optional[int] = None  # epoch milliseconds from the platform
    message_id: Optional[str] = Field(default=None, alias="messageId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    is_postback: bool = Field(default=False, alias="isPostback")
    postback_payload: Optional[str] = Field(default=None, alias="postbackPayload")

    @model_validator(mode="after")
    def _require_single_target(self) -> "ProcessMessagePayload":
        if (self.conversation_key is None) == (self.conversation_id is None):
            raise ValueError("exactly one of conversationKey or conversationId is required")
        return self


class QualifyLeadPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: UUID = Field(alias="conversationId")


class JobResult(BaseModel):
    status: JobStatus
    reason: Optional[str] = None
    detail: dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def completed(**detail: Any) -> "JobResult":
        return JobResult(status=JobStatus.COMPLETED, detail=detail)

    @staticmethod
    def skipped(reason: str, **detail: Any) -> "JobResult":
        return JobResult(status=JobStatus.SKIPPED, reason=reason, detail=detail)


class ClaimedJob(BaseModel):
    id: UUID
    name: str
    payload: dict[str, Any]
    serialization_key: str
    attempts: int
    max_attempts: int
