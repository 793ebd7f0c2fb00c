import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from setter_api.services.state_machine import ConversationStatus

DEFAULT_MIN_SCORE = 7
_CRITERIA_RESERVED_KEYS = {"description", "minScore", "min_score"}


class Platform(str, Enum):
    MESSENGER = "MESSENGER"
    INSTAGRAM = "INSTAGRAM"
    TEST = "TEST"


class TurnRole(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"


class Turn(BaseModel):
    role: TurnRole
    content: str
    timestamp: datetime


class QualificationCriteria(BaseModel):
    description: str = ""
    min_score: int = Field(default=DEFAULT_MIN_SCORE, ge=0, le=10)

    @classmethod
    def from_raw(cls, raw: Any, default_min_score: int = DEFAULT_MIN_SCORE) -> "QualificationCriteria":
        """Build criteria from the stored JSON, tolerating legacy shapes.

        Keys other than description/minScore (e.g. budget_min) are kept by
        appending them to the description so the scorer still sees them.
        """
        if not isinstance(raw, dict):
            return cls(description=str(raw or ""), min_score=default_min_score)

        description = str(raw.get("description") or "").strip()
        extras = {k: v for k, v in raw.items() if k not in _CRITERIA_RESERVED_KEYS}
        if extras:
            extras_text = json.dumps(extras, ensure_ascii=False, sort_keys=True)
            description = f"{description}\n{extras_text}".strip()

        min_score = _coerce_min_score(raw.get("minScore", raw.get("min_score")), default_min_score)
        return cls(description=description, min_score=min_score)


def _coerce_min_score(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        score = int(value)
    except (TypeError, ValueError):
        return default
    if score < 0 or score > 10:
        return default
    return score


class AgentConfigRecord(BaseModel):
    id: UUID
    name: str
    system_prompt: str
    criteria: QualificationCriteria
    is_active: bool


class ConversationRecord(BaseModel):
    id: UUID
    agent_config_id: UUID
    platform: Platform
    external_user_id: str
    status: ConversationStatus
    messages: list[Turn] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def serialization_key(self) -> str:
        return build_serialization_key(self.agent_config_id, self.platform, self.external_user_id)

    def user_turn_count(self) -> int:
        return sum(1 for turn in self.messages if turn.role == TurnRole.USER)


class LeadRecord(BaseModel):
    id: UUID
    conversation_id: UUID
    contact_info: dict[str, Any] = Field(default_factory=dict)
    qualification_score: int = Field(ge=0, le=10)
    qualification_reason: str = ""
    next_action: str = "contact"
    booked_at: Optional[datetime] = None
    meeting_link: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AgentStats(BaseModel):
    agent_config_id: UUID
    total_conversations: int
    open_conversations: int
    qualified_leads: int
    booked_meetings: int
    conversion_rate: float


def build_serialization_key(agent_config_id: UUID, platform: Platform, external_user_id: str) -> str:
    """Per-conversation key used for locking and queue partitioning."""
    return f"conversation:{agent_config_id}:{Platform(platform).value}:{external_user_id}"
