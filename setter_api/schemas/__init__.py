from setter_api.schemas.jobs import (
    ConversationKey,
    JobName,
    JobResult,
    JobStatus,
    ProcessMessagePayload,
    QualifyLeadPayload,
    SenderInfo,
)
from setter_api.schemas.pipeline import (
    AgentConfigRecord,
    ConversationRecord,
    LeadRecord,
    Platform,
    QualificationCriteria,
    Turn,
    TurnRole,
)
from setter_api.schemas.webhook import InboundMessage, WebhookAck

__all__ = [
    "AgentConfigRecord",
    "ConversationKey",
    "ConversationRecord",
    "InboundMessage",
    "JobName",
    "JobResult",
    "JobStatus",
    "LeadRecord",
    "Platform",
    "ProcessMessagePayload",
    "QualificationCriteria",
    "QualifyLeadPayload",
    "SenderInfo",
    "Turn",
    "TurnRole",
    "WebhookAck",
]
