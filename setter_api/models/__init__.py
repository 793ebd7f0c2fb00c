from setter_api.models.agent_config import AgentConfig
from setter_api.models.conversation import Conversation
from setter_api.models.conversation_turn import ConversationTurn
from setter_api.models.extracted_lead import ExtractedLead
from setter_api.models.job import Job
from setter_api.models.platform_account import PlatformAccount

__all__ = [
    "AgentConfig",
    "PlatformAccount",
    "Conversation",
    "ConversationTurn",
    "ExtractedLead",
    "Job",
]
