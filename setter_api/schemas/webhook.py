from typing import Any, Optional

from pydantic import BaseModel, Field

from setter_api.schemas.pipeline import Platform


class InboundMessage(BaseModel):
    """Canonical form of one inbound platform message."""

    platform: Platform
    platform_id: str  # entry id (page / instagram account)
    sender_id: str
    recipient_id: Optional[str] = None
    message_id: Optional[str] = None
    text: str
    attachments: list[Any] = Field(default_factory=list)
    timestamp: Optional[int] = None
    is_postback: bool = False
    postback_payload: Optional[str] = None

    @property
    def account_id(self) -> str:
        return self.recipient_id or self.platform_id


class WebhookAck(BaseModel):
    status: str = "ok"
    message: Optional[str] = None
