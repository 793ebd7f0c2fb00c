from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import httpx

from setter_api.errors import DispatchFailed
from setter_api.logging_config import get_logger
from setter_api.schemas.pipeline import Platform
from setter_api.services.conversation_store import ConversationStore

logger = get_logger("reply_dispatcher")


@dataclass
class DispatchAck:
    platform: Platform
    recipient_id: str
    message_id: Optional[str] = None
    delivered: bool = True


class ReplyDispatcher:
    """Sends assistant replies back through the platform's send API."""

    def __init__(
        self,
        store: ConversationStore,
        graph_api_url: str = "https://graph.facebook.com/v18.0",
        timeout_seconds: float = 10.0,
    ):
        self.store = store
        self.send_url = f"{graph_api_url.rstrip('/')}/me/messages"
        self.timeout_seconds = timeout_seconds

    async def send(
        self,
        platform: Platform,
        recipient_id: str,
        text: str,
        *,
        agent_config_id: UUID,
    ) -> DispatchAck:
        platform = Platform(platform)
        if platform == Platform.TEST:
            logger.info(
                "TEST platform reply not dispatched",
                extra={"context": {"recipient_id": recipient_id, "chars": len(text)}},
            )
            return DispatchAck(platform=platform, recipient_id=recipient_id, delivered=False)

        access_token = self.store.get_access_token(agent_config_id, platform)
        if not access_token:
            raise DispatchFailed(f"No access token for agent {agent_config_id} on {platform.value}")

        body = {
            "recipient": {"id": recipient_id},
            "message": {"text": text},
            "messaging_type": "RESPONSE",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.send_url, params={"access_token": access_token}, json=body)
        except httpx.HTTPError as e:
            raise DispatchFailed(f"Send API transport error: {e}") from e

        logger.info(
            f"Send API response: status={response.status_code}, recipient={recipient_id}",
            extra={"context": {"platform": platform.value, "body": response.text[:200]}},
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise DispatchFailed(
                f"Send API error: {response.status_code}",
                status_code=response.status_code,
            )

        message_id = None
        try:
            data = response.json()
            if isinstance(data, dict):
                message_id = data.get("message_id")
        except ValueError:
            pass
        return DispatchAck(platform=platform, recipient_id=recipient_id, message_id=message_id)
