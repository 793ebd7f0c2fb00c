"""Meta (Messenger / Instagram) webhook endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from setter_api.config import settings
from setter_api.database import get_db
from setter_api.errors import HandshakeRejected
from setter_api.logging_config import get_logger
from setter_api.services.conversation_store import ConversationStore, get_conversation_store
from setter_api.services.gateway_service import handle_event, verify_handshake

logger = get_logger("webhook")

router = APIRouter(tags=["webhooks"])

WEBHOOK_PATHS = ("/webhooks/meta", "/webhooks/messenger", "/webhooks/instagram")


def _query_param(request: Request, name: str):
    params = request.query_params
    return params.get(f"hub.{name}") or params.get(name)


async def verify_webhook(request: Request):
    """Subscription handshake: echo hub.challenge when the verify token matches."""
    try:
        challenge = verify_handshake(
            _query_param(request, "mode"),
            _query_param(request, "verify_token"),
            _query_param(request, "challenge"),
            settings.meta_verify_token,
        )
    except HandshakeRejected as e:
        logger.warning(f"Webhook verification failed: {e.message}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    logger.info("Webhook verified")
    return PlainTextResponse(challenge)


async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    store: ConversationStore = Depends(get_conversation_store),
):
    raw_body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256")
    return handle_event(raw_body, signature, db, store, settings)


for _path in WEBHOOK_PATHS:
    router.add_api_route(_path, verify_webhook, methods=["GET"])
    router.add_api_route(_path, receive_webhook, methods=["POST"])
