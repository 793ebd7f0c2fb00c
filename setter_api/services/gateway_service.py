"""Meta webhook gateway: handshake, signature check, normalization and enqueue."""

import hashlib
import hmac
import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from setter_api.config import Settings, settings as default_settings
from setter_api.errors import HandshakeRejected, PipelineError, SignatureInvalid
from setter_api.logging_config import get_logger
from setter_api.schemas.jobs import ConversationKey, JobName, ProcessMessagePayload, SenderInfo
from setter_api.schemas.pipeline import Platform
from setter_api.schemas.webhook import InboundMessage, WebhookAck
from setter_api.services.alert_service import alert_warning
from setter_api.services.conversation_store import ConversationStore
from setter_api.services.job_queue import enqueue_job

logger = get_logger("gateway_service")

SIGNATURE_PREFIX = "sha256="

OBJECT_PLATFORMS = {
    "page": Platform.MESSENGER,
    "instagram": Platform.INSTAGRAM,
}

_missing_secret_warned = False


def verify_handshake(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected_token: Optional[str],
) -> str:
    """Return the challenge verbatim when the subscription request is valid."""
    if not expected_token:
        raise HandshakeRejected("Verify token is not configured")
    if mode != "subscribe" or token is None:
        raise HandshakeRejected("Invalid handshake mode or token")
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        raise HandshakeRejected("Verify token mismatch")
    return challenge or ""


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: str) -> None:
    """Check X-Hub-Signature-256 against an HMAC of the raw body."""
    if not signature_header:
        raise SignatureInvalid("Missing X-Hub-Signature-256 header")
    if not signature_header.startswith(SIGNATURE_PREFIX):
        raise SignatureInvalid("Unsupported signature format")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(signature_header.strip().encode("utf-8"), expected.encode("utf-8")):
        raise SignatureInvalid("Signature mismatch")


def _check_signature(raw_body: bytes, signature_header: Optional[str], config: Settings) -> None:
    global _missing_secret_warned

    if config.meta_app_secret:
        verify_signature(raw_body, signature_header, config.meta_app_secret)
        return
    if config.require_webhook_signature:
        raise SignatureInvalid("App secret is not configured; signed payloads are required")
    if not _missing_secret_warned:
        _missing_secret_warned = True
        logger.warning("META_APP_SECRET not set, webhook signatures are not verified")
        alert_warning("Webhook signatures are not verified", {"reason": "META_APP_SECRET not set"})


def _normalize_messaging_event(event: dict, platform: Platform, entry_id: str) -> Optional[InboundMessage]:
    sender_id = (event.get("sender") or {}).get("id")
    recipient_id = (event.get("recipient") or {}).get("id")
    if not sender_id:
        return None

    message = event.get("message")
    postback = event.get("postback")

    if isinstance(message, dict):
        if message.get("is_echo"):
            return None
        text = (message.get("text") or "").strip()
        if not text:
            # attachment-only message
            return None
        return InboundMessage(
            platform=platform,
            platform_id=entry_id,
            sender_id=str(sender_id),
            recipient_id=str(recipient_id) if recipient_id else None,
            message_id=message.get("mid"),
            text=text,
            attachments=message.get("attachments") or [],
            timestamp=event.get("timestamp"),
        )

    if isinstance(postback, dict):
        text = (postback.get("title") or postback.get("payload") or "").strip()
        if not text:
            return None
        return InboundMessage(
            platform=platform,
            platform_id=entry_id,
            sender_id=str(sender_id),
            recipient_id=str(recipient_id) if recipient_id else None,
            message_id=postback.get("mid"),
            text=text,
            timestamp=event.get("timestamp"),
            is_postback=True,
            postback_payload=postback.get("payload"),
        )

    # delivery / read receipts, reactions
    return None


def _normalize_change(value: dict, platform: Platform, entry_id: str) -> Optional[InboundMessage]:
    message = value.get("message") or {}
    if message.get("is_echo"):
        return None
    text = (message.get("text") or "").strip()
    sender_id = (value.get("from") or {}).get("id")
    if not text or not sender_id:
        return None
    recipient_id = (value.get("to") or {}).get("id") or (value.get("recipient") or {}).get("id")
    return InboundMessage(
        platform=platform,
        platform_id=entry_id,
        sender_id=str(sender_id),
        recipient_id=str(recipient_id) if recipient_id else None,
        message_id=message.get("mid") or value.get("id"),
        text=text,
        attachments=message.get("attachments") or [],
        timestamp=value.get("timestamp"),
    )


def normalize_event(payload: Any) -> list[InboundMessage]:
    """Flatten a webhook body into inbound text messages. Unknown objects yield nothing."""
    if not isinstance(payload, dict):
        return []
    platform = OBJECT_PLATFORMS.get(payload.get("object"))
    if platform is None:
        logger.info("Ignoring webhook object", extra={"context": {"object": payload.get("object")}})
        return []

    messages: list[InboundMessage] = []
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        entry_id = str(entry.get("id") or "")
        for event in entry.get("messaging") or []:
            if isinstance(event, dict):
                inbound = _normalize_messaging_event(event, platform, entry_id)
                if inbound:
                    messages.append(inbound)
        for change in entry.get("changes") or []:
            if isinstance(change, dict) and change.get("field") == "messages":
                inbound = _normalize_change(change.get("value") or {}, platform, entry_id)
                if inbound:
                    messages.append(inbound)
    return messages


def build_process_message_payload(inbound: InboundMessage, agent_config_id) -> ProcessMessagePayload:
    return ProcessMessagePayload(
        conversation_key=ConversationKey(
            agent_config_id=agent_config_id,
            platform=inbound.platform,
            external_user_id=inbound.sender_id,
        ),
        text=inbound.text,
        sender=SenderInfo(id=inbound.sender_id),
        attachments=inbound.attachments,
        timestamp=inbound.timestamp,
        message_id=inbound.message_id,
        account_id=inbound.account_id,
        is_postback=inbound.is_postback,
        postback_payload=inbound.postback_payload,
    )


def enqueue_inbound(
    db: Session,
    store: ConversationStore,
    inbound: InboundMessage,
    config: Settings,
) -> bool:
    """Resolve the agent for the receiving account and enqueue a process-message job."""
    agent = store.find_config_by_platform_account(inbound.platform, inbound.account_id)
    if agent is None and inbound.recipient_id and inbound.platform_id != inbound.recipient_id:
        agent = store.find_config_by_platform_account(inbound.platform, inbound.platform_id)
    if agent is None:
        logger.warning(
            "No agent configured for platform account",
            extra={"context": {"platform": inbound.platform.value, "account_id": inbound.account_id}},
        )
        return False

    payload = build_process_message_payload(inbound, agent.id)
    dedup_key = f"{inbound.platform.value}:{inbound.message_id}" if inbound.message_id else None
    job_id = enqueue_job(
        db,
        name=JobName.PROCESS_MESSAGE.value,
        payload=payload.model_dump(by_alias=True, mode="json", exclude_none=True),
        serialization_key=payload.conversation_key.serialization_key,
        dedup_key=dedup_key,
        agent_config_id=agent.id,
        max_attempts=config.job_max_attempts,
    )
    return job_id is not None


def handle_event(
    raw_body: bytes,
    signature_header: Optional[str],
    db: Session,
    store: ConversationStore,
    config: Optional[Settings] = None,
) -> dict:
    """Process one webhook delivery. Never raises; the result is always a 200 ack."""
    config = config or default_settings
    try:
        _check_signature(raw_body, signature_header, config)
        payload = json.loads(raw_body or b"{}")
        messages = normalize_event(payload)
        enqueued = 0
        for inbound in messages:
            if enqueue_inbound(db, store, inbound, config):
                enqueued += 1
        logger.info(
            "Webhook processed",
            extra={"context": {"messages": len(messages), "enqueued": enqueued}},
        )
        return WebhookAck(status="ok").model_dump(exclude_none=True)
    except SignatureInvalid as e:
        logger.warning(f"Webhook rejected: {e.message}")
        return WebhookAck(status="error", message=e.message).model_dump(exclude_none=True)
    except PipelineError as e:
        logger.error(f"Webhook processing failed: {e.message}", extra={"context": {"code": e.code}})
        return WebhookAck(status="error", message=e.message).model_dump(exclude_none=True)
    except Exception as e:
        db.rollback()
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        return WebhookAck(status="error", message=str(e) or e.__class__.__name__).model_dump(exclude_none=True)
