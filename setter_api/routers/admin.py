"""Operator endpoints: test messages, conversation inspection, leads and the job queue."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from setter_api.config import settings
from setter_api.database import get_db
from setter_api.logging_config import get_logger
from setter_api.models import Job
from setter_api.schemas.admin import (
    BookingRequest,
    ConversationDetail,
    ConversationListResponse,
    JobActionResponse,
    JobItem,
    JobListResponse,
    LeadListResponse,
    TestMessageRequest,
    TestMessageResponse,
)
from setter_api.schemas.jobs import ConversationKey, JobName, ProcessMessagePayload, SenderInfo
from setter_api.schemas.pipeline import AgentStats, LeadRecord, Platform
from setter_api.services.conversation_store import ConversationStore, get_conversation_store
from setter_api.services.job_queue import cancel_pending_jobs, enqueue_job, list_dead_jobs, retry_dead_job
from setter_api.services.state_machine import ConversationStatus, InvalidTransitionError

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _job_item(job: Job) -> JobItem:
    return JobItem(
        id=job.id,
        name=job.name,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        serialization_key=job.serialization_key,
        last_error=job.last_error,
        payload=job.payload_json or {},
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


# === AGENTS ===


@router.post("/agents/{agent_config_id}/test-messages", response_model=TestMessageResponse)
async def send_test_message(
    agent_config_id: UUID,
    request: TestMessageRequest,
    db: Session = Depends(get_db),
    store: ConversationStore = Depends(get_conversation_store),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Queue a TEST-platform message; the reply is generated but not sent anywhere."""
    _require_admin_token(x_admin_token)
    agent = store.get_agent_config(agent_config_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent config not found")

    payload = ProcessMessagePayload(
        conversation_key=ConversationKey(
            agent_config_id=agent_config_id,
            platform=Platform.TEST,
            external_user_id=request.external_user_id,
        ),
        text=request.text,
        sender=SenderInfo(id=request.external_user_id, name=request.sender_name),
    )
    job_id = enqueue_job(
        db,
        name=JobName.PROCESS_MESSAGE.value,
        payload=payload.model_dump(by_alias=True, mode="json", exclude_none=True),
        serialization_key=payload.conversation_key.serialization_key,
        agent_config_id=agent_config_id,
        max_attempts=settings.job_max_attempts,
    )
    logger.info(
        "Test message queued",
        extra={"context": {"agent_config_id": str(agent_config_id), "job_id": str(job_id)}},
    )
    return TestMessageResponse(success=True, job_id=job_id, message="Test message queued")


@router.get("/agents/{agent_config_id}/stats", response_model=AgentStats)
async def get_agent_stats(
    agent_config_id: UUID,
    store: ConversationStore = Depends(get_conversation_store),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    return store.get_agent_stats(agent_config_id)


@router.post("/agents/{agent_config_id}/jobs/cancel", response_model=JobActionResponse)
async def cancel_agent_jobs(
    agent_config_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    cancelled = cancel_pending_jobs(db, agent_config_id)
    return JobActionResponse(success=True, affected=cancelled, message=f"Cancelled {cancelled} pending jobs")


@router.get("/agents/{agent_config_id}/conversations", response_model=ConversationListResponse)
async def list_agent_conversations(
    agent_config_id: UUID,
    status: Optional[ConversationStatus] = None,
    limit: int = 100,
    store: ConversationStore = Depends(get_conversation_store),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Conversations of an agent, most recently updated first, optionally filtered by status."""
    _require_admin_token(x_admin_token)
    conversations = store.list_conversations(agent_config_id, status=status, limit=max(1, min(limit, 500)))
    items = [
        ConversationDetail(conversation=conversation, lead=store.get_lead(conversation.id))
        for conversation in conversations
    ]
    return ConversationListResponse(count=len(items), conversations=items)


@router.get("/agents/{agent_config_id}/leads", response_model=LeadListResponse)
async def list_agent_leads(
    agent_config_id: UUID,
    limit: int = 100,
    store: ConversationStore = Depends(get_conversation_store),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    leads = store.list_qualified_leads(agent_config_id, limit=max(1, min(limit, 500)))
    return LeadListResponse(count=len(leads), leads=leads)


# === CONVERSATIONS & LEADS ===


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: UUID,
    store: ConversationStore = Depends(get_conversation_store),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return ConversationDetail(conversation=conversation, lead=store.get_lead(conversation_id))


@router.post("/conversations/{conversation_id}/close", response_model=ConversationDetail)
async def close_conversation(
    conversation_id: UUID,
    store: ConversationStore = Depends(get_conversation_store),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    try:
        conversation = store.close_conversation(conversation_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    logger.info("Conversation closed", extra={"context": {"conversation_id": str(conversation_id)}})
    return ConversationDetail(conversation=conversation, lead=store.get_lead(conversation_id))


@router.post("/leads/{lead_id}/booking", response_model=LeadRecord)
async def book_lead(
    lead_id: UUID,
    request: BookingRequest,
    store: ConversationStore = Depends(get_conversation_store),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    lead = store.mark_lead_booked(lead_id, request.meeting_link)
    if lead is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


# === JOB QUEUE ===


@router.get("/jobs/dead", response_model=JobListResponse)
async def get_dead_jobs(
    limit: int = 100,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    jobs = [_job_item(job) for job in list_dead_jobs(db, limit=max(1, min(limit, 500)))]
    return JobListResponse(count=len(jobs), jobs=jobs)


@router.post("/jobs/{job_id}/retry", response_model=JobActionResponse)
async def retry_job(
    job_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    if not retry_dead_job(db, job_id):
        raise HTTPException(status_code=404, detail="Dead job not found")
    return JobActionResponse(success=True, affected=1, message="Job requeued")
