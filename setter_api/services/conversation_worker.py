"""Conversation worker: turns one queued job into conversation state changes.

A process-message job runs entirely under the conversation lock: resolve the
agent, find or create the open conversation, generate the reply, append the
user and assistant turns in one compare-and-append write, dispatch the reply
and, when the cadence allows, enqueue a qualify-lead job for the same key.
Failures before the append leave no trace; the job runner retries the unit.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional, Type
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from setter_api.config import Settings
from setter_api.errors import (
    AgentInactive,
    AgentNotFound,
    BackendMalformed,
    DispatchFailed,
    InvalidJobPayload,
    PersistenceError,
)
from setter_api.logging_config import LoggerAdapter, get_logger
from setter_api.schemas.jobs import ConversationKey, JobName, JobResult, ProcessMessagePayload, QualifyLeadPayload
from setter_api.schemas.pipeline import AgentConfigRecord, ConversationRecord, Turn, TurnRole
from setter_api.services.alert_service import alert_critical, alert_error
from setter_api.services.conversation_lock import ConversationLocks
from setter_api.services.conversation_store import ConversationStore
from setter_api.services.generation_client import GenerationClient
from setter_api.services.job_queue import enqueue_job
from setter_api.services.qualification import evaluate_qualification, should_qualify
from setter_api.services.reply_dispatcher import ReplyDispatcher
from setter_api.services.state_machine import is_open

logger = get_logger("conversation_worker")


def _parse_payload(model: Type[BaseModel], payload: dict):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidJobPayload(f"Invalid {model.__name__}: {e.errors()[:3]}") from e


def _turn_timestamp(epoch_ms: Optional[int]) -> datetime:
    if epoch_ms:
        return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return datetime.now(timezone.utc)


class ConversationWorker:
    def __init__(
        self,
        store: ConversationStore,
        generation: GenerationClient,
        dispatcher: ReplyDispatcher,
        locks: ConversationLocks,
        session_factory,
        config: Settings,
    ):
        self.store = store
        self.generation = generation
        self.dispatcher = dispatcher
        self.locks = locks
        self.session_factory = session_factory
        self.config = config

    async def handle(self, job_name: str, payload: dict) -> JobResult:
        if job_name == JobName.PROCESS_MESSAGE.value:
            return await self.process_message(_parse_payload(ProcessMessagePayload, payload))
        if job_name == JobName.QUALIFY_LEAD.value:
            return await self.qualify_lead(_parse_payload(QualifyLeadPayload, payload))
        raise InvalidJobPayload(f"Unknown job name: {job_name}")

    def _require_agent(self, agent_config_id: UUID) -> AgentConfigRecord:
        agent = self.store.get_agent_config(agent_config_id)
        if agent is None:
            raise AgentNotFound(f"Agent config {agent_config_id} not found")
        if not agent.is_active:
            raise AgentInactive(f"Agent config {agent_config_id} is inactive")
        return agent

    def _check_agent(
        self, agent_config_id: UUID, log: LoggerAdapter
    ) -> tuple[Optional[AgentConfigRecord], Optional[JobResult]]:
        """Resolve a usable agent, or the terminal skip explaining why there is none."""
        try:
            agent = self._require_agent(agent_config_id)
        except (AgentNotFound, AgentInactive) as e:
            log.info(f"Agent unavailable: {e.message}")
            return None, JobResult.skipped(e.code)
        if not self.generation.is_configured:
            log.warning("Generation backend not configured")
            return None, JobResult.skipped("backend_unconfigured")
        return agent, None

    # process-message

    async def process_message(self, payload: ProcessMessagePayload) -> JobResult:
        if payload.conversation_key is not None:
            key = payload.conversation_key
        else:
            existing = self.store.get_conversation(payload.conversation_id)
            if existing is None:
                logger.warning(
                    "Conversation not found for message",
                    extra={"context": {"conversation_id": str(payload.conversation_id)}},
                )
                return JobResult.skipped("conversation_not_found")
            key = ConversationKey(
                agent_config_id=existing.agent_config_id,
                platform=existing.platform,
                external_user_id=existing.external_user_id,
            )

        async with self.locks.hold(key.serialization_key):
            return await self._process_locked(key, payload)

    async def _process_locked(self, key: ConversationKey, payload: ProcessMessagePayload) -> JobResult:
        log = LoggerAdapter(
            logger,
            {
                "agent_config_id": str(key.agent_config_id),
                "platform": key.platform.value,
                "external_user_id": key.external_user_id,
                "message_id": payload.message_id,
            },
        )

        agent, skipped = self._check_agent(key.agent_config_id, log)
        if skipped:
            return skipped

        conversation = self._load_conversation(key, payload, log)
        if conversation is None:
            return JobResult.skipped("conversation_closed")

        user_turn = Turn(role=TurnRole.USER, content=payload.text, timestamp=_turn_timestamp(payload.timestamp))
        reply = await self.generation.generate_reply(agent.system_prompt, conversation.messages, payload.text)
        assistant_turn = Turn(role=TurnRole.ASSISTANT, content=reply, timestamp=datetime.now(timezone.utc))

        updated = self.store.append_turns_and_activate(
            conversation.id, [user_turn, assistant_turn], len(conversation.messages)
        )
        log.info(
            "Turns appended",
            context={"conversation_id": str(updated.id), "message_count": len(updated.messages)},
        )

        delivered = await self._dispatch(updated, reply, log)
        qualification_enqueued = await self._maybe_enqueue_qualification(key, updated, log)

        return JobResult.completed(
            conversation_id=str(updated.id),
            delivered=delivered,
            qualification_enqueued=qualification_enqueued,
        )

    def _load_conversation(
        self, key: ConversationKey, payload: ProcessMessagePayload, log: LoggerAdapter
    ) -> Optional[ConversationRecord]:
        if payload.conversation_id is not None:
            conversation = self.store.get_conversation(payload.conversation_id)
            if conversation is None or not is_open(conversation.status):
                log.info("Conversation closed or missing", context={"conversation_id": str(payload.conversation_id)})
                return None
            return conversation

        conversation = self.store.find_open_conversation(key.agent_config_id, key.platform, key.external_user_id)
        if conversation is not None:
            return conversation

        metadata = {"started_at": datetime.now(timezone.utc).isoformat()}
        if payload.account_id:
            metadata["account_id"] = payload.account_id
        if payload.sender.name:
            metadata["sender_name"] = payload.sender.name
        conversation = self.store.create_conversation(
            key.agent_config_id, key.platform, key.external_user_id, metadata=metadata
        )
        log.info("Conversation created", context={"conversation_id": str(conversation.id)})
        return conversation

    async def _dispatch(self, conversation: ConversationRecord, reply: str, log: LoggerAdapter) -> bool:
        try:
            ack = await self.dispatcher.send(
                conversation.platform,
                conversation.external_user_id,
                reply,
                agent_config_id=conversation.agent_config_id,
            )
            return ack.delivered
        except (DispatchFailed, PersistenceError) as e:
            context = {
                "conversation_id": str(conversation.id),
                "platform": conversation.platform.value,
                "recipient_id": conversation.external_user_id,
                "error": e.message,
            }
            log.error("Reply dispatch failed", context=context)
            await asyncio.to_thread(alert_critical, "Reply not delivered", context)
            try:
                self.store.record_undelivered_reply(
                    conversation.id,
                    {
                        "text": reply,
                        "error": e.message,
                        "at": datetime.now(timezone.utc).isoformat(),
                        "seq": len(conversation.messages) - 1,
                    },
                )
            except PersistenceError as store_error:
                log.error("Failed to flag undelivered reply", context={"error": store_error.message})
            return False

    async def _maybe_enqueue_qualification(
        self, key: ConversationKey, conversation: ConversationRecord, log: LoggerAdapter
    ) -> bool:
        user_turns = conversation.user_turn_count()
        if not should_qualify(
            user_turns,
            min_user_turns=self.config.qualification_min_user_turns,
            every=self.config.qualification_requalify_every,
        ):
            return False

        try:
            with self.session_factory() as db:
                job_id = enqueue_job(
                    db,
                    name=JobName.QUALIFY_LEAD.value,
                    payload=QualifyLeadPayload(conversation_id=conversation.id).model_dump(by_alias=True, mode="json"),
                    serialization_key=key.serialization_key,
                    dedup_key=f"qualify:{conversation.id}:{user_turns}",
                    agent_config_id=key.agent_config_id,
                    max_attempts=self.config.job_max_attempts,
                )
        except SQLAlchemyError as e:
            # The turns are already persisted; retrying the message would duplicate them.
            log.error("Failed to enqueue qualification", context={"error": str(e)})
            await asyncio.to_thread(
                alert_error,
                "Qualification not enqueued",
                {"conversation_id": str(conversation.id), "error": str(e)},
            )
            return False

        log.info("Qualification enqueued", context={"user_turns": user_turns, "job_id": str(job_id)})
        return job_id is not None

    # qualify-lead

    async def qualify_lead(self, payload: QualifyLeadPayload) -> JobResult:
        conversation = self.store.get_conversation(payload.conversation_id)
        if conversation is None:
            logger.warning(
                "Conversation not found for qualification",
                extra={"context": {"conversation_id": str(payload.conversation_id)}},
            )
            return JobResult.skipped("conversation_not_found")

        async with self.locks.hold(conversation.serialization_key):
            return await self._qualify_locked(payload.conversation_id)

    async def _qualify_locked(self, conversation_id: UUID) -> JobResult:
        log = LoggerAdapter(logger, {"conversation_id": str(conversation_id)})

        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            return JobResult.skipped("conversation_not_found")

        agent, skipped = self._check_agent(conversation.agent_config_id, log)
        if skipped:
            return skipped

        try:
            assessment = await self.generation.score_qualification(conversation.messages, agent.criteria)
            result = evaluate_qualification(assessment, agent.criteria)
        except BackendMalformed as e:
            log.warning("Qualification result malformed", context={"error": e.message})
            return JobResult.skipped("malformed_assessment")

        log.info(
            "Lead evaluated",
            context={"score": result.score, "qualified": result.is_qualified, "min_score": agent.criteria.min_score},
        )
        if not result.is_qualified:
            return JobResult.completed(qualified=False, score=result.score)

        lead = self.store.upsert_lead(conversation_id, result.lead_fields())
        return JobResult.completed(qualified=True, score=result.score, lead_id=str(lead.id))
