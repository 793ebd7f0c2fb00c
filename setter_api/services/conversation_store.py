"""Conversation Store Adapter.

Every method runs in its own short transaction and returns pydantic snapshots,
so no session (and no row lock) outlives a call. The worker never holds a
transaction across a network call.
"""

import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import case, func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from setter_api.config import settings
from setter_api.database import SessionLocal
from setter_api.errors import ConcurrentModification, PersistenceError
from setter_api.logging_config import get_logger
from setter_api.models import AgentConfig, Conversation, ConversationTurn, ExtractedLead, PlatformAccount
from setter_api.schemas.pipeline import (
    DEFAULT_MIN_SCORE,
    AgentConfigRecord,
    AgentStats,
    ConversationRecord,
    LeadRecord,
    Platform,
    QualificationCriteria,
    Turn,
    TurnRole,
)
from setter_api.services.state_machine import OPEN_STATUSES, ConversationStatus, close

logger = get_logger("conversation_store")

TURN_TIMESTAMP_STEP = timedelta(microseconds=1)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on round-trip; stored values are always UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore(ABC):
    @abstractmethod
    def get_agent_config(self, agent_config_id: UUID) -> Optional[AgentConfigRecord]:
        pass

    @abstractmethod
    def find_config_by_platform_account(self, platform: Platform, account_id: str) -> Optional[AgentConfigRecord]:
        pass

    @abstractmethod
    def get_access_token(self, agent_config_id: UUID, platform: Platform) -> Optional[str]:
        pass

    @abstractmethod
    def find_open_conversation(
        self, agent_config_id: UUID, platform: Platform, external_user_id: str
    ) -> Optional[ConversationRecord]:
        pass

    @abstractmethod
    def create_conversation(
        self,
        agent_config_id: UUID,
        platform: Platform,
        external_user_id: str,
        metadata: Optional[dict] = None,
    ) -> ConversationRecord:
        pass

    @abstractmethod
    def get_conversation(self, conversation_id: UUID) -> Optional[ConversationRecord]:
        pass

    @abstractmethod
    def append_turns_and_activate(
        self, conversation_id: UUID, turns: list[Turn], expected_prior_length: int
    ) -> ConversationRecord:
        pass

    @abstractmethod
    def upsert_lead(self, conversation_id: UUID, fields: dict[str, Any]) -> LeadRecord:
        pass

    @abstractmethod
    def get_lead(self, conversation_id: UUID) -> Optional[LeadRecord]:
        pass

    @abstractmethod
    def record_undelivered_reply(self, conversation_id: UUID, entry: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def close_conversation(self, conversation_id: UUID) -> Optional[ConversationRecord]:
        pass

    @abstractmethod
    def mark_lead_booked(self, lead_id: UUID, meeting_link: str) -> Optional[LeadRecord]:
        pass

    @abstractmethod
    def get_agent_stats(self, agent_config_id: UUID) -> AgentStats:
        pass

    @abstractmethod
    def list_conversations(
        self,
        agent_config_id: UUID,
        status: Optional[ConversationStatus] = None,
        limit: int = 100,
    ) -> list[ConversationRecord]:
        pass

    @abstractmethod
    def list_qualified_leads(self, agent_config_id: UUID, limit: int = 100) -> list[LeadRecord]:
        pass


class SqlConversationStore(ConversationStore):
    def __init__(self, session_factory, default_min_score: int = DEFAULT_MIN_SCORE):
        self.session_factory = session_factory
        self.default_min_score = default_min_score

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Store operation failed", extra={"context": {"error": str(e)}})
            raise PersistenceError(f"Store operation failed: {e}") from e
        finally:
            db.close()

    # Agent configuration (read-only)

    def _to_agent_record(self, config: AgentConfig) -> AgentConfigRecord:
        return AgentConfigRecord(
            id=config.id,
            name=config.name,
            system_prompt=config.system_prompt,
            criteria=QualificationCriteria.from_raw(config.qualification_criteria, self.default_min_score),
            is_active=bool(config.is_active),
        )

    def get_agent_config(self, agent_config_id: UUID) -> Optional[AgentConfigRecord]:
        with self._session() as db:
            config = db.query(AgentConfig).filter(AgentConfig.id == agent_config_id).first()
            return self._to_agent_record(config) if config else None

    def find_config_by_platform_account(self, platform: Platform, account_id: str) -> Optional[AgentConfigRecord]:
        with self._session() as db:
            config = (
                db.query(AgentConfig)
                .join(PlatformAccount, PlatformAccount.agent_config_id == AgentConfig.id)
                .filter(
                    PlatformAccount.platform == Platform(platform).value,
                    PlatformAccount.account_id == account_id,
                )
                .first()
            )
            return self._to_agent_record(config) if config else None

    def get_access_token(self, agent_config_id: UUID, platform: Platform) -> Optional[str]:
        with self._session() as db:
            account = (
                db.query(PlatformAccount)
                .filter(
                    PlatformAccount.agent_config_id == agent_config_id,
                    PlatformAccount.platform == Platform(platform).value,
                    PlatformAccount.access_token.isnot(None),
                )
                .order_by(PlatformAccount.created_at)
                .first()
            )
            return account.access_token if account else None

    # Conversations

    def _to_conversation_record(self, db, conversation: Conversation) -> ConversationRecord:
        turns = (
            db.query(ConversationTurn)
            .filter(ConversationTurn.conversation_id == conversation.id)
            .order_by(ConversationTurn.seq)
            .all()
        )
        return ConversationRecord(
            id=conversation.id,
            agent_config_id=conversation.agent_config_id,
            platform=Platform(conversation.platform),
            external_user_id=conversation.external_user_id,
            status=ConversationStatus(conversation.status),
            messages=[
                Turn(role=TurnRole(turn.role), content=turn.content, timestamp=_as_utc(turn.created_at))
                for turn in turns
            ],
            metadata=dict(conversation.conversation_metadata or {}),
            created_at=_as_utc(conversation.created_at),
            updated_at=_as_utc(conversation.updated_at),
        )

    def find_open_conversation(
        self, agent_config_id: UUID, platform: Platform, external_user_id: str
    ) -> Optional[ConversationRecord]:
        with self._session() as db:
            conversation = (
                db.query(Conversation)
                .filter(
                    Conversation.agent_config_id == agent_config_id,
                    Conversation.platform == Platform(platform).value,
                    Conversation.external_user_id == external_user_id,
                    Conversation.status.in_(OPEN_STATUSES),
                )
                .order_by(Conversation.created_at.desc())
                .first()
            )
            return self._to_conversation_record(db, conversation) if conversation else None

    def create_conversation(
        self,
        agent_config_id: UUID,
        platform: Platform,
        external_user_id: str,
        metadata: Optional[dict] = None,
    ) -> ConversationRecord:
        now = _utcnow()
        with self._session() as db:
            conversation = Conversation(
                id=uuid.uuid4(),
                agent_config_id=agent_config_id,
                platform=Platform(platform).value,
                external_user_id=external_user_id,
                status=ConversationStatus.PENDING.value,
                message_count=0,
                conversation_metadata=metadata or {},
                created_at=now,
                updated_at=now,
            )
            db.add(conversation)
            try:
                db.commit()
                return self._to_conversation_record(db, conversation)
            except IntegrityError:
                db.rollback()

        # Lost the race on the open-triple index: someone else created it.
        existing = self.find_open_conversation(agent_config_id, platform, external_user_id)
        if existing is None:
            raise PersistenceError("Conversation create conflicted but no open conversation was found")
        logger.info(
            "Conversation already created concurrently",
            extra={"context": {"conversation_id": str(existing.id)}},
        )
        return existing

    def get_conversation(self, conversation_id: UUID) -> Optional[ConversationRecord]:
        with self._session() as db:
            conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
            return self._to_conversation_record(db, conversation) if conversation else None

    def append_turns_and_activate(
        self, conversation_id: UUID, turns: list[Turn], expected_prior_length: int
    ) -> ConversationRecord:
        """Append turns iff the log still has `expected_prior_length` entries, and mark ACTIVE.

        Raises ConcurrentModification when another writer got there first or
        the conversation is no longer open.
        """
        now = _utcnow()
        with self._session() as db:
            previous = None
            if expected_prior_length > 0:
                previous = _as_utc(
                    db.query(ConversationTurn.created_at)
                    .filter(
                        ConversationTurn.conversation_id == conversation_id,
                        ConversationTurn.seq == expected_prior_length - 1,
                    )
                    .scalar()
                )

            result = db.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.message_count == expected_prior_length,
                    Conversation.status.in_(OPEN_STATUSES),
                )
                .values(
                    message_count=Conversation.message_count + len(turns),
                    status=ConversationStatus.ACTIVE.value,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConcurrentModification(
                    f"Conversation {conversation_id} changed or closed (expected {expected_prior_length} turns)"
                )

            for offset, turn in enumerate(turns):
                created_at = _as_utc(turn.timestamp)
                if previous is not None and created_at <= previous:
                    created_at = previous + TURN_TIMESTAMP_STEP
                db.add(
                    ConversationTurn(
                        conversation_id=conversation_id,
                        seq=expected_prior_length + offset,
                        role=TurnRole(turn.role).value,
                        content=turn.content,
                        created_at=created_at,
                    )
                )
                previous = created_at

            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConcurrentModification(f"Turn sequence conflict on conversation {conversation_id}") from e

        record = self.get_conversation(conversation_id)
        if record is None:
            raise PersistenceError(f"Conversation {conversation_id} vanished after append")
        return record

    def record_undelivered_reply(self, conversation_id: UUID, entry: dict[str, Any]) -> None:
        with self._session() as db:
            conversation = (
                db.query(Conversation).filter(Conversation.id == conversation_id).with_for_update().first()
            )
            if conversation is None:
                logger.warning(
                    "Cannot flag undelivered reply, conversation missing",
                    extra={"context": {"conversation_id": str(conversation_id)}},
                )
                return
            metadata = dict(conversation.conversation_metadata or {})
            metadata["undelivered_replies"] = [*metadata.get("undelivered_replies", []), entry]
            conversation.conversation_metadata = metadata
            conversation.updated_at = _utcnow()
            db.commit()

    def close_conversation(self, conversation_id: UUID) -> Optional[ConversationRecord]:
        """PENDING/ACTIVE -> CLOSED. Raises InvalidTransitionError when already closed."""
        with self._session() as db:
            conversation = (
                db.query(Conversation).filter(Conversation.id == conversation_id).with_for_update().first()
            )
            if conversation is None:
                return None
            conversation.status = close(ConversationStatus(conversation.status)).value
            conversation.closed_at = _utcnow()
            conversation.updated_at = conversation.closed_at
            db.commit()
            return self._to_conversation_record(db, conversation)

    # Leads

    @staticmethod
    def _to_lead_record(lead: ExtractedLead) -> LeadRecord:
        return LeadRecord(
            id=lead.id,
            conversation_id=lead.conversation_id,
            contact_info=dict(lead.contact_info or {}),
            qualification_score=lead.qualification_score,
            qualification_reason=lead.qualification_reason or "",
            next_action=lead.next_action,
            booked_at=_as_utc(lead.booked_at),
            meeting_link=lead.meeting_link,
            created_at=_as_utc(lead.created_at),
            updated_at=_as_utc(lead.updated_at),
        )

    def upsert_lead(self, conversation_id: UUID, fields: dict[str, Any]) -> LeadRecord:
        """Create or update the single lead of a conversation.

        A booked lead keeps its booking and its next_action.
        """
        now = _utcnow()
        with self._session() as db:
            insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
            stmt = insert(ExtractedLead).values(
                id=uuid.uuid4(),
                conversation_id=conversation_id,
                contact_info=fields.get("contact_info") or {},
                qualification_score=fields["qualification_score"],
                qualification_reason=fields.get("qualification_reason") or "",
                next_action=fields.get("next_action") or "contact",
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["conversation_id"],
                set_={
                    "contact_info": stmt.excluded.contact_info,
                    "qualification_score": stmt.excluded.qualification_score,
                    "qualification_reason": stmt.excluded.qualification_reason,
                    "next_action": case(
                        (ExtractedLead.booked_at.isnot(None), ExtractedLead.next_action),
                        else_=stmt.excluded.next_action,
                    ),
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            db.execute(stmt)
            db.commit()

            lead = db.query(ExtractedLead).filter(ExtractedLead.conversation_id == conversation_id).one()
            return self._to_lead_record(lead)

    def get_lead(self, conversation_id: UUID) -> Optional[LeadRecord]:
        with self._session() as db:
            lead = db.query(ExtractedLead).filter(ExtractedLead.conversation_id == conversation_id).first()
            return self._to_lead_record(lead) if lead else None

    def mark_lead_booked(self, lead_id: UUID, meeting_link: str) -> Optional[LeadRecord]:
        with self._session() as db:
            lead = db.query(ExtractedLead).filter(ExtractedLead.id == lead_id).with_for_update().first()
            if lead is None:
                return None
            now = _utcnow()
            lead.booked_at = now
            lead.meeting_link = meeting_link
            lead.next_action = "booked"
            lead.updated_at = now
            db.commit()
            return self._to_lead_record(lead)

    def _min_score(self, db, agent_config_id: UUID) -> int:
        config = db.query(AgentConfig).filter(AgentConfig.id == agent_config_id).first()
        if config is None:
            return self.default_min_score
        return QualificationCriteria.from_raw(config.qualification_criteria, self.default_min_score).min_score

    def get_agent_stats(self, agent_config_id: UUID) -> AgentStats:
        with self._session() as db:
            min_score = self._min_score(db, agent_config_id)

            total = (
                db.query(func.count(Conversation.id))
                .filter(Conversation.agent_config_id == agent_config_id)
                .scalar()
            ) or 0
            open_count = (
                db.query(func.count(Conversation.id))
                .filter(
                    Conversation.agent_config_id == agent_config_id,
                    Conversation.status.in_(OPEN_STATUSES),
                )
                .scalar()
            ) or 0
            leads = db.query(ExtractedLead).join(Conversation, ExtractedLead.conversation_id == Conversation.id).filter(
                Conversation.agent_config_id == agent_config_id
            )
            qualified = leads.filter(ExtractedLead.qualification_score >= min_score).count()
            booked = leads.filter(ExtractedLead.booked_at.isnot(None)).count()

        conversion_rate = round(booked / total * 100, 2) if total else 0.0
        return AgentStats(
            agent_config_id=agent_config_id,
            total_conversations=total,
            open_conversations=open_count,
            qualified_leads=qualified,
            booked_meetings=booked,
            conversion_rate=conversion_rate,
        )

    def list_conversations(
        self,
        agent_config_id: UUID,
        status: Optional[ConversationStatus] = None,
        limit: int = 100,
    ) -> list[ConversationRecord]:
        """Conversations of an agent, most recently updated first."""
        with self._session() as db:
            query = db.query(Conversation).filter(Conversation.agent_config_id == agent_config_id)
            if status is not None:
                query = query.filter(Conversation.status == ConversationStatus(status).value)
            conversations = query.order_by(Conversation.updated_at.desc()).limit(limit).all()
            return [self._to_conversation_record(db, conversation) for conversation in conversations]

    def list_qualified_leads(self, agent_config_id: UUID, limit: int = 100) -> list[LeadRecord]:
        """Leads at or above the agent's minimum score, newest first."""
        with self._session() as db:
            min_score = self._min_score(db, agent_config_id)
            leads = (
                db.query(ExtractedLead)
                .join(Conversation, ExtractedLead.conversation_id == Conversation.id)
                .filter(
                    Conversation.agent_config_id == agent_config_id,
                    ExtractedLead.qualification_score >= min_score,
                )
                .order_by(ExtractedLead.created_at.desc())
                .limit(limit)
                .all()
            )
            return [self._to_lead_record(lead) for lead in leads]


def get_conversation_store() -> ConversationStore:
    """FastAPI dependency."""
    return SqlConversationStore(SessionLocal, default_min_score=settings.default_min_score)
