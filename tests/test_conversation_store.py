from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from setter_api.errors import ConcurrentModification
from setter_api.models import ConversationTurn, ExtractedLead
from setter_api.schemas.pipeline import Platform, Turn, TurnRole
from setter_api.services.state_machine import ConversationStatus, InvalidTransitionError

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _turns(user_text="Hi", reply="Hello!", at=T0):
    return [
        Turn(role=TurnRole.USER, content=user_text, timestamp=at),
        Turn(role=TurnRole.ASSISTANT, content=reply, timestamp=at + timedelta(seconds=1)),
    ]


class TestAgentConfigLookup:
    def test_find_config_by_platform_account(self, store, make_agent):
        agent_id = make_agent(account_id="page-42")

        config = store.find_config_by_platform_account(Platform.MESSENGER, "page-42")

        assert config.id == agent_id
        assert config.criteria.min_score == 7
        assert config.is_active is True

    def test_unknown_account_returns_none(self, store, make_agent):
        make_agent(account_id="page-42")
        assert store.find_config_by_platform_account(Platform.MESSENGER, "other") is None
        assert store.find_config_by_platform_account(Platform.INSTAGRAM, "page-42") is None

    def test_get_access_token(self, store, make_agent):
        agent_id = make_agent(access_token="secret-token")
        assert store.get_access_token(agent_id, Platform.MESSENGER) == "secret-token"
        assert store.get_access_token(agent_id, Platform.INSTAGRAM) is None

    def test_missing_agent(self, store):
        assert store.get_agent_config(uuid4()) is None


class TestConversationLifecycle:
    def test_create_and_find_open(self, store, make_agent):
        agent_id = make_agent()

        created = store.create_conversation(agent_id, Platform.MESSENGER, "user-1", metadata={"account_id": "page-1"})
        found = store.find_open_conversation(agent_id, Platform.MESSENGER, "user-1")

        assert created.status == ConversationStatus.PENDING
        assert created.messages == []
        assert found.id == created.id
        assert found.metadata == {"account_id": "page-1"}

    def test_second_create_returns_existing_open_conversation(self, store, make_agent):
        agent_id = make_agent()

        first = store.create_conversation(agent_id, Platform.MESSENGER, "user-1")
        second = store.create_conversation(agent_id, Platform.MESSENGER, "user-1")

        assert second.id == first.id

    def test_new_conversation_allowed_after_close(self, store, make_agent):
        agent_id = make_agent()
        first = store.create_conversation(agent_id, Platform.MESSENGER, "user-1")
        store.close_conversation(first.id)

        second = store.create_conversation(agent_id, Platform.MESSENGER, "user-1")

        assert second.id != first.id
        assert store.find_open_conversation(agent_id, Platform.MESSENGER, "user-1").id == second.id

    def test_close_twice_is_invalid(self, store, make_agent):
        conversation = store.create_conversation(make_agent(), Platform.TEST, "test_user")

        closed = store.close_conversation(conversation.id)

        assert closed.status == ConversationStatus.CLOSED
        with pytest.raises(InvalidTransitionError):
            store.close_conversation(conversation.id)

    def test_close_missing_returns_none(self, store):
        assert store.close_conversation(uuid4()) is None


class TestAppendTurns:
    def test_append_activates_and_orders_turns(self, store, make_agent):
        conversation = store.create_conversation(make_agent(), Platform.MESSENGER, "user-1")

        updated = store.append_turns_and_activate(conversation.id, _turns(), 0)

        assert updated.status == ConversationStatus.ACTIVE
        assert [t.role for t in updated.messages] == [TurnRole.USER, TurnRole.ASSISTANT]
        assert updated.user_turn_count() == 1

    def test_stale_expected_length_raises(self, store, make_agent):
        conversation = store.create_conversation(make_agent(), Platform.MESSENGER, "user-1")
        store.append_turns_and_activate(conversation.id, _turns(), 0)

        with pytest.raises(ConcurrentModification):
            store.append_turns_and_activate(conversation.id, _turns("again"), 0)

        assert len(store.get_conversation(conversation.id).messages) == 2

    def test_append_to_closed_conversation_raises(self, store, make_agent):
        conversation = store.create_conversation(make_agent(), Platform.MESSENGER, "user-1")
        store.close_conversation(conversation.id)

        with pytest.raises(ConcurrentModification):
            store.append_turns_and_activate(conversation.id, _turns(), 0)

    def test_timestamps_are_strictly_increasing(self, store, make_agent):
        conversation = store.create_conversation(make_agent(), Platform.MESSENGER, "user-1")
        store.append_turns_and_activate(conversation.id, _turns(at=T0), 0)

        # platform clock behind ours: the new turns must still sort after the old ones
        updated = store.append_turns_and_activate(conversation.id, _turns("late", at=T0 - timedelta(minutes=5)), 2)

        stamps = [turn.timestamp for turn in updated.messages]
        assert all(earlier < later for earlier, later in zip(stamps, stamps[1:]))

    def test_turn_rows_have_sequential_seq(self, store, make_agent, session_factory):
        conversation = store.create_conversation(make_agent(), Platform.MESSENGER, "user-1")
        store.append_turns_and_activate(conversation.id, _turns(), 0)
        store.append_turns_and_activate(conversation.id, _turns("second", at=T0 + timedelta(minutes=1)), 2)

        with session_factory() as db:
            seqs = [
                row.seq
                for row in db.query(ConversationTurn)
                .filter(ConversationTurn.conversation_id == conversation.id)
                .order_by(ConversationTurn.seq)
            ]
        assert seqs == [0, 1, 2, 3]

    def test_record_undelivered_reply(self, store, make_agent):
        conversation = store.create_conversation(make_agent(), Platform.MESSENGER, "user-1", metadata={"a": 1})

        store.record_undelivered_reply(conversation.id, {"text": "Hello!", "error": "boom"})
        store.record_undelivered_reply(conversation.id, {"text": "Again", "error": "boom"})

        metadata = store.get_conversation(conversation.id).metadata
        assert metadata["a"] == 1
        assert [entry["text"] for entry in metadata["undelivered_replies"]] == ["Hello!", "Again"]


class TestLeads:
    def _fields(self, score=8, next_action="contact"):
        return {
            "contact_info": {"name": "Ana"},
            "qualification_score": score,
            "qualification_reason": "Budget confirmed",
            "next_action": next_action,
        }

    def test_upsert_creates_then_updates_single_lead(self, store, make_agent, session_factory):
        conversation = store.create_conversation(make_agent(), Platform.MESSENGER, "user-1")

        first = store.upsert_lead(conversation.id, self._fields(score=7))
        second = store.upsert_lead(conversation.id, self._fields(score=9))

        assert first.id == second.id
        assert second.qualification_score == 9
        with session_factory() as db:
            assert db.query(ExtractedLead).count() == 1

    def test_booking_survives_requalification(self, store, make_agent):
        conversation = store.create_conversation(make_agent(), Platform.MESSENGER, "user-1")
        lead = store.upsert_lead(conversation.id, self._fields())

        booked = store.mark_lead_booked(lead.id, "https://cal.example.com/meet/1")
        updated = store.upsert_lead(conversation.id, self._fields(score=10, next_action="contact"))

        assert booked.next_action == "booked"
        assert booked.booked_at is not None
        assert updated.next_action == "booked"
        assert updated.meeting_link == "https://cal.example.com/meet/1"
        assert updated.qualification_score == 10

    def test_mark_missing_lead_booked(self, store):
        assert store.mark_lead_booked(uuid4(), "https://cal.example.com") is None

    def test_agent_stats(self, store, make_agent):
        agent_id = make_agent(criteria={"description": "x", "minScore": 7})
        qualified = store.create_conversation(agent_id, Platform.MESSENGER, "user-1")
        lukewarm = store.create_conversation(agent_id, Platform.MESSENGER, "user-2")
        store.create_conversation(agent_id, Platform.MESSENGER, "user-3")
        closed = store.create_conversation(agent_id, Platform.MESSENGER, "user-4")
        store.close_conversation(closed.id)

        lead = store.upsert_lead(qualified.id, self._fields(score=8))
        store.upsert_lead(lukewarm.id, self._fields(score=5))
        store.mark_lead_booked(lead.id, "https://cal.example.com")

        stats = store.get_agent_stats(agent_id)

        assert stats.total_conversations == 4
        assert stats.open_conversations == 3
        assert stats.qualified_leads == 1
        assert stats.booked_meetings == 1
        assert stats.conversion_rate == 25.0

    def test_agent_stats_without_conversations(self, store, make_agent):
        stats = store.get_agent_stats(make_agent())
        assert stats.total_conversations == 0
        assert stats.conversion_rate == 0.0


class TestAgentListings:
    def _lead(self, score):
        return {"contact_info": {}, "qualification_score": score, "qualification_reason": "", "next_action": "contact"}

    def test_list_conversations_newest_activity_first(self, store, make_agent):
        agent_id = make_agent()
        other_agent = make_agent(account_id="page-2")
        quiet = store.create_conversation(agent_id, Platform.MESSENGER, "user-1")
        busy = store.create_conversation(agent_id, Platform.INSTAGRAM, "user-2")
        closed = store.create_conversation(agent_id, Platform.MESSENGER, "user-3")
        store.close_conversation(closed.id)
        store.append_turns_and_activate(busy.id, _turns(at=datetime.now(timezone.utc)), 0)
        store.create_conversation(other_agent, Platform.MESSENGER, "user-1")

        conversations = store.list_conversations(agent_id)

        assert [c.id for c in conversations] == [busy.id, closed.id, quiet.id]
        assert len(conversations[0].messages) == 2

    def test_list_conversations_by_status(self, store, make_agent):
        agent_id = make_agent()
        pending = store.create_conversation(agent_id, Platform.MESSENGER, "user-1")
        closed = store.create_conversation(agent_id, Platform.MESSENGER, "user-2")
        store.close_conversation(closed.id)

        assert [c.id for c in store.list_conversations(agent_id, status=ConversationStatus.CLOSED)] == [closed.id]
        assert [c.id for c in store.list_conversations(agent_id, status=ConversationStatus.PENDING)] == [pending.id]
        assert store.list_conversations(agent_id, status=ConversationStatus.ACTIVE) == []

    def test_list_qualified_leads_uses_agent_threshold(self, store, make_agent):
        agent_id = make_agent(criteria={"description": "x", "minScore": 6})
        other_agent = make_agent(account_id="page-2")
        older = store.create_conversation(agent_id, Platform.MESSENGER, "user-1")
        below = store.create_conversation(agent_id, Platform.MESSENGER, "user-2")
        newer = store.create_conversation(agent_id, Platform.MESSENGER, "user-3")
        foreign = store.create_conversation(other_agent, Platform.MESSENGER, "user-1")
        store.upsert_lead(older.id, self._lead(6))
        store.upsert_lead(below.id, self._lead(5))
        store.upsert_lead(newer.id, self._lead(9))
        store.upsert_lead(foreign.id, self._lead(10))

        leads = store.list_qualified_leads(agent_id)

        assert [lead.conversation_id for lead in leads] == [newer.id, older.id]
        assert [lead.qualification_score for lead in leads] == [9, 6]
