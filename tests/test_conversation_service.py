from datetime import timedelta

from conftest import NOW

from app.models import Conversation
from app.services.conversation_service import (
    ROLE_ASSISTANT,
    ROLE_USER,
    add_message,
    clear_expired_conversations,
    find_conversation,
    get_conversation,
    get_history,
    last_turn,
    list_recent_conversations,
    stored_message_ids,
    turn_timestamp,
)

KEY = "5511988887777@s.whatsapp.net"


class TestAddMessage:
    def test_creates_conversation_on_first_message(self, db):
        conversation = add_message(db, KEY, ROLE_USER, "Oi", message_id="m1", contact_name="Ana", now=NOW)

        assert conversation.conversation_key == KEY
        assert conversation.contact_name == "Ana"
        assert conversation.messages == [
            {"role": "user", "content": "Oi", "timestamp": NOW.isoformat(), "message_id": "m1"}
        ]

    def test_appends_in_order(self, db):
        add_message(db, KEY, ROLE_USER, "Oi", now=NOW)
        add_message(db, KEY, ROLE_ASSISTANT, "Olá! Como posso ajudar?", now=NOW + timedelta(seconds=5))
        db.commit()

        history = get_history(db, KEY, now=NOW + timedelta(seconds=10))
        assert [turn["role"] for turn in history] == ["user", "assistant"]

    def test_history_never_exceeds_fifty_turns(self, db):
        for i in range(60):
            add_message(db, KEY, ROLE_USER, f"mensagem {i}", now=NOW + timedelta(seconds=i))

        conversation = find_conversation(db, KEY)
        assert len(conversation.messages) == 50
        assert conversation.messages[0]["content"] == "mensagem 10"
        assert conversation.messages[-1]["content"] == "mensagem 59"

    def test_expired_memory_starts_fresh(self, db):
        add_message(db, KEY, ROLE_USER, "antiga", now=NOW)
        add_message(db, KEY, ROLE_USER, "nova", now=NOW + timedelta(hours=2))

        conversation = find_conversation(db, KEY)
        assert [turn["content"] for turn in conversation.messages] == ["nova"]

    def test_message_type_is_stored(self, db):
        add_message(db, KEY, ROLE_ASSISTANT, "Volte quando quiser", message_type="followup", now=NOW)
        assert find_conversation(db, KEY).messages[0]["message_type"] == "followup"


class TestTtl:
    def test_conversation_past_ttl_reads_as_absent(self, db):
        add_message(db, KEY, ROLE_USER, "Oi", now=NOW)
        db.commit()

        assert get_conversation(db, KEY, now=NOW + timedelta(minutes=59)) is not None
        assert get_conversation(db, KEY, now=NOW + timedelta(minutes=61)) is None
        assert get_history(db, KEY, now=NOW + timedelta(minutes=61)) == []

    def test_include_expired_reads_stored_transcript(self, db):
        add_message(db, KEY, ROLE_USER, "Oi", now=NOW)
        db.commit()

        history = get_history(db, KEY, now=NOW + timedelta(hours=30), include_expired=True)
        assert len(history) == 1

    def test_unknown_key(self, db):
        assert get_conversation(db, "nobody") is None
        assert get_history(db, "nobody") == []


class TestHelpers:
    def test_stored_message_ids(self):
        history = [{"role": "user", "content": "a", "message_id": "m1"}, {"role": "assistant", "content": "b"}]
        assert stored_message_ids(history) == {"m1"}

    def test_last_turn_by_role(self):
        history = [
            {"role": "assistant", "content": "primeira"},
            {"role": "user", "content": "pergunta"},
        ]
        assert last_turn(history)["content"] == "pergunta"
        assert last_turn(history, ROLE_ASSISTANT)["content"] == "primeira"
        assert last_turn([], ROLE_USER) is None

    def test_turn_timestamp(self):
        assert turn_timestamp({"timestamp": NOW.isoformat()}) == NOW
        assert turn_timestamp({"timestamp": "not a date"}) is None
        assert turn_timestamp({}) is None


class TestMaintenance:
    def test_list_recent_conversations(self, db):
        add_message(db, "old", ROLE_USER, "oi", now=NOW - timedelta(hours=30))
        add_message(db, "new", ROLE_USER, "oi", now=NOW - timedelta(hours=1))
        db.commit()

        recent = list_recent_conversations(db, NOW - timedelta(hours=24))
        assert [c.conversation_key for c in recent] == ["new"]

    def test_clear_expired_conversations(self, db):
        add_message(db, "stale", ROLE_USER, "oi", now=NOW - timedelta(hours=200))
        add_message(db, "fresh", ROLE_USER, "oi", now=NOW - timedelta(hours=2))
        db.commit()

        removed = clear_expired_conversations(db, retention_hours=168, now=NOW)
        db.commit()

        assert removed == 1
        assert db.query(Conversation).count() == 1
