from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from conftest import NOW

from app.models import FollowupHistory
from app.services.conversation_service import add_message
from app.services.history_service import FollowupType, record_event
from app.services.llm.base import LLMError
from app.services.recovery_service import (
    RecoveryScanner,
    has_valid_context,
    is_meaningful,
    priority_score,
)


def seed(db, key, question="quanto custa o sofá azul?", *, age=timedelta(hours=1), reply_last=False):
    sent_at = NOW - age
    add_message(db, key, "assistant", "Olá! Como posso ajudar você hoje?", now=sent_at - timedelta(minutes=2))
    add_message(db, key, "user", question, message_id=f"wa-{key}", now=sent_at)
    if reply_last:
        add_message(db, key, "assistant", "Já respondi por aqui.", now=sent_at + timedelta(minutes=1))


def make_config(enabled=True):
    config = Mock()
    config.get_bool.return_value = enabled
    return config


def make_scanner(session_factory, pipeline=None, generator=None, *, config=None, sleep=None):
    if pipeline is None:
        pipeline = Mock()
        pipeline.process = AsyncMock(return_value="Oi! Desculpe a demora, o sofá azul custa R$ 1.200.")
    return RecoveryScanner(
        session_factory,
        pipeline,
        generator,
        config or make_config(),
        sleep_func=sleep or AsyncMock(),
        now_func=lambda: NOW,
    )


class TestHeuristics:
    def test_meaningful_messages(self):
        assert is_meaningful("quanto custa?")
        assert not is_meaningful("ok")
        assert not is_meaningful("Oi!")
        assert not is_meaningful("👍")
        assert not is_meaningful("...")
        assert not is_meaningful(None)

    def test_context_needs_two_substantial_turns(self):
        assert has_valid_context(
            [{"role": "assistant", "content": "Olá! Como posso ajudar?"}, {"role": "user", "content": "quero um sofá"}]
        )
        assert not has_valid_context([{"role": "user", "content": "quero um sofá"}])
        assert not has_valid_context([{"role": "user", "content": "oi"}, {"role": "assistant", "content": "Olá"}])

    def test_priority_favors_recent_questions(self):
        recent_question = priority_score(1, "qual o prazo de entrega?", 4)
        old_statement = priority_score(20, "vou pensar", 4)
        assert recent_question > old_statement


class TestFindCandidates:
    def test_only_unanswered_user_messages(self, db, session_factory):
        seed(db, "a")
        seed(db, "b", reply_last=True)
        db.commit()

        candidates = make_scanner(session_factory).find_candidates(db)

        assert [c.conversation_key for c in candidates] == ["a"]
        assert candidates[0].message_id == "wa-a"
        assert candidates[0].age_hours == pytest.approx(1.0)

    def test_age_bounds(self, db, session_factory):
        seed(db, "too-new", age=timedelta(minutes=2))
        seed(db, "too-old", age=timedelta(hours=23, minutes=58), question="ainda tem o sofá azul?")
        seed(db, "ok", age=timedelta(hours=3))
        db.commit()

        scanner = make_scanner(session_factory)
        scanner.max_age = timedelta(hours=12)
        keys = [c.conversation_key for c in scanner.find_candidates(db)]

        assert keys == ["ok"]

    def test_trivial_messages_are_ignored(self, db, session_factory):
        seed(db, "a", question="ok")
        seed(db, "b", question="rsrs")
        db.commit()
        assert make_scanner(session_factory).find_candidates(db) == []

    def test_sorted_by_priority(self, db, session_factory):
        seed(db, "old", "vou pensar no assunto", age=timedelta(hours=10))
        seed(db, "fresh", "qual o prazo de entrega para São Paulo?", age=timedelta(minutes=30))
        db.commit()

        keys = [c.conversation_key for c in make_scanner(session_factory).find_candidates(db)]
        assert keys == ["fresh", "old"]


class TestFilterCandidates:
    @pytest.mark.asyncio
    async def test_suppressed_keys_are_dropped(self, db, session_factory):
        for key in ("recent", "stopped", "finalized", "ok"):
            seed(db, key)
        record_event(db, "recent", FollowupType.RECOVERY_ATTEMPT, now=NOW - timedelta(minutes=30))
        record_event(db, "stopped", FollowupType.STOP_MARKER, now=NOW - timedelta(days=3))
        record_event(db, "finalized", FollowupType.CONVERSATION_FINALIZED, now=NOW - timedelta(hours=2))
        db.commit()
        scanner = make_scanner(session_factory)

        approved = await scanner.filter_candidates(db, scanner.find_candidates(db))

        assert [c.conversation_key for c in approved] == ["ok"]

    @pytest.mark.asyncio
    async def test_model_decides(self, db, session_factory):
        seed(db, "a")
        db.commit()
        generator = Mock()
        generator.ask = AsyncMock(return_value="NAO_RESPONDER")
        scanner = make_scanner(session_factory, generator=generator)

        assert await scanner.filter_candidates(db, scanner.find_candidates(db)) == []

        generator.ask.return_value = "RESPONDER"
        assert len(await scanner.filter_candidates(db, scanner.find_candidates(db))) == 1

    @pytest.mark.asyncio
    async def test_model_error_skips_candidate(self, db, session_factory):
        seed(db, "a")
        db.commit()
        generator = Mock()
        generator.ask = AsyncMock(side_effect=LLMError("down"))
        scanner = make_scanner(session_factory, generator=generator)

        assert await scanner.filter_candidates(db, scanner.find_candidates(db)) == []


class TestRun:
    @pytest.mark.asyncio
    async def test_twelve_candidates_processed_ten_in_batches(self, db, session_factory):
        for i in range(12):
            seed(db, f"55119000000{i:02d}@s.whatsapp.net", age=timedelta(hours=1, minutes=i))
        db.commit()
        sleep = AsyncMock()
        scanner = make_scanner(session_factory, sleep=sleep)

        summary = await scanner.run()

        assert summary == {"skipped": False, "eligible": 12, "selected": 10, "responded": 10, "failed": 0}
        assert scanner.pipeline.process.await_count == 10
        delays = [c.args[0] for c in sleep.await_args_list]
        # batches of 3, 3, 3, 1
        assert delays.count(30.0) == 3
        assert delays.count(5.0) == 6

        replayed = [c.args[1][0] for c in scanner.pipeline.process.await_args_list]
        assert all(m.is_replay for m in replayed)

        db.expire_all()
        attempts = db.query(FollowupHistory).filter(FollowupHistory.followup_type == "recovery_attempt").all()
        assert len(attempts) == 10
        assert all(a.details["status"] == "responded" for a in attempts)

    @pytest.mark.asyncio
    async def test_no_reply_counts_as_failed(self, db, session_factory):
        seed(db, "a")
        db.commit()
        pipeline = Mock()
        pipeline.process = AsyncMock(return_value=None)

        summary = await make_scanner(session_factory, pipeline).run()

        assert summary["failed"] == 1
        db.expire_all()
        attempt = db.query(FollowupHistory).one()
        assert attempt.details["status"] == "no_reply"

    @pytest.mark.asyncio
    async def test_recover_error_does_not_stop_scan(self, db, session_factory):
        seed(db, "a", age=timedelta(hours=1))
        seed(db, "b", age=timedelta(hours=2))
        db.commit()
        pipeline = Mock()
        pipeline.process = AsyncMock(side_effect=[RuntimeError("boom"), "Resposta"])

        summary = await make_scanner(session_factory, pipeline).run()

        assert summary["responded"] == 1
        assert summary["failed"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_run_is_skipped(self, session_factory):
        scanner = make_scanner(session_factory)
        scanner.is_processing = True
        assert await scanner.run() == {"skipped": True}


class TestOnConnected:
    @pytest.mark.asyncio
    async def test_scan_runs_after_settle(self, session_factory):
        sleep = AsyncMock()
        scanner = make_scanner(session_factory, sleep=sleep)

        task = scanner.on_connected()
        summary = await task

        sleep.assert_any_await(10.0)
        assert summary["eligible"] == 0

    @pytest.mark.asyncio
    async def test_disabled_by_config(self, session_factory):
        scanner = make_scanner(session_factory, config=make_config(enabled=False))
        assert scanner.on_connected() is None
