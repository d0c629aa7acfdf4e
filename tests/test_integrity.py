"""
Tests for orphan detection and recovery.
"""

import asyncio
import sqlite3
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import RECOVERY, FakeLLM
from refchat.agent.prompts import RECOVERY_FALLBACK_ANSWER
from refchat.core.errors import PersistenceFailure
from refchat.core.models import MessageRole, PassageCandidate
from refchat.services.integrity import IntegrityManager, find_orphans
from refchat.services.usage_meter import UsageMeter


class TestFindOrphans:
    def test_healthy_conversation(self, store, session) -> None:
        store.add_user_message(session.id, "q1")
        store.save_assistant_message(session.id, "a1")
        scan = find_orphans(store.list_messages(session.id))
        assert scan.orphans == ()
        assert scan.violations == ()

    def test_trailing_and_consecutive_user_messages(self, store, session) -> None:
        u1 = store.add_user_message(session.id, "q1")
        u2 = store.add_user_message(session.id, "q2")
        store.save_assistant_message(session.id, "a2")
        u3 = store.add_user_message(session.id, "q3")
        scan = find_orphans(store.list_messages(session.id))
        assert [m.id for m in scan.orphans] == [u1.id, u3.id]
        assert u2.id not in [m.id for m in scan.orphans]

    def test_inflight_turn_is_ignored(self, store, session) -> None:
        u1 = store.add_user_message(session.id, "q1")
        assert find_orphans(store.list_messages(session.id), inflight={u1.id}).orphans == ()

    def test_alternation_violations_are_reported(self, store, session) -> None:
        store.save_assistant_message(session.id, "stray")
        store.add_user_message(session.id, "q")
        store.save_assistant_message(session.id, "a")
        store.save_assistant_message(session.id, "again")
        scan = find_orphans(store.list_messages(session.id))
        assert len(scan.violations) == 2
        assert scan.orphans == ()


class TestCheckSession:
    @pytest.mark.asyncio
    async def test_orphan_recovered_after_restart(self, store, session, meter, owner_id) -> None:
        record = meter.create_record(owner_id)
        store.add_user_message(session.id, "q1")
        store.save_assistant_message(session.id, "a1", usage_record_id=record.id)
        orphan = store.add_user_message(session.id, "What is ATP?")
        store.add_passages(session.id, orphan.id, [PassageCandidate("doc", "doc.pdf", "ATP stores energy.")])
        llm = FakeLLM({RECOVERY: 'ATP stores energy.\n[REF]{"id": 1}[/REF]'})

        report = await IntegrityManager(store, llm).check_session(session.id)

        messages = store.list_messages(session.id)
        assert report.orphans == (orphan.id,)
        assert len(report.recovered) == 1
        recovered = messages[-1]
        assert recovered.id == report.recovered[0]
        assert recovered.role is MessageRole.ASSISTANT
        assert recovered.recovered
        assert recovered.created_at == orphan.created_at + timedelta(microseconds=1)
        assert [c.reference_id for c in recovered.citations] == ["1"]
        assert messages[-2].id == orphan.id and messages[-2].content == "What is ATP?"
        assert meter.get_record(record.id).messages_used == 1
        (system, sent), = llm.calls_for(RECOVERY)
        assert "ATP stores energy." in sent[-1]["content"]

    @pytest.mark.asyncio
    async def test_recovery_is_placed_right_after_a_middle_orphan(self, store, session) -> None:
        orphan = store.add_user_message(session.id, "lost")
        u2 = store.add_user_message(session.id, "next")
        store.save_assistant_message(session.id, "answer")
        report = await IntegrityManager(store, FakeLLM({RECOVERY: "Recovered."})).check_session(session.id)
        ids = [m.id for m in store.list_messages(session.id)]
        assert ids[:3] == [orphan.id, report.recovered[0], u2.id]

    @pytest.mark.asyncio
    async def test_second_pass_does_nothing(self, store, session) -> None:
        store.add_user_message(session.id, "q")
        manager = IntegrityManager(store, FakeLLM({RECOVERY: "Recovered."}))
        first = await manager.check_session(session.id)
        second = await manager.check_session(session.id)
        assert len(first.recovered) == 1
        assert second.recovered == ()
        assert second.healthy
        assert len(store.list_messages(session.id)) == 2

    @pytest.mark.asyncio
    async def test_disabled_generation_uses_fallback_text(self, store, session) -> None:
        store.add_user_message(session.id, "q")
        llm = FakeLLM(enabled=False)
        await IntegrityManager(store, llm).check_session(session.id)
        assert store.list_messages(session.id)[-1].content == RECOVERY_FALLBACK_ANSWER
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_failed_generation_uses_fallback_text(self, store, session) -> None:
        store.add_user_message(session.id, "q")
        await IntegrityManager(store, FakeLLM({RECOVERY: RuntimeError("down")})).check_session(session.id)
        assert store.list_messages(session.id)[-1].content == RECOVERY_FALLBACK_ANSWER

    @pytest.mark.asyncio
    async def test_inflight_provider_is_respected(self, store, session) -> None:
        message = store.add_user_message(session.id, "q")
        manager = IntegrityManager(store, FakeLLM({RECOVERY: "x"}), inflight=lambda: {message.id})
        report = await manager.check_session(session.id)
        assert report.recovered == ()


class TestPersistenceFailure:
    @pytest.mark.asyncio
    async def test_failed_answer_leaves_orphan_and_usage_unchanged(self, store, session, meter, owner_id) -> None:
        record = meter.create_record(owner_id)
        user = store.add_user_message(session.id, "q")
        with patch.object(UsageMeter, "increment_message_count", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(PersistenceFailure):
                store.save_assistant_message(session.id, "answer", usage_record_id=record.id)
        assert meter.get_record(record.id).messages_used == 0

        report = await IntegrityManager(store, FakeLLM({RECOVERY: "Recovered."})).check_session(session.id)

        assert report.orphans == (user.id,)
        assert meter.get_record(record.id).messages_used == 0


@pytest.mark.asyncio
async def test_check_all_covers_every_session(store, owner_id) -> None:
    s1 = store.create_session(owner_id)
    s2 = store.create_session("owner-2")
    store.add_user_message(s1.id, "q1")
    store.add_user_message(s2.id, "q2")
    store.save_assistant_message(s2.id, "a2")
    reports = await IntegrityManager(store, FakeLLM({RECOVERY: "r"})).check_all()
    by_session = {r.session_id: r for r in reports}
    assert len(by_session[s1.id].recovered) == 1
    assert by_session[s2.id].recovered == ()


class TestConcurrentPasses:
    @pytest.mark.asyncio
    async def test_parallel_passes_recover_an_orphan_once(self, store, session) -> None:
        orphan = store.add_user_message(session.id, "q")
        manager = IntegrityManager(store, FakeLLM({RECOVERY: "Recovered."}))

        first, second = await asyncio.gather(manager.check_session(session.id), manager.check_session(session.id))

        assert [m.role for m in store.list_messages(session.id)] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert sorted([len(first.recovered), len(second.recovered)]) == [0, 1]
        assert orphan.id in first.orphans + second.orphans

    @pytest.mark.asyncio
    async def test_separate_managers_recover_an_orphan_once(self, store, session) -> None:
        store.add_user_message(session.id, "q")
        managers = [IntegrityManager(store, FakeLLM({RECOVERY: "Recovered."})) for _ in range(2)]

        reports = await asyncio.gather(*(m.check_session(session.id) for m in managers))

        assert [m.role for m in store.list_messages(session.id)] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert sum(len(r.recovered) for r in reports) == 1

    def test_answered_orphan_is_not_answered_again(self, store, session) -> None:
        orphan = store.add_user_message(session.id, "q")
        at = orphan.created_at + timedelta(microseconds=1)
        assert store.save_recovered_answer(orphan, "first", [], at) is not None
        assert store.save_recovered_answer(orphan, "second", [], at) is None
        assert [m.content for m in store.list_messages(session.id)] == ["q", "first"]
