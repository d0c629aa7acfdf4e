"""
Tests for one exchange end to end: stream fragments, persistence, billing and conversation upkeep.
"""

import asyncio
import json
import re
import sqlite3
import threading
import time
from contextlib import aclosing
from unittest.mock import patch

import httpx
import pytest

from conftest import PLANNER, SNIPPET, SUMMARY, TITLE, FakeLLM, FakeSearch, add_document, echo_first_chunk, hit
from refchat.core.errors import EmptyUserInputError, PersistenceFailure, QuotaExceededError, SessionNotFoundError
from refchat.core.models import MessageRole
from refchat.services.chat_service import ChatService
from refchat.services.conversation_store import ConversationStore
from refchat.services.usage_meter import UsageMeter

USER_ID_RE = re.compile(r"^\[USER_MESSAGE_ID\](.+)\[/USER_MESSAGE_ID\]$")
ASSISTANT_ID_RE = re.compile(r"^\[ASSISTANT_MESSAGE_ID\](.+)\[/ASSISTANT_MESSAGE_ID\]$")
ERROR_RE = re.compile(r"^\[ERROR\](.+)\[/ERROR\]$", re.DOTALL)

ANSWER_CHUNKS = ["ATP stores ", "energy.", '\n[REF]{"id": 1}[/REF]']


def _llm(**kwargs) -> FakeLLM:
    replies = {
        PLANNER: json.dumps({"specific": ["What is ATP?"], "generic": []}),
        SNIPPET: echo_first_chunk,
        TITLE: "ATP basics",
    }
    replies.update(kwargs.pop("replies", {}))
    return FakeLLM(replies, chunks=kwargs.pop("chunks", ANSWER_CHUNKS), **kwargs)


def _search() -> FakeSearch:
    return FakeSearch(default=lambda q, d: [hit(d or "doc-1", "ATP stores energy in phosphate bonds.")])


@pytest.fixture
def prepared(store, documents, owner_id):
    add_document(documents, "doc-1", owner_id)
    return store.create_session(owner_id, ["doc-1"])


async def _collect(agen) -> list[str]:
    return [fragment async for fragment in agen]


@pytest.mark.asyncio
async def test_fragments_in_order_and_answer_persisted(store, documents, meter, owner_id, prepared) -> None:
    record = meter.create_record(owner_id, message_limit=5)
    service = ChatService(store, documents, _llm(), _search())

    fragments = await _collect(service.stream_message(owner_id, prepared.id, "  What is ATP?  "))

    user_id = USER_ID_RE.match(fragments[0]).group(1)
    assistant_id = ASSISTANT_ID_RE.match(fragments[-1]).group(1)
    assert fragments[1:-1] == ANSWER_CHUNKS

    messages = store.list_messages(prepared.id)
    assert [m.id for m in messages] == [user_id, assistant_id]
    assert messages[0].content == "What is ATP?"
    assert messages[1].content == "".join(ANSWER_CHUNKS)
    assert [(c.reference_id, c.document_id) for c in messages[1].citations] == [("1", "doc-1")]
    assert meter.get_record(record.id).messages_used == 1
    assert store.passages_for_message(prepared.id, user_id)[0].reference_number == 1
    assert service._inflight == set()


@pytest.mark.asyncio
async def test_empty_input_is_rejected_before_any_work(store, documents, owner_id, prepared) -> None:
    llm = _llm()
    service = ChatService(store, documents, llm, _search())
    with pytest.raises(EmptyUserInputError):
        await service.begin_turn(owner_id, prepared.id, "   ")
    assert store.list_messages(prepared.id) == []
    assert llm.calls == []


@pytest.mark.asyncio
async def test_unknown_session_is_rejected(store, documents, owner_id) -> None:
    service = ChatService(store, documents, _llm(), _search())
    with pytest.raises(SessionNotFoundError):
        await service.begin_turn(owner_id, "missing", "hello")


@pytest.mark.asyncio
async def test_quota_is_checked_before_the_user_message_is_saved(store, documents, meter, owner_id, prepared) -> None:
    meter.create_record(owner_id, message_limit=0)
    service = ChatService(store, documents, _llm(), _search())
    with pytest.raises(QuotaExceededError):
        await service.begin_turn(owner_id, prepared.id, "hello")
    assert store.list_messages(prepared.id) == []


@pytest.mark.asyncio
async def test_generation_failure_emits_error_and_bills_nothing(store, documents, meter, owner_id, prepared) -> None:
    record = meter.create_record(owner_id)
    request = httpx.Request("POST", "https://example.invalid")
    error = httpx.HTTPStatusError("denied", request=request, response=httpx.Response(401, request=request))
    service = ChatService(store, documents, _llm(chunks=[], stream_error=error), _search())

    fragments = await _collect(service.stream_message(owner_id, prepared.id, "What is ATP?"))

    assert USER_ID_RE.match(fragments[0])
    assert json.loads(ERROR_RE.match(fragments[-1]).group(1))["kind"] == "auth_failure"
    assert [m.role for m in store.list_messages(prepared.id)] == [MessageRole.USER]
    assert meter.get_record(record.id).messages_used == 0


@pytest.mark.asyncio
async def test_failure_midway_keeps_partial_answer(store, documents, owner_id, prepared) -> None:
    service = ChatService(store, documents, _llm(chunks=["ATP "], stream_error=RuntimeError("reset")), _search())

    fragments = await _collect(service.stream_message(owner_id, prepared.id, "What is ATP?"))

    assert fragments[1] == "ATP "
    assert ASSISTANT_ID_RE.match(fragments[2])
    assert ERROR_RE.match(fragments[3])
    saved = store.list_messages(prepared.id)[-1]
    assert saved.partial and saved.content == "ATP "


@pytest.mark.asyncio
async def test_persistence_failure_is_reported_in_stream(store, documents, meter, owner_id, prepared) -> None:
    record = meter.create_record(owner_id)
    service = ChatService(store, documents, _llm(), _search())

    with patch.object(UsageMeter, "increment_message_count", side_effect=sqlite3.OperationalError("disk full")):
        fragments = await _collect(service.stream_message(owner_id, prepared.id, "What is ATP?"))

    assert json.loads(ERROR_RE.match(fragments[-1]).group(1))["kind"] == "persistence_failure"
    assert not any(ASSISTANT_ID_RE.match(f) for f in fragments)
    assert [m.role for m in store.list_messages(prepared.id)] == [MessageRole.USER]
    assert meter.get_record(record.id).messages_used == 0


@pytest.mark.asyncio
async def test_disconnect_persists_partial_answer(store, documents, meter, owner_id, prepared) -> None:
    record = meter.create_record(owner_id)
    llm = _llm()
    service = ChatService(store, documents, llm, _search())
    turn = await service.begin_turn(owner_id, prepared.id, "What is ATP?")

    stream = service.stream_turn(turn)
    assert USER_ID_RE.match(await stream.__anext__())
    assert await stream.__anext__() == "ATP stores "
    await stream.aclose()

    saved = store.list_messages(prepared.id)[-1]
    assert saved.role is MessageRole.ASSISTANT
    assert saved.partial
    assert saved.content == "ATP stores "
    assert meter.get_record(record.id).messages_used == 1
    assert llm.stream_closed
    assert service._inflight == set()


@pytest.mark.asyncio
async def test_inflight_turn_is_not_recovered(store, documents, owner_id, prepared) -> None:
    service = ChatService(store, documents, _llm(), _search())
    turn = await service.begin_turn(owner_id, prepared.id, "What is ATP?")

    report = await service.integrity.check_session(prepared.id)
    assert report.recovered == ()

    await _collect(service.stream_turn(turn))
    assert len(store.list_messages(prepared.id)) == 2


@pytest.mark.asyncio
async def test_first_exchange_sets_title(store, documents, owner_id, prepared) -> None:
    service = ChatService(store, documents, _llm(), _search())
    await _collect(service.stream_message(owner_id, prepared.id, "What is ATP?"))
    assert store.get_session(prepared.id).title == "ATP basics"


@pytest.mark.asyncio
async def test_title_falls_back_to_date(store, documents, owner_id, prepared) -> None:
    service = ChatService(store, documents, _llm(replies={TITLE: ""}), _search())
    await _collect(service.stream_message(owner_id, prepared.id, "What is ATP?"))
    assert store.get_session(prepared.id).title.startswith("Chat ")


@pytest.mark.asyncio
async def test_summary_attached_every_n_exchanges(store, documents, owner_id, prepared) -> None:
    llm = _llm(replies={SUMMARY: "They asked about ATP."})
    service = ChatService(store, documents, llm, _search())
    service.summarizer.every = 2

    for _ in range(3):
        await _collect(service.stream_message(owner_id, prepared.id, "What is ATP?"))

    assistants = [m for m in store.list_messages(prepared.id) if m.role is MessageRole.ASSISTANT]
    assert [m.summary for m in assistants] == [None, "They asked about ATP.", None]
    assert len(llm.calls_for(SUMMARY)) == 1


@pytest.mark.asyncio
async def test_later_turns_see_summaries_and_earlier_passages(store, documents, owner_id, prepared) -> None:
    llm = _llm(replies={SUMMARY: "They asked about ATP."})
    service = ChatService(store, documents, llm, _search())
    service.summarizer.every = 1

    await _collect(service.stream_message(owner_id, prepared.id, "What is ATP?"))
    await _collect(service.stream_message(owner_id, prepared.id, "And again?"))

    _, sent = llm.stream_calls[-1]
    assert "They asked about ATP." in sent[0]["content"]
    assert sent[-1]["content"].endswith("User query: And again?")


@pytest.mark.asyncio
async def test_cancel_while_resolving_citations_keeps_answer(store, documents, meter, owner_id, prepared) -> None:
    record = meter.create_record(owner_id)
    service = ChatService(store, documents, _llm(), _search())
    turn = await service.begin_turn(owner_id, prepared.id, "What is ATP?")
    loop = asyncio.get_running_loop()
    resolving = asyncio.Event()
    lookup = ConversationStore.passages_by_reference

    def slow_lookup(self, session_id, numbers):
        loop.call_soon_threadsafe(resolving.set)
        time.sleep(0.3)
        return lookup(self, session_id, numbers)

    received: list[str] = []

    async def consume() -> None:
        async with aclosing(service.stream_turn(turn)) as fragments:
            async for fragment in fragments:
                received.append(fragment)

    with patch.object(ConversationStore, "passages_by_reference", slow_lookup):
        task = asyncio.create_task(consume())
        await resolving.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert received[1:] == ANSWER_CHUNKS
    messages = store.list_messages(prepared.id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[1].content == "".join(ANSWER_CHUNKS)
    assert [c.reference_id for c in messages[1].citations] == ["1"]
    assert meter.get_record(record.id).messages_used == 1
    assert service._inflight == set()


@pytest.mark.asyncio
async def test_disconnect_saves_partial_answer_off_the_event_loop(store, documents, owner_id, prepared) -> None:
    service = ChatService(store, documents, _llm(), _search())
    turn = await service.begin_turn(owner_id, prepared.id, "What is ATP?")
    save = ConversationStore.save_assistant_message
    threads = []

    def record_thread(self, *args, **kwargs):
        threads.append(threading.current_thread())
        return save(self, *args, **kwargs)

    stream = service.stream_turn(turn)
    await stream.__anext__()
    await stream.__anext__()
    with patch.object(ConversationStore, "save_assistant_message", record_thread):
        await stream.aclose()

    assert len(threads) == 1
    assert threads[0] is not threading.main_thread()
    assert store.list_messages(prepared.id)[-1].partial


@pytest.mark.asyncio
async def test_turn_is_in_flight_before_user_message_is_visible(store, documents, owner_id, prepared) -> None:
    service = ChatService(store, documents, _llm(), _search())
    add = ConversationStore.add_user_message
    seen = []

    def check_inflight(self, session_id, content, message_id=None):
        seen.append(message_id in service._inflight)
        return add(self, session_id, content, message_id)

    with patch.object(ConversationStore, "add_user_message", check_inflight):
        turn = await service.begin_turn(owner_id, prepared.id, "What is ATP?")

    assert seen == [True]
    report = await service.integrity.check_session(prepared.id)
    assert report.recovered == ()
    await _collect(service.stream_turn(turn))
    assert [m.role for m in store.list_messages(prepared.id)] == [MessageRole.USER, MessageRole.ASSISTANT]


@pytest.mark.asyncio
async def test_failed_user_message_save_releases_turn(store, documents, meter, owner_id, prepared) -> None:
    meter.create_record(owner_id, message_limit=1)
    service = ChatService(store, documents, _llm(), _search())
    with patch.object(ConversationStore, "add_user_message", side_effect=PersistenceFailure("disk full")):
        with pytest.raises(PersistenceFailure):
            await service.begin_turn(owner_id, prepared.id, "What is ATP?")
    assert service._inflight == set()
    assert service._reserved == {}


@pytest.mark.asyncio
async def test_concurrent_turns_cannot_overrun_quota(store, documents, meter, owner_id, prepared) -> None:
    record = meter.create_record(owner_id, message_limit=1)
    service = ChatService(store, documents, _llm(), _search())

    first = await service.begin_turn(owner_id, prepared.id, "What is ATP?")
    with pytest.raises(QuotaExceededError):
        await service.begin_turn(owner_id, prepared.id, "And ADP?")

    await _collect(service.stream_turn(first))
    assert meter.get_record(record.id).messages_used == 1
    assert service._reserved == {}


@pytest.mark.asyncio
async def test_quota_filled_elsewhere_is_reported_at_save(store, documents, meter, owner_id, prepared) -> None:
    record = meter.create_record(owner_id, message_limit=1)
    service = ChatService(store, documents, _llm(), _search())
    turn = await service.begin_turn(owner_id, prepared.id, "What is ATP?")
    # Another worker spends the last message of the window.
    other = store.create_session(owner_id)
    store.add_user_message(other.id, "elsewhere")
    store.save_assistant_message(other.id, "answer", usage_record_id=record.id)

    fragments = await _collect(service.stream_turn(turn))

    assert json.loads(ERROR_RE.match(fragments[-1]).group(1))["kind"] == "quota_exceeded"
    assert not any(ASSISTANT_ID_RE.match(f) for f in fragments)
    assert [m.role for m in store.list_messages(prepared.id)] == [MessageRole.USER]
    assert meter.get_record(record.id).messages_used == 1
