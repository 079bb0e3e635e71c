import asyncio
import tempfile
import time
from datetime import timedelta

import pytest

from chat_core.api.service import chat_once, create_coordinator, session_summaries
from chat_core.config.settings import ChatCoreSettings
from chat_core.domain.conversation import ChatSettings, ConversationSession, Message, utcnow
from chat_core.domain.exceptions import ChatError
from chat_core.domain.models import SESSION_TITLE_SCHEMA, StreamUpdate
from chat_core.domain.personas import Persona
from chat_core.domain.state import ChatStatus
from chat_core.domain.taxonomy import ErrorKind, suggestion_for
from chat_core.engine.coordinator import ConversationCoordinator
from chat_core.engine.recovery import RecoveryManager
from chat_core.infrastructure.storage.json_store import JsonPersistenceGateway


REPLY = {"content": "Hi there, nice to meet you.", "tone": "friendly", "confidence": 0.8}


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeModel:
    name = "fake"

    def __init__(self, factory, instructions):
        self.factory = factory
        self.instructions = instructions

    async def respond(self, request):
        if request.schema is SESSION_TITLE_SCHEMA:
            return {"title": self.factory.title, "confidence": 0.9}
        self.factory.calls.append("respond")
        return await self.factory.next_reply()

    async def stream_response(self, request):
        self.factory.calls.append("stream")
        reply = await self.factory.next_reply()
        content = reply["content"]
        yield StreamUpdate(fields={"content": content[: len(content) // 2]})
        yield StreamUpdate(fields=reply, complete=True)


class FakeFactory:
    """模型会话工厂：记录创建时的 instructions，按脚本依次返回回复或抛错。"""

    def __init__(self, script=None, title="Japan Trip"):
        self.script = list(script or [])
        self.instructions = []
        self.calls = []
        self.gate = None
        self.title = title

    def __call__(self, instructions):
        self.instructions.append(instructions)
        return FakeModel(self, instructions)

    async def next_reply(self):
        if self.gate is not None:
            await self.gate.wait()
        item = self.script.pop(0) if self.script else REPLY
        if isinstance(item, Exception):
            raise item
        return dict(item)


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmp:
        yield JsonPersistenceGateway(root=tmp)


def _config(**overrides):
    values = {"model_api_key": None, "generation_timeout": 5.0, "retry_base_delay": 0.0}
    values.update(overrides)
    return ChatCoreSettings(**values)


async def _coordinator(store, factory):
    coordinator = ConversationCoordinator(
        store=store,
        model_session_factory=factory,
        recovery=RecoveryManager(sleep=SleepRecorder()),
        config=_config(),
    )
    await coordinator.start()
    return coordinator


def _states(events):
    return [e.state.status for e in events if e.kind == "state"]


def _assistant_messages(session):
    return [m for m in session.messages if not m.is_user]


@pytest.mark.asyncio
async def test_streaming_turn_moves_through_states_and_persists(store):
    coordinator = await _coordinator(store, FakeFactory())
    sub = coordinator.subscribe()

    assert await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()

    events = sub.drain()
    assert _states(events) == [ChatStatus.THINKING, ChatStatus.STREAMING, ChatStatus.ACTIVE]
    half = REPLY["content"][: len(REPLY["content"]) // 2]
    assert [e.text for e in events if e.kind == "partial"] == [half, REPLY["content"]]
    stored = store.load_session(coordinator.current_session.id)
    assert [m.content for m in stored.messages] == ["Hello", REPLY["content"]]
    assert stored.messages[1].metadata.tone == "friendly"


@pytest.mark.asyncio
async def test_network_error_is_retried_then_succeeds(store):
    factory = FakeFactory(script=[ChatError(ErrorKind.NETWORK_UNAVAILABLE), REPLY])
    coordinator = await _coordinator(store, factory)
    sub = coordinator.subscribe()

    await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()

    events = sub.drain()
    assert coordinator.state.status is ChatStatus.ACTIVE
    assert coordinator.recovery.retry_count == 0
    assert len(_assistant_messages(coordinator.current_session)) == 1
    recovery = [e for e in events if e.kind == "recovery"]
    assert recovery[0].text == "Recovering... (attempt 1/3)"
    assert recovery[0].data["kind"] == "network_unavailable"
    assert factory.calls == ["stream", "stream"]


@pytest.mark.asyncio
async def test_guardrail_violation_needs_user_and_is_not_retried(store):
    factory = FakeFactory(script=[ChatError(ErrorKind.GUARDRAIL_VIOLATION)])
    coordinator = await _coordinator(store, factory)
    sub = coordinator.subscribe()

    await coordinator.send_message("something unsafe")
    await coordinator.wait_for_generation()

    assert factory.calls == ["stream"]
    assert coordinator.state.status is ChatStatus.ERROR
    assert coordinator.state.detail == suggestion_for(ErrorKind.GUARDRAIL_VIOLATION)
    assert _states(sub.drain()) == [ChatStatus.THINKING, ChatStatus.ERROR]
    assert not await coordinator.send_message("retry")
    assert coordinator.dismiss_error()
    assert coordinator.state.status is ChatStatus.ACTIVE


@pytest.mark.asyncio
async def test_second_send_while_thinking_is_rejected(store):
    factory = FakeFactory()
    factory.gate = asyncio.Event()
    coordinator = await _coordinator(store, factory)
    sub = coordinator.subscribe()

    assert await coordinator.send_message("first")
    assert coordinator.state.status is ChatStatus.THINKING
    assert not await coordinator.send_message("second")

    factory.gate.set()
    await coordinator.wait_for_generation()

    events = sub.drain()
    assert _states(events).count(ChatStatus.THINKING) == 1
    assert [e.text for e in events if e.kind == "rejected"] == ["busy"]
    assert [m.content for m in coordinator.current_session.messages] == ["first", REPLY["content"]]


@pytest.mark.asyncio
async def test_deleting_current_session_cancels_generation(store):
    factory = FakeFactory()
    factory.gate = asyncio.Event()
    coordinator = await _coordinator(store, factory)
    sub = coordinator.subscribe()

    await coordinator.send_message("Tell me a long story")
    await asyncio.sleep(0.01)
    session_id = coordinator.current_session.id
    assert [s.id for s in await coordinator.list_sessions()] == [session_id]

    assert await coordinator.delete_session(session_id)

    assert coordinator.state.status is ChatStatus.ACTIVE
    assert coordinator.current_session.id != session_id
    assert coordinator.current_session.messages == []
    assert await coordinator.list_sessions() == []
    replies = [e for e in sub.drain() if e.kind == "message" and not e.message.is_user]
    assert replies == []


@pytest.mark.asyncio
async def test_blank_input_is_rejected(store):
    coordinator = await _coordinator(store, FakeFactory())
    sub = coordinator.subscribe()
    assert not await coordinator.send_message("   ")
    assert [e.text for e in sub.drain()] == ["empty"]
    assert coordinator.current_session.messages == []


@pytest.mark.asyncio
async def test_decoding_failure_falls_back_to_atomic_strategy(store):
    factory = FakeFactory(script=[ChatError(ErrorKind.DECODING_FAILURE), REPLY])
    coordinator = await _coordinator(store, factory)
    await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()
    assert factory.calls == ["stream", "respond"]
    assert coordinator.state.status is ChatStatus.ACTIVE


@pytest.mark.asyncio
async def test_context_window_exceeded_uses_degraded_reply(store):
    factory = FakeFactory(script=[ChatError(ErrorKind.CONTEXT_WINDOW_EXCEEDED)])
    coordinator = await _coordinator(store, factory)
    await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()

    reply = _assistant_messages(coordinator.current_session)[0]
    assert reply.metadata.category == "degraded"
    assert coordinator.state.status is ChatStatus.ACTIVE


@pytest.mark.asyncio
async def test_repeated_session_failure_is_fatal_until_new_session(store):
    factory = FakeFactory(script=[ChatError(ErrorKind.SESSION_INIT_FAILED), ChatError(ErrorKind.SESSION_INIT_FAILED)])
    coordinator = await _coordinator(store, factory)
    await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()

    assert coordinator.state.status is ChatStatus.ERROR
    assert coordinator.state.fatal
    assert not coordinator.dismiss_error()
    assert not await coordinator.send_message("again")

    await coordinator.start_new_session()
    assert coordinator.state.status is ChatStatus.ACTIVE
    assert await coordinator.send_message("fresh start")
    await coordinator.wait_for_generation()
    assert coordinator.state.status is ChatStatus.ACTIVE


@pytest.mark.asyncio
async def test_persona_change_recreates_model_session(store):
    factory = FakeFactory()
    coordinator = await _coordinator(store, factory)

    assert await coordinator.change_persona(Persona.PROFESSOR)
    assert factory.instructions == [Persona.PROFESSOR.system_prompt]
    assert factory.instructions[0]
    assert store.load_settings().persona is Persona.PROFESSOR

    await coordinator.send_message("Explain entropy")
    await coordinator.wait_for_generation()
    assert factory.instructions == [Persona.PROFESSOR.system_prompt]
    assert store.load_session(coordinator.current_session.id).persona is Persona.PROFESSOR


@pytest.mark.asyncio
async def test_persona_change_rejected_while_generating(store):
    factory = FakeFactory()
    factory.gate = asyncio.Event()
    coordinator = await _coordinator(store, factory)
    await coordinator.send_message("Hello")
    assert not await coordinator.change_persona(Persona.COMEDIAN)
    factory.gate.set()
    await coordinator.wait_for_generation()
    assert coordinator.settings.persona is Persona.NONE


@pytest.mark.asyncio
async def test_reactions_are_deduplicated_and_persisted(store):
    coordinator = await _coordinator(store, FakeFactory())
    await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()
    reply = _assistant_messages(coordinator.current_session)[0]

    assert await coordinator.add_reaction(reply.id, "❤️")
    assert await coordinator.add_reaction(reply.id, "❤️")
    assert not await coordinator.add_reaction("missing", "❤️")
    stored = store.load_session(coordinator.current_session.id)
    assert stored.find(reply.id).reactions == ["❤️"]


@pytest.mark.asyncio
async def test_new_session_titles_and_saves_previous(store):
    coordinator = await _coordinator(store, FakeFactory(title="Japan Trip"))
    sub = coordinator.subscribe()
    await coordinator.send_message("I am planning a trip to Japan")
    await coordinator.wait_for_generation()
    old_id = coordinator.current_session.id

    new_session = await coordinator.start_new_session()

    assert new_session.id != old_id
    assert [e.text for e in sub.drain() if e.kind == "title"] == ["Japan Trip"]
    assert store.load_session(old_id).title == "Japan Trip"

    assert await coordinator.load_session(old_id)
    assert coordinator.current_session.title == "Japan Trip"
    assert coordinator.current_session.message_count == 2


@pytest.mark.asyncio
async def test_loading_missing_session_reports_error(store):
    coordinator = await _coordinator(store, FakeFactory())
    assert not await coordinator.load_session("s-missing")
    assert coordinator.state.status is ChatStatus.ERROR
    assert coordinator.state.detail == "The conversation could not be found."


@pytest.mark.asyncio
async def test_voice_turn(store):
    coordinator = await _coordinator(store, FakeFactory())

    assert await coordinator.start_voice_turn()
    assert coordinator.state.status is ChatStatus.VOICE_LISTENING
    assert await coordinator.stop_voice_turn("")
    assert coordinator.state.status is ChatStatus.ACTIVE

    assert await coordinator.start_voice_turn()
    assert await coordinator.stop_voice_turn("what's the weather")
    await coordinator.wait_for_generation()
    assert coordinator.current_session.messages[0].content == "what's the weather"

    await coordinator.update_settings(ChatSettings(voice_enabled=False))
    assert not await coordinator.start_voice_turn()


@pytest.mark.asyncio
async def test_auto_save_disabled_keeps_session_in_memory(store):
    coordinator = await _coordinator(store, FakeFactory())
    await coordinator.update_settings(ChatSettings(auto_save_conversations=False))
    await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()
    assert coordinator.current_session.message_count == 2
    assert store.load_sessions() == []
    assert await coordinator.save_current_session()
    assert len(store.load_sessions()) == 1


@pytest.mark.asyncio
async def test_clear_export_and_import(store):
    coordinator = await _coordinator(store, FakeFactory())
    await coordinator.change_persona(Persona.MUSICIAN)
    await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()

    exported = await coordinator.export_data()
    await coordinator.clear_all_data()
    assert await coordinator.list_sessions() == []
    assert coordinator.settings.persona is Persona.NONE

    assert await coordinator.import_data(exported) == 1
    assert coordinator.settings.persona is Persona.MUSICIAN
    assert len(await coordinator.list_sessions()) == 1


@pytest.mark.asyncio
async def test_chat_once_service(store):
    coordinator = create_coordinator(store=store, model_session_factory=FakeFactory(), config=_config())
    await coordinator.start()
    result = await chat_once(coordinator, "Hello")
    assert result["accepted"]
    assert result["reply"] == REPLY["content"]
    assert result["state"] == "active"

    summaries = session_summaries(await coordinator.list_sessions())
    assert summaries[0]["message_count"] == 2
    assert summaries[0]["preview"] == REPLY["content"]
    await coordinator.shutdown()


class SlowStore(JsonPersistenceGateway):
    """save_session 在线程里停留一会儿，让用户消息的提交窗口可以被命中。"""

    def save_session(self, session):
        time.sleep(0.05)
        super().save_session(session)


class GatedSleep:
    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, delay):
        self.entered.set()
        await self.release.wait()


@pytest.fixture
def slow_store():
    with tempfile.TemporaryDirectory() as tmp:
        yield SlowStore(root=tmp)


@pytest.mark.asyncio
async def test_loading_another_session_while_user_message_is_committing(slow_store):
    coordinator = await _coordinator(slow_store, FakeFactory())
    await coordinator.send_message("first")
    await coordinator.wait_for_generation()
    old_id = coordinator.current_session.id
    new_id = (await coordinator.start_new_session()).id

    assert await coordinator.send_message("second")
    await asyncio.sleep(0.01)
    assert await coordinator.load_session(old_id)
    await coordinator.wait_for_generation()

    assert coordinator.state.status is ChatStatus.ACTIVE
    assert coordinator.current_session.id == old_id
    assert [m.content for m in coordinator.current_session.messages] == ["first", REPLY["content"]]
    assert [m.content for m in slow_store.load_session(old_id).messages] == ["first", REPLY["content"]]
    assert [m.content for m in slow_store.load_session(new_id).messages] == ["second"]


@pytest.mark.asyncio
async def test_deleting_session_while_its_first_save_is_running(slow_store):
    coordinator = await _coordinator(slow_store, FakeFactory())
    assert await coordinator.send_message("hello")
    await asyncio.sleep(0.01)
    session_id = coordinator.current_session.id

    assert await coordinator.delete_session(session_id)
    await coordinator.wait_for_generation()

    assert coordinator.state.status is ChatStatus.ACTIVE
    assert coordinator.current_session.id != session_id
    assert await coordinator.list_sessions() == []


@pytest.mark.asyncio
async def test_new_session_while_user_message_is_committing(slow_store):
    coordinator = await _coordinator(slow_store, FakeFactory())
    sub = coordinator.subscribe()
    assert await coordinator.send_message("hello")
    await asyncio.sleep(0.01)
    old_id = coordinator.current_session.id

    fresh = await coordinator.start_new_session()
    await coordinator.wait_for_generation()

    assert fresh.id != old_id
    assert coordinator.state.status is ChatStatus.ACTIVE
    assert [m.content for m in slow_store.load_session(old_id).messages] == ["hello"]
    replies = [e for e in sub.drain() if e.kind == "message" and not e.message.is_user]
    assert replies == []


@pytest.mark.asyncio
async def test_clear_all_while_user_message_is_committing(slow_store):
    coordinator = await _coordinator(slow_store, FakeFactory())
    assert await coordinator.send_message("hello")
    await asyncio.sleep(0.01)

    await coordinator.clear_all_data()
    await coordinator.wait_for_generation()

    assert coordinator.state.status is ChatStatus.ACTIVE
    assert coordinator.current_session.messages == []
    assert await coordinator.list_sessions() == []


@pytest.mark.asyncio
async def test_store_calls_do_not_reset_generation_retry_count(store):
    factory = FakeFactory()
    sleeper = GatedSleep()
    coordinator = ConversationCoordinator(
        store=store,
        model_session_factory=factory,
        recovery=RecoveryManager(sleep=sleeper),
        config=_config(),
    )
    await coordinator.start()
    await coordinator.send_message("Hello")
    await coordinator.wait_for_generation()
    reply = _assistant_messages(coordinator.current_session)[0]

    factory.script = [ChatError(ErrorKind.NETWORK_UNAVAILABLE), REPLY]
    await coordinator.send_message("again")
    await asyncio.wait_for(sleeper.entered.wait(), timeout=1.0)
    assert coordinator.recovery.retry_count == 1

    assert await coordinator.add_reaction(reply.id, "👍")
    assert coordinator.recovery.retry_count == 1

    sleeper.release.set()
    await coordinator.wait_for_generation()
    assert len(_assistant_messages(coordinator.current_session)) == 2
    assert store.load_session(coordinator.current_session.id).find(reply.id).reactions == ["👍"]


@pytest.mark.asyncio
async def test_cleanup_with_zero_days_removes_everything_older_than_now(store):
    coordinator = await _coordinator(store, FakeFactory())
    stale = ConversationSession(title="Old")
    stale.append(Message(content="hi", is_user=True))
    stale.created_at = stale.last_modified = utcnow() - timedelta(days=1)
    store.save_session(stale)

    assert await coordinator.cleanup_old_sessions(0) == 1
    assert await coordinator.list_sessions() == []
