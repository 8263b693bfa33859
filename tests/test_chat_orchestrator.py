import asyncio

from persona_chat.chat_orchestrator import ChatOrchestrator
from persona_chat.chat_store import InMemoryChatStore
from persona_chat.errors import ProviderHttpError
from persona_chat.i18n import Translator
from persona_chat.materializer import ResponseMaterializer
from persona_chat.models import (
    ChatResponse,
    ChatSettings,
    Character,
    GroupSettings,
    Message,
    MessagePart,
    Persona,
    Room,
    RoomType,
)
from persona_chat.participation_policy import GroupParticipationPolicy

MIRA = Character(id=1, name="Mira")
JUNO = Character(id=2, name="Juno")


class DummyDispatcher:
    def __init__(self, reply="hello", error=None, pause=0.0):
        self.calls = []
        self.reply = reply
        self.error = error
        self.pause = pause

    async def call_api(self, api_config, settings, room, persona, character, messages, is_proactive=False,
                       extra_system_instruction=None, *, cancel=None, correlation=None):
        self.calls.append((character.id, is_proactive, extra_system_instruction))
        if self.pause:
            await asyncio.sleep(self.pause)
        if self.error is not None:
            raise self.error
        return ChatResponse(reaction_delay=0, messages=[MessagePart(delay=0, content=f"{character.name}: {self.reply}")])


class FixedPolicy(GroupParticipationPolicy):
    def __init__(self, responders):
        super().__init__()
        self.responders = responders

    def select_responders(self, room):
        return list(self.responders)

    def gap_ms(self, room):
        return 0


def _orchestrator(dispatcher, persona=Persona(id="p", name="Alex"), policy=None):
    store = InMemoryChatStore([MIRA, JUNO], persona)
    translator = Translator("en")
    materializer = ResponseMaterializer(store, translator)
    orch = ChatOrchestrator(store, dispatcher, materializer, translator, ChatSettings, policy=policy)
    return orch, store


def _typing():
    events = []
    return events, events.append


def test_direct_send_commits_reply_and_clears_typing():
    dispatcher = DummyDispatcher()
    orch, store = _orchestrator(dispatcher)
    room = Room(id="d", name="D", member_ids=[1])
    store.add_room(room)
    store.upsert_message(Message.text("d", 0, "hi"))
    events, on_typing = _typing()
    asyncio.run(orch.send_message(room, on_typing))
    assert dispatcher.calls == [(1, False, None)]
    assert [m.content for m in store.messages_for_room("d")] == ["hi", "Mira: hello"]
    assert events == [1, None]


def test_missing_persona_makes_no_call():
    dispatcher = DummyDispatcher()
    orch, store = _orchestrator(dispatcher, persona=None)
    room = Room(id="d", name="D", member_ids=[1])
    store.add_room(room)
    events, on_typing = _typing()
    asyncio.run(orch.send_message(room, on_typing))
    assert dispatcher.calls == []
    assert store.messages_for_room("d") == []
    assert events == [None]


def test_failure_becomes_chat_message():
    dispatcher = DummyDispatcher(error=ProviderHttpError(429, "Resource exhausted", provider="gemini"))
    orch, store = _orchestrator(dispatcher)
    room = Room(id="d", name="D", member_ids=[1])
    store.add_room(room)
    events, on_typing = _typing()
    asyncio.run(orch.send_message(room, on_typing))
    (msg,) = store.messages_for_room("d")
    assert msg.author_id == 1
    assert msg.content == "Failed to generate response. (Reason: Resource exhausted)"
    assert events == [None]


def test_group_zero_frequency_makes_no_calls():
    dispatcher = DummyDispatcher()
    orch, store = _orchestrator(dispatcher)
    room = Room(id="g", name="G", member_ids=[1, 2], type=RoomType.GROUP, group_settings=GroupSettings(response_frequency=0))
    store.add_room(room)
    events, on_typing = _typing()
    asyncio.run(orch.send_group_chat_message(room, on_typing))
    assert dispatcher.calls == []
    assert events == []


def test_group_responders_reply_in_order():
    dispatcher = DummyDispatcher(reply="new thought")
    orch, store = _orchestrator(dispatcher, policy=FixedPolicy([2, 1]))
    room = Room(id="g", name="G", member_ids=[1, 2], type=RoomType.GROUP, group_settings=GroupSettings())
    store.add_room(room)
    events, on_typing = _typing()
    asyncio.run(orch.send_group_chat_message(room, on_typing))
    assert [c[0] for c in dispatcher.calls] == [2, 1]
    assert [m.content for m in store.messages_for_room("g")] == ["Juno: new thought", "Mira: new thought"]
    assert events == [2, None, 1, None]


def test_overlapping_send_for_same_room_is_skipped():
    dispatcher = DummyDispatcher(pause=0.05)
    orch, store = _orchestrator(dispatcher)
    room = Room(id="d", name="D", member_ids=[1])
    store.add_room(room)

    async def _run():
        _, on_typing = _typing()
        first = asyncio.create_task(orch.send_message(room, on_typing))
        await asyncio.sleep(0)
        assert orch.is_busy("d")
        await orch.send_message(room, on_typing)
        await first

    asyncio.run(_run())
    assert len(dispatcher.calls) == 1
    assert not orch.is_busy("d")


def test_proactive_flag_is_forwarded():
    dispatcher = DummyDispatcher()
    orch, store = _orchestrator(dispatcher)
    room = Room(id="d", name="D", member_ids=[1])
    store.add_room(room)
    _, on_typing = _typing()
    asyncio.run(orch.send_message(room, on_typing, is_proactive=True))
    assert dispatcher.calls == [(1, True, None)]
