import asyncio

import pytest

from persona_chat.chat_store import InMemoryChatStore
from persona_chat.errors import GenerationCancelled, ImageGenerationError
from persona_chat.i18n import Translator
from persona_chat.image_service import ImageGenerator, ImageResult, ImageTaskHandle, InlineImage, PollingImageTask
from persona_chat.materializer import ResponseMaterializer
from persona_chat.models import (
    Character,
    ChatResponse,
    ImageGenerationSetting,
    MessagePart,
    MessageType,
    Room,
    Sticker,
)
from persona_chat.utils.cancellation import CancelToken

MIRA = Character(id=1, name="Mira", stickers=[Sticker(id="s1", name="wave")])


def _setup(**kw):
    store = InMemoryChatStore([MIRA])
    room = Room(id="d", name="D", member_ids=[1])
    store.add_room(room)
    notes = []
    mat = ResponseMaterializer(store, Translator("en"), notify=notes.append, **kw)
    return store, room, mat, notes


class TypingRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, char_id):
        self.events.append(char_id)


class InlineGenerator(ImageGenerator):
    async def generate(self, setting, character):
        return ImageResult(inline_image=InlineImage("image/png", "QUJD"))


class ReadyTask(ImageTaskHandle):
    task_id = "t1"

    def __init__(self, fail=False):
        self.fail = fail

    async def wait(self, cancel=None):
        await asyncio.sleep(0)
        if self.fail:
            raise ImageGenerationError("queue crashed")
        return InlineImage("image/webp", "V0VC")


class TaskGenerator(ImageGenerator):
    def __init__(self, fail=False):
        self.fail = fail

    async def generate(self, setting, character):
        return ImageResult(task=ReadyTask(self.fail))


class RefusingGenerator(ImageGenerator):
    async def generate(self, setting, character):
        return ImageResult(reason="IMAGE_SAFETY")


def _image_part():
    return MessagePart(delay=0, image_generation_setting=ImageGenerationSetting(prompt="Create a picture of a cafe", is_selfie=False))


def test_parts_become_messages_in_order():
    store, room, mat, _ = _setup(active_room=lambda: "d")
    typing = TypingRecorder()
    res = ChatResponse(reaction_delay=0, messages=[MessagePart(delay=0, content="hi"), MessagePart(delay=1, content="you there?")])
    committed = asyncio.run(mat.handle_api_response(res, room, MIRA, typing))
    assert [m.content for m in committed] == ["hi", "you there?"]
    assert [m.content for m in store.messages_for_room("d")] == ["hi", "you there?"]
    assert typing.events == [1]
    # the room is open, nothing becomes unread
    assert store.unread_count("d") == 0


def test_unread_counted_for_background_room():
    store, room, mat, _ = _setup(active_room=lambda: "elsewhere")
    asyncio.run(mat.handle_api_response(ChatResponse(messages=[MessagePart(content="ping")]), room, MIRA, TypingRecorder()))
    assert store.unread_count("d") == 1


def test_known_sticker_is_sent_and_unknown_dropped():
    store, room, mat, _ = _setup()
    res = ChatResponse(messages=[
        MessagePart(delay=0, sticker="s1"),
        MessagePart(delay=0, content="lol", sticker="nonexistent"),
    ])
    committed = asyncio.run(mat.handle_api_response(res, room, MIRA, TypingRecorder()))
    assert [m.type for m in committed] == [MessageType.STICKER, MessageType.TEXT]
    assert committed[0].sticker.name == "wave"


def test_new_memory_is_deduplicated():
    store, room, mat, notes = _setup()
    res = ChatResponse(messages=[], new_memory="  Alex likes tea ")
    asyncio.run(mat.handle_api_response(res, room, MIRA, TypingRecorder()))
    asyncio.run(mat.handle_api_response(ChatResponse(new_memory="alex LIKES tea"), room, MIRA, TypingRecorder()))
    assert room.memories == ["Alex likes tea"]
    assert notes == ['New memory added:\n"Alex likes tea"']


def test_empty_response_skips_typing():
    _, room, mat, _ = _setup()
    typing = TypingRecorder()
    assert asyncio.run(mat.handle_api_response(ChatResponse(), room, MIRA, typing)) == []
    assert typing.events == []


def test_inline_image():
    store, room, mat, _ = _setup(image_generator=InlineGenerator())
    committed = asyncio.run(mat.handle_api_response(ChatResponse(messages=[_image_part()]), room, MIRA, TypingRecorder()))
    assert committed[0].type == MessageType.IMAGE
    assert committed[0].file.data_url == "data:image/png;base64,QUJD"


def test_async_image_patches_interim_message():
    store, room, mat, _ = _setup(image_generator=TaskGenerator())

    async def _run():
        committed = await mat.handle_api_response(ChatResponse(messages=[_image_part()]), room, MIRA, TypingRecorder())
        assert committed[0].content == "(Generating image...)"
        await mat.drain()
        return committed[0].id

    mid = asyncio.run(_run())
    (msg,) = store.messages_for_room("d")
    assert msg.id == mid
    assert msg.content is None
    assert msg.file.mime_type == "image/webp"


def test_async_image_failure_is_reported_on_message():
    store, room, mat, _ = _setup(image_generator=TaskGenerator(fail=True))

    async def _run():
        await mat.handle_api_response(ChatResponse(messages=[_image_part()]), room, MIRA, TypingRecorder())
        await mat.drain()

    asyncio.run(_run())
    (msg,) = store.messages_for_room("d")
    assert msg.content == "(Image generation failed: queue crashed)"


def test_image_without_data_raises():
    _, room, mat, _ = _setup(image_generator=RefusingGenerator())
    with pytest.raises(ImageGenerationError, match="IMAGE_SAFETY"):
        asyncio.run(mat.handle_api_response(ChatResponse(messages=[_image_part()]), room, MIRA, TypingRecorder()))


def test_cancel_during_reaction_delay():
    store, room, mat, _ = _setup()

    async def _run():
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "closed")
        await mat.handle_api_response(ChatResponse(reaction_delay=5000, messages=[MessagePart(content="late")]), room, MIRA, TypingRecorder(), cancel=token)

    with pytest.raises(GenerationCancelled):
        asyncio.run(_run())
    assert store.messages_for_room("d") == []


def test_polling_task_times_out():
    async def never():
        return None

    task = PollingImageTask("t", never, interval=0.01, timeout=0.03)
    with pytest.raises(ImageGenerationError, match="timed out"):
        asyncio.run(task.wait())


def test_failed_image_keeps_text_already_sent():
    store, room, mat, _ = _setup(image_generator=RefusingGenerator())
    part = MessagePart(delay=0, content="look!", image_generation_setting=ImageGenerationSetting(prompt="Create a picture"))
    with pytest.raises(ImageGenerationError):
        asyncio.run(mat.handle_api_response(ChatResponse(messages=[part]), room, MIRA, TypingRecorder()))
    assert [m.content for m in store.messages_for_room("d")] == ["look!"]
