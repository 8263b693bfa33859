from __future__ import annotations

import asyncio
from typing import Callable, Optional

from .chat_store import ChatStore
from .errors import ImageGenerationError
from .i18n import Translator
from .image_service import ImageGenerator, ImageTaskHandle
from .logger_factory import get_logger
from .models import (
    ChatResponse,
    Character,
    Message,
    MessagePart,
    MessageType,
    Room,
    new_message_id,
)
from .utils.cancellation import CancelToken, sleep_ms
from .utils.logfmt import fmt, preview

OnTyping = Callable[[Optional[int]], None]
Notify = Callable[[str], None]


class ResponseMaterializer:
    """Turns a ChatResponse into committed messages with human-like pacing."""

    def __init__(
        self,
        store: ChatStore,
        translator: Translator,
        *,
        image_generator: Optional[ImageGenerator] = None,
        notify: Optional[Notify] = None,
        active_room: Callable[[], Optional[str]] = lambda: None,
    ):
        self.log = get_logger("Materializer")
        self.store = store
        self.t = translator
        self.image_generator = image_generator
        self.notify = notify or (lambda _msg: None)
        self.active_room = active_room
        self._pending: set[asyncio.Task] = set()

    def commit(self, message: Message) -> None:
        self.store.upsert_message(message)
        self.store.increment_unread(message, self.active_room())

    def remember(self, room: Room, memory: Optional[str]) -> bool:
        if not isinstance(memory, str):
            return False
        trimmed = memory.strip()
        if not trimmed:
            return False
        lowered = trimmed.lower()
        if any(m.strip().lower() == lowered for m in room.memories):
            return False
        self.store.add_room_memory(room.id, trimmed)
        self.notify(self.t("main.newMemory", memory=trimmed))
        self.log.info(f"[memory-added] {fmt('room', room.id)} {fmt('memory', preview(trimmed))}")
        return True

    async def handle_api_response(
        self,
        res: ChatResponse,
        room: Room,
        character: Character,
        on_typing: OnTyping,
        *,
        cancel: Optional[CancelToken] = None,
        correlation: Optional[str] = None,
    ) -> list[Message]:
        self.remember(room, res.new_memory)
        committed: list[Message] = []
        if not res.messages:
            return committed

        await sleep_ms(res.reaction_delay, cancel)
        on_typing(character.id)

        for i, part in enumerate(res.messages):
            if i > 0:
                await sleep_ms(part.delay, cancel)
            # text and sticker land before image generation starts
            for message in self.realize_part(part, room, character, correlation=correlation):
                self.commit(message)
                committed.append(message)
            if part.image_generation_setting is not None:
                image = await self.realize_image(part, room, character, cancel=cancel, correlation=correlation)
                self.commit(image)
                committed.append(image)

        self.log.info(
            f"[materialized] {fmt('room', room.id)} {fmt('char', character.name)} "
            f"{fmt('parts', len(res.messages))} {fmt('messages', len(committed))} {fmt('correlation', correlation)}"
        )
        return committed

    def realize_part(
        self,
        part: MessagePart,
        room: Room,
        character: Character,
        *,
        correlation: Optional[str] = None,
    ) -> list[Message]:
        out: list[Message] = []
        if part.content:
            out.append(Message.text(room.id, character.id, part.content))

        if part.sticker:
            sticker = character.find_sticker(part.sticker)
            if sticker is not None:
                out.append(Message(
                    id=new_message_id(),
                    room_id=room.id,
                    author_id=character.id,
                    type=MessageType.STICKER,
                    sticker=sticker,
                ))
            else:
                self.log.debug(f"[sticker-unknown] {fmt('char', character.name)} {fmt('sticker', part.sticker)} {fmt('correlation', correlation)}")
        return out

    async def realize_image(
        self,
        part: MessagePart,
        room: Room,
        character: Character,
        *,
        cancel: Optional[CancelToken] = None,
        correlation: Optional[str] = None,
    ) -> Message:
        setting = part.image_generation_setting
        assert setting is not None
        if self.image_generator is None:
            raise ImageGenerationError("Image generation requested but no image generator is configured")
        self.log.info(
            f"[image-request] {fmt('char', character.name)} {fmt('selfie', setting.is_selfie)} "
            f"{fmt('prompt', preview(setting.prompt))} {fmt('correlation', correlation)}"
        )
        result = await self.image_generator.generate(setting, character)
        if result.inline_image is not None:
            return Message(
                id=new_message_id(),
                room_id=room.id,
                author_id=character.id,
                type=MessageType.IMAGE,
                file=result.inline_image.to_file(),
                image_generation_setting=setting,
            )
        if result.task is not None:
            interim = Message(
                id=new_message_id(),
                room_id=room.id,
                author_id=character.id,
                type=MessageType.IMAGE,
                content=self.t("llm.imagePending"),
                image_generation_setting=setting,
            )
            self._track(self._complete_image(interim.id, result.task, cancel, correlation))
            return interim
        raise ImageGenerationError(f"Failed to generate image: {result.reason or 'no image data returned'}")

    def _track(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _complete_image(self, message_id: str, handle: ImageTaskHandle, cancel: Optional[CancelToken], correlation: Optional[str]) -> None:
        try:
            image = await handle.wait(cancel)
        except Exception as e:
            self.log.error(f"[image-task-failed] {fmt('task', handle.task_id)} {fmt('message', message_id)} {fmt('err', e)} {fmt('correlation', correlation)}")
            self.store.update_message(message_id, {"content": self.t("llm.imageFailed", reason=str(e))})
            return
        self.store.update_message(message_id, {"content": None, "file": image.to_file()})
        self.log.info(f"[image-task-done] {fmt('task', handle.task_id)} {fmt('message', message_id)} {fmt('correlation', correlation)}")

    async def drain(self) -> None:
        """Wait for outstanding async image patches (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
