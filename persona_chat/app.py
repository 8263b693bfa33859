from __future__ import annotations

import argparse
import asyncio
import os
import shutil
from typing import Optional

from dotenv import load_dotenv

from .chat_orchestrator import ChatOrchestrator
from .chat_store import InMemoryChatStore
from .config_service import ConfigService
from .i18n import Translator
from .logger_factory import configure_logging, get_logger
from .materializer import ResponseMaterializer
from .models import Message, MessageType, Room, RoomType
from .participation_policy import GroupParticipationPolicy
from .provider_dispatcher import ProviderDispatcher
from .utils.cancellation import CancelToken


def build_orchestrator(
    config: ConfigService,
    store: InMemoryChatStore,
    *,
    active_room: Optional[str] = None,
) -> ChatOrchestrator:
    translator = Translator(config.language())
    materializer = ResponseMaterializer(
        store,
        translator,
        notify=lambda text: print(f"* {text}"),
        active_room=lambda: active_room,
    )
    dispatcher = ProviderDispatcher(store.characters, timeout=float(config.raw("http_timeout", 120.0)))
    return ChatOrchestrator(
        store,
        dispatcher,
        materializer,
        translator,
        config.chat_settings,
        policy=GroupParticipationPolicy(),
    )


def _render(store: InMemoryChatStore, message: Message) -> str:
    author = store.characters.get(message.author_id)
    name = author.name if author is not None else "you"
    if message.type == MessageType.STICKER and message.sticker is not None:
        return f"{name}: [sticker {message.sticker.name}]"
    if message.type == MessageType.IMAGE:
        return f"{name}: [image] {message.content or ''}".rstrip()
    return f"{name}: {message.content or ''}"


def _copy_if_missing(target: str, example: str) -> None:
    if not os.path.exists(target) and os.path.exists(example):
        shutil.copyfile(example, target)


async def run_console(config: ConfigService, room_id: Optional[str] = None) -> None:
    logger = get_logger("app")
    store = InMemoryChatStore(config.characters(), config.persona())
    rooms = config.rooms()
    for room in rooms:
        store.add_room(room)
    if not rooms:
        raise SystemExit("config.yaml defines no rooms")
    room: Room = next((r for r in rooms if r.id == room_id), rooms[0])
    orchestrator = build_orchestrator(config, store, active_room=room.id)
    logger.info(f"[console-start] room={room.id} type={room.type.value} members={room.member_ids}")

    seen: set[str] = set()

    def on_typing(char_id: Optional[int]) -> None:
        if char_id is not None:
            character = store.characters.get(char_id)
            print(f"... {character.name if character else char_id} is typing")

    def flush() -> None:
        for m in store.messages_for_room(room.id):
            if m.id not in seen:
                seen.add(m.id)
                if m.author_id != 0:
                    print(_render(store, m))

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            line = line.strip()
            if line in ("/quit", "/exit"):
                break
            cancel = CancelToken()
            if line:
                msg = Message.text(room.id, 0, line)
                store.upsert_message(msg)
                seen.add(msg.id)
            if room.type == RoomType.DIRECT:
                await orchestrator.send_message(room, on_typing, cancel, is_proactive=not line)
            else:
                await orchestrator.send_group_chat_message(room, on_typing, cancel)
            flush()
    finally:
        await orchestrator.materializer.drain()
        await orchestrator.dispatcher.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with configured characters from the terminal")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--room", default=None, help="room id from config.yaml (default: first room)")
    args = parser.parse_args()

    _copy_if_missing(".env", ".env.example")
    load_dotenv()
    if args.config == "config.yaml":
        _copy_if_missing("config.yaml", "config.example.yaml")

    config = ConfigService(args.config)
    log_cfg = config.logging()
    configure_logging(
        level=log_cfg["level"],
        tz=log_cfg["tz"],
        fmt="text",
        lib_log_level=log_cfg["lib_level"],
        console_to_file=log_cfg["console_to_file"],
        error_file=log_cfg["error_file"],
        force=True,
    )
    try:
        asyncio.run(run_console(config, args.room))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
