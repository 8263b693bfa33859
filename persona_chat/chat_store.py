from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from threading import RLock
from typing import Dict, List, Mapping, Optional

from .logger_factory import get_logger
from .models import Character, Message, Persona, Room
from .utils.logfmt import fmt


class ChatStore(ABC):
    """Mutation surface the orchestration core dispatches to.

    The core never reaches into storage internals: it reads a room's history once
    at call start and afterwards only issues these calls.
    """

    @abstractmethod
    def upsert_message(self, message: Message) -> None: ...

    @abstractmethod
    def increment_unread(self, message: Message, active_room_id: Optional[str]) -> None: ...

    @abstractmethod
    def add_room_memory(self, room_id: str, value: str) -> None: ...

    @abstractmethod
    def update_message(self, message_id: str, patch: dict) -> Optional[Message]: ...

    @abstractmethod
    def messages_for_room(self, room_id: str) -> List[Message]: ...

    @property
    @abstractmethod
    def characters(self) -> Mapping[int, Character]: ...

    @abstractmethod
    def active_persona(self) -> Optional[Persona]: ...


class InMemoryChatStore(ChatStore):
    """Process-local store; messages are kept ordered by ``created_at``."""

    def __init__(self, characters: Optional[List[Character]] = None, persona: Optional[Persona] = None):
        self.log = get_logger("ChatStore")
        self._lock = RLock()
        self._characters: Dict[int, Character] = {c.id: c for c in (characters or [])}
        self._rooms: Dict[str, Room] = {}
        self._messages: Dict[str, List[Message]] = defaultdict(list)
        self._by_id: Dict[str, Message] = {}
        self._unread: Dict[str, int] = defaultdict(int)
        self._persona = persona

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------
    def add_room(self, room: Room) -> None:
        with self._lock:
            self._rooms[room.id] = room

    # ------------------------------------------------------------------
    # ChatStore
    # ------------------------------------------------------------------
    @property
    def characters(self) -> Mapping[int, Character]:
        return self._characters

    def active_persona(self) -> Optional[Persona]:
        return self._persona

    def upsert_message(self, message: Message) -> None:
        with self._lock:
            bucket = self._messages[message.room_id]
            existing = self._by_id.get(message.id)
            if existing is not None and existing in bucket:
                bucket[bucket.index(existing)] = message
            else:
                bucket.append(message)
                bucket.sort(key=lambda m: m.created_at)
            self._by_id[message.id] = message
        self.log.debug(f"[store-upsert] {fmt('room', message.room_id)} {fmt('id', message.id)} {fmt('type', message.type)}")

    def increment_unread(self, message: Message, active_room_id: Optional[str]) -> None:
        if message.room_id == active_room_id:
            return
        with self._lock:
            self._unread[message.room_id] += 1

    def unread_count(self, room_id: str) -> int:
        with self._lock:
            return self._unread.get(room_id, 0)

    def add_room_memory(self, room_id: str, value: str) -> None:
        with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                self.log.warning(f"[store-memory-missing-room] {fmt('room', room_id)}")
                return
            room.memories.append(value)

    def update_message(self, message_id: str, patch: dict) -> Optional[Message]:
        with self._lock:
            current = self._by_id.get(message_id)
            if current is None:
                # room or message was removed meanwhile
                self.log.info(f"[store-update-missing] {fmt('id', message_id)}")
                return None
            updated = replace(current, **patch)
            bucket = self._messages[current.room_id]
            if current in bucket:
                bucket[bucket.index(current)] = updated
            self._by_id[message_id] = updated
            return updated

    def messages_for_room(self, room_id: str) -> List[Message]:
        with self._lock:
            return list(self._messages.get(room_id, []))
