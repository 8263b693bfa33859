from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .anti_echo import AntiEchoController
from .chat_store import ChatStore
from .errors import ConfigurationError, GenerationCancelled
from .i18n import Translator
from .logger_factory import get_logger
from .materializer import OnTyping, ResponseMaterializer
from .models import ChatResponse, ChatSettings, Character, Message, Persona, Room
from .participation_policy import GroupParticipationPolicy
from .provider_dispatcher import ProviderDispatcher
from .utils.cancellation import CancelToken, check, sleep_ms
from .utils.correlation import make_correlation_id
from .utils.logfmt import fmt


class ChatOrchestrator:
    """Entry points for generating character replies in a room.

    At most one orchestration runs per room; overlapping sends for the same room
    are skipped so two replies never interleave on the same history snapshot.
    """

    def __init__(
        self,
        store: ChatStore,
        dispatcher: ProviderDispatcher,
        materializer: ResponseMaterializer,
        translator: Translator,
        settings: Callable[[], ChatSettings],
        *,
        policy: Optional[GroupParticipationPolicy] = None,
    ):
        self.log = get_logger("ChatOrchestrator")
        self.store = store
        self.dispatcher = dispatcher
        self.materializer = materializer
        self.t = translator
        self.settings = settings
        self.policy = policy or GroupParticipationPolicy()
        self._in_flight: set[str] = set()

    @contextmanager
    def _room_guard(self, room_id: str) -> Iterator[bool]:
        if room_id in self._in_flight:
            self.log.info(f"[send-skipped-in-flight] {fmt('room', room_id)}")
            yield False
            return
        self._in_flight.add(room_id)
        try:
            yield True
        finally:
            self._in_flight.discard(room_id)

    def is_busy(self, room_id: str) -> bool:
        return room_id in self._in_flight

    async def send_message(
        self,
        room: Room,
        on_typing: OnTyping,
        cancel: Optional[CancelToken] = None,
        *,
        is_proactive: bool = False,
    ) -> None:
        """Let every member character of ``room`` reply in order."""
        with self._room_guard(room.id) as acquired:
            if not acquired:
                return
            persona = self.store.active_persona()
            for cid in room.member_ids:
                character = self.store.characters.get(cid)
                if character is None:
                    self.log.warning(f"[send-missing-character] {fmt('room', room.id)} {fmt('char_id', cid)}")
                    continue
                await self.llm_send(room, persona, character, on_typing, cancel, is_proactive=is_proactive)
                if cancel is not None and cancel.cancelled:
                    return

    async def send_group_chat_message(self, room: Room, on_typing: OnTyping, cancel: Optional[CancelToken] = None) -> None:
        with self._room_guard(room.id) as acquired:
            if not acquired:
                return
            responders = self.policy.select_responders(room)
            if not responders:
                return
            persona = self.store.active_persona()
            try:
                for i, cid in enumerate(responders):
                    if i > 0:
                        await sleep_ms(self.policy.gap_ms(room), cancel)
                    character = self.store.characters.get(cid)
                    if character is None:
                        self.log.warning(f"[group-missing-character] {fmt('room', room.id)} {fmt('char_id', cid)}")
                        continue
                    await self.llm_send(room, persona, character, on_typing, cancel)
            except GenerationCancelled:
                self.log.info(f"[group-cancelled] {fmt('room', room.id)}")

    async def llm_send(
        self,
        room: Room,
        persona: Optional[Persona],
        character: Character,
        on_typing: OnTyping,
        cancel: Optional[CancelToken] = None,
        *,
        is_proactive: bool = False,
    ) -> None:
        """Generate and commit one character's reply. Never raises."""
        correlation = make_correlation_id(room.id, character.id)
        settings = self.settings()
        try:
            if persona is None:
                raise ConfigurationError("No persona selected")
            check(cancel)
            messages = self.store.messages_for_room(room.id)
            api_config = settings.active_api_config()
            controller = AntiEchoController(settings.anti_echo, lambda: self.t("llm.antiEchoFallback"))

            async def call(extra_system_instruction: Optional[str]) -> ChatResponse:
                return await self.dispatcher.call_api(
                    api_config,
                    settings,
                    room,
                    persona,
                    character,
                    messages,
                    is_proactive,
                    extra_system_instruction,
                    cancel=cancel,
                    correlation=correlation,
                )

            outcome = await controller.generate(room, character.id, messages, call, cancel=cancel, correlation=correlation)
            await self.materializer.handle_api_response(
                outcome.response, room, character, on_typing, cancel=cancel, correlation=correlation
            )
        except ConfigurationError as e:
            self.log.warning(f"[send-config-error] {fmt('room', room.id)} {fmt('char', character.name)} {fmt('err', e)} {fmt('correlation', correlation)}")
        except GenerationCancelled as e:
            self.log.info(f"[send-cancelled] {fmt('room', room.id)} {fmt('char', character.name)} {fmt('reason', e)} {fmt('correlation', correlation)}")
        except Exception as e:
            self.log.error(
                f"[send-failed] {fmt('room', room.id)} {fmt('char', character.name)} {fmt('type', type(e).__name__)} "
                f"{fmt('err', e)} {fmt('correlation', correlation)}",
                exc_info=True,
            )
            self.materializer.commit(Message.text(room.id, character.id, self.t("llm.generationFailed", reason=str(e))))
        finally:
            on_typing(None)
