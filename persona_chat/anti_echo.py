from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from .logger_factory import get_logger
from .models import AntiEchoSettings, ChatResponse, Message, MessagePart, MessageType, Room
from .utils.bounded import bounded_attempts
from .utils.cancellation import CancelToken
from .utils.logfmt import fmt, preview

_WS_RE = re.compile(r"\s+")
QUOTE_LIMIT = 200

RETRY_INSTRUCTION = (
    'Your previous draft was too similar to another participant\'s last message: "{reference}". '
    "Do NOT repeat or paraphrase it. Produce a NEW, concise reply that adds value "
    "(ask a short follow-up or introduce a new detail). Avoid using the same phrases."
)


def normalize(text: str) -> str:
    """Lowercase, drop punctuation/symbols (Unicode P* and S*), collapse whitespace."""
    lowered = (text or "").lower()
    kept = "".join(" " if unicodedata.category(ch)[0] in ("P", "S") else ch for ch in lowered)
    return _WS_RE.sub(" ", kept).strip()


def jaccard(a: str, b: str) -> float:
    sa = set(normalize(a).split())
    sb = set(normalize(b).split())
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def is_echo(candidate: str, reference: str, threshold: float = 0.8) -> bool:
    na, nb = normalize(candidate), normalize(reference)
    if not na or not nb:
        return False
    if na in nb or nb in na:
        return True
    return jaccard(candidate, reference) >= threshold


def reference_texts(messages: Sequence[Message], self_id: int, window: int = 3) -> list[str]:
    """Newest-first text of the last ``window`` messages by other participants."""
    recent: list[Message] = []
    for msg in reversed(messages):
        if msg.author_id == self_id or msg.type == MessageType.SYSTEM:
            continue
        recent.append(msg)
        if len(recent) >= window:
            break
    # stickers and images still use up a window slot
    return [msg.content for msg in recent if msg.content]


@dataclass
class EchoOutcome:
    response: ChatResponse
    attempts: int
    fell_back: bool


class AntiEchoController:
    """Retry a group reply that parrots another participant, then fall back to a probe."""

    def __init__(self, settings: AntiEchoSettings, fallback_text: Callable[[], str]):
        self.log = get_logger("AntiEcho")
        self.settings = settings
        self.fallback_text = fallback_text

    def fallback_response(self) -> ChatResponse:
        return ChatResponse(reaction_delay=500, messages=[MessagePart(delay=800, content=self.fallback_text())])

    def find_echo(self, response: ChatResponse, refs: Sequence[str]) -> Optional[str]:
        reply = response.combined_text()
        if not reply.strip():
            return None
        for ref in refs:
            if is_echo(reply, ref, self.settings.threshold):
                return ref
        return None

    async def generate(
        self,
        room: Room,
        self_id: int,
        messages: Sequence[Message],
        call: Callable[[Optional[str]], Awaitable[ChatResponse]],
        *,
        cancel: CancelToken | None = None,
        correlation: str | None = None,
    ) -> EchoOutcome:
        """``call(extra_system_instruction)`` performs one full provider round trip."""
        if room.is_direct:
            return EchoOutcome(await call(None), attempts=1, fell_back=False)

        refs = reference_texts(messages, self_id, self.settings.window)
        instruction: dict[str, Optional[str]] = {"text": None}

        async def attempt(n: int) -> tuple[bool, ChatResponse]:
            res = await call(instruction["text"])
            echoed = self.find_echo(res, refs)
            if echoed is None:
                return True, res
            self.log.info(
                f"[anti-echo] {fmt('attempt', n)} {fmt('max', self.settings.max_attempts)} {fmt('room', room.id)} "
                f"{fmt('reply', preview(res.combined_text()))} {fmt('reference', preview(echoed))} {fmt('correlation', correlation)}"
            )
            instruction["text"] = RETRY_INSTRUCTION.format(reference=refs[0][:QUOTE_LIMIT])
            return False, res

        outcome = await bounded_attempts(self.settings.max_attempts, attempt, cancel)
        if outcome.exhausted:
            self.log.info(f"[anti-echo-fallback] {fmt('room', room.id)} {fmt('attempts', outcome.attempts)} {fmt('correlation', correlation)}")
            return EchoOutcome(self.fallback_response(), attempts=outcome.attempts, fell_back=True)
        assert outcome.value is not None
        return EchoOutcome(outcome.value, attempts=outcome.attempts, fell_back=False)
