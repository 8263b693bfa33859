from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from .errors import TokenLimitExceeded
from .logger_factory import get_logger
from .models import Message
from .utils.bounded import bounded_attempts
from .utils.cancellation import CancelToken, check
from .utils.logfmt import fmt

log = get_logger("TokenBudget")


@dataclass
class BudgetResult:
    payload: dict
    token_count: int
    messages: list[Message]  # the history that made it into the payload
    dropped: int


async def build_within_budget(
    assemble: Callable[[Sequence[Message]], dict],
    count_tokens: Callable[[dict], Awaitable[int]],
    messages: Sequence[Message],
    max_context_tokens: int,
    *,
    cancel: CancelToken | None = None,
    correlation: str | None = None,
) -> BudgetResult:
    """Evict the oldest message until the freshly assembled payload fits.

    Every iteration re-assembles from scratch: lore activation, memories and the
    group description depend on which messages are still in the window.
    """
    window = list(messages)

    async def attempt(n: int) -> tuple[bool, BudgetResult]:
        payload = assemble(window)
        check(cancel)
        tokens = await count_tokens(payload)
        result = BudgetResult(payload=payload, token_count=tokens, messages=list(window), dropped=len(messages) - len(window))
        if tokens <= max_context_tokens:
            return True, result
        if len(window) <= 1:
            raise TokenLimitExceeded(tokens, max_context_tokens)
        window.pop(0)
        log.debug(
            f"[budget-trim] {fmt('attempt', n)} {fmt('tokens', tokens)} {fmt('budget', max_context_tokens)} "
            f"{fmt('remaining', len(window))} {fmt('correlation', correlation)}"
        )
        return False, result

    # one attempt per message plus the final single-message check
    outcome = await bounded_attempts(len(window) + 1, attempt, cancel)
    if outcome.exhausted or outcome.value is None:
        # unreachable unless count_tokens is non-deterministic; treat as irreducible
        last = outcome.value.token_count if outcome.value else 0
        raise TokenLimitExceeded(last, max_context_tokens)
    result = outcome.value
    log.debug(
        f"[budget-ok] {fmt('tokens', result.token_count)} {fmt('budget', max_context_tokens)} "
        f"{fmt('dropped', result.dropped)} {fmt('kept', len(result.messages))} {fmt('correlation', correlation)}"
    )
    return result
