from __future__ import annotations

import json
import random
from typing import Mapping, Optional, Sequence

import httpx

from .errors import ConfigurationError, ProviderHttpError
from .llm.registry import adapter_for
from .logger_factory import get_logger, is_full_enabled
from .models import ApiConfig, ChatResponse, ChatSettings, Character, Message, Persona, Room
from .prompt_builder import PromptAssembler, PromptContext
from .response_parser import to_chat_response
from .token_budget import build_within_budget
from .tokenizer_service import TokenizerService
from .utils.cancellation import CancelToken, check
from .utils.logfmt import fmt, preview
from .utils.time_utils import Clock, now_local


class ProviderDispatcher:
    """Budget the prompt, POST it once, and normalize the reply into a ChatResponse."""

    def __init__(
        self,
        roster: Mapping[int, Character],
        *,
        tokenizer: Optional[TokenizerService] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
        clock: Clock = now_local,
        rng: Optional[random.Random] = None,
    ):
        self.log = get_logger("ProviderDispatcher")
        self.roster = roster
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.tokenizer = tokenizer or TokenizerService(client=self._client)
        self.clock = clock
        self.rng = rng

    async def call_api(
        self,
        api_config: ApiConfig,
        settings: ChatSettings,
        room: Room,
        persona: Persona,
        character: Character,
        messages: Sequence[Message],
        is_proactive: bool = False,
        extra_system_instruction: Optional[str] = None,
        *,
        cancel: Optional[CancelToken] = None,
        correlation: Optional[str] = None,
    ) -> ChatResponse:
        adapter = adapter_for(settings.api_provider)
        missing = adapter.missing_credentials(api_config)
        if missing:
            raise ConfigurationError(f"{adapter.provider.value}: {missing} is not configured")

        assembler = PromptAssembler(settings, self.roster, clock=self.clock)
        base_ctx = PromptContext(
            room=room,
            persona=persona,
            character=character,
            messages=list(messages),
            is_proactive=is_proactive,
            extra_system_instruction=extra_system_instruction,
        )

        def assemble(window: Sequence[Message]) -> dict:
            prompt = assembler.assemble(base_ctx.with_messages(window), adapter, api_config.model)
            return adapter.build_payload(prompt, settings, api_config)

        async def count(payload: dict) -> int:
            return await self.tokenizer.count_tokens(payload, adapter, api_config)

        budget = await build_within_budget(
            assemble,
            count,
            messages,
            settings.prompts.max_context_tokens,
            cancel=cancel,
            correlation=correlation,
        )

        url = adapter.endpoint(api_config)
        self.log.info(
            f"[llm-start] {fmt('provider', adapter.provider)} {fmt('model', api_config.model)} "
            f"{fmt('room', room.id)} {fmt('char', character.name)} {fmt('tokens', budget.token_count)} "
            f"{fmt('history', len(budget.messages))} {fmt('retry_hint', bool(extra_system_instruction))} "
            f"{fmt('correlation', correlation)}"
        )
        if is_full_enabled():
            self.log.debug(f"[llm-payload] {fmt('correlation', correlation)} body={json.dumps(budget.payload, ensure_ascii=False)[:20000]}")

        check(cancel)
        r = await self._client.post(url, json=budget.payload, headers=adapter.headers(api_config))
        try:
            data = r.json()
        except ValueError:
            data = None
        if r.status_code < 200 or r.status_code >= 300:
            status_text = r.reason_phrase or f"HTTP {r.status_code}"
            message = adapter.error_message(data, f"API request failed: {status_text}")
            self.log.error(
                f"[llm-http-error] {fmt('provider', adapter.provider)} {fmt('status', r.status_code)} "
                f"{fmt('message', preview(message, 300))} {fmt('correlation', correlation)}"
            )
            raise ProviderHttpError(r.status_code, message, provider=adapter.provider.value)

        text = adapter.extract_text(data)
        response = to_chat_response(
            text,
            structured=settings.use_structured_output,
            messages=budget.messages,
            responder_id=character.id,
            speedup=settings.speedup,
            device=settings.device,
            rng=self.rng,
        )
        self.log.info(
            f"[llm-done] {fmt('provider', adapter.provider)} {fmt('parts', len(response.messages))} "
            f"{fmt('reaction_ms', int(response.reaction_delay))} {fmt('memory', bool(response.new_memory))} "
            f"{fmt('preview', preview(response.combined_text()))} {fmt('correlation', correlation)}"
        )
        return response

    async def aclose(self):
        await self._client.aclose()
