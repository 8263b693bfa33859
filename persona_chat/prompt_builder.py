from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from .llm.base import AssembledPrompt, ProviderAdapter
from .logger_factory import get_logger
from .lore_service import render_lore_block
from .models import (
    CONTENT_RESOLVED_TYPES,
    ChatSettings,
    Character,
    Message,
    Persona,
    PromptItem,
    PromptRole,
    PromptType,
    Room,
    RoomType,
)
from .placeholder import build_placeholder_values, substitute
from .utils.logfmt import fmt
from .utils.time_utils import Clock, now_local

PROACTIVE_START = "(SYSTEM: You are starting this conversation. Please begin.)"


@dataclass
class PromptContext:
    """Inputs of one assembly pass; ``messages`` is the (possibly trimmed) history."""

    room: Room
    persona: Persona
    character: Character
    messages: Sequence[Message]
    is_proactive: bool = False
    extra_system_instruction: Optional[str] = None

    def with_messages(self, messages: Sequence[Message]) -> "PromptContext":
        return PromptContext(
            room=self.room,
            persona=self.persona,
            character=self.character,
            messages=messages,
            is_proactive=self.is_proactive,
            extra_system_instruction=self.extra_system_instruction,
        )


def should_include(item: PromptItem, room: Room | None, use_structured_output: bool, use_image_response: bool) -> bool:
    if item.type == PromptType.PLAIN_STRUCTURED:
        return use_structured_output
    if item.type == PromptType.PLAIN_UNSTRUCTURED:
        return not use_structured_output
    if item.type == PromptType.PLAIN_GROUP:
        return room is not None and room.type == RoomType.GROUP
    if item.type == PromptType.IMAGE_GENERATION:
        return use_structured_output and use_image_response
    return True


class PromptAssembler:
    """Walks the configured prompt items in order and emits provider-shaped turns.

    System-role entries are lifted into ``system_text`` unless the adapter keeps
    them inline (OpenAI family). ``chat`` expands to the converted history at its
    position; content-resolved items (lorebook, memory, ...) disappear when empty.
    """

    def __init__(self, settings: ChatSettings, roster: Mapping[int, Character], clock: Clock = now_local):
        self.log = get_logger("PromptAssembler")
        self.settings = settings
        self.roster = roster
        self.clock = clock

    def prompt_items(self) -> list[PromptItem]:
        items = list(self.settings.prompts.items)
        extra = self.settings.prompts.image_response_item
        if extra is not None and extra not in items:
            # the image instruction sits right before the history
            pos = next((i for i, it in enumerate(items) if it.type == PromptType.CHAT), len(items))
            items.insert(pos, extra)
        return items

    def speaker_of(self, persona: Persona):
        def _speaker(msg: Message) -> str:
            if msg.author_id == 0:
                return persona.name or "User"
            char = self.roster.get(msg.author_id)
            return char.name if char else f"Char#{msg.author_id}"
        return _speaker

    def resolve_content(self, item: PromptItem, ctx: PromptContext) -> Optional[str]:
        t = item.type
        if t == PromptType.LOREBOOK:
            return render_lore_block(ctx.room, ctx.character, self.roster, ctx.messages)
        if t == PromptType.AUTHOR_NOTE:
            return ctx.room.author_note or None
        if t == PromptType.MEMORY:
            return "\n".join(ctx.room.memories) or None
        if t == PromptType.USER_DESCRIPTION:
            return ctx.persona.description or None
        if t == PromptType.CHARACTER_PROMPT:
            return ctx.character.prompt or None
        if t == PromptType.EXTRA_SYSTEM_INSTRUCTION:
            return ctx.extra_system_instruction or None
        return item.content or None

    def assemble(self, ctx: PromptContext, adapter: ProviderAdapter, model: str = "") -> AssembledPrompt:
        s = self.settings
        values = build_placeholder_values(
            ctx.persona,
            ctx.character,
            ctx.room,
            ctx.messages,
            roster=self.roster,
            guidelines=s.prompts.guidelines,
            is_proactive=ctx.is_proactive,
            clock=self.clock,
        )
        system_parts: list[str] = []
        turns: list[dict] = []
        skipped = 0

        for item in self.prompt_items():
            if item.type == PromptType.CHAT:
                turns.extend(adapter.convert_history(
                    ctx.messages,
                    self.speaker_of(ctx.persona),
                    not ctx.room.is_direct,
                    model,
                ))
                continue
            if not should_include(item, ctx.room, s.use_structured_output, s.use_image_response):
                skipped += 1
                continue
            content = self.resolve_content(item, ctx)
            if not content or not content.strip():
                continue
            if item.type == PromptType.EXTRA_SYSTEM_INSTRUCTION:
                role = (item.role or PromptRole.SYSTEM).value
            elif item.type in CONTENT_RESOLVED_TYPES:
                role = (item.role.value if item.role else adapter.default_item_role)
            else:
                role = (item.role or PromptRole.USER).value
            text = substitute(content, values)
            if role == "system" and not adapter.inline_system:
                system_parts.append(text)
            else:
                turns.append(adapter.text_turn(role, text))

        if ctx.is_proactive and not turns:
            turns.append(adapter.text_turn("user", PROACTIVE_START))

        self.log.debug(
            f"[prompt-assembled] {fmt('room', ctx.room.id)} {fmt('char', ctx.character.name)} "
            f"{fmt('provider', adapter.provider)} {fmt('messages', len(ctx.messages))} "
            f"{fmt('turns', len(turns))} {fmt('system_blocks', len(system_parts))} {fmt('gated', skipped)}"
        )
        return AssembledPrompt(system_text="\n\n".join(system_parts), turns=turns)
