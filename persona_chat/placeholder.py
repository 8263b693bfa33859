from __future__ import annotations

from datetime import datetime
import re
from typing import Any, Mapping, Optional, Sequence

from .models import Character, Message, Persona, Room, RoomType
from .utils.time_utils import Clock, format_human, minutes_between, now_local, parse_iso

# Fallbacks used when a known placeholder has no value
DEFAULTS: dict[str, str] = {
    "user": "user",
    "char": "characters",
    "userName": "User",
    "userDescription": "No specific information provided about the user.",
    "characterPrompt": "",
    "roomMemories": "",
    "responseTime": "5",
    "thinkingTime": "5",
    "reactivity": "5",
    "tone": "5",
    "guidelines": "",
    "participantDetails": "",
    "participantCount": "1",
    "availableStickers": "none",
    "timeContext": "",
    "timeDiff": "0",
}

NAMED_KEYS = tuple(k for k in DEFAULTS if k not in ("user", "char"))

# One combined pattern so a single pass never re-scans text it just inserted
_PLACEHOLDER_RE = re.compile(
    r"\{\{\s*(?P<curly>user|char)\s*\}\}"
    r"|<\s*(?P<angle>user|char)\s*>"
    r"|\{(?P<named>" + "|".join(NAMED_KEYS) + r")\}",
    re.IGNORECASE,
)
_CANONICAL = {k.lower(): k for k in DEFAULTS}


def substitute(template: Optional[str], values: Mapping[str, Any]) -> str:
    """Replace known placeholders in ``template``. Unknown tokens are left untouched."""
    if not template:
        return template or ""

    def _replace(m: re.Match[str]) -> str:
        raw = m.group("curly") or m.group("angle") or m.group("named")
        key = _CANONICAL.get(raw.lower(), raw)
        value = values.get(key)
        if value is None:
            return DEFAULTS[key]
        return str(value)

    return _PLACEHOLDER_RE.sub(_replace, template)


def format_stickers(character: Character | None) -> str:
    if character is None or not character.stickers:
        return DEFAULTS["availableStickers"]
    return ", ".join(f"{s.id} ({s.name})" for s in character.stickers)


def build_group_description(character: Character, room: Room, roster: Mapping[int, Character]) -> tuple[str, int]:
    """Return (participantDetails, participantCount) for a group room; the user counts as one participant."""
    lines = []
    for cid in room.member_ids:
        if cid == character.id:
            continue
        other = roster.get(cid)
        name = other.name if other else f"Char#{cid}"
        lines.append(f"- {name}: {(other.prompt if other else '') or 'Character'}")
    return "\n".join(lines), len(room.member_ids) + 1


def build_time_context(messages: Sequence[Message], is_proactive: bool, now: datetime) -> tuple[str, int]:
    """Human-readable clock line plus minutes since the last stored message."""
    last = parse_iso(messages[-1].created_at) if messages else None
    diff = minutes_between(last, now)
    text = f"(Context: It's currently {format_human(now)}."
    if not messages:
        text += " You are starting this conversation for the first time.)"
    elif is_proactive:
        text += f" Last message was {diff} minutes ago. You are proactively reaching out.)"
    else:
        text += f" Last message was {diff} minutes ago.)"
    return text, diff


def build_placeholder_values(
    persona: Persona | None,
    character: Character | None,
    room: Room | None,
    messages: Sequence[Message] = (),
    *,
    roster: Mapping[int, Character] | None = None,
    guidelines: str = "",
    is_proactive: bool = False,
    clock: Clock = now_local,
) -> dict[str, Any]:
    user_name = (persona.name if persona else "") or DEFAULTS["userName"]
    values: dict[str, Any] = {
        "user": user_name,
        "userName": user_name,
        "userDescription": (persona.description if persona else "") or DEFAULTS["userDescription"],
        "roomMemories": "\n".join(room.memories) if room and room.memories else "",
        "guidelines": guidelines,
        "availableStickers": format_stickers(character),
    }
    if character is not None:
        values.update({
            "char": character.name,
            "characterPrompt": character.prompt,
            "responseTime": character.response_time,
            "thinkingTime": character.thinking_time,
            "reactivity": character.reactivity,
            "tone": character.tone,
        })
        if room is not None and room.type == RoomType.GROUP:
            details, count = build_group_description(character, room, roster or {})
            values["participantDetails"] = details
            values["participantCount"] = count
    time_context, diff = build_time_context(messages, is_proactive, clock())
    values["timeContext"] = time_context
    values["timeDiff"] = diff
    return values
