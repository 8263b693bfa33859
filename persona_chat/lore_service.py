from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import json
import re
from typing import Iterable, Mapping, Sequence

from .logger_factory import get_logger
from .models import Character, Lore, Message, Room

ROOM_OWNER = "Room"

log = get_logger("LoreService")


@dataclass
class AttributedLore:
    lore: Lore
    owner_name: str
    owner_id: int  # -1 for room lore


def corpus_of(messages: Iterable[Message]) -> str:
    return " ".join(m.content or "" for m in messages).lower()


def is_lore_active(lore: Lore, text_lower: str) -> bool:
    if lore.always_active:
        return True
    keys = [k.lower() for k in lore.activation_keys if k]
    if not keys:
        return False
    if lore.multi_key:
        return all(k in text_lower for k in keys)
    return any(k in text_lower for k in keys)


def activated_lores(lorebook: Sequence[Lore], messages: Sequence[Message]) -> list[Lore]:
    """Active entries of one lorebook, sorted by ``order`` ascending."""
    if not lorebook:
        return []
    text_lower = corpus_of(messages)
    return sorted((lore for lore in lorebook if is_lore_active(lore, text_lower)), key=lambda l: l.order)


def activated_lores_for_group(room: Room, roster: Mapping[int, Character], messages: Sequence[Message]) -> list[AttributedLore]:
    """Room lorebook plus every member's lorebook, attributed and merged by ``order``."""
    found: list[AttributedLore] = [AttributedLore(l, ROOM_OWNER, -1) for l in activated_lores(room.lorebook, messages)]
    for cid in room.member_ids:
        char = roster.get(cid)
        if char is None or not char.lorebook:
            continue
        found.extend(AttributedLore(l, char.name, cid) for l in activated_lores(char.lorebook, messages))
    # stable sort keeps room-before-member for equal order
    return sorted(found, key=lambda a: a.lore.order)


def render_lore_block(room: Room | None, character: Character | None, roster: Mapping[int, Character], messages: Sequence[Message]) -> str | None:
    """Text of the ``lorebook`` prompt item, or None when nothing is active."""
    if room is not None and not room.is_direct and room.member_ids:
        entries = activated_lores_for_group(room, roster, messages)
        text = "\n\n".join(f"[{a.owner_name}'s Lore: {a.lore.name}]\n{a.lore.prompt}" for a in entries)
    else:
        entries = activated_lores(character.lorebook if character else [], messages)
        text = "\n\n".join(l.prompt for l in entries)
    if entries:
        log.debug(f"[lore-activated] room={room.id if room else None} count={len(entries)}")
    return text or None


def load_lorebook(path: str | Path) -> list[Lore]:
    """Read a lorebook file.

    Markdown files become one always-on entry (title from the first heading).
    JSON files follow the SillyTavern world-info layout:
    ``{"entries": {uid: {key, keysecondary, content, comment, constant, order, selective}}}``;
    ``selective`` entries require the secondary keys as well.
    """
    p = Path(path)
    if not p.exists() or not p.is_file():
        log.warning(f"[lore-missing] path={p}")
        return []
    suffix = p.suffix.lower()
    if suffix in (".md", ".markdown"):
        text = p.read_text(encoding="utf-8")
        first_line = text.splitlines()[0].strip() if text else ""
        m = re.match(r"^\s*#+\s*(.+)$", first_line)
        name = m.group(1).strip() if m else p.stem
        return [Lore(id=p.stem, name=name, prompt=text, always_active=True)]
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.warning(f"[lore-invalid] path={p} err={e}")
        return []
    entries = data.get("entries", {}) if isinstance(data, dict) else {}
    if isinstance(entries, list):
        entries = {str(i): e for i, e in enumerate(entries)}
    out: list[Lore] = []
    for uid, raw in entries.items():
        if not isinstance(raw, dict) or not raw.get("content"):
            continue
        keys = raw.get("key") or []
        if not isinstance(keys, list):
            keys = [str(keys)]
        secondary = raw.get("keysecondary") or []
        selective = bool(raw.get("selective", False)) and bool(secondary)
        out.append(Lore(
            id=str(uid),
            name=str(raw.get("comment") or uid),
            prompt=str(raw["content"]),
            activation_keys=[str(k) for k in (keys + secondary if selective else keys)],
            order=int(raw.get("order", 0) or 0),
            always_active=bool(raw.get("constant", False)),
            multi_key=selective,
        ))
    log.debug(f"[lore-loaded] path={p} entries={len(out)}")
    return out
