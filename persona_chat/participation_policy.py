from __future__ import annotations

import random
from typing import Optional

from .logger_factory import get_logger
from .models import GroupSettings, Room
from .utils.logfmt import fmt

DEFAULT_RESPONSE_PROBABILITY = 0.9
DELAY_JITTER_MS = 300


class GroupParticipationPolicy:
    """Decides which characters of a group room answer a turn, and how far apart."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.log = get_logger("ParticipationPolicy")
        self.rng = rng or random.Random()

    def select_responders(self, room: Room) -> list[int]:
        gs = room.group_settings or GroupSettings()
        roll = self.rng.random()
        # a zero frequency must silence the room even when random() returns exactly 0.0
        if gs.response_frequency <= 0 or roll > gs.response_frequency:
            self._log_decision(room, "room-gate", roll=roll, frequency=gs.response_frequency)
            return []

        active: list[int] = []
        for cid in room.member_ids:
            ps = gs.participant_settings.get(cid)
            if ps is not None and ps.is_active is False:
                continue
            p = ps.response_probability if ps is not None and ps.response_probability is not None else DEFAULT_RESPONSE_PROBABILITY
            if self.rng.random() < p:
                active.append(cid)
        if not active:
            self._log_decision(room, "no-participants")
            return []

        self.rng.shuffle(active)
        chosen = active[: max(0, min(gs.max_responding_characters, len(active)))]
        self._log_decision(room, "respond", responders=",".join(str(c) for c in chosen), candidates=len(active))
        return chosen

    def gap_ms(self, room: Room) -> float:
        """Pause before the next responder: response_delay ± up to 150 ms."""
        gs = room.group_settings or GroupSettings()
        return max(0.0, gs.response_delay + (self.rng.random() * DELAY_JITTER_MS - DELAY_JITTER_MS / 2))

    def _log_decision(self, room: Room, decision: str, **fields) -> None:
        extra = " ".join(fmt(k, v) for k, v in fields.items())
        self.log.info(f"[group-decision] {fmt('room', room.id)} {fmt('decision', decision)} {extra}".rstrip())
