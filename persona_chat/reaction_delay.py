from __future__ import annotations

from dataclasses import dataclass, field
import random
from typing import Optional


@dataclass(frozen=True)
class DelayConstants:
    """Seconds-based timing model for simulated human replies."""

    min_gap: float = 0.20
    think_base: float = 0.60
    k_read: float = 0.030
    k_type: dict = field(default_factory=lambda: {"mobile": 0.332, "desktop": 0.300})
    jitter_sigma: float = 0.25
    min_delay: float = 0.5
    max_delay: float = 90.0


DEFAULT_CONSTANTS = DelayConstants()


def calc_reaction_delay(
    in_chars: int,
    out_chars: int,
    *,
    device: str = "mobile",
    speedup: float = 1.0,
    rng: Optional[random.Random] = None,
    constants: DelayConstants = DEFAULT_CONSTANTS,
) -> float:
    """Milliseconds a character "takes" to read ``in_chars`` and type ``out_chars``.

    delay = clamp(read + think + type, MIN_DELAY, MAX_DELAY) * lognormal_jitter / speedup
    """
    c = constants
    read_time = max(c.min_gap, c.k_read * max(0, in_chars))
    type_time = c.k_type.get(device, c.k_type["mobile"]) * max(0, out_chars)
    base = min(c.max_delay, max(c.min_delay, read_time + c.think_base + type_time))
    jitter = (rng or random).lognormvariate(0.0, c.jitter_sigma)
    return base * jitter / max(speedup, 1e-6) * 1000.0
