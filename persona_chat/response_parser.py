from __future__ import annotations

import json
import random
import re
from typing import Optional, Sequence

from pydantic import ValidationError

from .errors import ProviderParseError
from .models import ChatResponse, Message, MessagePart
from .reaction_delay import calc_reaction_delay

_TAG = r"\[\s*(?:from|name)\s*:[^\]]*\]"
TAG_RE = re.compile(_TAG, re.IGNORECASE)
LEADING_TAGS_RE = re.compile(rf"^\s*(?:{_TAG}\s*)+", re.IGNORECASE)
# tag glued after sentence punctuation: "Sure![From: Bob] ok" -> "Sure! ok"
PUNCT_TAG_RE = re.compile(rf"([.!?…。！？][\"')\]]?)[ \t]*{_TAG}\s*", re.IGNORECASE)
MULTI_SPACE_RE = re.compile(r" {2,}")
CODE_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


def _clean_line(line: str) -> str:
    prev = None
    out = line
    # keep substituting until nothing changes; models sometimes spam tags
    while out != prev:
        prev = out
        out = LEADING_TAGS_RE.sub("", out)
        out = PUNCT_TAG_RE.sub(r"\1 ", out)
        out = TAG_RE.sub("", out)
        out = MULTI_SPACE_RE.sub(" ", out)
    return out.lstrip()


def strip_speaker_tags(text: Optional[str]) -> str:
    """Remove echoed ``[From: X]`` / ``[Name: X]`` tags line by line. Idempotent."""
    if not text:
        return ""
    return "\n".join(_clean_line(line) for line in re.split(r"\r?\n", text)).lstrip()


def parse_structured(text: str) -> ChatResponse:
    body = text.strip()
    m = CODE_FENCE_RE.match(body)
    if m:
        body = m.group(1)
    try:
        data = json.loads(body)
    except ValueError as e:
        raise ProviderParseError(f"Structured output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderParseError(f"Structured output must be a JSON object, got {type(data).__name__}")
    try:
        return ChatResponse.model_validate(data)
    except ValidationError as e:
        raise ProviderParseError(f"Structured output does not match the reply schema: {e.errors()[0].get('msg')}") from e


def reply_target_length(messages: Sequence[Message], responder_id: Optional[int]) -> int:
    """Length of the newest message not written by the responding character."""
    for msg in reversed(messages):
        if responder_id is not None and msg.author_id == responder_id:
            continue
        return len(msg.content or "")
    return 0


def parse_unstructured(
    text: str,
    messages: Sequence[Message],
    *,
    responder_id: Optional[int] = None,
    speedup: float = 1.0,
    device: str = "mobile",
    rng: Optional[random.Random] = None,
) -> ChatResponse:
    in_chars = reply_target_length(messages, responder_id)
    parts = [
        MessagePart(
            delay=calc_reaction_delay(in_chars, len(line), device=device, speedup=speedup, rng=rng),
            content=line,
        )
        for line in text.split("\n")
        if line.strip()
    ]
    return ChatResponse(reaction_delay=0, messages=parts)


def to_chat_response(
    raw_text: str,
    *,
    structured: bool,
    messages: Sequence[Message],
    responder_id: Optional[int] = None,
    speedup: float = 1.0,
    device: str = "mobile",
    rng: Optional[random.Random] = None,
) -> ChatResponse:
    cleaned = strip_speaker_tags(raw_text)
    if structured:
        return parse_structured(cleaned)
    return parse_unstructured(cleaned, messages, responder_id=responder_id, speedup=speedup, device=device, rng=rng)
