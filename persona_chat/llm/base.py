from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from ..models import ApiConfig, ApiProvider, ChatSettings, Message

SpeakerOf = Callable[[Message], str]


def speaker_tag(name: str) -> str:
    return f"[From: {name}] "


def sticker_marker(message: Message) -> str:
    name = message.sticker.name if message.sticker else ""
    return f'[Sent a sticker: "{name}"]'


@dataclass
class AssembledPrompt:
    """Provider-shaped turns plus the system text lifted out of them."""

    system_text: str = ""
    turns: list[dict] = field(default_factory=list)


class ProviderAdapter(ABC):
    """Everything that differs between provider families, selected once per call."""

    provider: ApiProvider
    # role for lorebook/memory/... items configured without one
    default_item_role: str = "user"
    # OpenAI-style APIs take system prompts as ordinary messages
    inline_system: bool = False

    @abstractmethod
    def text_turn(self, role: str, text: str) -> dict:
        """One turn carrying plain text; ``role`` is system|user|assistant."""

    @abstractmethod
    def convert_history(self, messages: Sequence[Message], speaker_of: SpeakerOf, use_speaker_tag: bool, model: str) -> list[dict]:
        ...

    @abstractmethod
    def build_payload(self, prompt: AssembledPrompt, settings: ChatSettings, api_config: ApiConfig) -> dict:
        ...

    @abstractmethod
    def endpoint(self, api_config: ApiConfig) -> str:
        ...

    @abstractmethod
    def headers(self, api_config: ApiConfig) -> dict:
        ...

    @abstractmethod
    def extract_text(self, data: Any) -> str:
        """Pull the reply text out of a 2xx body or raise ProviderParseError."""

    def count_tokens_request(self, payload: dict, api_config: ApiConfig) -> tuple[str, dict, dict] | None:
        """(url, headers, body) of the provider's count-tokens call; None means count locally."""
        return None

    def parse_token_count(self, data: Any) -> int:
        return int((data or {}).get("totalTokens") or 0)

    def error_message(self, data: Any, status_text: str) -> str:
        # Gemini, Claude and OpenAI all nest the reason under error.message
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if isinstance(err, str) and err:
                return err
        return status_text

    def missing_credentials(self, api_config: ApiConfig) -> str | None:
        """Name of the missing setting, or None when the config can be dispatched."""
        if not api_config.api_key:
            return "api_key"
        if not api_config.model:
            return "model"
        return None
