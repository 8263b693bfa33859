from __future__ import annotations

from typing import Any, Sequence

from ..errors import ProviderParseError
from ..models import ApiConfig, ApiProvider, ChatSettings, Message
from .base import AssembledPrompt, ProviderAdapter, SpeakerOf, speaker_tag, sticker_marker
from .schema import build_openai_response_format

OPENAI_API_BASE_URL = "https://api.openai.com/v1/chat/completions"
GROK_API_BASE_URL = "https://api.x.ai/v1/chat/completions"
GROK_TOKENIZE_URL = "https://api.x.ai/v1/tokenize-text"
OPENROUTER_API_BASE_URL = "https://openrouter.ai/api/v1/chat/completions"

# Models that only accept the default sampling parameters
FIXED_SAMPLING_MODELS = ("gpt-5",)
# Models without vision input
TEXT_ONLY_MODELS = ("grok-3",)


class OpenAIAdapter(ProviderAdapter):
    """OpenAI Chat Completions; shared by every OpenAI-compatible endpoint."""

    provider = ApiProvider.OPENAI
    default_item_role = "system"
    inline_system = True
    default_url = OPENAI_API_BASE_URL

    def text_turn(self, role: str, text: str) -> dict:
        return {"role": role if role in ("system", "user", "assistant") else "user", "content": text}

    def convert_history(self, messages: Sequence[Message], speaker_of: SpeakerOf, use_speaker_tag: bool, model: str) -> list[dict]:
        turns: list[dict] = []
        for idx, msg in enumerate(messages):
            speaker = speaker_of(msg)
            header = speaker_tag(speaker) if use_speaker_tag else ""
            role = "user" if msg.author_id == 0 else "assistant"
            if idx == len(messages) - 1:
                role = "user"
            text = f"{header}{msg.content}" if msg.content else header
            if msg.sticker is not None:
                text = f"{sticker_marker(msg)} {text}".rstrip()
            parts: list[dict] = [{"type": "text", "text": text}] if text else []
            f = msg.file
            if f is not None and f.mime_type.startswith("image"):
                if role == "user" and model not in TEXT_ONLY_MODELS:
                    parts.append({"type": "image_url", "image_url": {"url": f.data_url}})
                else:
                    # assistant turns cannot carry images
                    parts.append({"type": "text", "text": f"[{speaker}: Sent an image]"})
            if any(p["type"] == "image_url" for p in parts):
                content: Any = parts
            else:
                content = "\n".join(p["text"] for p in parts)
            turns.append({"role": role, "content": content})
        return turns

    def response_format(self, settings: ChatSettings) -> dict:
        if not settings.use_structured_output:
            return {"type": "text"}
        return build_openai_response_format(include_image_field=settings.use_image_response)

    def build_payload(self, prompt: AssembledPrompt, settings: ChatSettings, api_config: ApiConfig) -> dict:
        p = settings.prompts
        payload: dict[str, Any] = {
            "model": api_config.model,
            "messages": prompt.turns,
            "max_completion_tokens": p.max_response_tokens,
            "response_format": self.response_format(settings),
        }
        if api_config.model in FIXED_SAMPLING_MODELS:
            payload["temperature"] = 1
        else:
            payload["temperature"] = p.temperature
            payload["top_p"] = p.top_p
        return payload

    def endpoint(self, api_config: ApiConfig) -> str:
        return self.default_url

    def headers(self, api_config: ApiConfig) -> dict:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {api_config.api_key}"}

    def extract_text(self, data: Any) -> str:
        choices = (data or {}).get("choices") or []
        first = choices[0] if choices and isinstance(choices[0], dict) else {}
        text = (first.get("message") or {}).get("content")
        if not text:
            # streaming-style chunk
            text = (first.get("delta") or {}).get("content")
        if not text:
            raise ProviderParseError("Empty response body")
        return text


class GrokAdapter(OpenAIAdapter):
    provider = ApiProvider.GROK
    default_url = GROK_API_BASE_URL

    def count_tokens_request(self, payload: dict, api_config: ApiConfig) -> tuple[str, dict, dict] | None:
        segments: list[str] = []
        for turn in payload.get("messages", []):
            content = turn.get("content")
            if isinstance(content, list):
                content = "".join(p.get("text", "") for p in content if p.get("type") == "text")
            text = str(content or "").strip()
            role = turn.get("role")
            if role == "system":
                segments.append(f"System: {text}<|separator|>\n")
            else:
                prefix = "Human: " if role == "user" else "Assistant: "
                segments.append(f"{prefix}{text}<|separator|>\n")
        segments.append("Assistant:")
        body = {"model": api_config.model, "text": "".join(segments)}
        return GROK_TOKENIZE_URL, self.headers(api_config), body

    def parse_token_count(self, data: Any) -> int:
        return len((data or {}).get("token_ids") or [])


class OpenRouterAdapter(OpenAIAdapter):
    provider = ApiProvider.OPENROUTER
    default_url = OPENROUTER_API_BASE_URL

    def __init__(self, http_referer: str | None = None, x_title: str | None = "persona-chat"):
        self.http_referer = http_referer
        self.x_title = x_title

    def build_payload(self, prompt: AssembledPrompt, settings: ChatSettings, api_config: ApiConfig) -> dict:
        payload = super().build_payload(prompt, settings, api_config)
        routing: dict[str, Any] = {}
        if api_config.provider_order:
            routing["order"] = list(api_config.provider_order)
        if api_config.provider_allow_fallbacks is not None:
            routing["allow_fallbacks"] = bool(api_config.provider_allow_fallbacks)
        if routing:
            payload["provider"] = routing
        return payload

    def headers(self, api_config: ApiConfig) -> dict:
        headers = super().headers(api_config)
        # Optional ranking headers for OpenRouter
        if self.http_referer:
            headers["HTTP-Referer"] = self.http_referer
        if self.x_title:
            headers["X-Title"] = self.x_title
        return headers


class CustomOpenAIAdapter(OpenAIAdapter):
    provider = ApiProvider.CUSTOM_OPENAI

    def endpoint(self, api_config: ApiConfig) -> str:
        return api_config.base_url or OPENAI_API_BASE_URL

    def missing_credentials(self, api_config: ApiConfig) -> str | None:
        # local servers usually run without a key
        if not api_config.base_url:
            return "base_url"
        if not api_config.model:
            return "model"
        return None
