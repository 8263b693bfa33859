from __future__ import annotations

from typing import Any, Sequence

from ..errors import ProviderParseError, UnsupportedAttachment
from ..models import ApiConfig, ApiProvider, ChatSettings, Message
from .base import AssembledPrompt, ProviderAdapter, SpeakerOf, speaker_tag, sticker_marker

CLAUDE_API_BASE_URL = "https://api.anthropic.com/v1/messages"
CLAUDE_COUNT_TOKENS_URL = "https://api.anthropic.com/v1/messages/count_tokens"
ANTHROPIC_VERSION = "2023-06-01"

CLAUDE_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
# These models reject temperature and top_p together
NO_TOP_P_PREFIXES = ("claude-opus-4-1", "claude-sonnet-4-5")


class ClaudeAdapter(ProviderAdapter):
    provider = ApiProvider.CLAUDE
    default_item_role = "assistant"

    def text_turn(self, role: str, text: str) -> dict:
        return {"role": "assistant" if role == "assistant" else "user", "content": [{"type": "text", "text": text}]}

    def convert_history(self, messages: Sequence[Message], speaker_of: SpeakerOf, use_speaker_tag: bool, model: str) -> list[dict]:
        turns: list[dict] = []
        for idx, msg in enumerate(messages):
            speaker = speaker_of(msg)
            header = speaker_tag(speaker) if use_speaker_tag else ""
            role = "user" if msg.author_id == 0 else "assistant"
            content: list[dict] = [{"type": "text", "text": f"{header}{msg.content}"}] if msg.content else []
            f = msg.file
            if f is not None and f.mime_type.startswith("image"):
                if f.mime_type not in CLAUDE_IMAGE_TYPES:
                    raise UnsupportedAttachment(f"Unsupported image type: {f.mime_type}")
                if f.base64_data:
                    content.append({
                        "type": "image",
                        "source": {"type": "base64", "media_type": f.mime_type, "data": f.base64_data},
                    })
                    content.append({"type": "text", "text": f"[{speaker}: Sent an image]"})
                    # image blocks are only accepted in user turns
                    role = "user"
            if msg.sticker is not None:
                content.append({"type": "text", "text": f"{header}{sticker_marker(msg)}"})
            if idx == len(messages) - 1:
                role = "user"
            if not content:
                content = [{"type": "text", "text": header.strip() or "..."}]
            turns.append({"role": role, "content": content})
        return turns

    def build_payload(self, prompt: AssembledPrompt, settings: ChatSettings, api_config: ApiConfig) -> dict:
        p = settings.prompts
        payload: dict[str, Any] = {
            "model": api_config.model,
            "messages": prompt.turns,
            "system": [{"type": "text", "text": prompt.system_text}],
            "temperature": min(1.0, p.temperature),
            "max_tokens": p.max_response_tokens,
        }
        if p.top_k:
            payload["top_k"] = p.top_k
        if not api_config.model.startswith(NO_TOP_P_PREFIXES):
            payload["top_p"] = p.top_p
        return payload

    def endpoint(self, api_config: ApiConfig) -> str:
        return api_config.base_url or CLAUDE_API_BASE_URL

    def headers(self, api_config: ApiConfig) -> dict:
        return {
            "x-api-key": api_config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def count_tokens_request(self, payload: dict, api_config: ApiConfig) -> tuple[str, dict, dict] | None:
        body = {"model": payload.get("model"), "system": payload.get("system"), "messages": payload.get("messages", [])}
        return CLAUDE_COUNT_TOKENS_URL, self.headers(api_config), body

    def parse_token_count(self, data: Any) -> int:
        return int((data or {}).get("input_tokens") or 0)

    def extract_text(self, data: Any) -> str:
        blocks = (data or {}).get("content") or []
        text = blocks[0].get("text") if blocks and isinstance(blocks[0], dict) else None
        if text:
            return text
        raise ProviderParseError((data or {}).get("stop_reason") or "Unknown reason")
