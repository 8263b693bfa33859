from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import tiktoken

from .llm.base import ProviderAdapter
from .logger_factory import get_logger
from .models import ApiConfig
from .utils.logfmt import fmt

DEFAULT_ENCODING = "o200k_base"
# Fixed prompt overhead per image part (OpenAI low-detail tile)
IMAGE_PART_TOKENS = 85


def _content_text(content: Any) -> str:
    # content may be str or a list of parts (OpenAI-style multimodal)
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    try:
        return "".join(str(p.get("text", "")) for p in content if str(p.get("type", "")).lower() == "text")
    except (AttributeError, TypeError):
        return str(content)


def _image_parts(content: Any) -> int:
    if not isinstance(content, list):
        return 0
    return sum(1 for p in content if isinstance(p, dict) and p.get("type") == "image_url")


def serialize_chat_messages(messages: List[Dict]) -> str:
    """ChatML-style rendering used for local token counts of OpenAI-family payloads."""
    body = "".join(
        f"<|im_start|>{m.get('role', 'user')}<|im_sep|>{_content_text(m.get('content'))}<|im_end|>"
        for m in messages
    )
    return body + "<|im_start|>assistant"


class TokenizerService:
    """Token counts per provider.

    OpenAI-compatible payloads are counted locally with tiktoken; Gemini, Vertex,
    Claude and Grok ask the provider's count-tokens endpoint. A missing key or
    any transport/HTTP failure counts as 0 so the trim loop keeps going.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, chars_per_token: float = 4.0, timeout: float = 20.0):
        self.log = get_logger("Tokenizer")
        # Heuristic used only when no tiktoken encoding can be loaded
        self.chars_per_token = max(1e-6, float(chars_per_token))
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._encodings: dict[str, Any] = {}

    def _encoding_for(self, model: str):
        key = model or DEFAULT_ENCODING
        if key in self._encodings:
            return self._encodings[key]
        enc = None
        try:
            enc = tiktoken.encoding_for_model(model) if model else None
        except KeyError:
            enc = None
        if enc is None:
            try:
                enc = tiktoken.get_encoding(DEFAULT_ENCODING)
            except Exception as e:  # BPE files are fetched on first use; offline hosts end up here
                self.log.warning(f"[tokenizer-encoding-unavailable] {fmt('model', model)} {fmt('err', e)}")
                enc = None
        self._encodings[key] = enc
        return enc

    def estimate_tokens_text(self, text: str, model: str = "") -> int:
        if not text:
            return 0
        enc = self._encoding_for(model)
        if enc is None:
            return max(1, int(len(text) / self.chars_per_token))
        return len(enc.encode(text, disallowed_special=()))

    def count_local(self, payload: dict, model: str = "") -> int:
        messages = payload.get("messages", [])
        images = sum(_image_parts(m.get("content")) for m in messages)
        return self.estimate_tokens_text(serialize_chat_messages(messages), model) + images * IMAGE_PART_TOKENS

    async def count_tokens(self, payload: dict, adapter: ProviderAdapter, api_config: ApiConfig) -> int:
        request = adapter.count_tokens_request(payload, api_config)
        if request is None:
            return self.count_local(payload, api_config.model)
        if adapter.missing_credentials(api_config):
            return 0
        url, headers, body = request
        try:
            r = await self._client.post(url, json=body, headers=headers)
            r.raise_for_status()
            return adapter.parse_token_count(r.json())
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            self.log.warning(
                f"[tokenizer-remote-failed] {fmt('provider', adapter.provider)} {fmt('model', api_config.model)} {fmt('err', e)}"
            )
            return 0

    async def aclose(self):
        await self._client.aclose()
