from __future__ import annotations

import re
from typing import Any, Sequence
from urllib.parse import quote

from ..errors import ProviderParseError
from ..models import ApiConfig, ApiProvider, ChatSettings, Message, MessageType
from .base import AssembledPrompt, ProviderAdapter, SpeakerOf, speaker_tag, sticker_marker
from .schema import build_gemini_schema

GEMINI_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models/"
VERTEX_AI_API_BASE_URL = (
    "https://aiplatform.googleapis.com/v1/projects/{project_id}/locations/{location}"
    "/publishers/google/models/{model}"
)
VERTEX_DEFAULT_LOCATION = "us-central1"

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

YOUTUBE_RE = re.compile(r"(https?://(?:www\.)?(?:youtube\.com/watch\?v=|youtu\.be/)[a-zA-Z0-9_-]+)")


class GeminiAdapter(ProviderAdapter):
    provider = ApiProvider.GEMINI
    default_item_role = "user"

    def text_turn(self, role: str, text: str) -> dict:
        return {"role": "model" if role == "assistant" else "user", "parts": [{"text": text}]}

    def convert_history(self, messages: Sequence[Message], speaker_of: SpeakerOf, use_speaker_tag: bool, model: str) -> list[dict]:
        turns: list[dict] = []
        i = 0
        while i < len(messages):
            msg = messages[i]
            header = speaker_tag(speaker_of(msg)) if use_speaker_tag else ""
            nxt = messages[i + 1] if i + 1 < len(messages) else None
            # An attachment followed by a caption from the same author becomes a single
            # turn; consecutive same-role turns are rejected by the API.
            merge = (
                msg.type != MessageType.TEXT
                and nxt is not None
                and nxt.type == MessageType.TEXT
                and nxt.author_id == msg.author_id
            )
            content = nxt.content if merge and nxt.content else msg.content
            lead = f"{header}{content}" if content else header
            # empty text parts are rejected
            parts: list[dict] = [{"text": lead}] if lead else []
            if msg.file is not None and msg.file.mime_type and msg.file.base64_data:
                parts.append({"inline_data": {"mime_type": msg.file.mime_type, "data": msg.file.base64_data}})
            for url in YOUTUBE_RE.findall(msg.content or ""):
                parts.append({"file_data": {"file_uri": url}})
            if msg.sticker is not None:
                parts.append({"text": f"{header}{sticker_marker(msg)}"})
            if merge:
                i += 1
            turns.append({"role": "user" if msg.author_id == 0 else "model", "parts": parts})
            i += 1
        return turns

    def generation_config(self, settings: ChatSettings) -> dict:
        p = settings.prompts
        config: dict[str, Any] = {"temperature": p.temperature, "topP": p.top_p}
        if p.top_k:
            config["topK"] = p.top_k
        if settings.use_structured_output:
            config["responseMimeType"] = "application/json"
            config["responseSchema"] = build_gemini_schema(include_image_field=settings.use_image_response)
        return config

    def build_payload(self, prompt: AssembledPrompt, settings: ChatSettings, api_config: ApiConfig) -> dict:
        return {
            "contents": prompt.turns,
            "systemInstruction": {"parts": [{"text": prompt.system_text}]},
            "generationConfig": self.generation_config(settings),
            "safetySettings": [{"category": c, "threshold": "BLOCK_NONE"} for c in SAFETY_CATEGORIES],
        }

    def endpoint(self, api_config: ApiConfig) -> str:
        base = api_config.base_url or GEMINI_API_BASE_URL
        return f"{base}{api_config.model}:generateContent?key={quote(api_config.api_key or '', safe='')}"

    def count_tokens_request(self, payload: dict, api_config: ApiConfig) -> tuple[str, dict, dict]:
        base = api_config.base_url or GEMINI_API_BASE_URL
        url = f"{base}{api_config.model}:countTokens?key={quote(api_config.api_key or '', safe='')}"
        body = {"generateContentRequest": {"model": f"models/{api_config.model}", **payload}}
        return url, self.headers(api_config), body

    def headers(self, api_config: ApiConfig) -> dict:
        return {"Content-Type": "application/json"}

    def extract_text(self, data: Any) -> str:
        candidates = (data or {}).get("candidates") or []
        try:
            text = candidates[0]["content"]["parts"][0].get("text")
        except (IndexError, KeyError, TypeError, AttributeError):
            text = None
        if text:
            return text
        reason = ((data or {}).get("promptFeedback") or {}).get("blockReason")
        if not reason and candidates and isinstance(candidates[0], dict):
            reason = candidates[0].get("finishReason")
        raise ProviderParseError(reason or "Unknown reason")


class VertexAdapter(GeminiAdapter):
    provider = ApiProvider.VERTEXAI

    def _model_url(self, api_config: ApiConfig) -> str:
        return VERTEX_AI_API_BASE_URL.format(
            project_id=api_config.project_id or "",
            location=api_config.location or VERTEX_DEFAULT_LOCATION,
            model=api_config.model,
        )

    def endpoint(self, api_config: ApiConfig) -> str:
        return f"{self._model_url(api_config)}:generateContent"

    def count_tokens_request(self, payload: dict, api_config: ApiConfig) -> tuple[str, dict, dict]:
        body = {"contents": payload.get("contents", []), "systemInstruction": payload.get("systemInstruction")}
        return f"{self._model_url(api_config)}:countTokens", self.headers(api_config), body

    def headers(self, api_config: ApiConfig) -> dict:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {api_config.access_token or ''}"}

    def missing_credentials(self, api_config: ApiConfig) -> str | None:
        if not api_config.access_token:
            return "access_token"
        if not api_config.project_id:
            return "project_id"
        if not api_config.model:
            return "model"
        return None
