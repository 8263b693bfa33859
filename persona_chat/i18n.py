from __future__ import annotations

from jinja2 import BaseLoader, Environment, TemplateError

from .logger_factory import get_logger
from .utils.logfmt import fmt

CATALOG: dict[str, dict[str, str]] = {
    "en": {
        "llm.generationFailed": "Failed to generate response. (Reason: {{ reason }})",
        "llm.antiEchoFallback": "Hmm, wait. What do you think about it yourself?",
        "llm.imagePending": "(Generating image...)",
        "llm.imageFailed": "(Image generation failed: {{ reason }})",
        "main.newMemory": "New memory added:\n\"{{ memory }}\"",
    },
    "ko": {
        "llm.generationFailed": "응답 생성에 실패했습니다. (이유: {{ reason }})",
        "llm.antiEchoFallback": "음, 잠깐만. 너는 어떻게 생각해?",
        "llm.imagePending": "(이미지 생성 중...)",
        "llm.imageFailed": "(이미지 생성 실패: {{ reason }})",
        "main.newMemory": "새로운 메모리가 추가되었습니다:\n\"{{ memory }}\"",
    },
}


class Translator:
    """User-facing strings rendered with Jinja2; unknown keys fall back to English, then to the key."""

    def __init__(self, language: str = "en", catalog: dict[str, dict[str, str]] | None = None):
        self.log = get_logger("Translator")
        self.catalog = catalog or CATALOG
        self.language = language if language in self.catalog else "en"
        self.env = Environment(loader=BaseLoader(), autoescape=False)

    def t(self, key: str, **variables) -> str:
        template = self.catalog.get(self.language, {}).get(key) or self.catalog.get("en", {}).get(key)
        if template is None:
            return key
        try:
            return self.env.from_string(template).render(**variables)
        except TemplateError as e:
            self.log.warning(f"[i18n-render-error] {fmt('key', key)} {fmt('err', e)}")
            return template

    __call__ = t
