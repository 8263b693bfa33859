from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
from typing import Any, Optional

import yaml

from .errors import ConfigurationError
from .logger_factory import get_logger, set_log_levels
from .lore_service import load_lorebook
from .models import (
    AntiEchoSettings,
    ApiConfig,
    ApiProvider,
    ChatSettings,
    Character,
    GroupSettings,
    Lore,
    Persona,
    PromptItem,
    PromptSettings,
    Room,
    RoomType,
)
from .prompt_defaults import default_image_response_item, default_prompt_items

# Environment fallbacks when api_configs.<provider>.api_key is empty
API_KEY_ENV = {
    ApiProvider.GEMINI: "GEMINI_API_KEY",
    ApiProvider.VERTEXAI: "VERTEX_ACCESS_TOKEN",
    ApiProvider.CLAUDE: "ANTHROPIC_API_KEY",
    ApiProvider.OPENAI: "OPENAI_API_KEY",
    ApiProvider.GROK: "XAI_API_KEY",
    ApiProvider.OPENROUTER: "OPENROUTER_API_KEY",
    ApiProvider.CUSTOM_OPENAI: "CUSTOM_OPENAI_API_KEY",
}

_ENV_REF = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


@dataclass
class Config:
    raw: dict


def _expand_env(value: Any) -> Any:
    """Resolve "${NAME}" values from the environment (populated from .env by the entry point)."""
    if isinstance(value, str):
        m = _ENV_REF.match(value.strip())
        if m:
            return os.getenv(m.group(1), "")
    return value


class ConfigService:
    """YAML-backed settings with mtime-based hot reload.

    Accessors re-check the file on every call so edits apply without a restart;
    a broken edit keeps the previous config.
    """

    def __init__(self, path: str | Path):
        self.log = get_logger("ConfigService")
        self._path = Path(path)
        if not self._path.exists():
            raise ConfigurationError(f"Config file not found: {self._path}")
        with self._path.open("r", encoding="utf-8") as f:
            self._cfg = Config(raw=yaml.safe_load(f) or {})
        try:
            self._mtime_ns = self._path.stat().st_mtime_ns
        except OSError:
            self._mtime_ns = 0
        self._lore_cache: dict[str, tuple[int, list[Lore]]] = {}

    @classmethod
    def from_dict(cls, raw: dict) -> "ConfigService":
        """In-memory config (no file, no reload)."""
        inst = cls.__new__(cls)
        inst.log = get_logger("ConfigService")
        inst._path = Path("<memory>")
        inst._cfg = Config(raw=raw or {})
        inst._mtime_ns = 0
        inst._lore_cache = {}
        return inst

    def _maybe_reload(self) -> None:
        try:
            m = self._path.stat().st_mtime_ns
        except OSError:
            return
        if m != self._mtime_ns:
            try:
                with self._path.open("r", encoding="utf-8") as f:
                    self._cfg = Config(raw=yaml.safe_load(f) or {})
                self._mtime_ns = m
                self.log.info(f"[config-reloaded] path={self._path}")
                log_cfg = self.logging()
                set_log_levels(log_cfg["level"], log_cfg["lib_level"])
            except (OSError, yaml.YAMLError) as e:
                # On read error, keep previous config
                self.log.error(f"[config-reload-failed] path={self._path} err={e}")

    def _section(self, name: str) -> dict:
        self._maybe_reload()
        value = self._cfg.raw.get(name)
        return value if isinstance(value, dict) else {}

    # ---------- provider ----------
    def api_provider(self) -> ApiProvider:
        self._maybe_reload()
        raw = self._cfg.raw.get("api_provider", ApiProvider.GEMINI.value)
        try:
            return ApiProvider(raw)
        except ValueError as e:
            raise ConfigurationError(f"Unknown api_provider '{raw}' (expected one of {[p.value for p in ApiProvider]})") from e

    def api_config(self, provider: ApiProvider) -> ApiConfig:
        entry = self._section("api_configs").get(provider.value) or {}
        key = _expand_env(entry.get("api_key")) or os.getenv(API_KEY_ENV[provider], "")
        token = _expand_env(entry.get("access_token"))
        if provider == ApiProvider.VERTEXAI and not token:
            token = os.getenv(API_KEY_ENV[provider], "")
        return ApiConfig(
            api_key=key or "",
            model=str(entry.get("model", "") or ""),
            base_url=_expand_env(entry.get("base_url")) or None,
            project_id=_expand_env(entry.get("project_id")) or None,
            location=entry.get("location") or None,
            access_token=token or None,
            custom_models=[str(m) for m in entry.get("custom_models", []) or []],
            provider_order=[str(p) for p in entry.get("provider_order", []) or []],
            provider_allow_fallbacks=entry.get("provider_allow_fallbacks"),
        )

    # ---------- prompts ----------
    def prompt_settings(self) -> PromptSettings:
        p = self._section("prompts")
        items_raw = p.get("items")
        items = [PromptItem.from_dict(x) for x in items_raw] if isinstance(items_raw, list) and items_raw else default_prompt_items()
        image_raw = p.get("image_response_item")
        image_item = PromptItem.from_dict(image_raw) if isinstance(image_raw, dict) else default_image_response_item()
        top_k = p.get("top_k", 40)
        return PromptSettings(
            items=items,
            image_response_item=image_item,
            guidelines=str(p.get("guidelines", "") or ""),
            max_context_tokens=int(p.get("max_context_tokens", 8192)),
            max_response_tokens=int(p.get("max_response_tokens", 2048)),
            temperature=float(p.get("temperature", 1.25)),
            top_p=float(p.get("top_p", 0.95)),
            top_k=int(top_k) if top_k else None,
        )

    def anti_echo(self) -> AntiEchoSettings:
        a = self._section("anti_echo")
        return AntiEchoSettings(
            threshold=float(a.get("threshold", 0.8)),
            window=int(a.get("window", 3)),
            max_attempts=int(a.get("max_attempts", 3)),
        )

    def chat_settings(self) -> ChatSettings:
        self._maybe_reload()
        raw = self._cfg.raw
        provider = self.api_provider()
        return ChatSettings(
            api_provider=provider,
            api_configs={p: self.api_config(p) for p in ApiProvider},
            prompts=self.prompt_settings(),
            use_structured_output=bool(raw.get("use_structured_output", True)),
            use_image_response=bool(raw.get("use_image_response", False)),
            speedup=float(raw.get("speedup", 2.0)),
            device=str(raw.get("device", "mobile")),
            anti_echo=self.anti_echo(),
        )

    # ---------- cast ----------
    def characters(self) -> list[Character]:
        return [Character.from_dict(x) for x in self._entries("characters")]

    def persona(self) -> Optional[Persona]:
        p = self._section("persona")
        if not p.get("name"):
            return None
        return Persona(id=str(p.get("id", "persona")), name=str(p["name"]), description=str(p.get("description", "") or ""))

    def rooms(self) -> list[Room]:
        shared = self.extra_lorebook()
        out: list[Room] = []
        for entry in self._entries("rooms"):
            gs = entry.get("group_settings")
            out.append(Room(
                id=str(entry["id"]),
                name=str(entry.get("name", entry["id"])),
                member_ids=[int(m) for m in entry.get("member_ids", []) or []],
                type=RoomType(entry.get("type", RoomType.DIRECT.value)),
                memories=[str(m) for m in entry.get("memories", []) or []],
                lorebook=[Lore.from_dict(x) for x in entry.get("lorebook", []) or []] + shared,
                author_note=entry.get("author_note"),
                group_settings=GroupSettings.from_dict(gs) if isinstance(gs, dict) else None,
            ))
        return out

    def _entries(self, name: str) -> list[dict]:
        self._maybe_reload()
        value = self._cfg.raw.get(name)
        return [x for x in value if isinstance(x, dict)] if isinstance(value, list) else []

    # ---------- misc ----------
    def language(self) -> str:
        self._maybe_reload()
        return str(self._cfg.raw.get("language", "en"))

    def logging(self) -> dict:
        self._maybe_reload()
        raw = self._cfg.raw
        section = raw.get("logging") if isinstance(raw.get("logging"), dict) else {}
        return {
            "level": os.getenv("LOG_LEVEL") or section.get("level") or raw.get("LOG_LEVEL", "INFO"),
            "lib_level": os.getenv("LIB_LOG_LEVEL") or section.get("lib_level") or raw.get("LIB_LOG_LEVEL"),
            "tz": section.get("tz") or raw.get("LOG_TZ", "system"),
            "console_to_file": section.get("console_to_file", raw.get("LOG_CONSOLE")),
            "error_file": section.get("error_file", raw.get("LOG_ERRORS")),
        }

    def extra_lorebook(self) -> list[Lore]:
        """Entries from ``lore.paths`` files, cached per file until it changes."""
        paths = self._section("lore").get("paths") or []
        out: list[Lore] = []
        for p in paths:
            path = Path(str(p))
            try:
                mtime = path.stat().st_mtime_ns
            except OSError:
                self.log.warning(f"[lore-path-missing] path={path}")
                continue
            cached = self._lore_cache.get(str(path))
            if cached is None or cached[0] != mtime:
                cached = (mtime, load_lorebook(path))
                self._lore_cache[str(path)] = cached
            out.extend(cached[1])
        return out

    def raw(self, key: str, default: Optional[Any] = None) -> Any:
        self._maybe_reload()
        return self._cfg.raw.get(key, default)
