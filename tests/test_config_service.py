import os
import time
from pathlib import Path

import pytest

from persona_chat.config_service import ConfigService
from persona_chat.errors import ConfigurationError
from persona_chat.models import ApiProvider, PromptType, RoomType

ROOT = Path(__file__).resolve().parents[1]


def test_example_config_loads():
    cfg = ConfigService(ROOT / "config.example.yaml")
    settings = cfg.chat_settings()
    assert settings.api_provider == ApiProvider.GEMINI
    assert settings.active_api_config().model == "gemini-2.5-flash"
    assert settings.anti_echo.max_attempts == 3
    # no prompts.items in the example: built-in list ends with the chat history
    assert settings.prompts.items[-1].type == PromptType.CHAT
    assert settings.prompts.image_response_item.type == PromptType.IMAGE_GENERATION
    rooms = {r.id: r for r in cfg.rooms()}
    assert rooms["friends"].type == RoomType.GROUP
    assert rooms["friends"].group_settings.participant_settings[2].response_probability == 0.7
    assert [c.name for c in cfg.characters()] == ["Mira", "Juno"]
    assert cfg.persona().name == "Alex"


def test_env_reference_and_fallback(monkeypatch):
    monkeypatch.setenv("MY_CLAUDE_KEY", "from-ref")
    monkeypatch.setenv("OPENAI_API_KEY", "from-env")
    cfg = ConfigService.from_dict({
        "api_provider": "claude",
        "api_configs": {
            "claude": {"api_key": "${MY_CLAUDE_KEY}", "model": "claude-sonnet-4-5"},
            "openai": {"model": "gpt-4o"},
        },
    })
    settings = cfg.chat_settings()
    assert settings.active_api_config().api_key == "from-ref"
    assert settings.api_configs[ApiProvider.OPENAI].api_key == "from-env"


def test_unknown_provider_is_a_configuration_error():
    cfg = ConfigService.from_dict({"api_provider": "llama"})
    with pytest.raises(ConfigurationError):
        cfg.chat_settings()


def test_missing_file():
    with pytest.raises(ConfigurationError):
        ConfigService("/nonexistent/config.yaml")


def test_hot_reload(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("speedup: 2.0\n", encoding="utf-8")
    cfg = ConfigService(p)
    assert cfg.chat_settings().speedup == 2.0
    p.write_text("speedup: 4.0\n", encoding="utf-8")
    # make sure the mtime moves even on coarse filesystems
    later = time.time() + 5
    os.utime(p, (later, later))
    assert cfg.chat_settings().speedup == 4.0


def test_broken_reload_keeps_previous(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("language: ko\n", encoding="utf-8")
    cfg = ConfigService(p)
    p.write_text("language: [unclosed\n", encoding="utf-8")
    later = time.time() + 5
    os.utime(p, (later, later))
    assert cfg.language() == "ko"


def test_custom_prompt_items():
    cfg = ConfigService.from_dict({"prompts": {"items": [{"name": "h", "type": "chat"}], "top_k": 0}})
    prompts = cfg.prompt_settings()
    assert [i.type for i in prompts.items] == [PromptType.CHAT]
    assert prompts.top_k is None


def test_extra_lorebook_paths(tmp_path):
    lore = tmp_path / "world.md"
    lore.write_text("# World\nFlat.\n", encoding="utf-8")
    cfg = ConfigService.from_dict({
        "lore": {"paths": [str(lore)]},
        "rooms": [{"id": "d", "member_ids": [1]}],
    })
    (room,) = cfg.rooms()
    assert [l.name for l in room.lorebook] == ["World"]
