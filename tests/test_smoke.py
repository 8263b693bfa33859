from enum import Enum
from pathlib import Path

import pytest

from persona_chat.errors import ConfigurationError
from persona_chat.i18n import Translator
from persona_chat.llm.registry import adapter_for
from persona_chat.models import ApiProvider, ChatResponse, Room, RoomType
from persona_chat.utils.logfmt import fmt, preview

ROOT = Path(__file__).resolve().parents[1]


def test_config_templates_exist():
    assert (ROOT / "config.example.yaml").exists(), "config.example.yaml should be in repo"
    assert (ROOT / ".env.example").exists(), ".env.example should be in repo"


def test_import_core_modules():
    import persona_chat.app  # noqa: F401
    import persona_chat.chat_orchestrator  # noqa: F401
    import persona_chat.config_service  # noqa: F401


def test_every_provider_has_an_adapter():
    for provider in ApiProvider:
        assert adapter_for(provider).provider == provider


def test_unknown_provider_rejected():
    with pytest.raises(ConfigurationError):
        adapter_for("llama")


def test_translator_fallbacks():
    ko = Translator("ko")
    assert ko.t("llm.generationFailed", reason="x") == "응답 생성에 실패했습니다. (이유: x)"
    assert Translator("fr").language == "en"
    assert ko.t("no.such.key") == "no.such.key"


def test_logfmt_values():
    class Color(Enum):
        RED = "red"

    assert fmt("ok", True) == "ok=true"
    assert fmt("n", 3) == "n=3"
    assert fmt("c", Color.RED) == 'c="red"'
    assert fmt("none", None) == "none=NA"
    assert fmt("s", 'say "hi"') == 's="say \\"hi\\""'
    assert preview("a\n  b", 80) == "a b"
    assert preview("x" * 100, 10) == "xxxxxxx..."


def test_direct_room_needs_one_member():
    with pytest.raises(ValueError):
        Room(id="d", name="D", member_ids=[1, 2], type=RoomType.DIRECT)


def test_chat_response_defaults():
    res = ChatResponse.model_validate({"reactionDelay": None, "messages": None})
    assert res.reaction_delay == 0
    assert res.messages == []
