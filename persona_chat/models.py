from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
import secrets

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils.time_utils import format_local, now_local


def new_message_id() -> str:
    return secrets.token_urlsafe(12)


def _now_iso() -> str:
    return format_local(now_local())


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    STICKER = "STICKER"
    SYSTEM = "SYSTEM"


class RoomType(str, Enum):
    DIRECT = "Direct"
    GROUP = "Group"
    OPEN = "Open"


class ApiProvider(str, Enum):
    GEMINI = "gemini"
    VERTEXAI = "vertexai"
    CLAUDE = "claude"
    OPENAI = "openai"
    GROK = "grok"
    OPENROUTER = "openrouter"
    CUSTOM_OPENAI = "customOpenAI"


class PromptRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class PromptType(str, Enum):
    PLAIN = "plain"
    PLAIN_STRUCTURED = "plain-structured"
    PLAIN_UNSTRUCTURED = "plain-unstructured"
    PLAIN_GROUP = "plain-group"
    CHAT = "chat"
    LOREBOOK = "lorebook"
    AUTHOR_NOTE = "authornote"
    MEMORY = "memory"
    USER_DESCRIPTION = "userDescription"
    CHARACTER_PROMPT = "characterPrompt"
    EXTRA_SYSTEM_INSTRUCTION = "extraSystemInstruction"
    IMAGE_GENERATION = "image-generation"


# Types whose text comes from room/persona/character state rather than the item itself
CONTENT_RESOLVED_TYPES = frozenset({
    PromptType.LOREBOOK,
    PromptType.AUTHOR_NOTE,
    PromptType.MEMORY,
    PromptType.USER_DESCRIPTION,
    PromptType.CHARACTER_PROMPT,
})


# ---------- structured response (validated from provider JSON) ----------

class ImageGenerationSetting(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    is_selfie: bool = Field(
        default=False,
        validation_alias=AliasChoices("isSelfie", "isIncludingChar", "is_selfie"),
        serialization_alias="isSelfie",
    )


class MessagePart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delay: float = 0
    content: Optional[str] = None
    sticker: Optional[str] = None
    image_generation_setting: Optional[ImageGenerationSetting] = Field(default=None, alias="imageGenerationSetting")

    @field_validator("delay", mode="before")
    @classmethod
    def _delay_default(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("sticker", mode="before")
    @classmethod
    def _sticker_as_text(cls, v: Any) -> Any:
        # Models sometimes emit the numeric sticker id unquoted
        if v is None or isinstance(v, str):
            return v or None
        return str(v)


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reaction_delay: float = Field(default=0, alias="reactionDelay")
    messages: list[MessagePart] = Field(default_factory=list)
    new_memory: Optional[str] = Field(default=None, alias="newMemory")

    @field_validator("reaction_delay", mode="before")
    @classmethod
    def _non_negative(cls, v: Any) -> Any:
        if v is None:
            return 0
        try:
            return max(0.0, float(v))
        except (TypeError, ValueError):
            return v

    @field_validator("messages", mode="before")
    @classmethod
    def _messages_list(cls, v: Any) -> Any:
        return [] if v is None else v

    def combined_text(self) -> str:
        return "\n".join(p.content for p in self.messages if p.content)


# ---------- domain entities ----------

@dataclass
class Sticker:
    id: str
    name: str
    data: str = ""
    type: str = "image/png"

    @classmethod
    def from_dict(cls, entry: dict) -> "Sticker":
        return cls(
            id=str(entry["id"]),
            name=str(entry.get("name", entry["id"])),
            data=str(entry.get("data", "")),
            type=str(entry.get("type", "image/png")),
        )


@dataclass
class MessageFile:
    data_url: str
    mime_type: str
    name: str = ""

    @property
    def base64_data(self) -> str:
        return self.data_url.split(",", 1)[-1]

    @classmethod
    def from_inline(cls, mime_type: str, b64: str) -> "MessageFile":
        ext = mime_type.split("/")[-1] or "png"
        return cls(data_url=f"data:{mime_type};base64,{b64}", mime_type=mime_type, name=f"generated_image.{ext}")


@dataclass
class Message:
    id: str
    room_id: str
    author_id: int  # 0 = the human persona
    type: MessageType = MessageType.TEXT
    content: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    sticker: Optional[Sticker] = None
    file: Optional[MessageFile] = None
    image_generation_setting: Optional[ImageGenerationSetting] = None

    @classmethod
    def text(cls, room_id: str, author_id: int, content: str) -> "Message":
        return cls(id=new_message_id(), room_id=room_id, author_id=author_id, type=MessageType.TEXT, content=content)


@dataclass
class Lore:
    id: str
    name: str
    prompt: str
    activation_keys: list[str] = field(default_factory=list)
    order: int = 0
    always_active: bool = False
    multi_key: bool = False

    @classmethod
    def from_dict(cls, entry: dict) -> "Lore":
        keys = entry.get("activation_keys", entry.get("activationKeys")) or []
        if isinstance(keys, str):
            keys = [k.strip() for k in keys.split(",") if k.strip()]
        return cls(
            id=str(entry.get("id", entry.get("name", ""))),
            name=str(entry.get("name", "")),
            prompt=str(entry.get("prompt", "")),
            activation_keys=[str(k) for k in keys],
            order=int(entry.get("order", 0) or 0),
            always_active=bool(entry.get("always_active", entry.get("alwaysActive", False))),
            multi_key=bool(entry.get("multi_key", entry.get("multiKey", False))),
        )


@dataclass
class ParticipantSettings:
    is_active: bool = True
    response_probability: Optional[float] = None


@dataclass
class GroupSettings:
    response_frequency: float = 1.0
    max_responding_characters: int = 1
    response_delay: float = 3000  # ms
    participant_settings: dict[int, ParticipantSettings] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, entry: dict) -> "GroupSettings":
        raw = entry.get("participant_settings", entry.get("participantSettings")) or {}
        participants = {
            int(cid): ParticipantSettings(
                is_active=bool(ps.get("is_active", ps.get("isActive", True))),
                response_probability=ps.get("response_probability", ps.get("responseProbability")),
            )
            for cid, ps in raw.items()
        }
        return cls(
            response_frequency=float(entry.get("response_frequency", entry.get("responseFrequency", 1.0))),
            max_responding_characters=int(entry.get("max_responding_characters", entry.get("maxRespondingCharacters", 1))),
            response_delay=float(entry.get("response_delay", entry.get("responseDelay", 3000))),
            participant_settings=participants,
        )


@dataclass
class Room:
    id: str
    name: str
    member_ids: list[int]
    type: RoomType = RoomType.DIRECT
    memories: list[str] = field(default_factory=list)
    lorebook: list[Lore] = field(default_factory=list)
    author_note: Optional[str] = None
    group_settings: Optional[GroupSettings] = None

    def __post_init__(self) -> None:
        if self.type == RoomType.DIRECT and len(self.member_ids) != 1:
            raise ValueError(f"Direct room {self.id} must have exactly one member, got {len(self.member_ids)}")

    @property
    def is_direct(self) -> bool:
        return self.type == RoomType.DIRECT


@dataclass
class Character:
    id: int
    name: str
    prompt: str = ""
    lorebook: list[Lore] = field(default_factory=list)
    stickers: list[Sticker] = field(default_factory=list)
    avatar: Optional[str] = None
    # Personality sliders (1..10), surfaced through placeholders
    response_time: int = 5
    thinking_time: int = 5
    reactivity: int = 5
    tone: int = 5

    def find_sticker(self, ref: str | None) -> Optional[Sticker]:
        if not ref:
            return None
        ref = str(ref).strip()
        for s in self.stickers:
            if s.id == ref or s.name == ref:
                return s
        return None

    @classmethod
    def from_dict(cls, entry: dict) -> "Character":
        return cls(
            id=int(entry["id"]),
            name=str(entry.get("name", f"Char#{entry['id']}")),
            prompt=str(entry.get("prompt", "")),
            lorebook=[Lore.from_dict(x) for x in entry.get("lorebook", []) or []],
            stickers=[Sticker.from_dict(x) for x in entry.get("stickers", []) or []],
            avatar=entry.get("avatar"),
            response_time=int(entry.get("response_time", entry.get("responseTime", 5))),
            thinking_time=int(entry.get("thinking_time", entry.get("thinkingTime", 5))),
            reactivity=int(entry.get("reactivity", 5)),
            tone=int(entry.get("tone", 5)),
        )


@dataclass
class Persona:
    id: str
    name: str
    description: str = ""


# ---------- settings ----------

@dataclass
class PromptItem:
    name: str
    type: PromptType
    role: Optional[PromptRole] = None
    content: Optional[str] = None

    @classmethod
    def from_dict(cls, entry: dict) -> "PromptItem":
        role = entry.get("role")
        return cls(
            name=str(entry.get("name", entry.get("type", ""))),
            type=PromptType(entry.get("type", "plain")),
            role=PromptRole(role) if role else None,
            content=entry.get("content"),
        )


@dataclass
class ApiConfig:
    api_key: str = ""
    model: str = ""
    base_url: Optional[str] = None
    project_id: Optional[str] = None
    location: Optional[str] = None
    access_token: Optional[str] = None
    custom_models: list[str] = field(default_factory=list)
    # OpenRouter routing preferences
    provider_order: list[str] = field(default_factory=list)
    provider_allow_fallbacks: Optional[bool] = None


@dataclass
class PromptSettings:
    items: list[PromptItem] = field(default_factory=list)
    image_response_item: Optional[PromptItem] = None
    guidelines: str = ""
    max_context_tokens: int = 8192
    max_response_tokens: int = 2048
    temperature: float = 1.25
    top_p: float = 0.95
    top_k: Optional[int] = 40


@dataclass
class AntiEchoSettings:
    threshold: float = 0.8
    window: int = 3
    max_attempts: int = 3


@dataclass
class ChatSettings:
    api_provider: ApiProvider = ApiProvider.GEMINI
    api_configs: dict[ApiProvider, ApiConfig] = field(default_factory=dict)
    prompts: PromptSettings = field(default_factory=PromptSettings)
    use_structured_output: bool = True
    use_image_response: bool = False
    speedup: float = 2.0
    device: str = "mobile"
    anti_echo: AntiEchoSettings = field(default_factory=AntiEchoSettings)

    def active_api_config(self) -> ApiConfig:
        return self.api_configs.get(self.api_provider) or ApiConfig()
