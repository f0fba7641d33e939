from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# --- Closed vocabularies ---


class Backend(str, Enum):
    """The two model backends. ``GEMINI`` is the reliable one, ``OPENAI`` the creative one."""

    GEMINI = "gemini"
    OPENAI = "openai"

    @property
    def other(self) -> "Backend":
        return Backend.OPENAI if self is Backend.GEMINI else Backend.GEMINI


class Mode(str, Enum):
    """Routing mode requested by the caller (or auto-detected from ``DEFAULT``)."""

    DEFAULT = "default"
    GEMINI = "gemini"
    OPENAI = "openai"
    CREATIVE = "creative"
    DEBUG = "debug"
    ASK_OTHER = "ask-other"
    CRITIC = "critic"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# --- Inbound request ---


class Turn(BaseModel):
    """One prior message of the conversation."""

    role: Role = Field(default=Role.USER)
    content: str = Field(default="")
    image: Optional[str] = Field(
        default=None,
        description="Optional base64 data URL (data:<mime>;base64,<payload>) attached to the turn.",
    )


class GameConfig(BaseModel):
    """Survey answers describing the game the user wants."""

    game_type: Optional[str] = Field(default=None, description="Genre chosen in the survey, e.g. 'platformer'.")
    dimension: str = Field(default="2d")
    theme: Optional[str] = Field(default=None)
    character: Optional[str] = Field(default=None)
    obstacles: Optional[str] = Field(default=None)
    visual_style: Optional[str] = Field(default=None)
    custom_notes: Optional[str] = Field(default=None)


class GenerationRequest(BaseModel):
    """Everything the engine needs for a single generate/iterate call."""

    prompt: str = Field(default="")
    image: Optional[str] = Field(default=None)
    current_code: Optional[str] = Field(
        default=None, description="Current artifact; None means a brand-new game."
    )
    history: List[Turn] = Field(default_factory=list)
    config: Optional[GameConfig] = Field(default=None)
    mode: Mode = Field(default=Mode.DEFAULT)
    last_model_used: Optional[Backend] = Field(default=None)
    debug_attempt: int = Field(default=0, ge=0)
    accounting_id: Optional[str] = Field(default=None, description="Account the usage is billed to.")


# --- Model call outputs ---


class ModelUsage(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cached_input_tokens: int = Field(default=0, ge=0)


class ModelResult(BaseModel):
    """Normalized output of one adapter call."""

    text: str
    usage: ModelUsage = Field(default_factory=ModelUsage)
    backend: Backend


# --- Outbound result ---


class DebugInfo(BaseModel):
    attempts: int
    final_model: Backend


class AlternateResponse(BaseModel):
    """Side-by-side result shown next to the primary one (the critique in critic mode)."""

    response: str
    code: Optional[str] = None
    model_used: Backend


class GenerationResult(BaseModel):
    response: str
    code: Optional[str] = None
    model_used: Backend
    is_cache_hit: bool = False
    was_truncated: bool = False
    debug_info: Optional[DebugInfo] = None
    alternate_response: Optional[AlternateResponse] = None
    reference_sources: List[str] = Field(default_factory=list)


# --- Cache records ---


class CacheEntry(BaseModel):
    """Exact-match response cache record."""

    response: str
    code: Optional[str] = None
    model: Backend
    created_at: float
    last_accessed: float
    hit_count: int = 0


class PatternEntry(BaseModel):
    """What worked the last time a request of this kind succeeded."""

    hint: str
    success_count: int = 1
    last_updated: float
    last_prompt: str = ""
