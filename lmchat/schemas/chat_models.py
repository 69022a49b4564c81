"""Conversation and model configuration models."""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Role(str, Enum):
    """Role of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"


class SessionState(Enum):
    """Generation state of a chat session."""
    IDLE = "idle"
    GENERATING = "generating"


class ModelKind(str, Enum):
    """Family of model a container holds."""
    LLM = "llm"
    VLM = "vlm"


class Turn(BaseModel):
    """One exchange unit in a conversation.

    ``image`` holds the decoded ``PIL.Image.Image`` attached to a user turn,
    so later generation calls can re-send it without resolving its source again.
    """
    role: Role = Field(..., description="Role of the turn author")
    content: str = Field(..., description="Text content of the turn")
    image: Optional[Any] = Field(None, description="Decoded image attached to the turn")

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @model_validator(mode='after')
    def validate_image_role(self):
        """Only user turns may carry an image."""
        if self.image is not None and self.role != Role.USER:
            raise ValueError("only user turns can carry an image")
        return self

    @property
    def has_image(self) -> bool:
        return self.image is not None

    @classmethod
    def user(cls, content: str, image: Optional[Any] = None) -> "Turn":
        return cls(role=Role.USER, content=content, image=image)

    @classmethod
    def assistant(cls, content: str) -> "Turn":
        return cls(role=Role.ASSISTANT, content=content)


class ModelConfiguration(BaseModel):
    """Identifies a model to load and how to load it."""
    id: str = Field(..., description="Hugging Face repo id or local path")
    revision: Optional[str] = Field(None, description="Model revision to load")
    device: Optional[str] = Field(None, description="Device override (cpu, cuda, mps)")
    trust_remote_code: bool = Field(
        default=True,
        description="Allow model repositories to ship custom code"
    )
    quantize: bool = Field(
        default=False,
        description="Load weights in 4-bit when bitsandbytes is available"
    )

    model_config = ConfigDict(frozen=True)

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        """Model id must not be blank."""
        if not v or not v.strip():
            raise ValueError("model id cannot be empty")
        return v.strip()

    @property
    def cache_key(self) -> str:
        return f"{self.id}@{self.revision}" if self.revision else self.id


class Usage(BaseModel):
    """Token usage information."""
    prompt_tokens: int = Field(..., description="Number of tokens in the prompt")
    completion_tokens: int = Field(..., description="Number of tokens in the completion")
    total_tokens: int = Field(..., description="Total number of tokens")

    @model_validator(mode='after')
    def validate_total_tokens(self):
        """Ensure total_tokens equals prompt_tokens + completion_tokens."""
        if self.total_tokens != self.prompt_tokens + self.completion_tokens:
            raise ValueError("total_tokens must equal prompt_tokens + completion_tokens")
        return self
