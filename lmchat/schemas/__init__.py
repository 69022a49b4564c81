"""Pydantic schemas package for conversation models and errors."""

from .chat_models import (
    Role,
    SessionState,
    ModelKind,
    Turn,
    ModelConfiguration,
    Usage,
)
from .error_models import (
    ErrorDetail,
    ErrorResponse,
    LMChatError,
    NotReadyError,
    BusyError,
    InvalidImageError,
    GenerationError,
    LoadError,
    ValidationError,
    create_error_response,
)

__all__ = [
    # Conversation models
    "Role",
    "SessionState",
    "ModelKind",
    "Turn",
    "ModelConfiguration",
    "Usage",
    # Error models
    "ErrorDetail",
    "ErrorResponse",
    # Exception classes
    "LMChatError",
    "NotReadyError",
    "BusyError",
    "InvalidImageError",
    "GenerationError",
    "LoadError",
    "ValidationError",
    # Utility functions
    "create_error_response",
]
