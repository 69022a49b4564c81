"""Services layer package for chat sessions and model management."""

from .model_container import ModelContainer, ModelStatus
from .model_factory import (
    ModelFactory,
    LLMModelFactory,
    VLMModelFactory,
    wait_for_containers,
)
from .chat_session import ChatSession, ResponseStream

__all__ = [
    "ModelContainer",
    "ModelStatus",
    "ModelFactory",
    "LLMModelFactory",
    "VLMModelFactory",
    "wait_for_containers",
    "ChatSession",
    "ResponseStream",
]
