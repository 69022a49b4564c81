"""Configuration management for chat sessions and model loading."""

import logging
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Library settings with environment variable support."""

    # Model configuration
    llm_model_id: str = Field(
        default="Qwen/Qwen3-4B-Instruct-2507",
        description="Default Hugging Face model id for text-only sessions"
    )
    vlm_model_id: str = Field(
        default="Qwen/Qwen3-VL-4B-Instruct",
        description="Default Hugging Face model id for vision-language sessions"
    )
    model_revision: Optional[str] = Field(
        default=None,
        description="Model revision (branch, tag or commit) to load"
    )

    # Device configuration
    device: str = Field(
        default="auto",
        description="Device to use for inference (auto, cpu, cuda, mps)"
    )
    gpu_memory_fraction: float = Field(
        default=0.9,
        description="Fraction of GPU memory to use"
    )

    # Generation defaults
    default_temperature: float = Field(
        default=0.7,
        description="Default temperature for text generation"
    )
    default_max_tokens: int = Field(
        default=512,
        description="Default maximum tokens for generation"
    )
    default_top_p: float = Field(
        default=1.0,
        description="Default top_p for nucleus sampling"
    )
    default_top_k: int = Field(
        default=50,
        description="Default top_k for sampling"
    )
    default_repetition_penalty: float = Field(
        default=1.0,
        description="Default repetition penalty"
    )

    # Timeouts
    load_timeout: float = Field(
        default=300.0,
        description="Seconds a harness waits for models to become ready"
    )
    stream_timeout: float = Field(
        default=120.0,
        description="Seconds to wait for the next streamed fragment"
    )

    # Image configuration
    max_image_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum encoded image size in bytes"
    )
    max_image_dimension: int = Field(
        default=1024,
        description="Longest side of an image handed to the model"
    )
    image_fetch_timeout: float = Field(
        default=30.0,
        description="HTTP timeout in seconds for image URLs"
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for applications embedding lmchat.

    Args:
        level: Logging level name, defaults to ``settings.log_level``
    """
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


# Global settings instance
settings = Settings()
