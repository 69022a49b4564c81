"""Models layer package for message, image and generation handling."""

from .message_processor import MessageProcessor
from .image_handler import (
    ImageInput,
    ImageHandler,
    ImageProcessor,
    is_data_uri,
    is_valid_image_url,
)
from .response_generator import (
    GenerationParameters,
    ResponseGenerator,
    StreamingTokenizer,
    StopSequenceMatcher,
    TokenCounter,
)

__all__ = [
    # Message processing
    "MessageProcessor",
    # Image processing
    "ImageInput",
    "ImageHandler",
    "ImageProcessor",
    "is_data_uri",
    "is_valid_image_url",
    # Generation
    "GenerationParameters",
    "ResponseGenerator",
    "StreamingTokenizer",
    "StopSequenceMatcher",
    "TokenCounter",
]
