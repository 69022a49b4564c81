"""Error payload models and the chat session exception hierarchy."""

from typing import Optional, Any, Dict
from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Structured error detail."""
    message: str = Field(..., description="Human-readable error message")
    type: str = Field(..., description="Error type identifier")
    param: Optional[str] = Field(None, description="Parameter that caused the error")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")


class ErrorResponse(BaseModel):
    """Error envelope returned by ``LMChatError.to_dict``."""
    error: ErrorDetail = Field(..., description="Error details")


# Custom Exception Classes
class LMChatError(Exception):
    """Base exception for all chat session and model errors."""

    error_type = "lmchat_error"

    def __init__(
        self,
        message: str,
        param: Optional[str] = None,
        code: Optional[str] = None
    ):
        self.message = message
        self.param = param
        self.code = code
        super().__init__(message)

    @property
    def detail(self) -> ErrorDetail:
        return ErrorDetail(
            message=self.message,
            type=self.error_type,
            param=self.param,
            code=self.code
        )

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as an ``ErrorResponse`` dictionary."""
        return ErrorResponse(error=self.detail).model_dump()


class NotReadyError(LMChatError):
    """Model handle is not loaded or otherwise unusable."""

    error_type = "not_ready"

    def __init__(
        self,
        message: str = "Model is not ready",
        code: Optional[str] = None
    ):
        super().__init__(message=message, code=code)


class BusyError(LMChatError):
    """A generation call was attempted while another one is in progress."""

    error_type = "busy"

    def __init__(
        self,
        message: str = "Session is already generating a response",
        code: Optional[str] = None
    ):
        super().__init__(message=message, code=code)


class InvalidImageError(LMChatError):
    """Image could not be decoded, cropped to a valid region, or used."""

    error_type = "invalid_image"

    def __init__(
        self,
        message: str = "Failed to process image",
        param: str = "image",
        code: Optional[str] = None
    ):
        super().__init__(message=message, param=param, code=code)


class GenerationError(LMChatError):
    """Backend failure during text generation."""

    error_type = "generation_error"

    def __init__(
        self,
        message: str = "Model generation failed",
        cause: Optional[BaseException] = None,
        code: Optional[str] = None
    ):
        self.cause = cause
        super().__init__(message=message, code=code)


class LoadError(LMChatError):
    """Model artifacts could not be loaded."""

    error_type = "load_error"

    def __init__(
        self,
        message: str = "Failed to load model",
        model_id: Optional[str] = None,
        code: Optional[str] = None
    ):
        self.model_id = model_id
        super().__init__(message=message, param="model_id" if model_id else None, code=code)


class ValidationError(LMChatError):
    """Invalid prompt or generation parameter."""

    error_type = "invalid_request_error"


# Utility functions for creating error responses
def create_error_response(
    message: str,
    error_type: str,
    param: Optional[str] = None,
    code: Optional[str] = None
) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    error_detail = ErrorDetail(
        message=message,
        type=error_type,
        param=param,
        code=code
    )
    error_response = ErrorResponse(error=error_detail)
    return error_response.model_dump()
