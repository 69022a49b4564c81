"""Chat session: multi-turn conversation state over a shared model container."""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, List, Optional, Set, Tuple

from lmchat.models.image_handler import ImageHandler
from lmchat.models.message_processor import MessageProcessor
from lmchat.models.response_generator import GenerationParameters
from lmchat.schemas.chat_models import SessionState, Turn
from lmchat.schemas.error_models import (
    LMChatError,
    NotReadyError,
    BusyError,
    InvalidImageError,
    GenerationError,
    ValidationError,
)


logger = logging.getLogger(__name__)


# Close tasks for dropped streams, kept alive until they finish
_background_closes: Set[asyncio.Task] = set()


class _Claim:
    """Ownership of a session by one generation call."""

    __slots__ = ("mark",)

    def __init__(self):
        self.mark = 0


class ResponseStream:
    """Async iterator over one streamed response.

    Closing the stream, letting it fail, or dropping it before it completes
    all release the session and restore its history. A dropped stream
    releases the session immediately; the backend stream is then closed in
    the background.
    """

    def __init__(self, session: "ChatSession", prompt: str, image: Any):
        self._session = session
        self._claim = _Claim()
        self._generator = session._stream(self._claim, prompt, image)

    def __aiter__(self) -> "ResponseStream":
        return self

    def __anext__(self):
        return self._generator.__anext__()

    async def aclose(self) -> None:
        """Stop the stream and release the session."""
        await self._generator.aclose()

    def __del__(self):
        if not self._session._release(self._claim, rollback=True):
            return
        logger.info("Stream dropped before completion, session released")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to close on; the generator finalizer takes over
            return
        task = loop.create_task(self._generator.aclose())
        _background_closes.add(task)
        task.add_done_callback(_background_closes.discard)


class ChatSession:
    """Keeps the turns of one conversation and sends them with every prompt.

    A session accepts one generation call at a time; a call made while
    another is running raises ``BusyError``. Instructions are sent as a
    system message on every call and never appear in ``history``.

    Example:
        container = await LLMModelFactory().load_container()
        session = ChatSession(container, instructions="Answer briefly.")
        answer = await session.respond("What is 2+2?")
    """

    def __init__(
        self,
        model,
        instructions: Optional[str] = None,
        parameters: Optional[GenerationParameters] = None,
        image_handler: Optional[ImageHandler] = None
    ):
        """Initialize ChatSession.

        Args:
            model: Loaded ``ModelContainer`` (or any object with the same interface)
            instructions: System instructions applied to every generation call
            parameters: Generation parameters, defaults from settings
            image_handler: Resolver for image sources; a temporary one is
                created per call when omitted

        Raises:
            NotReadyError: If ``model`` is missing or not loaded
        """
        if model is None or not model.is_loaded():
            raise NotReadyError("Model must be loaded before creating a chat session")

        self._model = model
        self._instructions = instructions
        self._parameters = parameters or GenerationParameters.from_settings()
        self._image_handler = image_handler
        self._turns: List[Turn] = []
        self._owner: Optional[_Claim] = None
        self.message_processor = MessageProcessor()

    @property
    def model(self):
        return self._model

    @property
    def instructions(self) -> Optional[str]:
        return self._instructions

    @property
    def parameters(self) -> GenerationParameters:
        return self._parameters

    @property
    def state(self) -> SessionState:
        return SessionState.IDLE if self._owner is None else SessionState.GENERATING

    @property
    def history(self) -> Tuple[Turn, ...]:
        """Snapshot of the conversation turns in chronological order."""
        return tuple(self._turns)

    async def respond(self, prompt: str, image: Any = None) -> str:
        """Send a prompt and return the complete response.

        If generation fails before any text is produced, the user turn is
        removed again. If it fails after partial output, the user turn stays
        and the partial text is discarded.

        Args:
            prompt: User prompt text
            image: Optional image source (see ``ImageInput.coerce``)

        Returns:
            Full response text, also recorded as an assistant turn

        Raises:
            BusyError: If the session is already generating
            NotReadyError: If the model is no longer loaded
            InvalidImageError: If the image cannot be used
            GenerationError: If the backend fails
        """
        self._check_request(prompt, image)
        claim = _Claim()
        self._acquire(claim)
        try:
            self._turns.append(Turn.user(prompt, await self._resolve_image(image)))

            pieces = []
            try:
                async with aclosing(self._generate()) as stream:
                    async for fragment in stream:
                        pieces.append(fragment)
            except BaseException:
                if not pieces:
                    del self._turns[claim.mark:]
                    logger.info("Generation produced no output, user turn rolled back")
                else:
                    logger.info(f"Generation failed after {len(pieces)} fragments, partial output discarded")
                raise

            response = "".join(pieces)
            self._turns.append(Turn.assistant(response))
            return response
        finally:
            self._release(claim)

    def stream_response(self, prompt: str, image: Any = None) -> ResponseStream:
        """Send a prompt and stream the response as text fragments.

        The returned stream is single-use. The session is claimed when
        iteration starts; when the stream completes, the concatenated
        fragments are recorded as one assistant turn. If the stream fails, is
        closed, or is dropped early, history is restored to its length
        before the call.

        Args:
            prompt: User prompt text
            image: Optional image source (see ``ImageInput.coerce``)

        Returns:
            ``ResponseStream`` of text fragments

        Raises:
            BusyError: If the session is already generating
            NotReadyError: If the model is no longer loaded
            InvalidImageError: If images are not supported by the model
        """
        self._check_request(prompt, image)
        return ResponseStream(self, prompt, image)

    async def _stream(self, claim: _Claim, prompt: str, image: Any) -> AsyncGenerator[str, None]:
        self._acquire(claim)
        try:
            self._turns.append(Turn.user(prompt, await self._resolve_image(image)))

            pieces = []
            async with aclosing(self._generate()) as stream:
                async for fragment in stream:
                    pieces.append(fragment)
                    yield fragment

            self._turns.append(Turn.assistant("".join(pieces)))
        except BaseException:
            self._release(claim, rollback=True)
            raise
        finally:
            self._release(claim)

    async def _generate(self) -> AsyncGenerator[str, None]:
        messages, images = self.message_processor.build_messages(self._turns, self._instructions)
        try:
            async with aclosing(
                self._model.stream_generate(messages, images, self._parameters)
            ) as stream:
                async for fragment in stream:
                    yield fragment
        except LMChatError:
            raise
        except Exception as e:
            logger.error(f"Model generation failed: {e}")
            raise GenerationError(f"Model generation failed: {str(e)}", cause=e) from e

    def _acquire(self, claim: _Claim) -> None:
        if self._owner is not None:
            raise BusyError()
        self._owner = claim
        claim.mark = len(self._turns)

    def _release(self, claim: _Claim, rollback: bool = False) -> bool:
        """Give up ``claim`` if it still owns the session.

        Returns:
            Whether the claim was still the owner
        """
        if self._owner is not claim:
            return False
        if rollback and len(self._turns) > claim.mark:
            del self._turns[claim.mark:]
            logger.info("Stream did not complete, history rolled back")
        self._owner = None
        return True

    def _check_request(self, prompt: str, image: Any) -> None:
        if self._owner is not None:
            raise BusyError()

        if not isinstance(prompt, str):
            raise ValidationError("Prompt must be a string", param="prompt")

        self._model.ensure_loaded()

        if image is not None and not getattr(self._model, "supports_images", False):
            raise InvalidImageError("Model does not accept images")

    async def _resolve_image(self, image: Any):
        if image is None:
            return None
        if self._image_handler is not None:
            return await self._image_handler.resolve(image)
        async with ImageHandler() as handler:
            return await handler.resolve(image)
