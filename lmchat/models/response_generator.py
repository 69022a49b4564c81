"""Response generation engine for streamed model inference and token accounting."""

import asyncio
import copy
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing
from typing import Dict, Any, List, Optional, AsyncGenerator, Sequence, Tuple
import torch
from transformers import (
    GenerationConfig,
    StoppingCriteria,
    StoppingCriteriaList,
    TextIteratorStreamer,
)
from threading import Thread

from lmchat.config import settings
from lmchat.schemas.chat_models import Usage
from lmchat.schemas.error_models import GenerationError, ValidationError


logger = logging.getLogger(__name__)


_STREAM_END = object()


class CancellationCriteria(StoppingCriteria):
    """Stops generation at the next token once ``event`` is set."""

    def __init__(self, event: threading.Event):
        self.event = event

    def __call__(self, input_ids: torch.LongTensor, scores: torch.FloatTensor, **kwargs) -> torch.BoolTensor:
        return torch.full(
            (input_ids.shape[0],),
            self.event.is_set(),
            dtype=torch.bool,
            device=input_ids.device
        )


class StopSequenceMatcher:
    """Cuts a fragment stream at the first stop sequence.

    Text that could still be the beginning of a stop sequence is held back
    until the next fragment decides it, so matches spanning fragment
    boundaries are found.
    """

    def __init__(self, stop_sequences: Sequence[str] = ()):
        self.stop_sequences = [s for s in stop_sequences if s]
        self.holdback = max((len(s) for s in self.stop_sequences), default=1) - 1
        self.buffer = ""
        self.stopped = False

    def feed(self, text: str) -> Tuple[str, bool]:
        """Add a fragment; return the text safe to emit and whether a stop was hit."""
        if self.stopped:
            return "", True

        self.buffer += text
        if not self.stop_sequences:
            emitted, self.buffer = self.buffer, ""
            return emitted, False

        min_index = -1
        for stop_seq in self.stop_sequences:
            index = self.buffer.find(stop_seq)
            if index != -1 and (min_index == -1 or index < min_index):
                min_index = index

        if min_index != -1:
            emitted = self.buffer[:min_index]
            self.buffer = ""
            self.stopped = True
            return emitted, True

        safe_length = max(0, len(self.buffer) - self.holdback)
        emitted, self.buffer = self.buffer[:safe_length], self.buffer[safe_length:]
        return emitted, False

    def flush(self) -> str:
        """Return any held-back text at end of stream."""
        emitted, self.buffer = self.buffer, ""
        return "" if self.stopped else emitted


class StreamingTokenizer:
    """Handles token-by-token streaming generation."""

    def __init__(self, tokenizer, model, timeout: Optional[float] = None):
        """Initialize StreamingTokenizer.

        Args:
            tokenizer: Hugging Face tokenizer used to decode streamed tokens
            model: Hugging Face model
            timeout: Seconds to wait for each streamed fragment
        """
        self.tokenizer = tokenizer
        self.model = model
        self.timeout = timeout or settings.stream_timeout
        self.streamer = None

    def create_streamer(self, skip_prompt: bool = True) -> TextIteratorStreamer:
        """Create a TextIteratorStreamer for token streaming.

        Args:
            skip_prompt: Whether to skip prompt tokens in output

        Returns:
            TextIteratorStreamer instance
        """
        self.streamer = TextIteratorStreamer(
            self.tokenizer,
            skip_prompt=skip_prompt,
            skip_special_tokens=True,
            timeout=self.timeout
        )
        return self.streamer

    async def generate_streaming(
        self,
        inputs: Dict[str, Any],
        generation_config: GenerationConfig
    ) -> AsyncGenerator[str, None]:
        """Generate streaming tokens.

        ``model.generate`` runs on a worker thread; fragments are pulled from
        the streamer through an executor owned by this stream, so a slow
        model never starves the event loop's default executor. Closing this
        generator early stops the worker at the next token.

        Args:
            inputs: Model inputs
            generation_config: Generation configuration

        Yields:
            Generated text fragments

        Raises:
            GenerationError: If the model raises or the stream times out
        """
        streamer = self.create_streamer()
        stop_event = threading.Event()
        errors: List[BaseException] = []

        generation_kwargs = {
            **inputs,
            "generation_config": generation_config,
            "streamer": streamer,
            "stopping_criteria": StoppingCriteriaList([CancellationCriteria(stop_event)]),
        }

        def _generate():
            try:
                with torch.no_grad():
                    self.model.generate(**generation_kwargs)
            except Exception as e:
                errors.append(e)
                # Unblock the consumer waiting on the streamer queue
                streamer.end()

        thread = Thread(target=_generate, daemon=True)
        thread.start()

        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="lmchat-stream")
        iterator = iter(streamer)

        try:
            while True:
                try:
                    token = await loop.run_in_executor(executor, next, iterator, _STREAM_END)
                except queue.Empty as e:
                    raise GenerationError(
                        f"No output from model within {self.timeout:.0f}s", cause=e
                    ) from e

                if token is _STREAM_END:
                    break
                if token:  # Skip empty fragments
                    yield token

            if errors:
                logger.error(f"Streaming generation failed: {errors[0]}")
                raise GenerationError(f"Model generation failed: {errors[0]}", cause=errors[0]) from errors[0]
        finally:
            stop_event.set()
            try:
                await loop.run_in_executor(executor, thread.join, 5.0)
                if thread.is_alive():
                    logger.warning("Generation thread did not complete in time")
            finally:
                executor.shutdown(wait=False)


class TokenCounter:
    """Handles token counting and usage tracking."""

    def __init__(self, tokenizer=None):
        """Initialize TokenCounter.

        Args:
            tokenizer: Hugging Face tokenizer for accurate counting
        """
        self.tokenizer = tokenizer
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.requests_processed = 0

    def count_tokens(self, text: str) -> int:
        """Count tokens in text.

        Args:
            text: Input text

        Returns:
            Number of tokens
        """
        if not text:
            return 0

        if self.tokenizer:
            try:
                tokens = self.tokenizer.encode(text, add_special_tokens=False)
                return len(tokens)
            except Exception as e:
                logger.warning(f"Tokenizer failed, using fallback: {e}")

        # Fallback estimation
        return max(1, int(len(text.split()) * 1.3))

    def create_usage(
        self,
        prompt_tokens: int,
        completion_tokens: int
    ) -> Usage:
        """Create a Usage record and update cumulative statistics."""
        self.total_prompt_tokens += prompt_tokens
        self.total_completion_tokens += completion_tokens
        self.requests_processed += 1

        return Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens
        )

    def get_session_stats(self) -> Dict[str, Any]:
        """Get cumulative token statistics."""
        return {
            "requests_processed": self.requests_processed,
            "total_prompt_tokens": self.total_prompt_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "total_tokens": self.total_prompt_tokens + self.total_completion_tokens,
        }


class GenerationParameters:
    """Manages and validates generation parameters."""

    MAX_STOP_SEQUENCES = 4

    def __init__(
        self,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        top_p: float = 1.0,
        top_k: int = 50,
        repetition_penalty: float = 1.0,
        do_sample: bool = True,
        stop_sequences: Optional[List[str]] = None
    ):
        """Initialize generation parameters.

        Args:
            temperature: Sampling temperature (0.0 to 2.0); 0.0 means greedy decoding
            max_tokens: Maximum tokens to generate
            top_p: Nucleus sampling parameter (0.0 to 1.0)
            top_k: Top-k sampling parameter
            repetition_penalty: Repetition penalty (1.0 = no penalty)
            do_sample: Whether to sample instead of decoding greedily
            stop_sequences: List of stop sequences
        """
        self.temperature = self._validate_temperature(temperature)
        self.max_tokens = self._validate_max_tokens(max_tokens)
        self.top_p = self._validate_top_p(top_p)
        self.top_k = max(1, top_k)
        self.repetition_penalty = max(0.1, repetition_penalty)
        self.do_sample = do_sample and temperature > 0.0
        self.stop_sequences = self._validate_stop_sequences(stop_sequences)

    @classmethod
    def from_settings(cls, **overrides) -> "GenerationParameters":
        """Build parameters from configured defaults, applying overrides."""
        values = {
            "temperature": settings.default_temperature,
            "max_tokens": settings.default_max_tokens,
            "top_p": settings.default_top_p,
            "top_k": settings.default_top_k,
            "repetition_penalty": settings.default_repetition_penalty,
        }
        values.update(overrides)
        return cls(**values)

    def _validate_temperature(self, temperature: float) -> float:
        """Validate temperature parameter."""
        if temperature < 0.0 or temperature > 2.0:
            raise ValidationError(
                "Temperature must be between 0.0 and 2.0",
                param="temperature"
            )
        return temperature

    def _validate_top_p(self, top_p: float) -> float:
        """Validate top_p parameter."""
        if top_p <= 0.0 or top_p > 1.0:
            raise ValidationError(
                "top_p must be between 0.0 and 1.0",
                param="top_p"
            )
        return top_p

    def _validate_max_tokens(self, max_tokens: Optional[int]) -> Optional[int]:
        if max_tokens is not None and max_tokens <= 0:
            raise ValidationError(
                "max_tokens must be positive",
                param="max_tokens"
            )
        return max_tokens

    def _validate_stop_sequences(self, stop_sequences: Optional[List[str]]) -> List[str]:
        if stop_sequences is None:
            return []
        if isinstance(stop_sequences, str):
            stop_sequences = [stop_sequences]
        if len(stop_sequences) > self.MAX_STOP_SEQUENCES:
            raise ValidationError(
                f"stop_sequences cannot have more than {self.MAX_STOP_SEQUENCES} items",
                param="stop_sequences"
            )
        for item in stop_sequences:
            if not isinstance(item, str):
                raise ValidationError("All stop sequences must be strings", param="stop_sequences")
        return list(stop_sequences)

    def to_generation_config(
        self,
        base: Optional[GenerationConfig] = None,
        model_max_length: int = 2048
    ) -> GenerationConfig:
        """Convert to Hugging Face GenerationConfig.

        Args:
            base: Model's own generation config; its token ids are kept
            model_max_length: Maximum sequence length for the model

        Returns:
            GenerationConfig object
        """
        config = copy.deepcopy(base) if base is not None else GenerationConfig()

        options = {
            "max_new_tokens": self.max_tokens or (model_max_length // 2),
            "repetition_penalty": self.repetition_penalty,
            "do_sample": self.do_sample,
        }
        if self.do_sample:
            options.update({
                "temperature": self.temperature,
                "top_p": self.top_p,
                "top_k": self.top_k,
            })
        else:
            # Unset sampling knobs so greedy decoding does not warn about them
            options.update({"temperature": None, "top_p": None, "top_k": None})

        config.update(**options)
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "repetition_penalty": self.repetition_penalty,
            "do_sample": self.do_sample,
            "stop_sequences": self.stop_sequences,
        }


class ResponseGenerator:
    """Streams responses from a loaded model with configurable parameters."""

    def __init__(
        self,
        model,
        tokenizer,
        model_name: str = "",
        stream_timeout: Optional[float] = None
    ):
        """Initialize ResponseGenerator.

        Args:
            model: Loaded Hugging Face model
            tokenizer: Tokenizer used for decoding and token counting
            model_name: Model identifier for logging
            stream_timeout: Seconds to wait for each streamed fragment
        """
        self.model = model
        self.tokenizer = tokenizer
        self.model_name = model_name
        self.token_counter = TokenCounter(tokenizer)
        self.streaming_tokenizer = StreamingTokenizer(tokenizer, model, timeout=stream_timeout)
        self.last_usage: Optional[Usage] = None

    def _build_generation_config(self, gen_params: GenerationParameters) -> GenerationConfig:
        base = getattr(self.model, "generation_config", None)
        if not isinstance(base, GenerationConfig):
            base = None
        generation_config = gen_params.to_generation_config(base)

        if generation_config.pad_token_id is None:
            generation_config.pad_token_id = self.tokenizer.pad_token_id
        if generation_config.eos_token_id is None:
            generation_config.eos_token_id = self.tokenizer.eos_token_id
        return generation_config

    def _move_to_device(self, model_inputs: Dict[str, Any]) -> Dict[str, Any]:
        try:
            device = next(iter(self.model.parameters())).device
        except (StopIteration, AttributeError, TypeError):
            # Fallback to CPU if model parameters are not available
            device = "cpu"
        return {
            key: value.to(device) if hasattr(value, 'to') else value
            for key, value in model_inputs.items()
        }

    async def stream_text(
        self,
        model_inputs: Dict[str, Any],
        gen_params: GenerationParameters,
        extra_stop_sequences: Sequence[str] = ()
    ) -> AsyncGenerator[str, None]:
        """Stream generated text fragments for prepared model inputs.

        Args:
            model_inputs: Prepared model inputs from the container
            gen_params: Generation parameters
            extra_stop_sequences: Stop sequences added by the prompt format

        Yields:
            Text fragments, cut at the first stop sequence
        """
        start_time = time.time()
        generation_config = self._build_generation_config(gen_params)
        inputs = self._move_to_device(model_inputs)

        input_ids = inputs.get("input_ids")
        prompt_tokens = int(input_ids.shape[-1]) if input_ids is not None else 0

        matcher = StopSequenceMatcher(list(gen_params.stop_sequences) + list(extra_stop_sequences))
        pieces = []

        async with aclosing(
            self.streaming_tokenizer.generate_streaming(inputs, generation_config)
        ) as stream:
            async for token in stream:
                text, stopped = matcher.feed(token)
                if text:
                    pieces.append(text)
                    yield text
                if stopped:
                    break

        tail = matcher.flush()
        if tail:
            pieces.append(tail)
            yield tail

        completion_tokens = self.token_counter.count_tokens("".join(pieces))
        self.last_usage = self.token_counter.create_usage(prompt_tokens, completion_tokens)

        generation_time = time.time() - start_time
        logger.info(
            f"Generated {completion_tokens} tokens with {self.model_name} "
            f"in {generation_time:.2f}s"
        )

    def get_generation_stats(self) -> Dict[str, Any]:
        """Get generation statistics."""
        return {
            "model_name": self.model_name,
            "last_usage": self.last_usage.model_dump() if self.last_usage else None,
            **self.token_counter.get_session_stats()
        }
