"""Model container: a shareable handle to a loaded Hugging Face model."""

import asyncio
import logging
import time
from contextlib import aclosing
from typing import Optional, Dict, Any, List, AsyncGenerator, Tuple
from enum import Enum
import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    AutoProcessor,
)

try:
    from transformers import BitsAndBytesConfig
    import bitsandbytes
    HAS_BITSANDBYTES = True
except ImportError:
    HAS_BITSANDBYTES = False
    BitsAndBytesConfig = None
from lmchat.config import settings
from lmchat.models.message_processor import MessageProcessor
from lmchat.models.response_generator import GenerationParameters, ResponseGenerator
from lmchat.schemas.chat_models import ModelConfiguration, ModelKind, Usage
from lmchat.schemas.error_models import (
    LMChatError,
    NotReadyError,
    InvalidImageError,
    GenerationError,
    LoadError,
)


logger = logging.getLogger(__name__)


class ModelStatus(Enum):
    """Model loading status."""
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class ModelContainer:
    """Owns one loaded model and serializes generation requests against it.

    Containers are shared by any number of chat sessions. Sessions only read
    from a container; every call to ``stream_generate`` holds the container's
    generation lock until its stream finishes or is closed.
    """

    def __init__(
        self,
        configuration: ModelConfiguration,
        kind: ModelKind = ModelKind.LLM,
        model_class=AutoModelForCausalLM,
        load_processor: bool = False
    ):
        """Initialize ModelContainer.

        Args:
            configuration: Which model to load and how
            kind: Model family held by this container
            model_class: ``transformers`` auto class used to load the weights
            load_processor: Whether to load a multi-modal ``AutoProcessor``
        """
        self.configuration = configuration
        self.model_name = configuration.id
        self.kind = kind
        self.model_class = model_class
        self.load_processor = load_processor

        self.model = None
        self.tokenizer = None
        self.processor = None
        self.response_generator: Optional[ResponseGenerator] = None
        self.message_processor = MessageProcessor()

        self.status = ModelStatus.NOT_LOADED
        self.load_time: Optional[float] = None
        self.error_message: Optional[str] = None
        self.device = self._determine_device()

        # Model configuration
        self.model_config = {
            "dtype": self._determine_dtype(),
            "device_map": None,
            "trust_remote_code": configuration.trust_remote_code,
            "low_cpu_mem_usage": True,
        }
        if configuration.revision:
            self.model_config["revision"] = configuration.revision

        if configuration.quantize:
            if self.device.startswith("cuda") and HAS_BITSANDBYTES and BitsAndBytesConfig is not None:
                self.model_config["quantization_config"] = BitsAndBytesConfig(
                    load_in_4bit=True,
                    bnb_4bit_compute_dtype=torch.float16,
                    bnb_4bit_use_double_quant=True,
                    bnb_4bit_quant_type="nf4"
                )
                # Quantized weights are placed by accelerate, not moved afterwards
                self.model_config["device_map"] = "auto"
                self.model_config["max_memory"] = self._max_memory()
                logger.info("4-bit quantization enabled for GPU memory optimization")
            else:
                logger.warning("Quantization requested but needs CUDA and bitsandbytes. Proceeding without quantization.")

        self._lock = asyncio.Lock()
        self._generation_lock = asyncio.Lock()

    def _determine_device(self) -> str:
        """Determine the best device for model loading."""
        device = self.configuration.device or settings.device
        if device != "auto":
            return device

        if torch.cuda.is_available():
            gpu_memory = torch.cuda.get_device_properties(0).total_memory
            gpu_memory_gb = gpu_memory / (1024**3)
            logger.info(f"GPU detected: {torch.cuda.get_device_name(0)} ({gpu_memory_gb:.1f}GB)")
            return "cuda"

        if torch.backends.mps.is_available():
            logger.info("Apple MPS backend detected")
            return "mps"

        logger.info("No GPU detected, using CPU")
        return "cpu"

    def _max_memory(self) -> Dict[int, int]:
        """Per-GPU memory budget for accelerate's device placement."""
        return {
            index: int(torch.cuda.get_device_properties(index).total_memory * settings.gpu_memory_fraction)
            for index in range(torch.cuda.device_count())
        }

    def _apply_memory_fraction(self) -> None:
        """Cap this process's share of the target GPU."""
        if not self.device.startswith("cuda") or settings.gpu_memory_fraction >= 1.0:
            return
        device_index = torch.device(self.device).index or 0
        torch.cuda.set_per_process_memory_fraction(settings.gpu_memory_fraction, device_index)
        logger.info(f"GPU memory capped at {settings.gpu_memory_fraction:.0%} of device {device_index}")

    def _determine_dtype(self) -> torch.dtype:
        if self.device.startswith("cuda"):
            return torch.bfloat16 if torch.cuda.is_bf16_supported() else torch.float16
        if self.device == "mps":
            return torch.float16
        return torch.float32

    async def load(self) -> None:
        """Load the tokenizer, optional processor and model weights.

        Loading runs on the default executor so the event loop stays responsive
        while weights are downloaded and materialized.

        Raises:
            LoadError: If any component fails to load
        """
        async with self._lock:
            if self.status == ModelStatus.LOADED:
                logger.info(f"Model {self.model_name} already loaded")
                return

            self.status = ModelStatus.LOADING
            self.error_message = None
            start_time = time.time()

            try:
                logger.info(f"Loading model {self.model_name} on device {self.device}")
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self._load_components)

                self.response_generator = ResponseGenerator(
                    self.model,
                    self.tokenizer,
                    model_name=self.model_name
                )

                self.load_time = time.time() - start_time
                self.status = ModelStatus.LOADED

                total_params = sum(p.numel() for p in self.model.parameters())
                logger.info(f"Model {self.model_name} loaded successfully in {self.load_time:.2f}s")
                logger.info(f"Total parameters: {total_params:,}")

                if self.has_chat_template():
                    logger.info("Chat template available - using model's chat template")
                else:
                    logger.warning("No chat template found - using fallback format")

                if self.device.startswith("cuda"):
                    memory_allocated = torch.cuda.memory_allocated() / (1024**3)
                    memory_reserved = torch.cuda.memory_reserved() / (1024**3)
                    logger.info(f"GPU memory - Allocated: {memory_allocated:.2f}GB, Reserved: {memory_reserved:.2f}GB")

            except Exception as e:
                self.status = ModelStatus.ERROR
                self.error_message = str(e)
                logger.error(f"Failed to load model {self.model_name}: {e}")

                # Clean up partially loaded components
                self.model = None
                self.tokenizer = None
                self.processor = None
                self.response_generator = None

                raise LoadError(
                    f"Failed to load model {self.model_name}: {e}",
                    model_id=self.model_name
                ) from e

    def _load_components(self) -> None:
        revision = self.configuration.revision
        trust_remote_code = self.configuration.trust_remote_code

        logger.info("Loading tokenizer...")
        self.tokenizer = AutoTokenizer.from_pretrained(
            self.model_name,
            revision=revision,
            trust_remote_code=trust_remote_code,
            padding_side="left"
        )

        # Ensure pad token is set
        if self.tokenizer.pad_token is None:
            self.tokenizer.pad_token = self.tokenizer.eos_token

        if self.load_processor:
            logger.info("Loading processor...")
            self.processor = AutoProcessor.from_pretrained(
                self.model_name,
                revision=revision,
                trust_remote_code=trust_remote_code
            )

        if self.model_config.get("device_map") is None:
            self._apply_memory_fraction()

        logger.info("Loading model...")
        self.model = self.model_class.from_pretrained(
            self.model_name,
            **self.model_config
        )

        # Move to specific device if not using device_map
        if self.model_config.get("device_map") is None:
            self.model = self.model.to(self.device)

        self.model.eval()

    async def unload(self) -> None:
        """Unload the model to free memory."""
        async with self._lock:
            if self.status != ModelStatus.LOADED:
                return

            # Let an in-flight generation finish before releasing weights
            async with self._generation_lock:
                logger.info(f"Unloading model {self.model_name}")

                self.model = None
                self.tokenizer = None
                self.processor = None
                self.response_generator = None

                if self.device.startswith("cuda"):
                    torch.cuda.empty_cache()

                self.status = ModelStatus.NOT_LOADED
                self.load_time = None
                self.error_message = None

            logger.info(f"Model {self.model_name} unloaded successfully")

    def is_loaded(self) -> bool:
        """Check if the model is loaded and ready for inference."""
        return self.status == ModelStatus.LOADED

    def is_loading(self) -> bool:
        """Check if the model is currently loading."""
        return self.status == ModelStatus.LOADING

    def has_error(self) -> bool:
        """Check if there was an error loading the model."""
        return self.status == ModelStatus.ERROR

    @property
    def supports_images(self) -> bool:
        """Whether prompts may carry images."""
        return self.kind == ModelKind.VLM

    @property
    def last_usage(self) -> Optional[Usage]:
        """Token usage of the most recent generation, if any."""
        if self.response_generator is None:
            return None
        return self.response_generator.last_usage

    def _model_device(self) -> str:
        try:
            return str(next(iter(self.model.parameters())).device)
        except StopIteration:
            return "unknown"

    def get_status(self) -> Dict[str, Any]:
        """Get detailed model status information."""
        status_info = {
            "model_name": self.model_name,
            "kind": self.kind.value,
            "status": self.status.value,
            "device": self.device,
            "load_time": self.load_time,
            "error_message": self.error_message,
        }

        if self.is_loaded():
            status_info.update({
                "has_tokenizer": self.tokenizer is not None,
                "has_processor": self.processor is not None,
                "model_device": self._model_device() if self.model is not None else None,
            })

            if self.device.startswith("cuda") and torch.cuda.is_available():
                status_info.update({
                    "gpu_memory_allocated_gb": torch.cuda.memory_allocated() / (1024**3),
                    "gpu_memory_reserved_gb": torch.cuda.memory_reserved() / (1024**3),
                })

        return status_info

    def check_health(self) -> Dict[str, Any]:
        """Perform a health check on the model."""
        health_status = {
            "healthy": False,
            "status": self.status.value,
            "checks": {}
        }

        health_status["checks"]["model_loaded"] = self.is_loaded()

        if not self.is_loaded():
            health_status["checks"]["error"] = self.error_message or "Model not loaded"
            return health_status

        try:
            health_status["checks"]["tokenizer_available"] = self.tokenizer is not None
            health_status["checks"]["processor_available"] = self.processor is not None
            health_status["checks"]["model_device"] = self._model_device()

            if self.tokenizer:
                tokens = self.tokenizer.encode("Hello")
                health_status["checks"]["tokenizer_functional"] = len(tokens) > 0

            health_status["healthy"] = all([
                health_status["checks"]["model_loaded"],
                health_status["checks"]["tokenizer_available"],
                health_status["checks"].get("tokenizer_functional", True),
                health_status["checks"]["processor_available"] or not self.load_processor,
            ])

        except Exception as e:
            health_status["checks"]["error"] = str(e)
            health_status["healthy"] = False

        return health_status

    def ensure_loaded(self) -> None:
        """Ensure the model is loaded.

        Raises:
            NotReadyError: If the model is not loaded or failed to load
        """
        if not self.is_loaded():
            if self.has_error():
                raise NotReadyError(f"Model {self.model_name} failed to load: {self.error_message}")
            raise NotReadyError(f"Model {self.model_name} is not loaded")

    def get_model_info(self) -> Dict[str, Any]:
        """Get detailed model information."""
        self.ensure_loaded()

        config = self.model.config
        # Vision-language configs keep the language model settings in text_config
        text_config = getattr(config, "text_config", None) or config

        info = {
            "model_name": self.model_name,
            "kind": self.kind.value,
            "model_type": getattr(config, "model_type", "unknown"),
            "vocab_size": self.tokenizer.vocab_size if self.tokenizer else None,
            "max_position_embeddings": getattr(text_config, "max_position_embeddings", None),
            "hidden_size": getattr(text_config, "hidden_size", None),
            "num_attention_heads": getattr(text_config, "num_attention_heads", None),
            "num_hidden_layers": getattr(text_config, "num_hidden_layers", None),
            "total_parameters": sum(p.numel() for p in self.model.parameters()),
        }
        return info

    def has_chat_template(self) -> bool:
        """Check if the processor or tokenizer has a chat template."""
        for component in (self.processor, self.tokenizer):
            if component is not None and getattr(component, "chat_template", None):
                return True
        return False

    def prepare_inputs(
        self,
        messages: List[Dict[str, Any]],
        images: Optional[List[Any]] = None
    ) -> Tuple[Dict[str, Any], List[str]]:
        """Prepare model inputs from chat messages.

        Args:
            messages: Multi-modal chat messages from ``MessageProcessor.build_messages``
            images: Decoded images, in placeholder order

        Returns:
            Tuple of (model inputs, extra stop sequences for the prompt format)

        Raises:
            NotReadyError: If the model is not loaded
            InvalidImageError: If images are given to a text-only model
            GenerationError: If the inputs cannot be built
        """
        self.ensure_loaded()

        if images and not self.supports_images:
            raise InvalidImageError(f"Model {self.model_name} does not accept images")

        try:
            if self.processor is not None:
                formatted_text = self.processor.apply_chat_template(
                    messages,
                    add_generation_prompt=True,
                    tokenize=False
                )
                inputs = self.processor(
                    text=[formatted_text],
                    images=list(images) if images else None,
                    padding=True,
                    return_tensors="pt"
                )
                logger.debug(f"Using processor chat template. Images: {len(images or [])}")
                return dict(inputs), []

            simple_messages = self.message_processor.flatten_messages(messages)
            if self.has_chat_template():
                formatted_text = self.tokenizer.apply_chat_template(
                    simple_messages,
                    add_generation_prompt=True,
                    tokenize=False
                )
                stop_sequences = []
                logger.debug("Using tokenizer chat template")
            else:
                formatted_text = self.message_processor.format_fallback(simple_messages, True)
                stop_sequences = self.message_processor.fallback_stop_markers
                logger.debug("Using fallback chat format")

            inputs = self.tokenizer(
                formatted_text,
                return_tensors="pt",
                padding=True
            )
            return dict(inputs), stop_sequences

        except LMChatError:
            raise
        except Exception as e:
            logger.error(f"Failed to prepare inputs: {e}")
            raise GenerationError(f"Input preparation failed: {str(e)}", cause=e) from e

    async def stream_generate(
        self,
        messages: List[Dict[str, Any]],
        images: Optional[List[Any]] = None,
        parameters: Optional[GenerationParameters] = None
    ) -> AsyncGenerator[str, None]:
        """Stream generated text for a conversation.

        Args:
            messages: Multi-modal chat messages
            images: Decoded images, in placeholder order
            parameters: Generation parameters, defaults from settings

        Yields:
            Generated text fragments
        """
        async with self._generation_lock:
            inputs, stop_sequences = self.prepare_inputs(messages, images)
            parameters = parameters or GenerationParameters.from_settings()

            async with aclosing(
                self.response_generator.stream_text(inputs, parameters, stop_sequences)
            ) as stream:
                async for fragment in stream:
                    yield fragment
