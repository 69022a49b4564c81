"""Unit tests for ModelContainer class."""

from unittest.mock import Mock, MagicMock, patch

import pytest
import torch
from PIL import Image

from lmchat.models.response_generator import GenerationParameters
from lmchat.schemas.chat_models import ModelConfiguration, ModelKind
from lmchat.schemas.error_models import (
    GenerationError,
    InvalidImageError,
    LoadError,
    NotReadyError,
)
from lmchat.services.model_container import ModelContainer, ModelStatus


def _container(kind=ModelKind.LLM, load_processor=False, **config):
    configuration = ModelConfiguration(**{"id": "test/model", "device": "cpu", **config})
    return ModelContainer(
        configuration,
        kind=kind,
        model_class=Mock(),
        load_processor=load_processor
    )


def _loaded_container(kind=ModelKind.LLM, processor=None, chat_template="{{ messages }}"):
    container = _container(kind=kind)
    container.model = MagicMock()
    container.tokenizer = MagicMock()
    container.tokenizer.chat_template = chat_template
    container.processor = processor
    container.status = ModelStatus.LOADED
    return container


class TestModelContainerInit:
    """Test ModelContainer construction."""

    def test_init(self):
        """Test initial state."""
        container = _container()

        assert container.model_name == "test/model"
        assert container.kind == ModelKind.LLM
        assert container.status == ModelStatus.NOT_LOADED
        assert container.model is None
        assert container.device == "cpu"
        assert container.model_config["dtype"] == torch.float32
        assert container.model_config["device_map"] is None
        assert not container.is_loaded()

    def test_revision_passed_to_model_config(self):
        """Test revisions are forwarded to from_pretrained."""
        container = _container(revision="v1")
        assert container.model_config["revision"] == "v1"

    def test_determine_device_auto_without_gpu(self):
        """Test automatic device selection falls back to CPU."""
        with patch('torch.cuda.is_available', return_value=False), \
             patch('torch.backends.mps.is_available', return_value=False):
            container = ModelContainer(ModelConfiguration(id="test/model", device="auto"))
            assert container.device == "cpu"

    def test_determine_device_auto_with_mps(self):
        """Test automatic device selection picks MPS when present."""
        with patch('torch.cuda.is_available', return_value=False), \
             patch('torch.backends.mps.is_available', return_value=True):
            container = ModelContainer(ModelConfiguration(id="test/model", device="auto"))
            assert container.device == "mps"
            assert container.model_config["dtype"] == torch.float16

    def test_quantize_without_cuda_ignored(self):
        """Test quantization is skipped on CPU."""
        container = _container(quantize=True)
        assert "quantization_config" not in container.model_config

    def test_quantize_on_cuda_bounds_device_memory(self):
        """Test quantized loads cap each GPU at the configured memory fraction."""
        gpu = Mock(total_memory=16 * 1024**3)
        with patch('lmchat.services.model_container.HAS_BITSANDBYTES', True), \
             patch('lmchat.services.model_container.BitsAndBytesConfig') as mock_bnb, \
             patch('lmchat.services.model_container.settings') as mock_settings, \
             patch('torch.cuda.is_bf16_supported', return_value=True), \
             patch('torch.cuda.device_count', return_value=2), \
             patch('torch.cuda.get_device_properties', return_value=gpu):
            mock_settings.gpu_memory_fraction = 0.5
            container = _container(device="cuda", quantize=True)

        assert container.model_config["quantization_config"] is mock_bnb.return_value
        assert container.model_config["device_map"] == "auto"
        assert container.model_config["max_memory"] == {0: 8 * 1024**3, 1: 8 * 1024**3}

    def test_memory_fraction_applied_on_cuda(self):
        """Test single-device CUDA loads cap the process memory fraction."""
        with patch('torch.cuda.is_bf16_supported', return_value=True):
            container = _container(device="cuda:1")

        with patch('lmchat.services.model_container.settings') as mock_settings, \
             patch('torch.cuda.set_per_process_memory_fraction') as mock_set_fraction:
            mock_settings.gpu_memory_fraction = 0.75
            container._apply_memory_fraction()

        mock_set_fraction.assert_called_once_with(0.75, 1)

    def test_memory_fraction_skipped_on_cpu(self):
        """Test CPU loads and a full fraction leave CUDA untouched."""
        with patch('torch.cuda.set_per_process_memory_fraction') as mock_set_fraction:
            _container()._apply_memory_fraction()

        mock_set_fraction.assert_not_called()

    def test_supports_images(self):
        """Test only vision-language containers accept images."""
        assert not _container().supports_images
        assert _container(kind=ModelKind.VLM).supports_images


class TestModelContainerLoading:
    """Test loading and unloading."""

    @pytest.mark.asyncio
    async def test_load_success(self):
        """Test successful loading of tokenizer and model."""
        container = _container()
        mock_model = MagicMock()
        mock_model.to.return_value = mock_model
        mock_model.parameters.return_value = [torch.zeros(2, 2)]
        container.model_class.from_pretrained.return_value = mock_model

        with patch('lmchat.services.model_container.AutoTokenizer') as mock_tokenizer_class, \
             patch('lmchat.services.model_container.AutoProcessor') as mock_processor_class:
            mock_tokenizer = MagicMock()
            mock_tokenizer.pad_token = None
            mock_tokenizer.eos_token = "</s>"
            mock_tokenizer_class.from_pretrained.return_value = mock_tokenizer

            await container.load()

            mock_processor_class.from_pretrained.assert_not_called()

        assert container.is_loaded()
        assert container.model is mock_model
        assert container.tokenizer.pad_token == "</s>"
        assert container.response_generator is not None
        assert container.load_time is not None
        mock_model.to.assert_called_once_with("cpu")
        mock_model.eval.assert_called_once()
        container.model_class.from_pretrained.assert_called_once_with(
            "test/model", **container.model_config
        )

    @pytest.mark.asyncio
    async def test_load_with_processor(self):
        """Test vision containers also load a processor."""
        container = _container(kind=ModelKind.VLM, load_processor=True)
        container.model_class.from_pretrained.return_value.to.return_value = MagicMock()

        with patch('lmchat.services.model_container.AutoTokenizer'), \
             patch('lmchat.services.model_container.AutoProcessor') as mock_processor_class:
            await container.load()

        mock_processor_class.from_pretrained.assert_called_once_with(
            "test/model", revision=None, trust_remote_code=True
        )
        assert container.processor is mock_processor_class.from_pretrained.return_value

    @pytest.mark.asyncio
    async def test_load_failure(self):
        """Test load failures raise LoadError and clean up."""
        container = _container()

        with patch('lmchat.services.model_container.AutoTokenizer') as mock_tokenizer_class:
            mock_tokenizer_class.from_pretrained.side_effect = OSError("repository not found")

            with pytest.raises(LoadError) as exc_info:
                await container.load()

        assert exc_info.value.model_id == "test/model"
        assert isinstance(exc_info.value.__cause__, OSError)
        assert container.status == ModelStatus.ERROR
        assert container.has_error()
        assert container.tokenizer is None
        assert "repository not found" in container.error_message

    @pytest.mark.asyncio
    async def test_load_already_loaded(self):
        """Test loading twice does nothing the second time."""
        container = _loaded_container()

        with patch('lmchat.services.model_container.AutoTokenizer') as mock_tokenizer_class:
            await container.load()
            mock_tokenizer_class.from_pretrained.assert_not_called()

    @pytest.mark.asyncio
    async def test_unload(self):
        """Test unloading releases components."""
        container = _loaded_container()
        container.response_generator = Mock()

        await container.unload()

        assert container.status == ModelStatus.NOT_LOADED
        assert container.model is None
        assert container.tokenizer is None
        assert container.response_generator is None

    def test_ensure_loaded(self):
        """Test ensure_loaded raises NotReadyError when not loaded."""
        container = _container()
        with pytest.raises(NotReadyError, match="is not loaded"):
            container.ensure_loaded()

        container.status = ModelStatus.ERROR
        container.error_message = "boom"
        with pytest.raises(NotReadyError, match="failed to load: boom"):
            container.ensure_loaded()

        _loaded_container().ensure_loaded()


class TestModelContainerStatus:
    """Test status and information reporting."""

    def test_get_status_not_loaded(self):
        """Test status of an unloaded container."""
        status = _container().get_status()

        assert status["model_name"] == "test/model"
        assert status["kind"] == "llm"
        assert status["status"] == "not_loaded"
        assert "has_tokenizer" not in status

    def test_get_status_loaded(self):
        """Test status of a loaded container."""
        container = _loaded_container()
        container.model.parameters.return_value = iter([torch.zeros(1)])

        status = container.get_status()

        assert status["status"] == "loaded"
        assert status["has_tokenizer"] is True
        assert status["has_processor"] is False
        assert status["model_device"] == "cpu"

    def test_check_health_not_loaded(self):
        """Test health check before loading."""
        health = _container().check_health()
        assert health["healthy"] is False
        assert health["checks"]["model_loaded"] is False

    def test_check_health_loaded(self):
        """Test health check of a working container."""
        container = _loaded_container()
        container.model.parameters.return_value = iter([torch.zeros(1)])
        container.tokenizer.encode.return_value = [1, 2]

        health = container.check_health()

        assert health["healthy"] is True
        assert health["checks"]["tokenizer_functional"] is True

    def test_get_model_info(self):
        """Test model information uses the text config when present."""
        container = _loaded_container()
        container.model.parameters.return_value = [torch.zeros(2, 3)]
        container.model.config = Mock(model_type="qwen3_vl")
        container.model.config.text_config = Mock(
            max_position_embeddings=4096,
            hidden_size=2560,
            num_attention_heads=32,
            num_hidden_layers=36
        )
        container.tokenizer.vocab_size = 1000

        info = container.get_model_info()

        assert info["model_type"] == "qwen3_vl"
        assert info["hidden_size"] == 2560
        assert info["total_parameters"] == 6
        assert info["vocab_size"] == 1000

    def test_get_model_info_not_loaded(self):
        """Test model information requires a loaded model."""
        with pytest.raises(NotReadyError):
            _container().get_model_info()

    def test_has_chat_template(self):
        """Test chat template detection."""
        assert _loaded_container().has_chat_template()
        assert not _loaded_container(chat_template=None).has_chat_template()
        assert not _container().has_chat_template()


class TestPrepareInputs:
    """Test prepare_inputs."""

    def test_tokenizer_chat_template(self):
        """Test text models flatten messages for the tokenizer template."""
        container = _loaded_container()
        container.tokenizer.apply_chat_template.return_value = "formatted"
        container.tokenizer.return_value = {"input_ids": torch.tensor([[1, 2]])}
        messages = [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]

        inputs, stop_sequences = container.prepare_inputs(messages)

        container.tokenizer.apply_chat_template.assert_called_once_with(
            [{"role": "user", "content": "Hi"}],
            add_generation_prompt=True,
            tokenize=False
        )
        container.tokenizer.assert_called_once_with("formatted", return_tensors="pt", padding=True)
        assert torch.equal(inputs["input_ids"], torch.tensor([[1, 2]]))
        assert stop_sequences == []

    def test_fallback_format(self):
        """Test tokenizers without a chat template use the fallback format."""
        container = _loaded_container(chat_template=None)
        container.tokenizer.return_value = {"input_ids": torch.tensor([[1]])}
        messages = [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]

        _, stop_sequences = container.prepare_inputs(messages)

        container.tokenizer.assert_called_once_with(
            "<|user|>\nHi\n<|assistant|>\n", return_tensors="pt", padding=True
        )
        assert stop_sequences == ["<|user|>", "<|system|>"]

    def test_processor_with_images(self):
        """Test vision models pass images to the processor."""
        processor = MagicMock()
        processor.apply_chat_template.return_value = "vision prompt"
        processor.return_value = {"input_ids": torch.tensor([[1]]), "pixel_values": torch.zeros(1)}
        container = _loaded_container(kind=ModelKind.VLM, processor=processor)
        image = Image.new("RGB", (8, 8))
        messages = [{"role": "user", "content": [{"type": "image"}, {"type": "text", "text": "Color?"}]}]

        inputs, stop_sequences = container.prepare_inputs(messages, [image])

        processor.apply_chat_template.assert_called_once_with(
            messages, add_generation_prompt=True, tokenize=False
        )
        processor.assert_called_once_with(
            text=["vision prompt"],
            images=[image],
            padding=True,
            return_tensors="pt"
        )
        assert "pixel_values" in inputs
        assert stop_sequences == []

    def test_images_rejected_by_text_model(self):
        """Test text-only containers refuse images."""
        container = _loaded_container()
        with pytest.raises(InvalidImageError):
            container.prepare_inputs([], [Image.new("RGB", (1, 1))])

    def test_not_loaded(self):
        """Test inputs cannot be prepared before loading."""
        with pytest.raises(NotReadyError):
            _container().prepare_inputs([])

    def test_preparation_failure(self):
        """Test template errors become GenerationError."""
        container = _loaded_container()
        container.tokenizer.apply_chat_template.side_effect = ValueError("bad template")

        with pytest.raises(GenerationError, match="Input preparation failed"):
            container.prepare_inputs([{"role": "user", "content": "Hi"}])


class TestStreamGenerate:
    """Test stream_generate."""

    @pytest.mark.asyncio
    async def test_stream_generate(self):
        """Test inputs and stop sequences are handed to the response generator."""
        container = _loaded_container(chat_template=None)
        container.tokenizer.return_value = {"input_ids": torch.tensor([[1]])}
        received = {}

        async def fake_stream_text(inputs, parameters, stop_sequences):
            received.update(inputs=inputs, parameters=parameters, stop_sequences=stop_sequences)
            yield "Hello"
            yield " there"

        container.response_generator = Mock()
        container.response_generator.stream_text = fake_stream_text
        params = GenerationParameters(max_tokens=5)

        fragments = [
            fragment async for fragment in container.stream_generate(
                [{"role": "user", "content": "Hi"}],
                parameters=params
            )
        ]

        assert fragments == ["Hello", " there"]
        assert received["parameters"] is params
        assert received["stop_sequences"] == ["<|user|>", "<|system|>"]
        assert not container._generation_lock.locked()

    @pytest.mark.asyncio
    async def test_stream_generate_not_loaded(self):
        """Test streaming from an unloaded container raises NotReadyError."""
        container = _container()
        with pytest.raises(NotReadyError):
            async for _ in container.stream_generate([{"role": "user", "content": "Hi"}]):
                pass

    @pytest.mark.asyncio
    async def test_last_usage(self):
        """Test last usage comes from the response generator."""
        container = _container()
        assert container.last_usage is None

        container.response_generator = Mock(last_usage="usage")
        assert container.last_usage == "usage"
