"""Unit tests for settings and logging configuration."""

from unittest.mock import patch

from lmchat.config import Settings, configure_logging


class TestSettings:
    """Test Settings defaults and environment overrides."""

    def test_defaults(self, monkeypatch):
        """Test default values."""
        monkeypatch.delenv("DEVICE", raising=False)
        settings = Settings(_env_file=None)

        assert settings.device == "auto"
        assert settings.default_max_tokens == 512
        assert settings.load_timeout == 300.0
        assert settings.max_image_dimension == 1024
        assert settings.log_level == "INFO"

    def test_environment_override(self, monkeypatch):
        """Test environment variables override defaults case-insensitively."""
        monkeypatch.setenv("llm_model_id", "org/tiny-model")
        monkeypatch.setenv("STREAM_TIMEOUT", "5")

        settings = Settings(_env_file=None)

        assert settings.llm_model_id == "org/tiny-model"
        assert settings.stream_timeout == 5.0


class TestConfigureLogging:
    """Test configure_logging."""

    def test_explicit_level(self):
        """Test an explicit level is applied."""
        with patch("lmchat.config.logging.basicConfig") as mock_basic_config:
            configure_logging("debug")

        assert mock_basic_config.call_args.kwargs["level"] == "DEBUG"

    def test_default_level(self):
        """Test the configured level is used by default."""
        with patch("lmchat.config.logging.basicConfig") as mock_basic_config:
            configure_logging()

        assert mock_basic_config.call_args.kwargs["level"] == "INFO"
