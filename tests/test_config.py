from pathlib import Path

import pytest
from pydantic import ValidationError

from ytarticle.config import (
    ApiSettings,
    ArticleLength,
    Audience,
    GenerationOptions,
    OutputFormat,
    RegistrySettings,
    WritingStyle,
    load_settings,
)


def test_generation_options_defaults() -> None:
    options = GenerationOptions()
    assert options.style == WritingStyle.CASUAL
    assert options.audience == Audience.GENERAL
    assert options.length == ArticleLength.STANDARD
    assert options.output_format == OutputFormat.MARKDOWN
    assert options.to_config() == {
        "style": "casual",
        "audience": "general",
        "length": "standard",
        "output_format": "markdown",
        "language": "en",
    }


def test_generation_options_require_instructions_for_custom_style() -> None:
    with pytest.raises(ValidationError, match="style_instructions"):
        GenerationOptions(style="custom")

    options = GenerationOptions(audience="custom", audience_instructions="Retired engineers")
    assert options.to_config()["audience_instructions"] == "Retired engineers"


def test_generation_options_validate_language_code() -> None:
    with pytest.raises(ValidationError):
        GenerationOptions(language="english")


def test_api_settings_strip_trailing_slash_and_check_schemes() -> None:
    settings = ApiSettings(api_url="https://api.example.com/api/v1/", websocket_url="wss://api.example.com/ws/")
    assert settings.api_url == "https://api.example.com/api/v1"
    assert settings.websocket_url == "wss://api.example.com/ws"

    with pytest.raises(ValidationError):
        ApiSettings(websocket_url="http://api.example.com/ws")


def test_registry_settings_require_lifetime_at_least_grace() -> None:
    with pytest.raises(ValidationError):
        RegistrySettings(grace_seconds=120, max_lifetime_seconds=60)


def test_load_settings_reads_prefixed_environment() -> None:
    settings = load_settings(
        {
            "YTARTICLE_API_URL": "https://api.example.com/api/v1",
            "YTARTICLE_API_TOKEN": "abc",
            "YTARTICLE_MAX_RECONNECT_ATTEMPTS": "3",
            "YTARTICLE_ARTICLE_DIR": "/tmp/articles",
            "YTARTICLE_LOG_LEVEL": "debug",
            "UNRELATED": "ignored",
        }
    )

    assert settings.api.api_url == "https://api.example.com/api/v1"
    assert settings.api.api_token is not None
    assert settings.api.api_token.get_secret_value() == "abc"
    assert settings.channel.max_reconnect_attempts == 3
    assert settings.channel.read_timeout == 300.0
    assert settings.store.article_dir == Path("/tmp/articles")
    assert settings.log_level == "DEBUG"


def test_load_settings_rejects_invalid_values() -> None:
    with pytest.raises(ValidationError):
        load_settings({"YTARTICLE_TIMEOUT": "-5"})
