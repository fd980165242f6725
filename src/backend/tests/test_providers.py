"""
Tests for provider configuration, client caching and reply handling.

SDK entry points (genai, OpenAI) are patched; no request leaves the process.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from unittest.mock import Mock, PropertyMock, patch
import pytest

from app.config import settings
from app.services.errors import EmptyResponseError
from app.services.providers import (
    OPENROUTER_BASE_URL,
    GeminiProvider,
    GeminiVisionProvider,
    ImagePrompt,
    OpenAIProvider,
    OpenRouterProvider,
    default_text_providers,
    reset_clients,
)


@pytest.fixture(autouse=True)
def clean_clients():
    reset_clients()
    yield
    reset_clients()


def _chat_response(content):
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = content
    return response


class TestConfiguration:

    def test_default_order(self):
        names = [p.name for p in default_text_providers()]
        assert names == ["gemini", "openrouter", "openai"]

    def test_configured_by_api_key(self, monkeypatch):
        monkeypatch.setattr(settings, "GEMINI_API_KEY", "")
        monkeypatch.setattr(settings, "OPENROUTER_API_KEY", "or-key")
        monkeypatch.setattr(settings, "OPENAI_API_KEY", "")

        assert not GeminiProvider().is_configured()
        assert not GeminiVisionProvider().is_configured()
        assert OpenRouterProvider().is_configured()
        assert not OpenAIProvider().is_configured()


class TestClientCache:

    @patch('app.services.providers.OpenAI')
    def test_client_reused_until_config_changes(self, mock_openai, monkeypatch):
        monkeypatch.setattr(settings, "OPENAI_API_KEY", "key-1")
        provider = OpenAIProvider()

        first = provider._get_client()
        second = provider._get_client()

        assert first is second
        assert mock_openai.call_count == 1

        monkeypatch.setattr(settings, "OPENAI_API_KEY", "key-2")
        provider._get_client()

        assert mock_openai.call_count == 2
        assert mock_openai.call_args.kwargs["api_key"] == "key-2"

    @patch('app.services.providers.OpenAI')
    def test_reset_clients(self, mock_openai, monkeypatch):
        monkeypatch.setattr(settings, "OPENAI_API_KEY", "key-1")
        provider = OpenAIProvider()

        provider._get_client()
        reset_clients()
        provider._get_client()

        assert mock_openai.call_count == 2

    @patch('app.services.providers.genai')
    def test_gemini_model_cached(self, mock_genai, monkeypatch):
        monkeypatch.setattr(settings, "GEMINI_API_KEY", "g-key")
        monkeypatch.setattr(settings, "GEMINI_MODEL", "")
        provider = GeminiProvider()

        provider._get_model()
        provider._get_model()

        mock_genai.configure.assert_called_once_with(api_key="g-key")
        mock_genai.GenerativeModel.assert_called_once_with("gemini-2.0-flash")


class TestGeminiCall:

    @patch('app.services.providers.genai')
    def test_returns_text(self, mock_genai, monkeypatch):
        monkeypatch.setattr(settings, "GEMINI_API_KEY", "g-key")
        model = mock_genai.GenerativeModel.return_value
        model.generate_content.return_value = Mock(text='{"merchant": "Acme"}')

        assert GeminiProvider().call("prompt") == '{"merchant": "Acme"}'

        args, kwargs = model.generate_content.call_args
        assert args[0] == "prompt"
        assert kwargs["request_options"] == {"timeout": settings.LLM_TIMEOUT_SECONDS}

    @patch('app.services.providers.genai')
    def test_blocked_reply_is_empty_response(self, mock_genai, monkeypatch):
        monkeypatch.setattr(settings, "GEMINI_API_KEY", "g-key")
        response = Mock()
        type(response).text = PropertyMock(side_effect=ValueError("no parts"))
        mock_genai.GenerativeModel.return_value.generate_content.return_value = response

        with pytest.raises(EmptyResponseError):
            GeminiProvider().call("prompt")

    @patch('app.services.providers.genai')
    def test_vision_sends_image_part_first(self, mock_genai, monkeypatch):
        monkeypatch.setattr(settings, "GEMINI_API_KEY", "g-key")
        monkeypatch.setattr(settings, "GEMINI_VISION_MODEL", "")
        model = mock_genai.GenerativeModel.return_value
        model.generate_content.return_value = Mock(text="{}")

        GeminiVisionProvider().call(ImagePrompt(image_bytes=b"img", mime_type="image/png", prompt="read it"))

        contents = model.generate_content.call_args.args[0]
        assert contents == [{"mime_type": "image/png", "data": b"img"}, "read it"]
        mock_genai.GenerativeModel.assert_called_once_with("gemini-2.5-flash")


class TestOpenAICompatibleCall:

    @patch('app.services.providers.OpenAI')
    def test_openai_uses_temperature(self, mock_openai, monkeypatch):
        monkeypatch.setattr(settings, "OPENAI_API_KEY", "key")
        monkeypatch.setattr(settings, "OPENAI_MODEL", "")
        create = mock_openai.return_value.chat.completions.create
        create.return_value = _chat_response('{"merchant": "Acme"}')

        assert OpenAIProvider().call("prompt") == '{"merchant": "Acme"}'

        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["temperature"] == 0.3
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    @patch('app.services.providers.OpenAI')
    def test_openrouter_base_url_and_headers(self, mock_openai, monkeypatch):
        monkeypatch.setattr(settings, "OPENROUTER_API_KEY", "key")
        monkeypatch.setattr(settings, "OPENROUTER_MODEL", "")
        create = mock_openai.return_value.chat.completions.create
        create.return_value = _chat_response("{}")

        OpenRouterProvider().call("prompt")

        client_kwargs = mock_openai.call_args.kwargs
        assert client_kwargs["base_url"] == OPENROUTER_BASE_URL
        assert "HTTP-Referer" in client_kwargs["default_headers"]
        assert client_kwargs["default_headers"]["X-Title"] == settings.APP_NAME
        assert "temperature" not in create.call_args.kwargs
        assert create.call_args.kwargs["model"] == "google/gemini-2.0-flash-exp:free"

    @patch('app.services.providers.OpenAI')
    def test_no_choices_returns_none(self, mock_openai, monkeypatch):
        monkeypatch.setattr(settings, "OPENAI_API_KEY", "key")
        mock_openai.return_value.chat.completions.create.return_value = Mock(choices=[])

        assert OpenAIProvider().call("prompt") is None
