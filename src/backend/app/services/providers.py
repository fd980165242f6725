"""
Language-model providers.

Each provider turns a prompt (or an image payload) into raw reply text and
knows whether it is configured. Client handles are created on first use
and cached for the process; a change in key, model or timeout rebuilds
them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

import google.generativeai as genai
from openai import OpenAI

from app.config import settings
from app.services.errors import EmptyResponseError

logger = logging.getLogger(__name__)


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# provider name -> (config it was built from, client)
_clients: Dict[str, Tuple[Hashable, Any]] = {}


def _memoized_client(name: str, config: Hashable, factory: Callable[[], Any]) -> Any:
    """Return the cached client for name, rebuilding it if config changed."""
    cached = _clients.get(name)
    if cached is not None and cached[0] == config:
        return cached[1]

    logger.debug("Initializing LLM client", extra={"provider": name})
    client = factory()
    _clients[name] = (config, client)
    return client


def reset_clients() -> None:
    """Drop every cached client handle."""
    _clients.clear()


@dataclass(frozen=True)
class ImagePrompt:
    """Multimodal payload for vision providers."""
    image_bytes: bytes
    mime_type: str
    prompt: str


class LLMProvider:
    """
    Interface shared by all providers.

    Subclasses set name/label and implement is_configured() and call().
    """
    name = "llm"
    label = "LLM"

    def is_configured(self) -> bool:
        raise NotImplementedError

    def call(self, payload: Any) -> Optional[str]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


class GeminiProvider(LLMProvider):
    """Google Gemini text generation."""
    name = "gemini"
    label = "Gemini"
    default_model = "gemini-2.0-flash"

    def _model_name(self) -> str:
        return settings.GEMINI_MODEL or self.default_model

    def is_configured(self) -> bool:
        return bool(settings.GEMINI_API_KEY)

    def _get_model(self):
        api_key = settings.GEMINI_API_KEY
        model_name = self._model_name()

        def build():
            genai.configure(api_key=api_key)
            return genai.GenerativeModel(model_name)

        return _memoized_client(self.name, (api_key, model_name), build)

    def _contents(self, payload: Any) -> Any:
        return payload

    def call(self, payload: Any) -> Optional[str]:
        response = self._get_model().generate_content(
            self._contents(payload),
            request_options={"timeout": settings.LLM_TIMEOUT_SECONDS}
        )

        # .text raises when the reply was blocked or has no parts
        try:
            return response.text
        except ValueError as e:
            raise EmptyResponseError(f"No response returned from {self.label}: {e}") from e


class GeminiVisionProvider(GeminiProvider):
    """Gemini with an inline image part ahead of the prompt."""
    name = "gemini-vision"
    default_model = "gemini-2.5-flash"

    def _model_name(self) -> str:
        return settings.GEMINI_VISION_MODEL or self.default_model

    def _contents(self, payload: ImagePrompt) -> Any:
        return [
            {"mime_type": payload.mime_type, "data": payload.image_bytes},
            payload.prompt,
        ]


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions providers reached through the openai SDK."""
    base_url: Optional[str] = None
    default_model = "gpt-4o-mini"
    temperature: Optional[float] = None

    def _api_key(self) -> str:
        raise NotImplementedError

    def _model_name(self) -> str:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        return {}

    def is_configured(self) -> bool:
        return bool(self._api_key())

    def _get_client(self) -> OpenAI:
        api_key = self._api_key()
        headers = self._headers()
        timeout = settings.LLM_TIMEOUT_SECONDS
        config = (api_key, self.base_url, timeout, tuple(sorted(headers.items())))

        return _memoized_client(self.name, config, lambda: OpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=timeout,
            default_headers=headers or None,
        ))

    def call(self, payload: Any) -> Optional[str]:
        kwargs = {}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature

        response = self._get_client().chat.completions.create(
            model=self._model_name(),
            messages=[{"role": "user", "content": payload}],
            **kwargs
        )

        if not response.choices:
            return None
        return response.choices[0].message.content


class OpenRouterProvider(OpenAICompatibleProvider):
    name = "openrouter"
    label = "OpenRouter"
    base_url = OPENROUTER_BASE_URL
    default_model = "google/gemini-2.0-flash-exp:free"

    def _api_key(self) -> str:
        return settings.OPENROUTER_API_KEY

    def _model_name(self) -> str:
        return settings.OPENROUTER_MODEL or self.default_model

    def _headers(self) -> Dict[str, str]:
        return {
            "HTTP-Referer": settings.FRONTEND_URL or "http://localhost",
            "X-Title": settings.APP_NAME,
        }


class OpenAIProvider(OpenAICompatibleProvider):
    name = "openai"
    label = "OpenAI"
    temperature = 0.3

    def _api_key(self) -> str:
        return settings.OPENAI_API_KEY

    def _model_name(self) -> str:
        return settings.OPENAI_MODEL or self.default_model


def default_text_providers():
    """Email extraction providers in priority order."""
    return [GeminiProvider(), OpenRouterProvider(), OpenAIProvider()]
