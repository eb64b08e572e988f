#!/usr/bin/env python3
"""
AI Provider Module - Pluggable LLM backends for drawing classification.

Supports multiple AI providers:
- Google Gemini (default)
- Anthropic Claude
- OpenAI GPT

Every provider exposes the same single-turn call: a text prompt plus an
optional inline attachment (a PDF or a JPEG), answered with plain text.
Failures are raised as AIProviderError tagged with an ErrorKind so callers
can tell rate limits, oversize payloads and timeouts from transient faults.

Usage:
    from ai_providers import get_provider, Attachment

    provider = get_provider("gemini", purpose="year", api_key=key)
    text = provider.generate(prompt, attachment=Attachment(pdf_bytes, "application/pdf"))
"""

import base64
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from errors import AIProviderError, ErrorKind, kind_for_status
from settings import get_logger

logger = get_logger("ai")

# Default model per provider and purpose. "classifier" answers from the
# filename alone, "year" reads the drawing itself.
DEFAULT_MODELS = {
    "gemini": {"classifier": "gemini-2.5-flash-lite", "year": "gemini-2.5-flash"},
    "anthropic": {"classifier": "claude-3-5-haiku-latest", "year": "claude-sonnet-4-20250514"},
    "openai": {"classifier": "gpt-4o-mini", "year": "gpt-4o"},
}


@dataclass(frozen=True)
class Attachment:
    """Inline binary content sent alongside a prompt."""

    data: bytes
    mime_type: str

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"


def _status_error(provider: str, status: Optional[int], message: str) -> AIProviderError:
    kind = kind_for_status(status)
    return AIProviderError(f"{provider} API error ({status}): {message}", kind=kind, status=status)


def _timeout_error(provider: str, error: Exception) -> AIProviderError:
    return AIProviderError(f"{provider} request timed out: {error}", kind=ErrorKind.TIMEOUT)


# ==============================================================================
# BASE PROVIDER CLASS
# ==============================================================================

class AIProvider(ABC):
    """Abstract base class for AI providers."""

    name: str = "base"
    display_name: str = "Base Provider"
    requires_api_key: bool = True

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key
        self.model = model or DEFAULT_MODELS[self.name]["classifier"]

    def is_available(self) -> bool:
        """Check if this provider is configured and available."""
        return bool(self.api_key)

    @abstractmethod
    def generate(
        self,
        prompt: str,
        attachment: Optional[Attachment] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run one prompt through the model at temperature 0.

        Args:
            prompt: Instruction text
            attachment: Optional inline PDF or image
            timeout: Seconds before the request is abandoned

        Returns:
            The model's text answer, stripped. Empty string if it produced none.

        Raises:
            AIProviderError: On any non-2xx response, timeout, or transport failure
        """
        pass


# ==============================================================================
# GEMINI PROVIDER
# ==============================================================================

class GeminiProvider(AIProvider):
    """Google Gemini via the google-genai SDK."""

    name = "gemini"
    display_name = "Google Gemini"
    requires_api_key = True

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        super().__init__(api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"), model)
        self._client = None

    @property
    def client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate(self, prompt, attachment=None, timeout=None) -> str:
        from google.genai import errors as genai_errors
        from google.genai import types

        contents = [prompt]
        if attachment is not None:
            contents.insert(0, types.Part.from_bytes(data=attachment.data, mime_type=attachment.mime_type))

        config = types.GenerateContentConfig(
            temperature=0,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)) if timeout else None,
        )

        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=contents,
                config=config,
            )
        except genai_errors.APIError as e:
            raise _status_error("Gemini", e.code, e.message or str(e)) from e
        except httpx.TimeoutException as e:
            raise _timeout_error("Gemini", e) from e
        except httpx.HTTPError as e:
            raise AIProviderError(f"Gemini transport error: {e}") from e

        return (response.text or "").strip()


# ==============================================================================
# ANTHROPIC PROVIDER
# ==============================================================================

class AnthropicProvider(AIProvider):
    """Anthropic Claude API provider."""

    name = "anthropic"
    display_name = "Anthropic Claude"
    requires_api_key = True

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        super().__init__(api_key or os.getenv("ANTHROPIC_API_KEY"), model)

    def _content(self, prompt: str, attachment: Optional[Attachment]) -> list:
        content = []
        if attachment is not None:
            block_type = "document" if attachment.is_pdf else "image"
            content.append({
                "type": block_type,
                "source": {
                    "type": "base64",
                    "media_type": attachment.mime_type,
                    "data": attachment.to_base64(),
                },
            })
        content.append({"type": "text", "text": prompt})
        return content

    def generate(self, prompt, attachment=None, timeout=None) -> str:
        import anthropic

        client = anthropic.Anthropic(api_key=self.api_key)
        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=100,
                temperature=0,
                messages=[{"role": "user", "content": self._content(prompt, attachment)}],
                timeout=timeout,
            )
        except anthropic.APITimeoutError as e:
            raise _timeout_error("Anthropic", e) from e
        except anthropic.APIStatusError as e:
            raise _status_error("Anthropic", e.status_code, e.message) from e
        except anthropic.APIError as e:
            raise AIProviderError(f"Anthropic API error: {e}") from e

        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        return text.strip()


# ==============================================================================
# OPENAI PROVIDER
# ==============================================================================

class OpenAIProvider(AIProvider):
    """OpenAI GPT provider."""

    name = "openai"
    display_name = "OpenAI GPT"
    requires_api_key = True

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        super().__init__(api_key or os.getenv("OPENAI_API_KEY"), model)

    def _content(self, prompt: str, attachment: Optional[Attachment]):
        if attachment is None:
            return prompt
        data_uri = f"data:{attachment.mime_type};base64,{attachment.to_base64()}"
        if attachment.is_pdf:
            part = {"type": "file", "file": {"filename": "drawing.pdf", "file_data": data_uri}}
        else:
            part = {"type": "image_url", "image_url": {"url": data_uri}}
        return [part, {"type": "text", "text": prompt}]

    def generate(self, prompt, attachment=None, timeout=None) -> str:
        import openai

        client = openai.OpenAI(api_key=self.api_key)
        try:
            response = client.chat.completions.create(
                model=self.model,
                max_tokens=100,
                temperature=0,
                messages=[{"role": "user", "content": self._content(prompt, attachment)}],
                timeout=timeout,
            )
        except openai.APITimeoutError as e:
            raise _timeout_error("OpenAI", e) from e
        except openai.APIStatusError as e:
            raise _status_error("OpenAI", e.status_code, e.message) from e
        except openai.APIError as e:
            raise AIProviderError(f"OpenAI API error: {e}") from e

        return (response.choices[0].message.content or "").strip()


# ==============================================================================
# PROVIDER REGISTRY
# ==============================================================================

# Registry of all available providers
PROVIDERS = {
    "gemini": GeminiProvider,
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}


def list_providers() -> dict:
    """List all available providers and their status."""
    result = {}
    for name, provider_class in PROVIDERS.items():
        provider = provider_class()
        result[name] = {
            "display_name": provider.display_name,
            "requires_api_key": provider.requires_api_key,
            "available": provider.is_available(),
            "models": DEFAULT_MODELS[name],
        }
    return result


def get_provider(
    name: Optional[str] = None,
    purpose: str = "classifier",
    model: Optional[str] = None,
    **kwargs
) -> AIProvider:
    """
    Get an AI provider instance.

    Args:
        name: Provider name. If None, uses AI_PROVIDER env var, then "gemini".
        purpose: "classifier" or "year"; picks the default model when model is unset.
        model: Explicit model name.
        **kwargs: Provider-specific configuration options (e.g. api_key).

    Raises:
        ValueError: If the specified provider or purpose is not found.
    """
    if name is None:
        name = os.getenv("AI_PROVIDER", "") or "gemini"
    name = name.lower()

    if name not in PROVIDERS:
        available = ", ".join(PROVIDERS.keys())
        raise ValueError(f"Unknown provider '{name}'. Available: {available}")
    if purpose not in DEFAULT_MODELS[name]:
        raise ValueError(f"Unknown purpose '{purpose}'. Use 'classifier' or 'year'")

    model = model or DEFAULT_MODELS[name][purpose]
    logger.debug(f"Using {name} provider with model {model} for {purpose}")
    return PROVIDERS[name](model=model, **kwargs)
