"""Provider invokers: one raw model call, no retry or rate limiting.

``invoke(system_prompt, user_prompt, payload) -> str`` returns the model's
raw text.  Errors from the SDKs propagate unchanged so the retry layer can
classify them.

Providers supported:
  - anthropic (Claude, PDF sent as a document block)
  - openai    (GPT vision, pages sent as PNG images)
  - grok      (xAI, OpenAI-compatible API with a custom base URL)
  - google    (Gemini, PDF sent inline)
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from suppfacts.core.config import settings
from suppfacts.modules.extraction.documents import DocumentPayload

logger = structlog.get_logger()

# Default models per provider (used when no model is configured)
DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "google": "gemini-2.5-flash",
    "openai": "gpt-4.1",
    "grok": "grok-2-vision-1212",
}


class ProviderInvoker(Protocol):
    name: str
    model: str

    async def invoke(self, system_prompt: str, user_prompt: str, payload: DocumentPayload | None) -> str: ...


class AnthropicInvoker:
    """Claude via the Anthropic Messages API."""

    name = "anthropic"

    def __init__(self, model: str, api_key: str, max_tokens: int, temperature: float) -> None:
        self.model = model
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            import anthropic

            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def invoke(self, system_prompt: str, user_prompt: str, payload: DocumentPayload | None) -> str:
        content: list[dict[str, Any]] = []
        if payload is not None:
            data = await asyncio.to_thread(payload.pdf_base64)
            content.append(
                {
                    "type": "document",
                    "source": {"type": "base64", "media_type": "application/pdf", "data": data},
                }
            )
        content.append({"type": "text", "text": user_prompt})

        response = await self._get_client().messages.create(
            model=self.model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": content}],
        )

        usage = response.usage
        logger.info(
            "Anthropic call",
            model=self.model,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            stop_reason=response.stop_reason,
        )
        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        if not text:
            raise ValueError("Anthropic API returned no text content")
        return text


class OpenAICompatibleInvoker:
    """OpenAI chat completions with page images; also serves Grok."""

    def __init__(
        self,
        name: str,
        model: str,
        api_key: str,
        max_tokens: int,
        temperature: float,
        base_url: str | None = None,
    ) -> None:
        self.name = name
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def invoke(self, system_prompt: str, user_prompt: str, payload: DocumentPayload | None) -> str:
        content: list[dict[str, Any]] = []
        if payload is not None:
            images = await asyncio.to_thread(payload.page_images)
            content.extend(
                {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image}", "detail": "high"}}
                for image in images
            )
        content.append({"type": "text", "text": user_prompt})

        response = await self._get_client().chat.completions.create(
            model=self.model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
        )

        usage = response.usage
        logger.info(
            f"{self.name} call",
            model=self.model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )
        text = response.choices[0].message.content if response.choices else None
        if not text:
            raise ValueError(f"{self.name} API returned no text content")
        return text


class GeminiInvoker:
    """Gemini via google-genai's async client."""

    name = "google"

    def __init__(self, model: str, api_key: str, max_tokens: int, temperature: float) -> None:
        self.model = model
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from google import genai
            from google.genai import types as genai_types

            self._client = genai.Client(
                api_key=self._api_key,
                http_options=genai_types.HttpOptions(timeout=120_000),
            )
        return self._client

    async def invoke(self, system_prompt: str, user_prompt: str, payload: DocumentPayload | None) -> str:
        from google.genai import types

        contents: list[Any] = []
        if payload is not None:
            data = await asyncio.to_thread(payload.read_bytes)
            contents.append(types.Part.from_bytes(data=data, mime_type="application/pdf"))
        contents.append(user_prompt)

        response = await self._get_client().aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=system_prompt,
                temperature=self._temperature,
                max_output_tokens=self._max_tokens,
                response_mime_type="application/json",
            ),
        )

        usage = response.usage_metadata
        logger.info(
            "Gemini call",
            model=self.model,
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
        )
        if not response.text:
            raise ValueError("Gemini API returned no text content")
        return response.text


def build_invoker(provider: str, model: str = "") -> ProviderInvoker:
    """Build the invoker for ``provider``; SDK clients are created on first call."""
    model = model or DEFAULT_MODELS.get(provider, "")
    max_tokens, temperature = settings.ai_max_tokens, settings.ai_temperature

    if provider == "anthropic":
        return AnthropicInvoker(model, settings.anthropic_api_key, max_tokens, temperature)
    if provider == "openai":
        return OpenAICompatibleInvoker("openai", model, settings.openai_api_key, max_tokens, temperature)
    if provider == "grok":
        return OpenAICompatibleInvoker(
            "grok", model, settings.grok_api_key, max_tokens, temperature, base_url=settings.grok_base_url
        )
    if provider == "google":
        return GeminiInvoker(model, settings.google_ai_api_key, max_tokens, temperature)
    raise ValueError(f"Unsupported provider: {provider}")
