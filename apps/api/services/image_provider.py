"""Image generation provider client."""

from __future__ import annotations

import base64
import logging
from typing import Optional, Protocol

import httpx
import openai
from openai import OpenAI

from config import require_openai_api_key, settings
from services.errors import ProviderError, ProviderPermanentError

logger = logging.getLogger(__name__)


class ImageProvider(Protocol):
    def generate(self, image_bytes: bytes, prompt: str, mime_type: str) -> bytes:
        ...


def _extension_for(mime_type: str) -> str:
    subtype = (mime_type or "image/jpeg").split("/")[-1].lower()
    return "jpg" if subtype in ("jpeg", "pjpeg") else subtype


class OpenAIImageProvider:
    """Blocking OpenAI images client; the worker runs it in a thread."""

    def __init__(self, client: Optional[OpenAI] = None):
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=require_openai_api_key(),
                timeout=float(settings.PROVIDER_TIMEOUT_SECONDS),
                max_retries=0,
            )
        return self._client

    def generate(self, image_bytes: bytes, prompt: str, mime_type: str) -> bytes:
        try:
            response = self.client.images.edit(
                model=settings.IMAGE_MODEL,
                image=(f"source.{_extension_for(mime_type)}", image_bytes, mime_type or "image/jpeg"),
                prompt=prompt,
            )
        except ValueError as exc:
            raise ProviderPermanentError(str(exc)) from exc
        except (openai.BadRequestError, openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ProviderPermanentError(f"Image generation rejected: {exc}") from exc
        except openai.APIError as exc:
            # connection errors, timeouts, rate limits and 5xx
            raise ProviderError(f"Image generation failed: {exc}") from exc

        data = list(response.data or [])
        if not data:
            raise ProviderError("Image provider returned no output")
        first = data[0]
        if getattr(first, "b64_json", None):
            return base64.b64decode(first.b64_json)
        if getattr(first, "url", None):
            try:
                result = httpx.get(first.url, timeout=float(settings.PROVIDER_TIMEOUT_SECONDS))
                result.raise_for_status()
            except httpx.HTTPError as exc:
                raise ProviderError(f"Could not download generated image: {exc}") from exc
            return result.content
        raise ProviderError("Unexpected output format from image provider")


_provider: Optional[ImageProvider] = None


def get_image_provider() -> ImageProvider:
    global _provider
    if _provider is None:
        _provider = OpenAIImageProvider()
    return _provider


def set_image_provider(provider: Optional[ImageProvider]) -> None:
    """Swap the process-wide provider (None restores the default)."""
    global _provider
    _provider = provider
