"""
Vision/language capability providers.

The pipeline only needs one thing from a model: given a prompt and zero or
more images, return text. Providers implement that contract; the
RetryingCapability wrapper adds bounded retries with exponential backoff and
a per-attempt timeout around the invocation itself (never around parsing).

Usage:
    capability = get_capability()            # provider from settings, with retries
    text = await capability.invoke(prompt, [exam_image])
"""
import asyncio
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from langsmith import traceable

from ..config import settings
from ..exceptions import CapabilityError
from .imaging import ExamImage

logger = logging.getLogger(__name__)


# =============================================================================
# Provider Interface
# =============================================================================

class VisionCapability(ABC):
    """Abstract base class for vision/language model providers."""

    @abstractmethod
    async def invoke(self, prompt: str, images: Optional[Sequence[ExamImage]] = None) -> str:
        """
        Send a prompt (and optional images) to the model.

        Args:
            prompt: Textual instruction
            images: Page images to attach, in order

        Returns:
            Free-form model response text
        """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name for logging."""


class OpenAICapability(VisionCapability):
    """
    OpenAI GPT-4o provider using the native AsyncOpenAI client, so that
    asyncio.wait_for() cancels the underlying HTTP request on timeout.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.1,
    ):
        from openai import AsyncOpenAI
        self._client = AsyncOpenAI(api_key=api_key or settings.openai_api_key or os.getenv("OPENAI_API_KEY"))
        self.model = model or settings.openai_vision_model
        self.max_tokens = max_tokens or settings.max_tokens_per_request
        self.temperature = temperature

    @property
    def name(self) -> str:
        return f"OpenAI/{self.model}"

    @traceable(run_type="llm", name="OpenAI Vision")
    async def invoke(self, prompt: str, images: Optional[Sequence[ExamImage]] = None) -> str:
        content: List[Dict[str, Any]] = []

        for image in images or []:
            content.append({
                "type": "image_url",
                "image_url": {
                    "url": image.to_data_url(),
                    "detail": "high",
                },
            })

        content.append({"type": "text", "text": prompt})

        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": content}],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

        return response.choices[0].message.content or ""


class GoogleCapability(VisionCapability):
    """Google Gemini provider. The SDK call is blocking, so it runs in a worker thread."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.1,
    ):
        import google.generativeai as genai
        genai.configure(api_key=api_key or settings.google_api_key or os.getenv("GOOGLE_API_KEY"))
        self._model_name = model or settings.gemini_model
        self.model = genai.GenerativeModel(self._model_name)
        self.max_tokens = max_tokens or settings.max_tokens_per_request
        self.temperature = temperature

    @property
    def name(self) -> str:
        return f"Google/{self._model_name}"

    def _generate(self, prompt: str, images: Sequence[ExamImage]) -> str:
        import google.generativeai as genai

        parts: List[Any] = [prompt]
        for image in images:
            parts.append({"mime_type": image.content_type, "data": image.data})

        response = self.model.generate_content(
            parts,
            generation_config=genai.GenerationConfig(
                max_output_tokens=self.max_tokens,
                temperature=self.temperature,
            ),
        )
        return response.text

    @traceable(run_type="llm", name="Gemini Vision")
    async def invoke(self, prompt: str, images: Optional[Sequence[ExamImage]] = None) -> str:
        return await asyncio.to_thread(self._generate, prompt, list(images or []))


class RetryingCapability(VisionCapability):
    """
    Bounded retry with exponential backoff around another capability.

    Attempt n (0-based) that fails waits backoff_seconds * 2**n before the
    next one: 1s, 2s, 4s with the default settings. Each attempt is bounded
    by timeout_seconds when set. Exhausted retries raise CapabilityError.
    """

    def __init__(
        self,
        inner: VisionCapability,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout_seconds: Optional[float] = None,
    ):
        self.inner = inner
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return self.inner.name

    async def _attempt(self, prompt: str, images: Optional[Sequence[ExamImage]]) -> str:
        if self.timeout_seconds:
            return await asyncio.wait_for(self.inner.invoke(prompt, images), timeout=self.timeout_seconds)
        return await self.inner.invoke(prompt, images)

    async def invoke(self, prompt: str, images: Optional[Sequence[ExamImage]] = None) -> str:
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                return await self._attempt(prompt, images)
            except Exception as e:
                last_error = e
                reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
                logger.warning(f"[{self.name}] Attempt {attempt + 1}/{self.max_attempts} failed: {reason}")
                if attempt < self.max_attempts - 1:
                    await asyncio.sleep(self.backoff_seconds * (2 ** attempt))

        raise CapabilityError(
            f"{self.name} failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            original_error=last_error,
        ) from last_error


def get_capability(provider_name: Optional[str] = None, with_retry: bool = True, **kwargs) -> VisionCapability:
    """
    Factory function to get a capability provider by name.

    Args:
        provider_name: One of "openai", "google" (defaults to settings.capability_provider)
        with_retry: Wrap the provider with the configured retry/timeout policy
        **kwargs: Provider-specific arguments (api_key, model, etc.)
    """
    providers = {
        "openai": OpenAICapability,
        "google": GoogleCapability,
    }

    name = (provider_name or settings.capability_provider).lower()
    if name not in providers:
        raise ValueError(f"Unknown provider: {name}. Available: {list(providers.keys())}")

    capability = providers[name](**kwargs)
    logger.info(f"Using capability provider: {capability.name}")

    if not with_retry:
        return capability

    return RetryingCapability(
        capability,
        max_attempts=settings.capability_max_attempts,
        backoff_seconds=settings.capability_backoff_seconds,
        timeout_seconds=settings.capability_timeout_seconds,
    )


def get_scoring_capability(provider_name: Optional[str] = None, with_retry: bool = True) -> VisionCapability:
    """Capability for text-only answer scoring, on the configured scoring model."""
    name = (provider_name or settings.capability_provider).lower()
    scoring_models = {
        "openai": settings.openai_model,
        "google": settings.gemini_scoring_model,
    }
    return get_capability(name, with_retry=with_retry, model=scoring_models.get(name))


# =============================================================================
# Response parsing
# =============================================================================

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(response: Optional[str]) -> str:
    """Remove markdown code fences (```json ... ```) around a model response."""
    return _CODE_FENCE.sub("", response or "").strip()


def _load_json_between(response: Optional[str], opening: str, closing: str) -> Any:
    cleaned = strip_code_fences(response)
    start = cleaned.find(opening)
    end = cleaned.rfind(closing)
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        logger.error(f"JSON parse error: {e}")
        logger.debug(f"Response: {cleaned[:500]}...")
        return None


def extract_json_object(response: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Find the outermost JSON object in a model response.

    Returns None when there is no object or it does not parse.
    """
    data = _load_json_between(response, "{", "}")
    return data if isinstance(data, dict) else None


def extract_json_array(response: Optional[str]) -> Optional[List[Any]]:
    """Find the outermost JSON array in a model response, or None."""
    data = _load_json_between(response, "[", "]")
    return data if isinstance(data, list) else None
