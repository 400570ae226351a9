"""
Embedding and completion providers.

Supports two backends: stub (deterministic, no network) and any
OpenAI-compatible API (OpenRouter, OpenAI, local gateways) through the
official `openai` SDK.
"""

import hashlib
import logging
import math

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI

from labelops.config.settings import Settings
from labelops.v1.core.registries import CompletionResult

logger = logging.getLogger(__name__)


class AIServiceError(Exception):
    """Raised when an AI service call fails for the whole request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class StubEmbeddingProvider:
    """
    Deterministic hash-based embeddings for development and testing.

    Each text maps to the same L2-normalized vector on every call.
    """

    def __init__(self, dimension: int = 256):
        self.dimension = dimension

    def vectorize(self, text: str) -> list[float]:
        normalized_text = text.strip().lower()
        text_hash = hashlib.sha256(normalized_text.encode("utf-8")).hexdigest()

        # Each pair of hex chars becomes a float between -1 and 1
        vector = [
            (int(text_hash[i : i + 2], 16) / 127.5) - 1.0
            for i in range(0, len(text_hash), 2)
        ]

        while len(vector) < self.dimension:
            pos_val = (len(vector) % 256) / 127.5 - 1.0
            text_val = (len(normalized_text) % 256) / 127.5 - 1.0
            vector.append((pos_val + text_val) / 2.0)

        vector = vector[: self.dimension]

        norm = math.sqrt(sum(x * x for x in vector))
        if norm > 0:
            vector = [x / norm for x in vector]

        return vector

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self.vectorize(text) if text.strip() else [] for text in texts]

    def get_model_version(self) -> str:
        return f"stub-{self.dimension}"


class StubCompletionProvider:
    """Returns a fixed, parseable score so evaluation runs offline."""

    def __init__(self, realism: int = 4, quality: int = 4):
        self.realism = realism
        self.quality = quality

    async def complete(
        self, model_id: str, prompt: str, system_prompt: str | None = None
    ) -> CompletionResult:
        content = f'{{"realism": {self.realism}, "quality": {self.quality}}}'
        prompt_tokens = len(prompt.split())
        return CompletionResult(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=8,
            total_tokens=prompt_tokens + 8,
        )


class OpenAICompatibleClient:
    """Shared `AsyncOpenAI` client for OpenAI-style endpoints."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.http_client = http_client
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        """Lazy load the OpenAI client."""
        if self._client is None:
            headers = {"X-Title": self.settings.app_name}
            if self.settings.app_base_url:
                headers["HTTP-Referer"] = self.settings.app_base_url
            self._client = AsyncOpenAI(
                base_url=self.settings.ai_base_url,
                # Local gateways accept any key; the SDK insists on one
                api_key=self.settings.ai_api_key or "unset",
                timeout=self.settings.ai_timeout_s,
                # Failed items are skipped and picked up by a later slice
                max_retries=0,
                default_headers=headers,
                http_client=self.http_client,
            )
        return self._client


def _service_error(operation: str, error: APIError) -> AIServiceError:
    if isinstance(error, APIStatusError):
        return AIServiceError(
            f"{operation} returned {error.status_code}: {error.message}",
            status_code=error.status_code,
        )
    return AIServiceError(f"Request to {operation} failed: {error}")


class OpenAICompatibleEmbeddingProvider(OpenAICompatibleClient):
    """Embeddings via `client.embeddings.create`."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        try:
            response = await self._get_client().embeddings.create(
                model=self.settings.embedding_model,
                input=texts,
                encoding_format="float",
            )
        except APIError as e:
            raise _service_error("embeddings", e) from e

        items = response.data or []
        if len(items) != len(texts):
            raise AIServiceError(f"Expected {len(texts)} embeddings, got {len(items)}")

        # Responses carry an index; order by it rather than trusting list order
        vectors: list[list[float]] = [[] for _ in texts]
        for item in items:
            if 0 <= item.index < len(texts):
                vectors[item.index] = list(item.embedding or [])
        return vectors

    def get_model_version(self) -> str:
        return self.settings.embedding_model


class OpenAICompatibleCompletionProvider(OpenAICompatibleClient):
    """Chat completions via `client.chat.completions.create`."""

    async def complete(
        self, model_id: str, prompt: str, system_prompt: str | None = None
    ) -> CompletionResult:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._get_client().chat.completions.create(
                model=model_id,
                messages=messages,
                max_tokens=self.settings.evaluation_max_tokens,
                temperature=self.settings.evaluation_temperature,
            )
        except APIError as e:
            raise _service_error("chat completion", e) from e

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        if not content:
            raise AIServiceError(f"Empty response from model {model_id}")

        usage = response.usage
        return CompletionResult(
            content=content,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
        )
