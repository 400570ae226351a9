"""
Named registries for pluggable providers and job handlers.

Providers are looked up by the names configured in settings
(`EMBEDDINGS`, `COMPLETIONS`); job handlers by the job's `job_type`.
Outside development the registries are frozen once the app is built.
"""

from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

T = TypeVar("T")


class Registry(Generic[T]):
    def __init__(self, kind: str):
        self.name = kind
        self._entries: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        if self._frozen:
            raise RuntimeError(f"{self.name} registry is frozen; cannot register '{name}'")
        self._entries[name] = implementation

    def get(self, name: str) -> T:
        try:
            return self._entries[name]
        except KeyError:
            raise KeyError(
                f"No {self.name.lower()} registered as '{name}' (known: {self.list()})"
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def list(self) -> list[str]:
        return sorted(self._entries)

    def freeze(self) -> None:
        self._frozen = True

    def is_frozen(self) -> bool:
        return self._frozen


class EmbeddingProvider(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed a batch of texts.

        Returns exactly one vector per input text, in order, or raises
        AIServiceError for the whole batch. An empty vector marks an input
        the service could not embed.
        """
        ...

    def get_model_version(self) -> str: ...


@dataclass
class CompletionResult:
    """Completion text plus token usage reported by the service."""

    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionProvider(Protocol):
    async def complete(
        self, model_id: str, prompt: str, system_prompt: str | None = None
    ) -> CompletionResult:
        """Complete a single prompt with the given model, or raise AIServiceError."""
        ...


class JobHandler(Protocol):
    async def handle(
        self,
        session: Any,  # AsyncSession
        ctx: Any,  # JobContext
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Process one claimed job.

        The handler validates its own payload, commits its own writes and
        returns the result stored on the completed job. Raising marks the
        job failed; the worker records the exception type and message.
        """
        ...


class EmbeddingRegistry(Registry[EmbeddingProvider]):
    def __init__(self):
        super().__init__("Embedding provider")


class CompletionRegistry(Registry[CompletionProvider]):
    def __init__(self):
        super().__init__("Completion provider")


class JobRegistry(Registry[JobHandler]):
    def __init__(self):
        super().__init__("Job handler")


embedding_registry = EmbeddingRegistry()
completion_registry = CompletionRegistry()
job_registry = JobRegistry()
