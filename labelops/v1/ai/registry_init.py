"""
Initialize embedding and completion registries.

Registers all available provider implementations based on settings.
"""

from labelops.config.settings import Settings, settings
from labelops.v1.ai.clients import (
    OpenAICompatibleCompletionProvider,
    OpenAICompatibleEmbeddingProvider,
    StubCompletionProvider,
    StubEmbeddingProvider,
)
from labelops.v1.core.registries import completion_registry, embedding_registry


def init_ai_registries(app_settings: Settings = settings) -> None:
    """Initialize AI provider registries with available implementations."""

    # Stubs need no network access and are always available
    embedding_registry.register("stub", StubEmbeddingProvider())
    completion_registry.register("stub", StubCompletionProvider())

    embedding_registry.register(
        "openai_compatible", OpenAICompatibleEmbeddingProvider(app_settings)
    )
    completion_registry.register(
        "openai_compatible", OpenAICompatibleCompletionProvider(app_settings)
    )

    # Validate configured providers are available
    for registry, configured in (
        (embedding_registry, app_settings.embeddings.value),
        (completion_registry, app_settings.completions.value),
    ):
        try:
            registry.get(configured)
        except KeyError as e:
            raise RuntimeError(
                f"Configured {registry.name.lower()} '{configured}' not available. "
                f"Available providers: {registry.list()}"
            ) from e
