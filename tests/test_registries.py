import pytest

from factories import make_settings
from labelops.v1.ai.clients import StubCompletionProvider, StubEmbeddingProvider
from labelops.v1.ai.registry_init import init_ai_registries
from labelops.v1.core.registries import (
    JobRegistry,
    Registry,
    completion_registry,
    embedding_registry,
    job_registry,
)
from labelops.v1.infra.jobs.handlers import (
    CleanupHandler,
    EvaluateBatchHandler,
    IngestHandler,
    VectorizeHandler,
)
from labelops.v1.infra.jobs.models import JobType
from labelops.v1.infra.jobs.registry_init import register_job_handlers


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    assert registry.list() == []

    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert "test_impl" in registry
    assert "missing" not in registry

    with pytest.raises(KeyError, match="No test registered as .missing."):
        registry.get("missing")


def test_registry_overwrites_implementation():
    registry = Registry[str]("Test")
    registry.register("impl", "first")
    registry.register("impl", "second")

    assert registry.get("impl") == "second"
    assert registry.list() == ["impl"]


def test_frozen_registry_rejects_registration():
    registry = JobRegistry()
    registry.register("cleanup", object())
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="frozen"):
        registry.register("ingest", object())
    # Reads still work
    assert registry.get("cleanup") is not None


def test_job_handlers_registered_for_every_job_type():
    if job_registry.is_frozen():
        pytest.skip("global registry frozen by a non-development app instance")

    register_job_handlers(make_settings())

    expected = {
        JobType.INGEST.value: IngestHandler,
        JobType.VECTORIZE.value: VectorizeHandler,
        JobType.EVALUATE_BATCH.value: EvaluateBatchHandler,
        JobType.CLEANUP.value: CleanupHandler,
    }
    for job_type, handler_class in expected.items():
        assert isinstance(job_registry.get(job_type), handler_class)


def test_ai_registries_provide_stub_and_http_providers():
    if embedding_registry.is_frozen():
        pytest.skip("global registry frozen by a non-development app instance")

    init_ai_registries(make_settings())

    assert set(embedding_registry.list()) >= {"stub", "openai_compatible"}
    assert set(completion_registry.list()) >= {"stub", "openai_compatible"}
    assert isinstance(embedding_registry.get("stub"), StubEmbeddingProvider)
    assert isinstance(completion_registry.get("stub"), StubCompletionProvider)
