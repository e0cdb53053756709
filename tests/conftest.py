# =============================================================================
# Shared Test Fixtures
# =============================================================================
# Fresh in-memory collaborators per test (see fakes.py).
# =============================================================================

import pytest
from fakes import FakePluginStore, FakeVectorStore, fake_embed, fake_embed_many

from plugin_engine.services.retriever import Retriever


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def retriever(vector_store) -> Retriever:
    return Retriever(store=vector_store, embed=fake_embed, embed_many=fake_embed_many)


@pytest.fixture
def plugin_store() -> FakePluginStore:
    return FakePluginStore()
