"""Shared fixtures for recallgraph tests."""

import pytest

from recallgraph.config.schema import Config
from recallgraph.memory.embeddings import HashingEmbeddingModel
from recallgraph.memory.graph import KnowledgeGraph
from recallgraph.memory.store import GraphStore
from recallgraph.memory.vector_index import VectorIndex

DIMENSION = 64


@pytest.fixture
def config(tmp_path):
    """Configuration pointing at a throwaway workspace."""
    return Config(workspace=str(tmp_path), store={"db_path": ":memory:"})


@pytest.fixture
async def store():
    """An open in-memory GraphStore."""
    graph_store = GraphStore(":memory:")
    await graph_store.initialize()
    yield graph_store
    await graph_store.close()


@pytest.fixture
def embedding_model():
    return HashingEmbeddingModel(DIMENSION)


@pytest.fixture
def vector_index():
    index = VectorIndex(dimension=DIMENSION, max_elements=16, ef_construction=100, M=8)
    index.initialize()
    return index


@pytest.fixture
async def graph(store, config, embedding_model, vector_index):
    """A knowledge graph with semantic search enabled."""
    knowledge_graph = KnowledgeGraph(store, config, embedding_model, vector_index)
    await knowledge_graph.initialize()
    yield knowledge_graph


@pytest.fixture
async def plain_graph(store, config):
    """A knowledge graph without embeddings (lexical search only)."""
    knowledge_graph = KnowledgeGraph(store, config)
    await knowledge_graph.initialize()
    yield knowledge_graph
