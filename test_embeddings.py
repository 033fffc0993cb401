"""Tests for embedding providers.

Run with: pytest test_embeddings.py -v
"""

from unittest.mock import MagicMock

import numpy as np
import pytest
import requests

import embeddings
from config import Config
from embeddings import Embedder, hash_embedding
from errors import EmbeddingError, InvalidArgument


def cosine(a, b):
    return float(np.dot(a, b))


class TestHashEmbedding:
    def test_deterministic_unit_vector(self):
        first = hash_embedding("Reset the cache", 384)
        assert first == hash_embedding("reset THE cache", 384)
        assert len(first) == 384
        assert np.linalg.norm(first) == pytest.approx(1.0)

    def test_shared_tokens_score_higher(self):
        query = hash_embedding("hello", 384)
        related = hash_embedding("hello world", 384)
        unrelated = hash_embedding("unrelated gibberish xyz", 384)
        assert cosine(query, related) > cosine(query, unrelated)

    def test_empty_text_still_normalised(self):
        vector = hash_embedding("", 64)
        assert np.linalg.norm(vector) == pytest.approx(1.0)


class TestEmbedder:
    def test_cache_avoids_recomputation(self, config):
        provider = MagicMock(return_value=[1.0] + [0.0] * (config.embedding_dim - 1))
        embedder = Embedder(config, provider=provider)
        assert embedder.embed("same") == embedder.embed("same")
        assert provider.call_count == 1
        embedder.cache_clear()
        embedder.embed("same")
        assert provider.call_count == 2

    def test_provider_failure_is_embedding_error(self, config):
        embedder = Embedder(config, provider=MagicMock(side_effect=RuntimeError("model offline")))
        with pytest.raises(EmbeddingError, match="model offline"):
            embedder.embed("text")

    def test_dimension_mismatch_is_embedding_error(self, config):
        embedder = Embedder(config, provider=lambda text: [0.5, 0.5])
        with pytest.raises(EmbeddingError, match="dimension"):
            embedder.embed("text")

    def test_unknown_provider(self):
        with pytest.raises(InvalidArgument, match="Unknown embedding provider"):
            Embedder(Config(embedding_provider="word2vec"))

    def test_hash_provider_is_default(self, config):
        assert Embedder(config).embed("abc") == hash_embedding("abc", config.embedding_dim)


class TestOllamaProvider:
    @pytest.fixture
    def ollama(self):
        return Embedder(Config(embedding_provider="ollama", embedding_dim=8, ollama_base_url="http://ollama.test"))

    def test_pads_and_normalises(self, ollama, monkeypatch):
        reply = MagicMock()
        reply.json.return_value = {"embedding": [3.0, 4.0]}
        post = MagicMock(return_value=reply)
        monkeypatch.setattr(embeddings.requests, "post", post)

        vector = ollama.embed("hi")
        assert vector == pytest.approx([0.6, 0.8, 0, 0, 0, 0, 0, 0])
        args, kwargs = post.call_args
        assert args[0] == "http://ollama.test/api/embeddings"
        assert kwargs["json"]["prompt"] == "hi"
        assert "timeout" in kwargs

    def test_request_failure(self, ollama, monkeypatch):
        monkeypatch.setattr(embeddings.requests, "post", MagicMock(side_effect=requests.ConnectionError("down")))
        with pytest.raises(EmbeddingError, match="Ollama"):
            ollama.embed("hi")

    def test_empty_embedding(self, ollama, monkeypatch):
        reply = MagicMock()
        reply.json.return_value = {"embedding": []}
        monkeypatch.setattr(embeddings.requests, "post", MagicMock(return_value=reply))
        with pytest.raises(EmbeddingError, match="empty"):
            ollama.embed("hi")
