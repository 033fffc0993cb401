"""Embedding providers.

Every provider maps text to a unit-length vector of ``embedding_dim`` floats:
- hash: local feature-hashed bag of words (deterministic, no network)
- ollama: local Ollama server, /api/embeddings
- google: Gemini embed_content via google-genai
"""

from __future__ import annotations

import hashlib
import os
import re
import threading
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import numpy as np
import requests

from config import CONFIG, Config
from errors import EmbeddingError, InvalidArgument
from utils import log

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _fit_dimension(embedding: np.ndarray, dim: int) -> np.ndarray:
    """Handle dimension mismatch by truncation/padding."""
    if len(embedding) > dim:
        return embedding[:dim]
    if len(embedding) < dim:
        return np.concatenate([embedding, np.zeros(dim - len(embedding))])
    return embedding


def _normalize(embedding: np.ndarray) -> list[float]:
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def hash_embedding(text: str, dim: int) -> list[float]:
    """Feature-hashed bag of words.

    Each lowercase token lands in one bucket with a sign taken from its
    digest, so texts sharing tokens have positive cosine similarity.
    Text without tokens hashes as a single empty token.
    """
    vector = np.zeros(dim)
    tokens = TOKEN_RE.findall(text.lower()) or [""]
    for token in tokens:
        digest = hashlib.sha256(token.encode()).digest()
        bucket = int.from_bytes(digest[:8], "little") % dim
        sign = 1.0 if digest[8] & 1 else -1.0
        vector[bucket] += sign
    return _normalize(vector)


class Embedder:
    """Text -> fixed-length vector, with an LRU cache in front of the provider."""

    def __init__(self, config: Config = CONFIG, provider: Callable[[str], list[float]] | None = None):
        self.config = config
        self.dimension = config.embedding_dim
        self._provider = provider or self._select_provider(config.embedding_provider)
        self._genai_client: GenAIClient | None = None
        self._lock = threading.Lock()
        self._cached = lru_cache(maxsize=config.embedding_cache_size)(self._compute)

    def _select_provider(self, name: str) -> Callable[[str], list[float]]:
        providers = {
            "hash": self._embed_hash,
            "ollama": self._embed_ollama,
            "google": self._embed_google,
        }
        try:
            return providers[name.lower()]
        except KeyError:
            raise InvalidArgument(
                f"Unknown embedding provider '{name}'. Valid: {sorted(providers)}"
            ) from None

    def embed(self, text: str) -> list[float]:
        """Embed ``text``. Raises EmbeddingError; never falls back silently."""
        return list(self._cached(text))

    def _compute(self, text: str) -> tuple[float, ...]:
        try:
            vector = self._provider(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding provider failed: {e}") from e
        if len(vector) != self.dimension:
            raise EmbeddingError(
                f"Embedding dimension {len(vector)} does not match collection dimension {self.dimension}"
            )
        return tuple(vector)

    def cache_clear(self) -> None:
        self._cached.cache_clear()

    # -------------------------------------------------------------------------
    # Providers
    # -------------------------------------------------------------------------

    def _embed_hash(self, text: str) -> list[float]:
        return hash_embedding(text, self.dimension)

    def _embed_ollama(self, text: str) -> list[float]:
        try:
            response = requests.post(
                f"{self.config.ollama_base_url}/api/embeddings",
                json={"model": self.config.embedding_model, "prompt": text},
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            log(f"Ollama embedding error: {e}")
            raise EmbeddingError(f"Ollama embedding failed: {e}") from e
        values = response.json().get("embedding") or []
        if not values:
            raise EmbeddingError("Ollama returned an empty embedding")
        return _normalize(_fit_dimension(np.array(values, dtype=float), self.dimension))

    def _get_genai_client(self) -> GenAIClient:
        """Get or create the GenAI client (thread-safe)."""
        if self._genai_client is None:
            with self._lock:
                if self._genai_client is None:
                    from google import genai

                    self._genai_client = genai.Client(api_key=_get_api_key())
        return self._genai_client

    def _embed_google(self, text: str) -> list[float]:
        from google.genai import types

        response = self._get_genai_client().models.embed_content(
            model=self.config.embedding_model,
            contents=text,
            config=types.EmbedContentConfig(
                task_type="SEMANTIC_SIMILARITY", output_dimensionality=self.dimension
            ),
        )
        return _normalize(np.array(response.embeddings[0].values, dtype=float))


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise EmbeddingError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )
