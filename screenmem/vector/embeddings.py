"""
Embedding providers for the vector overlay.
"""

from abc import ABC, abstractmethod
import hashlib
import re
from typing import List, Optional

import numpy as np

from ..core.errors import EmbeddingProviderError
from ..util.logging import logger

MAX_EMBED_CHARS = 8000

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def truncate_text(text: str, max_length: int = MAX_EMBED_CHARS) -> str:
    """Truncate at a word boundary when one falls in the last fifth of the limit."""
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        return truncated[:last_space]
    return truncated


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector for given text."""
        pass

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts; providers with a native batch call override this."""
        return [self.embed_text(text) for text in texts]

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for tests and offline runs.

    Each lower-cased word is hashed into a signed bucket (feature hashing), so
    texts sharing words land close together without any model download.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def embed_text(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=np.float32)
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.md5(word.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()

    def get_dimension(self) -> int:
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Local sentence-transformers model; loaded lazily on first use."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_text(self, text: str) -> List[float]:
        embedding = self.model.encode(text, convert_to_tensor=False)
        return embedding.tolist()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        embeddings = self.model.encode(texts, convert_to_tensor=False)
        return [e.tolist() for e in embeddings]

    def get_dimension(self) -> int:
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension


class OpenAIEmbedding(IEmbeddingProvider):
    """Remote OpenAI-compatible embeddings API.

    Rate limiting, timeouts and connection failures surface as transient
    EmbeddingProviderError so the indexer retries them; everything else is
    permanent for the batch.
    """

    def __init__(self, api_key: Optional[str] = None, model: str = "text-embedding-3-small",
                 base_url: Optional[str] = None, dimension: int = 1536, timeout: float = 30.0):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.dimension = dimension
        self.timeout = timeout
        self._client = None

    @property
    def client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,  # retries are owned by the vector indexer
            )
        return self._client

    def embed_text(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        import openai

        try:
            response = self.client.embeddings.create(
                input=[truncate_text(t) for t in texts],
                model=self.model,
                dimensions=self.dimension,
                encoding_format="float",
            )
        except openai.RateLimitError as e:
            raise EmbeddingProviderError(f"Embedding rate limited: {e}", transient=True, status_code=429) from e
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise EmbeddingProviderError(f"Embedding provider unreachable: {e}", transient=True) from e
        except openai.APIStatusError as e:
            raise EmbeddingProviderError(
                f"Embedding API error: {e}", transient=e.status_code >= 500, status_code=e.status_code
            ) from e

        embeddings = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
        if len(embeddings) != len(texts) or any(not emb for emb in embeddings):
            raise EmbeddingProviderError(
                f"Received {len(embeddings)} embeddings for {len(texts)} texts from model '{self.model}'",
                transient=False,
            )

        logger.debug(f"Generated {len(embeddings)} embeddings with {self.model}")
        return embeddings

    def get_dimension(self) -> int:
        return self.dimension
