"""
Embedding Oracles

An *oracle* turns text into fixed-length float vectors and reports which
model version produced them. The RAG core treats it as an opaque, fallible,
potentially slow capability.

Two implementations ship with the package:

- ``HttpEmbeddingOracle``: any OpenAI-compatible ``/v1/embeddings``
  endpoint (OpenAI, a local llama.cpp server, Ollama, ...).
- ``HashingEmbeddingOracle``: deterministic feature hashing with no model
  at all. Useful offline and in tests; similarity reflects shared words.
"""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import httpx
import numpy as np

from ..config import Settings, settings as default_settings
from ..core.errors import EmbeddingUnavailable

logger = logging.getLogger("iris_rag.oracle")


class EmbeddingOracle(ABC):
    """Abstract interface for text -> embedding vector conversion."""

    @property
    @abstractmethod
    def model_version(self) -> str:
        """Identifier of the model currently producing vectors."""

    def is_ready(self) -> bool:
        """Whether the oracle can answer right now (model loaded, etc.)."""
        return True

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Convert a batch of texts into embedding vectors, one per text.

        Raises
        ------
        EmbeddingUnavailable
            If the oracle is not ready or the call fails.
        """

    async def aclose(self) -> None:
        """Release resources. Override if needed."""


class HttpEmbeddingOracle(EmbeddingOracle):
    """
    Embedding oracle backed by an OpenAI-compatible HTTP endpoint.

    The model version reported to the store is the configured model name,
    so switching ``embedding_model`` is detected as version drift.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        config: Settings = default_settings,
    ) -> None:
        """
        Initialize an HttpEmbeddingOracle.

        Parameters
        ----------
        api_key : Optional[str]
            Bearer token. Defaults to ``settings.embedding_api_key``; local
            servers usually need none.

        model : Optional[str]
            Embedding model name. Defaults to ``settings.embedding_model``.

        base_url : Optional[str]
            Full URL of the embeddings endpoint.

        timeout : Optional[float]
            HTTP timeout for each request.

        transport : Optional[httpx.AsyncBaseTransport]
            Custom transport (tests use ``httpx.MockTransport``).
        """
        if api_key is None and config.embedding_api_key is not None:
            api_key = config.embedding_api_key.get_secret_value()

        self.api_key = api_key
        self.model = model or config.embedding_model
        self.base_url = base_url or config.embedding_api_base_url
        self.timeout = timeout if timeout is not None else config.embedding_timeout

        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    @property
    def model_version(self) -> str:
        return self.model

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "model": self.model,
            "input": list(texts),
        }

        try:
            response = await self._client.post(
                self.base_url,
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "Embedding request failed (%s): batch size=%d, error=%s",
                type(exc).__name__,
                len(texts),
                str(exc),
            )
            raise EmbeddingUnavailable(
                f"Embedding oracle unavailable: {type(exc).__name__}"
            ) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingUnavailable("Embedding response is not valid JSON.") from exc

        embeddings = self._extract_embeddings(data)
        if len(embeddings) != len(texts):
            raise EmbeddingUnavailable(
                f"Embedding oracle returned {len(embeddings)} vectors for {len(texts)} inputs."
            )
        return embeddings

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_embeddings(data: dict) -> List[List[float]]:
        """
        Parse and validate embedding output format.

        OpenAI-compatible servers return:
            { "data": [ {"embedding": [...], "index": 0}, ... ] }

        Records are re-ordered by ``index`` when present.

        Raises
        ------
        EmbeddingUnavailable
            If the response has an unexpected structure.
        """
        if not isinstance(data, dict) or "data" not in data:
            raise EmbeddingUnavailable("Embedding response missing 'data' field.")

        records = data["data"]
        if not isinstance(records, list):
            raise EmbeddingUnavailable("'data' field must be a list.")

        if all(isinstance(r, dict) and isinstance(r.get("index"), int) for r in records):
            records = sorted(records, key=lambda r: r["index"])

        embeddings: List[List[float]] = []

        for index, record in enumerate(records):
            if not isinstance(record, dict) or "embedding" not in record:
                raise EmbeddingUnavailable(
                    f"Malformed embedding record at index {index}: {record!r}"
                )

            emb = record["embedding"]
            if not isinstance(emb, list) or not all(
                isinstance(x, (float, int)) and not isinstance(x, bool) for x in emb
            ):
                raise EmbeddingUnavailable(
                    f"Invalid embedding vector at index {index}: must be float list."
                )

            embeddings.append([float(x) for x in emb])

        return embeddings


_WORD_RE = re.compile(r"\w+", re.UNICODE)


class HashingEmbeddingOracle(EmbeddingOracle):
    """
    Deterministic bag-of-words feature hashing.

    Each lower-cased word is hashed (BLAKE2b) into one of ``dim`` buckets
    with a hash-derived sign; the result is L2-normalized. Texts without
    words map to the zero vector. The same text always yields the same
    vector, across processes and platforms.
    """

    def __init__(self, dim: int = 384, version: Optional[str] = None) -> None:
        if dim < 1:
            raise ValueError("dim must be >= 1")
        self._dim = dim
        self._version = version or f"hashing-bow-{dim}"
        self._ready = True

    @property
    def model_version(self) -> str:
        return self._version

    @property
    def dimension(self) -> int:
        return self._dim

    def is_ready(self) -> bool:
        return self._ready

    def set_ready(self, ready: bool) -> None:
        self._ready = ready

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not self._ready:
            raise EmbeddingUnavailable("Hashing oracle is not ready.")
        return [self._embed_one(text) for text in texts]

    def _embed_one(self, text: str) -> List[float]:
        vec = np.zeros(self._dim, dtype=np.float64)
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.blake2b(word.encode("utf-8", "surrogatepass"), digest_size=8).digest()
            value = int.from_bytes(digest, "little")
            bucket = value % self._dim
            sign = 1.0 if (value >> 63) & 1 == 0 else -1.0
            vec[bucket] += sign

        norm = float(np.linalg.norm(vec))
        if norm > 0:
            vec /= norm
        return vec.tolist()
