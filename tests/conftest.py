"""
Shared fixtures: an isolated settings object per test, a temp-file SQLite
database, and a scripted embedding oracle.
"""

import asyncio
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from iris_rag.config import Settings
from iris_rag.core.errors import EmbeddingUnavailable
from iris_rag.embeddings import EmbeddingOracle, HashingEmbeddingOracle
from iris_rag.engine import RagEngine

# Scenario D1 splits into these two chunks at chunk_size_tokens=8.
D1_TEXT = "The cat sat on the mat. The dog barked loudly."
D1_CHUNK_0 = "The cat sat on the mat."
D1_CHUNK_1 = "The dog barked loudly."

SCENARIO_VECTORS: Dict[str, List[float]] = {
    D1_CHUNK_0: [1.0, 0.0],
    D1_CHUNK_1: [0.0, 1.0],
    "Alpha document.": [1.0, 0.0],
    "Beta document.": [0.0, 1.0],
    "Nothing at all.": [0.0, 0.0],
}


class ScriptedOracle(EmbeddingOracle):
    """
    Returns fixed vectors for known texts and 2-d hashed vectors otherwise.

    ``gate`` (an asyncio.Event) holds every call until set; ``on_embed`` is
    called with each batch before it is answered.
    """

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        version: str = "scripted-v1",
        dim: int = 2,
    ) -> None:
        self.vectors = dict(SCENARIO_VECTORS if vectors is None else vectors)
        self.version = version
        self.ready = True
        self.calls: List[List[str]] = []
        self.gate: Optional[asyncio.Event] = None
        self.on_embed: Optional[Callable[[Sequence[str]], None]] = None
        self._fallback = HashingEmbeddingOracle(dim=dim)

    @property
    def model_version(self) -> str:
        return self.version

    def is_ready(self) -> bool:
        return self.ready

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not self.ready:
            raise EmbeddingUnavailable("scripted oracle offline")
        self.calls.append(list(texts))
        if self.on_embed is not None:
            self.on_embed(texts)
        if self.gate is not None:
            await self.gate.wait()

        out = []
        for text in texts:
            if text in self.vectors:
                out.append(list(self.vectors[text]))
            else:
                out.extend(await self._fallback.embed([text]))
        return out


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'rag.db'}"


@pytest.fixture
def config(db_url):
    return Settings(
        _env_file=None,
        database_url=db_url,
        chunk_size_tokens=8,
        embedding_batch_size=4,
    )


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
async def engine(config, oracle):
    rag = RagEngine(oracle, config)
    await rag.open()
    yield rag
    await rag.close()
