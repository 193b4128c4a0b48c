"""
Embedding Client Tests

Batching, caching, validation and cancellation, with a mocked oracle.
"""

import math
from unittest.mock import AsyncMock

import pytest

from iris_rag.core.concurrency import CancellationToken
from iris_rag.core.errors import EmbeddingUnavailable, IndexingCancelled
from iris_rag.embeddings import EmbeddingClient, EmbeddingOracle, HashingEmbeddingOracle


def _mock_oracle(version="mock-v1", ready=True):
    oracle = AsyncMock(spec=EmbeddingOracle)
    oracle.model_version = version
    oracle.is_ready = lambda: ready

    async def embed(texts):
        return [[float(len(t)), 1.0] for t in texts]

    oracle.embed.side_effect = embed
    return oracle


class TestBatchingAndCache:

    @pytest.mark.asyncio
    async def test_batches_by_batch_size(self):
        """Verify five texts with batch_size=2 need three oracle calls."""
        oracle = _mock_oracle()
        client = EmbeddingClient(oracle, batch_size=2)

        result = await client.embed_batch(["a", "bb", "ccc", "dddd", "eeeee"])

        assert oracle.embed.await_count == 3
        assert [r.vector[0] for r in result] == [1.0, 2.0, 3.0, 4.0, 5.0]
        assert all(r.model_version == "mock-v1" for r in result)

    @pytest.mark.asyncio
    async def test_cache_hit_skips_oracle(self):
        oracle = _mock_oracle()
        client = EmbeddingClient(oracle)

        first = await client.embed("hello")
        second = await client.embed("hello")

        assert first == second
        assert oracle.embed.await_count == 1
        assert client.cache_hits == 1
        assert client.cache_misses == 1

    @pytest.mark.asyncio
    async def test_duplicates_embedded_once(self):
        oracle = _mock_oracle()
        client = EmbeddingClient(oracle)

        result = await client.embed_batch(["x", "y", "x"])

        oracle.embed.assert_awaited_once_with(["x", "y"])
        assert result[0] == result[2]

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        oracle = _mock_oracle()
        client = EmbeddingClient(oracle, cache_size=2)

        await client.embed_batch(["a", "b", "c"])
        assert len(client) == 2

        await client.embed("a")  # evicted, goes back to the oracle
        assert oracle.embed.await_count == 2

    @pytest.mark.asyncio
    async def test_model_version_is_part_of_cache_key(self):
        oracle = _mock_oracle(version="v1")
        client = EmbeddingClient(oracle)

        await client.embed("same text")
        oracle.model_version = "v2"
        tagged = await client.embed("same text")

        assert oracle.embed.await_count == 2
        assert tagged.model_version == "v2"

    @pytest.mark.asyncio
    async def test_empty_input(self):
        oracle = _mock_oracle()
        client = EmbeddingClient(oracle)
        assert await client.embed_batch([]) == []
        oracle.embed.assert_not_awaited()


class TestValidation:

    @pytest.mark.asyncio
    async def test_not_ready_raises(self):
        client = EmbeddingClient(_mock_oracle(ready=False))
        with pytest.raises(EmbeddingUnavailable):
            await client.embed("text")

    @pytest.mark.parametrize(
        "response",
        [
            [[1.0, 0.0]],                      # one vector for two inputs
            [[1.0, 0.0], []],                  # empty vector
            [[1.0, 0.0], [1.0, 0.0, 0.0]],     # mixed dimensionality
            [[1.0, math.nan], [1.0, 0.0]],     # non-finite
            None,                              # no list at all
            [None, [1.0, 0.0]],                # missing vector
            [["x", "y"], [1.0, 0.0]],          # non-numeric
        ],
    )
    @pytest.mark.asyncio
    async def test_malformed_oracle_output_raises(self, response):
        oracle = _mock_oracle()
        oracle.embed.side_effect = None
        oracle.embed.return_value = response
        client = EmbeddingClient(oracle)

        with pytest.raises(EmbeddingUnavailable):
            await client.embed_batch(["one", "two"])
        assert len(client) == 0

    @pytest.mark.parametrize("error", [TimeoutError("read timed out"), ConnectionError("refused")])
    @pytest.mark.asyncio
    async def test_oracle_exception_becomes_unavailable(self, error):
        oracle = _mock_oracle()
        oracle.embed.side_effect = error
        client = EmbeddingClient(oracle)

        with pytest.raises(EmbeddingUnavailable) as excinfo:
            await client.embed("text")
        assert excinfo.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_cached_and_fresh_dimensions_must_agree(self):
        oracle = _mock_oracle()
        client = EmbeddingClient(oracle)
        await client.embed("cached")

        oracle.embed.side_effect = None
        oracle.embed.return_value = [[1.0, 2.0, 3.0]]

        with pytest.raises(EmbeddingUnavailable):
            await client.embed_batch(["cached", "fresh"])


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_between_batches(self):
        oracle = _mock_oracle()
        token = CancellationToken()

        async def embed(texts):
            token.cancel("user stopped")
            return [[1.0, 0.0] for _ in texts]

        oracle.embed.side_effect = embed
        client = EmbeddingClient(oracle, batch_size=1)

        with pytest.raises(IndexingCancelled):
            await client.embed_batch(["a", "b", "c"], cancel_token=token)

        # the in-flight call completed; no further call was made
        assert oracle.embed.await_count == 1


class TestHashingOracle:

    @pytest.mark.asyncio
    async def test_deterministic_and_normalized(self):
        oracle = HashingEmbeddingOracle(dim=64)
        a, b = await oracle.embed(["Meet at the cafe", "Meet at the cafe"])

        assert a == b
        assert len(a) == 64
        assert math.isclose(sum(x * x for x in a), 1.0, rel_tol=1e-9)

    @pytest.mark.asyncio
    async def test_no_words_is_zero_vector(self):
        oracle = HashingEmbeddingOracle(dim=16)
        (vector,) = await oracle.embed(["  ... !!!"])
        assert vector == [0.0] * 16

    @pytest.mark.asyncio
    async def test_not_ready(self):
        oracle = HashingEmbeddingOracle(dim=8)
        oracle.set_ready(False)
        with pytest.raises(EmbeddingUnavailable):
            await oracle.embed(["x"])
