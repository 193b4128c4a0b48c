"""
Similarity Search Tests

Cosine scoring, ranking rules, the snapshot, and both search backends,
exercised without a database.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import numpy as np
import pytest

from iris_rag.core.errors import DimensionMismatch
from iris_rag.db.codec import encode_embedding
from iris_rag.search import (
    CorpusSnapshot,
    ExactSearchBackend,
    HnswSearchBackend,
    StoredChunk,
    cosine_similarity,
    rank,
)

VERSION = "v1"


def _stored(chunk_id, vector, doc_id=None, index=0, version=VERSION, stale=False, blob=None):
    doc_id = doc_id or chunk_id.split("_chunk_")[0]
    return StoredChunk(
        id=chunk_id,
        document_id=doc_id,
        chunk_index=index,
        text=f"text of {chunk_id}",
        token_count=3,
        start_offset=0,
        end_offset=10,
        embedding=blob if blob is not None else encode_embedding(vector),
        embedding_dim=len(vector),
        model_version=version,
        needs_reembedding=stale,
        created_at=datetime.now(timezone.utc),
    )


class TestCosineSimilarity:

    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1, 0], [1, 0]) == 1.0
        assert cosine_similarity([1, 0], [0, 1]) == 0.0
        assert cosine_similarity([1, 0], [-1, 0]) == -1.0

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0, 0], [1, 0]) == 0.0
        assert cosine_similarity([0, 0], [0, 0]) == 0.0

    def test_scale_invariant(self):
        assert cosine_similarity([3, 4], [6, 8]) == pytest.approx(1.0)

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1, 0], [1, 0, 0])


class TestRank:

    def test_threshold_applies_before_limit(self):
        ids = ["a", "b", "c"]
        scores = [0.9, 0.2, 0.8]
        assert rank(ids, scores, limit=2, threshold=0.5) == [(0, 0.9), (2, 0.8)]
        assert rank(ids, scores, limit=5, threshold=0.85) == [(0, 0.9)]

    def test_ties_broken_by_id(self):
        ids = ["d_chunk_1", "a_chunk_0", "c_chunk_0"]
        ranked = rank(ids, [0.5, 0.5, 0.5], limit=3, threshold=0.0)
        assert [ids[pos] for pos, _ in ranked] == ["a_chunk_0", "c_chunk_0", "d_chunk_1"]

    def test_limit_zero(self):
        assert rank(["a"], [1.0], limit=0, threshold=0.0) == []

    def test_negative_limit(self):
        with pytest.raises(ValueError):
            rank(["a"], [1.0], limit=-1, threshold=0.0)


class TestCorpusSnapshot:

    def test_copy_on_write(self):
        base = CorpusSnapshot.from_chunks([_stored("A_chunk_0", [1, 0])])
        updated = base.with_document("B", [_stored("B_chunk_0", [0, 1])])
        removed = updated.without_document("A")

        assert "B" not in base and len(base) == 1
        assert len(updated) == 2
        assert "A" not in removed and "B" in removed
        assert len({base.version, updated.version, removed.version}) == 3

    def test_chunks_kept_in_index_order(self):
        snapshot = CorpusSnapshot().with_document(
            "D",
            [_stored("D_chunk_1", [0, 1], index=1), _stored("D_chunk_0", [1, 0], index=0)],
        )
        assert [c.chunk_index for c in snapshot.document_chunks("D")] == [0, 1]

    def test_corrupt_blob_skipped_with_warning(self, caplog):
        snapshot = CorpusSnapshot.from_chunks([
            _stored("A_chunk_0", [1, 0]),
            _stored("B_chunk_0", [1, 0], blob=b"\x00\x01\x02"),
        ])

        with caplog.at_level(logging.WARNING, logger="iris_rag.search.snapshot"):
            block = snapshot.candidates(2, VERSION)

        assert [c.id for c in block.candidates] == ["A_chunk_0"]
        assert "B_chunk_0" in caplog.text

    def test_stale_and_foreign_versions_excluded(self):
        snapshot = CorpusSnapshot.from_chunks([
            _stored("A_chunk_0", [1, 0]),
            _stored("B_chunk_0", [1, 0], stale=True),
            _stored("C_chunk_0", [1, 0], version="v0"),
        ])
        block = snapshot.candidates(2, VERSION)
        assert [c.id for c in block.candidates] == ["A_chunk_0"]


@pytest.fixture(params=["exact", "hnsw"])
def backend(request):
    if request.param == "exact":
        return ExactSearchBackend()
    return HnswSearchBackend(neighbors=8, oversample=4)


class TestBackends:

    def test_scenario_threshold(self, backend):
        """Verify only D2's chunk survives threshold 0.1 for query [0, 1]."""
        snapshot = CorpusSnapshot.from_chunks([
            _stored("D1_chunk_0", [1, 0]),
            _stored("D2_chunk_0", [0, 1]),
        ])
        hits = backend.search(snapshot, [0.0, 1.0], 5, 0.1, VERSION)

        assert [h.id for h in hits] == ["D2_chunk_0"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[0].chunk.embedding == (0.0, 1.0)

    def test_top_k_matches_brute_force(self, backend):
        rng = np.random.default_rng(7)
        vectors = rng.normal(size=(40, 8))
        snapshot = CorpusSnapshot.from_chunks(
            [_stored(f"doc{i:02d}_chunk_0", v.tolist()) for i, v in enumerate(vectors)]
        )
        query = rng.normal(size=8)

        hits = backend.search(snapshot, query.tolist(), 5, -1.0, VERSION)

        expected = sorted(
            range(40),
            key=lambda i: -cosine_similarity(vectors[i].astype(np.float32), query),
        )[:5]
        assert [h.id for h in hits] == [f"doc{i:02d}_chunk_0" for i in expected]
        scores = [h.score for h in hits]
        assert scores == sorted(scores, reverse=True)

    def test_monotonic_threshold(self, backend):
        rng = np.random.default_rng(3)
        snapshot = CorpusSnapshot.from_chunks(
            [_stored(f"d{i}_chunk_0", rng.normal(size=4).tolist()) for i in range(20)]
        )
        query = rng.normal(size=4).tolist()

        low = {h.id for h in backend.search(snapshot, query, 20, 0.0, VERSION)}
        high = {h.id for h in backend.search(snapshot, query, 20, 0.5, VERSION)}
        assert high <= low

    def test_zero_vectors_are_safe(self, backend):
        snapshot = CorpusSnapshot.from_chunks([
            _stored("Z_chunk_0", [0, 0]),
            _stored("A_chunk_0", [1, 0]),
        ])

        hits = backend.search(snapshot, [1.0, 0.0], 5, -1.0, VERSION)
        assert {h.id: h.score for h in hits} == {"A_chunk_0": 1.0, "Z_chunk_0": 0.0}

        hits = backend.search(snapshot, [0.0, 0.0], 5, -1.0, VERSION)
        assert all(h.score == 0.0 for h in hits)
        assert [h.id for h in hits] == ["A_chunk_0", "Z_chunk_0"]

    def test_dimension_mismatch(self, backend):
        snapshot = CorpusSnapshot.from_chunks([_stored("A_chunk_0", [1, 0])])
        with pytest.raises(DimensionMismatch):
            backend.search(snapshot, [1.0, 0.0, 0.0], 5, 0.0, VERSION)

    def test_mismatched_dimensions_excluded_not_fatal(self, backend):
        snapshot = CorpusSnapshot.from_chunks([
            _stored("A_chunk_0", [1, 0]),
            _stored("B_chunk_0", [1, 0, 0]),
        ])
        hits = backend.search(snapshot, [1.0, 0.0], 5, 0.0, VERSION)
        assert [h.id for h in hits] == ["A_chunk_0"]

    def test_empty_snapshot(self, backend):
        assert backend.search(CorpusSnapshot(), [1.0, 0.0], 5, 0.0, VERSION) == []

    def test_limit_zero(self, backend):
        snapshot = CorpusSnapshot.from_chunks([_stored("A_chunk_0", [1, 0])])
        assert backend.search(snapshot, [1.0, 0.0], 0, 0.0, VERSION) == []


class TestHnswCache:

    def test_graph_reused_per_snapshot(self):
        backend = HnswSearchBackend(neighbors=8)
        snapshot = CorpusSnapshot.from_chunks([_stored("A_chunk_0", [1, 0])])

        backend.search(snapshot, [1.0, 0.0], 1, 0.0, VERSION)
        backend.search(snapshot, [0.0, 1.0], 1, -1.0, VERSION)
        assert len(backend._graphs) == 1

        newer = snapshot.with_document("B", [_stored("B_chunk_0", [0, 1])])
        backend.search(newer, [1.0, 0.0], 1, 0.0, VERSION)
        assert list(backend._graphs) == [(newer.version, 2, VERSION)]

        backend.reset()
        assert backend._graphs == {}

    def test_concurrent_searches_leave_shared_graph_untouched(self):
        rng = np.random.default_rng(11)
        snapshot = CorpusSnapshot.from_chunks(
            [_stored(f"d{i:02d}_chunk_0", rng.normal(size=8).tolist()) for i in range(60)]
        )
        queries = [rng.normal(size=8).tolist() for _ in range(8)]
        backend = HnswSearchBackend(neighbors=8, oversample=4)

        backend.search(snapshot, queries[0], 1, -1.0, VERSION)
        (graph,) = backend._graphs.values()
        ef_before = graph.hnsw.efSearch
        expected = [
            [h.id for h in backend.search(snapshot, q, limit, -1.0, VERSION)]
            for q, limit in zip(queries, [1, 3, 5, 10, 1, 3, 5, 10])
        ]

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [
                pool.submit(backend.search, snapshot, q, limit, -1.0, VERSION)
                for q, limit in zip(queries, [1, 3, 5, 10, 1, 3, 5, 10])
            ]
            got = [[h.id for h in f.result()] for f in futures]

        assert got == expected
        assert graph.hnsw.efSearch == ef_before
