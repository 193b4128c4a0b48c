from .backends import ExactSearchBackend, SearchBackend
from .hnsw import HnswSearchBackend
from .similarity import cosine_scores, cosine_similarity, rank
from .snapshot import CandidateBlock, CorpusSnapshot, StoredChunk


def create_backend(config) -> SearchBackend:
    """Return the backend selected by ``config.search_backend``."""
    if config.search_backend == "hnsw":
        return HnswSearchBackend.from_settings(config)
    return ExactSearchBackend()


__all__ = [
    "CandidateBlock",
    "CorpusSnapshot",
    "ExactSearchBackend",
    "HnswSearchBackend",
    "SearchBackend",
    "StoredChunk",
    "cosine_scores",
    "cosine_similarity",
    "rank",
    "create_backend",
]
