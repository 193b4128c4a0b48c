from .client import EmbeddingClient
from .oracle import EmbeddingOracle, HashingEmbeddingOracle, HttpEmbeddingOracle

__all__ = [
    "EmbeddingClient",
    "EmbeddingOracle",
    "HashingEmbeddingOracle",
    "HttpEmbeddingOracle",
]
