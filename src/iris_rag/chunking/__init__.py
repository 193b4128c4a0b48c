from .chunker import Chunker, estimate_tokens

__all__ = ["Chunker", "estimate_tokens"]
