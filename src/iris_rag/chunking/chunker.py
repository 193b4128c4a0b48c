"""
Document Chunker

Splits a document's text into ordered chunks bounded by a token budget.

Boundaries are tried from coarsest to finest:

    paragraph  ->  line  ->  sentence end  ->  word

so a chunk only ends mid-paragraph when the paragraph itself is over budget,
and only ends mid-sentence when the sentence is. A single word larger than
the whole budget is emitted on its own as one oversized chunk.

Chunking is a pure function of (content, chunk size, overlap): the same
input always produces the same chunk sequence, which is what makes
re-indexing unchanged documents idempotent.
"""

from __future__ import annotations

import logging
import math
from typing import List

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ..config import Settings, settings as default_settings
from ..models import Chunk, Document, make_chunk_id

logger = logging.getLogger("iris_rag.chunker")


# Rough sub-word tokenizer budget: one token per word, long words (URLs,
# identifiers, base64) count one token per CHARS_PER_TOKEN characters.
CHARS_PER_TOKEN = 4

SEPARATORS = [
    r"\n\s*\n",
    r"\n",
    r"(?<=[.!?])\s+",
    r"\s+",
]


def estimate_tokens(text: str) -> int:
    """
    Estimate the model token count of ``text``.

    Whitespace-only text counts as zero tokens.
    """
    return sum(max(1, math.ceil(len(word) / CHARS_PER_TOKEN)) for word in text.split())


class Chunker:
    """
    Token-budgeted, boundary-aware text chunker.

    Parameters
    ----------
    chunk_size : int
        Target maximum tokens per chunk.
    chunk_overlap : int
        Tokens of trailing context repeated at the start of the next chunk.
    """

    def __init__(
        self,
        chunk_size: int = 256,
        chunk_overlap: int = 0,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

        self._splitter = RecursiveCharacterTextSplitter(
            separators=SEPARATORS,
            is_separator_regex=True,
            keep_separator="end",
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            length_function=estimate_tokens,
            strip_whitespace=True,
        )

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "Chunker":
        return cls(
            chunk_size=config.chunk_size_tokens,
            chunk_overlap=config.chunk_overlap_tokens,
        )

    def split_text(self, text: str) -> List[str]:
        if not text or not text.strip():
            return []
        return [piece for piece in self._splitter.split_text(text) if piece]

    def chunk(self, document: Document) -> List[Chunk]:
        """
        Split ``document`` into ordered chunks (text only, no embeddings).

        An empty or whitespace-only document yields an empty list.
        """
        pieces = self.split_text(document.content)

        chunks: List[Chunk] = []
        cursor = 0
        for index, piece in enumerate(pieces):
            start = document.content.find(piece, cursor)
            if start < 0:
                # Overlapping pieces can start before the cursor
                start = document.content.find(piece)
            start = max(start, 0)
            end = start + len(piece)

            chunks.append(
                Chunk(
                    id=make_chunk_id(document.id, index),
                    document_id=document.id,
                    chunk_index=index,
                    text=piece,
                    token_count=estimate_tokens(piece),
                    start_offset=start,
                    end_offset=end,
                )
            )
            # Next piece starts no earlier than this one (it may overlap it)
            cursor = start + 1

        logger.debug(
            "Chunked document %s: %d characters -> %d chunks",
            document.id,
            len(document.content),
            len(chunks),
        )
        return chunks
