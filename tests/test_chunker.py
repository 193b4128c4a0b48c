"""
Chunker Tests

- Token estimation
- Boundary preference (paragraph, line, sentence, word)
- Empty and oversized inputs
- Offsets, overlap and determinism
"""

import pytest

from iris_rag.chunking import Chunker, estimate_tokens
from iris_rag.models import Document

from conftest import D1_CHUNK_0, D1_CHUNK_1, D1_TEXT


def _doc(content, doc_id="doc"):
    return Document(id=doc_id, content=content)


class TestEstimateTokens:

    def test_one_token_per_short_word(self):
        assert estimate_tokens("the cat sat") == 3

    def test_long_words_count_per_four_characters(self):
        # 9 chars -> 3 tokens
        assert estimate_tokens("abcdefghi") == 3
        assert estimate_tokens("abcd") == 1

    def test_whitespace_is_zero(self):
        assert estimate_tokens("   \n\t ") == 0
        assert estimate_tokens("") == 0


class TestChunker:

    def test_scenario_sentence_split(self):
        """Verify the two-sentence document splits at the sentence end."""
        chunks = Chunker(chunk_size=8).chunk(_doc(D1_TEXT, "D1"))

        assert [c.text for c in chunks] == [D1_CHUNK_0, D1_CHUNK_1]
        assert [c.id for c in chunks] == ["D1_chunk_0", "D1_chunk_1"]
        assert [c.chunk_index for c in chunks] == [0, 1]
        assert all(c.token_count <= 8 for c in chunks)

    def test_fits_in_one_chunk(self):
        chunks = Chunker(chunk_size=256).chunk(_doc(D1_TEXT))
        assert len(chunks) == 1
        assert chunks[0].text == D1_TEXT

    @pytest.mark.parametrize("content", ["", "   ", "\n\n\t"])
    def test_empty_content_yields_no_chunks(self, content):
        assert Chunker(chunk_size=8).chunk(_doc(content)) == []

    def test_oversized_word_is_one_chunk(self):
        word = "x" * 100  # 25 tokens
        chunks = Chunker(chunk_size=8).chunk(_doc(word))

        assert len(chunks) == 1
        assert chunks[0].text == word
        assert chunks[0].token_count == 25

    def test_prefers_paragraph_breaks(self):
        # 4 + 5 tokens: each paragraph fits, both together do not
        content = "Ann sat here now.\n\nBob ran off fast."
        chunks = Chunker(chunk_size=6).chunk(_doc(content))

        assert [c.text for c in chunks] == ["Ann sat here now.", "Bob ran off fast."]

    def test_falls_back_to_words(self):
        content = "aa bb cc dd ee ff gg hh ii jj"
        chunks = Chunker(chunk_size=4).chunk(_doc(content))

        assert [c.text for c in chunks] == ["aa bb cc dd", "ee ff gg hh", "ii jj"]

    def test_offsets_point_into_content(self):
        content = "First paragraph here.\n\nSecond one follows. It has two sentences."
        document = _doc(content)
        chunks = Chunker(chunk_size=5).chunk(document)

        assert len(chunks) > 1
        previous_end = 0
        for chunk in chunks:
            assert content[chunk.start_offset:chunk.end_offset] == chunk.text
            assert chunk.start_offset >= previous_end
            previous_end = chunk.end_offset

    def test_overlap_repeats_trailing_words(self):
        content = "aa bb cc dd ee ff gg hh"
        chunks = Chunker(chunk_size=4, chunk_overlap=2).chunk(_doc(content))

        assert chunks[0].text == "aa bb cc dd"
        assert chunks[1].text.startswith("cc dd")
        assert chunks[-1].text.endswith("hh")

    def test_deterministic(self):
        content = "Lorem ipsum dolor sit amet. " * 40
        chunker = Chunker(chunk_size=16)
        assert chunker.chunk(_doc(content)) == chunker.chunk(_doc(content))

    @pytest.mark.parametrize("size,overlap", [(0, 0), (8, -1), (8, 8)])
    def test_invalid_configuration(self, size, overlap):
        with pytest.raises(ValueError):
            Chunker(chunk_size=size, chunk_overlap=overlap)
