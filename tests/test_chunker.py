from __future__ import annotations

import pytest

from hereiam.local_search.chunker import TextChunk, chunk_document, chunk_text

SAMPLE = (
    "Intro line one.\nIntro line two.\n\n"
    "Second paragraph is a little longer. It has two sentences.\n\n\n"
    "Third.\n  \n"
    "Fourth paragraph! Does it end? Yes."
)


class TestChunkText:
    @pytest.mark.parametrize("size", [5, 20, 40, 1000])
    def test_chunks_cover_the_text(self, size: int) -> None:
        chunks = chunk_text(SAMPLE, size, "paragraph")
        assert "".join(c.text for c in chunks) == SAMPLE

    @pytest.mark.parametrize("size", [5, 20, 40, 1000])
    def test_offsets_are_source_positions(self, size: int) -> None:
        chunks = chunk_text(SAMPLE, size, "paragraph")
        for chunk in chunks:
            assert SAMPLE[chunk.start_offset : chunk.end_offset] == chunk.text
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.start_offset < nxt.start_offset
            assert prev.end_offset <= nxt.start_offset

    def test_paragraphs_packed_until_full(self) -> None:
        text = "The dog ran.\n\nThe cat slept."
        assert [c.text for c in chunk_text(text, 1000)] == [text]
        assert [c.text for c in chunk_text(text, 20)] == ["The dog ran.\n\n", "The cat slept."]

    def test_oversized_paragraph_split_by_sentences(self) -> None:
        chunks = chunk_text("One. Two. Three.", 6)
        assert [c.text for c in chunks] == ["One. ", "Two. ", "Three."]
        assert [c.start_offset for c in chunks] == [0, 5, 10]

    def test_oversized_sentence_emitted_whole(self) -> None:
        chunks = chunk_text("abcdefghij", 3)
        assert [c.text for c in chunks] == ["abcdefghij"]

    def test_no_chunk_is_blank(self) -> None:
        for chunk in chunk_text("\n\n\nHello\n\n\n\nWorld\n\n", 6):
            assert chunk.text.strip()

    @pytest.mark.parametrize("text", ["", "   ", "\n\n\t\n"])
    def test_blank_text_has_no_paragraph_chunks(self, text: str) -> None:
        assert chunk_text(text, 100, "paragraph") == []
        assert chunk_text(text, 100, "page") == []

    @pytest.mark.parametrize("text", ["", "short", SAMPLE])
    def test_document_is_one_chunk(self, text: str) -> None:
        assert chunk_text(text, 10, "document") == [TextChunk(text, 0, "document")]

    def test_page_uses_same_policy(self) -> None:
        chunks = chunk_text(SAMPLE, 40, "page")
        assert {c.granularity for c in chunks} == {"page"}
        assert "".join(c.text for c in chunks) == SAMPLE

    def test_unknown_granularity(self) -> None:
        with pytest.raises(ValueError):
            chunk_text("x", 10, "sentence")

    def test_non_positive_size(self) -> None:
        with pytest.raises(ValueError):
            chunk_text("x", 0, "paragraph")


class TestChunkDocument:
    SIZES = {"paragraph": 20, "page": 60, "document": 0}

    def test_fixed_level_order(self) -> None:
        chunks = chunk_document(SAMPLE, ["document", "paragraph", "page"], self.SIZES)
        levels = [c.granularity for c in chunks]
        first_page = levels.index("page")
        assert all(lv == "paragraph" for lv in levels[:first_page])
        assert levels[-1] == "document"
        assert levels.count("document") == 1

    def test_only_enabled_levels(self) -> None:
        chunks = chunk_document(SAMPLE, {"paragraph"}, self.SIZES)
        assert {c.granularity for c in chunks} == {"paragraph"}

    def test_max_chunks_per_level(self) -> None:
        chunks = chunk_document(SAMPLE, ["paragraph", "document"], self.SIZES, max_chunks=2)
        assert [c.granularity for c in chunks] == ["paragraph", "paragraph", "document"]
