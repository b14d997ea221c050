"""Tests for token-bounded chunking."""

import pytest

from knowbase.chunking import RecursiveChunker, TokenChunker, WordTokenizer, chunk_text, get_tokenizer
from knowbase.errors import ValidationError

TEXT = (
    "Alpha beta gamma delta. Epsilon zeta eta theta.\n\n"
    "Iota kappa lambda mu. Nu xi omicron pi."
)


@pytest.fixture
def tokenizer():
    return WordTokenizer()


class TestWordTokenizer:
    def test_offsets_and_count(self, tokenizer):
        assert tokenizer.offsets("Hi, you.") == [0, 2, 4, 7]
        assert tokenizer.count("Hi, you.") == 4

    def test_tail_offset(self, tokenizer):
        text = "one two three"
        assert text[tokenizer.tail_offset(text, 2):] == "two three"
        assert tokenizer.tail_offset(text, 0) == len(text)
        assert tokenizer.tail_offset(text, 10) == 0

    def test_get_tokenizer_word(self):
        assert isinstance(get_tokenizer("word"), WordTokenizer)


class TestRecursiveChunker:
    def test_chunks_are_slices_of_the_source(self, tokenizer):
        chunks = chunk_text(TEXT, chunk_size=8, chunk_overlap=2, tokenizer=tokenizer)
        assert len(chunks) > 1
        for chunk in chunks:
            assert TEXT[chunk.start:chunk.end] == chunk.content
            assert chunk.token_count == tokenizer.count(chunk.content)
            assert chunk.token_count <= 8

    def test_without_overlap_chunks_reconstruct_the_text(self, tokenizer):
        chunks = chunk_text(TEXT, chunk_size=8, chunk_overlap=0, tokenizer=tokenizer)
        assert "".join(c.content for c in chunks) == TEXT
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.end == nxt.start

    def test_neighbours_share_at_most_overlap_tokens(self, tokenizer):
        chunks = chunk_text(TEXT, chunk_size=8, chunk_overlap=2, tokenizer=tokenizer)
        assert chunks[0].start == 0
        assert chunks[-1].end == len(TEXT)
        for prev, nxt in zip(chunks, chunks[1:]):
            # No gaps, bounded overlap
            assert prev.start < nxt.start <= prev.end
            assert tokenizer.count(TEXT[nxt.start:prev.end]) <= 2
        assert any(nxt.start < prev.end for prev, nxt in zip(chunks, chunks[1:]))

    def test_paragraph_breaks_preferred(self, tokenizer):
        chunks = chunk_text(TEXT, chunk_size=10, chunk_overlap=0, tokenizer=tokenizer)
        assert [c.content for c in chunks] == [
            "Alpha beta gamma delta. Epsilon zeta eta theta.\n\n",
            "Iota kappa lambda mu. Nu xi omicron pi.",
        ]

    def test_text_without_separators_is_cut_on_token_boundaries(self, tokenizer):
        text = "-".join(f"w{i}" for i in range(30))
        chunks = RecursiveChunker(10, 0, tokenizer).split(text)
        assert len(chunks) == 6
        assert all(c.token_count <= 10 for c in chunks)
        assert "".join(c.content for c in chunks) == text

    def test_unsplittable_piece_is_kept_whole(self, tokenizer):
        text = "one two three four five six seven eight"
        chunks = RecursiveChunker(5, 0, tokenizer, separators=("\n\n",)).split(text)
        assert [c.content for c in chunks] == [text]
        assert chunks[0].token_count == 8

    def test_oversized_piece_gets_its_own_chunk(self, tokenizer):
        long = "one two three four five six seven eight"
        text = f"Short intro.\n\n{long}\n\nShort end."
        chunks = RecursiveChunker(5, 0, tokenizer, separators=("\n\n",)).split(text)
        assert [c.content for c in chunks] == ["Short intro.\n\n", long + "\n\n", "Short end."]

    def test_small_text_is_one_chunk(self, tokenizer):
        chunks = chunk_text("Just a few words.", chunk_size=50, chunk_overlap=5, tokenizer=tokenizer)
        assert len(chunks) == 1
        assert chunks[0].index == 0
        assert chunks[0].content == "Just a few words."

    def test_blank_text_yields_nothing(self, tokenizer):
        assert chunk_text("", tokenizer=tokenizer) == []
        assert chunk_text("   \n\n  ", tokenizer=tokenizer) == []

    def test_indexes_are_sequential(self, tokenizer):
        chunks = chunk_text(TEXT, chunk_size=5, chunk_overlap=1, tokenizer=tokenizer)
        assert [c.index for c in chunks] == list(range(len(chunks)))


class TestTokenChunker:
    def test_fixed_windows_with_stride(self, tokenizer):
        text = "one two three four five six seven eight nine ten"
        chunks = TokenChunker(5, 2, tokenizer).split(text)
        assert [c.content.strip() for c in chunks] == [
            "one two three four five",
            "four five six seven eight",
            "seven eight nine ten",
        ]
        assert [c.token_count for c in chunks] == [5, 5, 4]

    def test_strategy_selects_token_windows(self, tokenizer):
        text = " ".join(str(i) for i in range(20))
        chunks = chunk_text(text, chunk_size=10, chunk_overlap=0, strategy="token", tokenizer=tokenizer)
        assert len(chunks) == 2
        assert "".join(c.content for c in chunks) == text


class TestValidation:
    @pytest.mark.parametrize("size, overlap, strategy", [
        (0, 0, "recursive"),
        (10, 10, "recursive"),
        (10, -1, "recursive"),
        (10, 2, "semantic"),
    ])
    def test_invalid_parameters(self, tokenizer, size, overlap, strategy):
        with pytest.raises(ValidationError):
            chunk_text("some text", chunk_size=size, chunk_overlap=overlap,
                       strategy=strategy, tokenizer=tokenizer)
