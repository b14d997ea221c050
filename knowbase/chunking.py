"""Text chunking strategies for document processing.

Chunk sizes are measured in tokens. Every chunk is an exact slice of the
source text (``text[chunk.start:chunk.end] == chunk.content``), so
positions can be mapped back onto the original document.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

from .models import validate_chunking

# Coarse to fine; the empty separator means "cut on token boundaries".
DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " ", "")

Span = Tuple[int, int]


class BaseTokenizer(ABC):
    """Counts tokens and locates token boundaries inside a string."""

    @abstractmethod
    def offsets(self, text: str) -> List[int]:
        """Character offset at which each token of ``text`` starts."""

    def count(self, text: str) -> int:
        return len(self.offsets(text))

    def tail_offset(self, text: str, n: int) -> int:
        """Offset where the last ``n`` tokens of ``text`` begin."""
        if n <= 0:
            return len(text)
        offsets = self.offsets(text)
        if n >= len(offsets):
            return 0
        return offsets[-n]


class TiktokenTokenizer(BaseTokenizer):
    """BPE tokenizer backed by tiktoken (``cl100k_base`` by default)."""

    def __init__(self, encoding: str = "cl100k_base"):
        self.encoding_name = encoding
        self._encoding = None

    @property
    def encoding(self):
        """Lazy-load the encoding."""
        if self._encoding is None:
            import tiktoken

            self._encoding = tiktoken.get_encoding(self.encoding_name)
        return self._encoding

    def _encode(self, text: str) -> List[int]:
        return self.encoding.encode(text, disallowed_special=())

    def count(self, text: str) -> int:
        return len(self._encode(text))

    def offsets(self, text: str) -> List[int]:
        tokens = self._encode(text)
        if not tokens:
            return []
        _, offsets = self.encoding.decode_with_offsets(tokens)
        return offsets


class WordTokenizer(BaseTokenizer):
    """Words and punctuation marks as tokens. No model files needed."""

    _pattern = re.compile(r"\w+|[^\w\s]", re.UNICODE)

    def offsets(self, text: str) -> List[int]:
        return [m.start() for m in self._pattern.finditer(text)]


@lru_cache(maxsize=8)
def get_tokenizer(name: str = "cl100k_base") -> BaseTokenizer:
    """Get a shared tokenizer by name ('word' or a tiktoken encoding)."""
    if name == "word":
        return WordTokenizer()
    return TiktokenTokenizer(name)


@dataclass
class TextChunk:
    """A chunk of text with its position in the source."""

    index: int
    content: str
    token_count: int
    start: int
    end: int


class BaseChunker(ABC):
    def __init__(self, chunk_size: int, chunk_overlap: int, tokenizer: Optional[BaseTokenizer] = None):
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.tokenizer = tokenizer or get_tokenizer()

    @abstractmethod
    def _spans(self, text: str) -> List[Span]:
        """Character spans of the chunks, in document order."""

    def split(self, text: str) -> List[TextChunk]:
        if not text or not text.strip():
            return []
        chunks: List[TextChunk] = []
        for start, end in self._spans(text):
            content = text[start:end]
            if not content.strip():
                continue
            chunks.append(TextChunk(
                index=len(chunks),
                content=content,
                token_count=self.tokenizer.count(content),
                start=start,
                end=end,
            ))
        return chunks


class RecursiveChunker(BaseChunker):
    """
    Split on the coarsest separator that works, then merge pieces up to the size.

    Text is cut at paragraph breaks first, then lines, sentence ends,
    clauses, words and finally raw token boundaries; only pieces that are
    still too large descend to the next separator. Separators stay attached
    to the end of the piece they close. Neighbouring chunks share up to
    ``chunk_overlap`` tokens taken from the tail of the previous chunk.
    """

    def __init__(
        self,
        chunk_size: int = 512,
        chunk_overlap: int = 50,
        tokenizer: Optional[BaseTokenizer] = None,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
    ):
        super().__init__(chunk_size, chunk_overlap, tokenizer)
        self.separators = tuple(separators)

    def _spans(self, text: str) -> List[Span]:
        pieces = self._split(text, 0, len(text), self.separators)
        return self._merge(text, pieces)

    def _split(self, text: str, start: int, end: int, separators: Sequence[str]) -> List[Span]:
        if self.tokenizer.count(text[start:end]) <= self.chunk_size or not separators:
            return [(start, end)]

        segment = text[start:end]
        for i, sep in enumerate(separators):
            if sep == "":
                return self._split_tokens(text, start, end)
            if sep not in segment:
                continue

            spans: List[Span] = []
            rest = separators[i + 1:]
            pos = start
            while pos < end:
                hit = text.find(sep, pos, end)
                piece_end = end if hit == -1 else hit + len(sep)
                if self.tokenizer.count(text[pos:piece_end]) > self.chunk_size:
                    spans.extend(self._split(text, pos, piece_end, rest))
                else:
                    spans.append((pos, piece_end))
                pos = piece_end
            return spans

        return [(start, end)]

    def _split_tokens(self, text: str, start: int, end: int) -> List[Span]:
        offsets = self.tokenizer.offsets(text[start:end])
        spans = []
        for i in range(0, len(offsets), self.chunk_size):
            piece_start = start if i == 0 else start + offsets[i]
            j = i + self.chunk_size
            piece_end = start + offsets[j] if j < len(offsets) else end
            spans.append((piece_start, piece_end))
        return spans

    def _merge(self, text: str, pieces: List[Span]) -> List[Span]:
        spans: List[Span] = []
        buf: Optional[Span] = None

        for start, end in pieces:
            piece_tokens = self.tokenizer.count(text[start:end])

            if piece_tokens > self.chunk_size:
                # Cannot be split further: emit on its own
                if buf is not None:
                    spans.append(buf)
                    buf = None
                spans.append((start, end))
                continue

            if buf is None:
                buf = (start, end)
                continue

            if self.tokenizer.count(text[buf[0]:end]) <= self.chunk_size:
                buf = (buf[0], end)
                continue

            spans.append(buf)
            overlap = min(self.chunk_overlap, self.chunk_size - piece_tokens)
            buf_text = text[buf[0]:buf[1]]
            seed = buf[0] + self.tokenizer.tail_offset(buf_text, overlap)
            # The seed always ends where the next piece begins
            buf = (seed if seed < buf[1] else start, end)

        if buf is not None:
            spans.append(buf)
        return spans


class TokenChunker(BaseChunker):
    """Fixed windows of ``chunk_size`` tokens advancing by ``size - overlap``."""

    def _spans(self, text: str) -> List[Span]:
        offsets = self.tokenizer.offsets(text)
        if not offsets:
            return []
        stride = self.chunk_size - self.chunk_overlap
        spans = []
        for i in range(0, len(offsets), stride):
            j = i + self.chunk_size
            start = 0 if i == 0 else offsets[i]
            end = offsets[j] if j < len(offsets) else len(text)
            spans.append((start, end))
            if j >= len(offsets):
                break
        return spans


def create_chunker(
    chunk_size: int = 512,
    chunk_overlap: int = 50,
    strategy: str = "recursive",
    tokenizer: Optional[BaseTokenizer] = None,
) -> BaseChunker:
    """Validate the parameters and build the chunker for ``strategy``."""
    validate_chunking(chunk_size, chunk_overlap, strategy)
    if strategy == "token":
        return TokenChunker(chunk_size, chunk_overlap, tokenizer)
    return RecursiveChunker(chunk_size, chunk_overlap, tokenizer)


def chunk_text(
    text: str,
    *,
    chunk_size: int = 512,
    chunk_overlap: int = 50,
    strategy: str = "recursive",
    tokenizer: Optional[BaseTokenizer] = None,
) -> List[TextChunk]:
    """
    Split text into overlapping token-bounded chunks.

    Args:
        text: Input text to chunk
        chunk_size: Maximum tokens per chunk
        chunk_overlap: Tokens shared between neighbouring chunks
        strategy: 'recursive' or 'token'
        tokenizer: Token counter (defaults to tiktoken cl100k_base)

    Returns:
        List of chunks in document order; empty for blank text
    """
    return create_chunker(chunk_size, chunk_overlap, strategy, tokenizer).split(text)
