"""Token-budgeted chunking of cleaned page and document text.

Paragraphs (blocks separated by blank lines) are packed into chunks of at most
``chunk_size_tokens`` tokens. Consecutive chunks share the last
``chunk_overlap_tokens`` tokens of the previous chunk so retrieval keeps
context across boundaries. A paragraph that does not fit in a single chunk is
cut with a sliding window.

Cuts land on character boundaries: with byte-level tokens a window ends a
little early, or an overlap starts a little late, rather than splitting a
multi-byte UTF-8 character.

The output is a pure function of the input text and configuration.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple

from config.settings import ChunkingConfig
from indexer.tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)

PARAGRAPH_SPLIT = re.compile(r"\n{2,}")
PARAGRAPH_SEPARATOR = "\n\n"


@dataclass
class TextChunk:
    """A retrievable unit of text with its source attribution."""
    domain: str
    url: str
    chunk_index: int
    text: str
    chunk_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def hash_chunk_text(text: str) -> str:
    """SHA-256 of the chunk text, used for per-tenant deduplication."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in PARAGRAPH_SPLIT.split(text or "") if p.strip()]


class _ChunkAccumulator:
    """Token buffer that turns flushed windows into ``TextChunk`` rows."""

    def __init__(self, tokenizer: Tokenizer, url: str, domain: str):
        self.tokenizer = tokenizer
        self.url = url
        self.domain = domain
        self.chunks: List[TextChunk] = []
        self.buffer: List[int] = []
        # Leading tokens of ``buffer`` copied from the previous chunk
        self.seed_length = 0
        self.last_chunk_tokens: List[int] = []

    def seed(self, tokens: List[int]) -> None:
        self.buffer = list(tokens)
        self.seed_length = len(self.buffer)

    def flush(self) -> None:
        if len(self.buffer) <= self.seed_length:
            self.buffer = []
            self.seed_length = 0
            return

        text = self.tokenizer.decode(self.buffer).strip()
        if text:
            self.chunks.append(TextChunk(
                domain=self.domain,
                url=self.url,
                chunk_index=len(self.chunks),
                text=text,
                chunk_hash=hash_chunk_text(text),
            ))
            self.last_chunk_tokens = list(self.buffer)

        self.buffer = []
        self.seed_length = 0


def _validate(config: ChunkingConfig) -> Tuple[int, int]:
    size = config.chunk_size_tokens
    overlap = config.chunk_overlap_tokens
    if size <= 0:
        raise ValueError(f"chunk_size_tokens must be positive, got {size}")
    if overlap < 0 or overlap >= size:
        raise ValueError(
            f"chunk_overlap_tokens must be in [0, {size}), got {overlap}"
        )
    return size, overlap


def _starts_character(tokenizer: Tokenizer, tokens: List[int], index: int) -> bool:
    """True when cutting ``tokens`` before ``index`` keeps every character whole."""
    if index <= 0 or index >= len(tokens):
        return True
    return tokenizer.starts_character(tokens[index])


def _align_forward(tokenizer: Tokenizer, tokens: List[int], index: int, limit: int) -> int:
    while index < limit and not _starts_character(tokenizer, tokens, index):
        index += 1
    return index


def _align_back(tokenizer: Tokenizer, tokens: List[int], index: int, floor: int) -> int:
    cut = index
    while cut > floor and not _starts_character(tokenizer, tokens, cut):
        cut -= 1
    # No clean cut above ``floor``: keep the hard limit
    return cut if cut > floor else index


def chunk_text(text: str,
               url: str,
               domain: str,
               config: ChunkingConfig,
               tokenizer: Optional[Tokenizer] = None) -> List[TextChunk]:
    """Split ``text`` into overlapping, token-bounded chunks.

    Args:
        text: Cleaned plain text (paragraphs separated by blank lines)
        url: Source URL recorded on every chunk
        domain: Logical domain/namespace recorded on every chunk
        config: Chunk size and overlap in tokens
        tokenizer: Token codec, defaults to the shared model tokenizer

    Returns:
        Chunks in source order with contiguous 0-based ``chunk_index``.
    """
    size, overlap = _validate(config)
    paragraphs = split_paragraphs(text)
    if not paragraphs:
        return []

    tokenizer = tokenizer or get_tokenizer()
    separator = tokenizer.encode(PARAGRAPH_SEPARATOR)
    acc = _ChunkAccumulator(tokenizer, url, domain)

    for paragraph in paragraphs:
        tokens = tokenizer.encode(paragraph)
        if not tokens:
            continue

        if len(tokens) > size:
            acc.flush()
            start = 0
            while start < len(tokens):
                end = _align_back(tokenizer, tokens, min(start + size, len(tokens)), start + overlap)
                acc.seed([])
                acc.buffer = tokens[start:end]
                acc.flush()
                if end == len(tokens):
                    tail_start = max(start, len(tokens) - overlap)
                    acc.seed(tokens[_align_forward(tokenizer, tokens, tail_start, end):])
                    break
                start = _align_forward(tokenizer, tokens, end - overlap, end)
            continue

        needed = (len(separator) if acc.buffer else 0) + len(tokens)
        if len(acc.buffer) + needed > size:
            acc.flush()
            tail: List[int] = []
            last = acc.last_chunk_tokens
            if overlap and last:
                room = size - len(separator) - len(tokens)
                keep = min(overlap, len(last), max(0, room))
                tail = last[_align_forward(tokenizer, last, len(last) - keep, len(last)):]
            acc.seed(tail)

        if acc.buffer:
            acc.buffer.extend(separator)
        acc.buffer.extend(tokens)

    acc.flush()
    return acc.chunks


def estimate_tokens_for_text(text: str,
                             config: ChunkingConfig,
                             tokenizer: Optional[Tokenizer] = None) -> Tuple[int, int]:
    """Return ``(chunk_count, embedding_tokens)`` for ``text``.

    The token figure is what embedding every chunk would cost.
    """
    tokenizer = tokenizer or get_tokenizer()
    chunks = chunk_text(text, "", "", config, tokenizer=tokenizer)
    return len(chunks), sum(tokenizer.count(c.text) for c in chunks)
