"""Model token accounting.

Token counts drive both chunk sizing and cost estimates, so they use the same
byte-pair encoding as the embedding models (``cl100k_base``).
"""

import logging
from functools import lru_cache
from typing import List

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"


class Tokenizer:
    """Thin wrapper around a tiktoken encoding."""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING):
        self.encoding_name = encoding_name
        self._encoding = tiktoken.get_encoding(encoding_name)

    def encode(self, text: str) -> List[int]:
        if not text:
            return []
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: List[int]) -> str:
        if not tokens:
            return ""
        return self._encoding.decode(tokens)

    def count(self, text: str) -> int:
        return len(self.encode(text))

    def starts_character(self, token: int) -> bool:
        """False when ``token`` begins inside a multi-byte UTF-8 character."""
        data = self._encoding.decode_single_token_bytes(token)
        return not data or (data[0] & 0xC0) != 0x80


@lru_cache(maxsize=4)
def get_tokenizer(encoding_name: str = DEFAULT_ENCODING) -> Tokenizer:
    """Return a shared tokenizer for ``encoding_name``."""
    logger.debug(f"Loading tokenizer encoding {encoding_name}")
    return Tokenizer(encoding_name)
