"""
Chunker

Splits text into fragments bounded in model tokens, preferring paragraph and
sentence boundaries. Separators stay attached to the fragment they end, so
joining the fragments always reproduces the input exactly.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache

import tiktoken

logger = logging.getLogger(__name__)

# paragraph, line, sentence ends, then words
SEPARATORS = ("\n\n", "\n", ". ", "? ", "! ", " ")

TokenCounter = Callable[[str], int]


@lru_cache(maxsize=4)
def _get_encoding(name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def tiktoken_counter(encoding: str = "cl100k_base") -> TokenCounter:
    """Token counter backed by a tiktoken encoding."""
    enc = _get_encoding(encoding)

    def count(text: str) -> int:
        return len(enc.encode(text, disallowed_special=()))

    return count


def _split_keep(text: str, sep: str) -> list[str]:
    parts = text.split(sep)
    pieces = [p + sep for p in parts[:-1]]
    if parts[-1]:
        pieces.append(parts[-1])
    return [p for p in pieces if p]


class Chunker:
    """Token-bounded text splitter"""

    def __init__(
        self,
        min_tokens: int = 25,
        max_tokens: int = 500,
        token_counter: TokenCounter | None = None,
    ):
        if max_tokens <= 0 or min_tokens < 0 or min_tokens > max_tokens:
            raise ValueError(f"invalid chunk bounds: min={min_tokens} max={max_tokens}")
        self.min_tokens = min_tokens
        self.max_tokens = max_tokens
        self.count_tokens = token_counter or tiktoken_counter()

    def split(self, text: str) -> list[str]:
        """
        Split ``text`` into ordered fragments.

        Every fragment holds at most ``max_tokens`` tokens (unless a single
        character exceeds it). Fragments under ``min_tokens`` are merged into a
        neighbour when the merge still fits. ``"".join(result) == text``.
        """
        if not text:
            return []
        if self.count_tokens(text) <= self.max_tokens:
            return [text]

        pieces = self._split_recursive(text, SEPARATORS)
        packed = self._pack(pieces)
        return self._merge_small(packed)

    def _split_recursive(self, text: str, separators: tuple[str, ...]) -> list[str]:
        if self.count_tokens(text) <= self.max_tokens:
            return [text]
        for i, sep in enumerate(separators):
            if sep in text:
                parts = _split_keep(text, sep)
                if len(parts) > 1:
                    out: list[str] = []
                    for part in parts:
                        out.extend(self._split_recursive(part, separators[i + 1 :]))
                    return out
        return self._hard_split(text)

    def _hard_split(self, text: str) -> list[str]:
        """Cut by characters when no separator is left."""
        out: list[str] = []
        start = 0
        while start < len(text):
            end = min(len(text), start + self.max_tokens * 4)
            while end - start > 1 and self.count_tokens(text[start:end]) > self.max_tokens:
                end = start + max(1, (end - start) * 3 // 4)
            out.append(text[start:end])
            start = end
        return out

    def _pack(self, pieces: list[str]) -> list[str]:
        packed: list[str] = []
        current = ""
        for piece in pieces:
            if current and self.count_tokens(current + piece) > self.max_tokens:
                packed.append(current)
                current = piece
            else:
                current += piece
        if current:
            packed.append(current)
        return packed

    def _merge_small(self, fragments: list[str]) -> list[str]:
        merged: list[str] = []
        for frag in fragments:
            if merged and (
                self.count_tokens(merged[-1]) < self.min_tokens
                or self.count_tokens(frag) < self.min_tokens
            ) and self.count_tokens(merged[-1] + frag) <= self.max_tokens:
                merged[-1] += frag
            else:
                merged.append(frag)
        return merged
