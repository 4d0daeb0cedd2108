"""Stateless text helpers used by the segmenter: tokens, lines, hashes, wrapping."""

from __future__ import annotations

import hashlib

import tiktoken

from ..errors import ConfigurationError

HEURISTIC_TOKENIZERS = {"words", "chars"}


class TokenCounter:
    """Estimate token counts under a fixed tokenizer.

    ``words`` counts whitespace-separated words and ``chars`` uses the
    four-characters-per-token heuristic; any other name is resolved through
    tiktoken, first as a model name and then as an encoding name.
    """

    def __init__(self, tokenizer: str = "cl100k_base"):
        self.tokenizer = tokenizer
        self._encoding = None
        if tokenizer not in HEURISTIC_TOKENIZERS:
            try:
                self._encoding = tiktoken.encoding_for_model(tokenizer)
            except KeyError:
                try:
                    self._encoding = tiktoken.get_encoding(tokenizer)
                except ValueError as exc:
                    raise ConfigurationError(f"Unknown tokenizer {tokenizer!r}") from exc

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self.tokenizer == "words":
            return max(1, len(text.split()))
        if self.tokenizer == "chars":
            return max(1, (len(text) + 3) // 4)
        return max(1, len(self._encoding.encode(text, disallowed_special=())))


def split_lines(text: str) -> list[str]:
    """Split on ``\\n`` only, keeping line endings so ``"".join`` is lossless."""
    if not text:
        return []
    parts = text.split("\n")
    lines = [p + "\n" for p in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def content_hash(text: str) -> str:
    """Deterministic fingerprint of the exact chunk text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hard_wrap(text: str, max_tokens: int, counter: TokenCounter) -> list[str]:
    """Split one over-long line into consecutive pieces that each fit ``max_tokens``.

    Pieces carry no overlap so joining them reproduces ``text`` exactly.
    """
    pieces: list[str] = []
    start = 0
    while start < len(text):
        # Largest prefix of the remainder that fits, by binary search on length.
        lo, hi = 1, len(text) - start
        best = 1
        while lo <= hi:
            mid = (lo + hi) // 2
            if counter.count(text[start : start + mid]) <= max_tokens:
                best = mid
                lo = mid + 1
            else:
                hi = mid - 1
        pieces.append(text[start : start + best])
        start += best
    return pieces


def is_blank(line: str) -> bool:
    return not line.strip()


def reconstruct(chunk_texts: list[tuple[str, int]]) -> str:
    """Rebuild file text from ``(text, overlap_prefix_lines)`` pairs in order."""
    out: list[str] = []
    for text, prefix in chunk_texts:
        lines = split_lines(text)
        out.extend(lines[prefix:])
    return "".join(out)
