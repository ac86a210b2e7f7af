"""Approximate token accounting shared by chunking, packing and routing."""

from __future__ import annotations

from math import ceil

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate model tokens for `text` as ceil(chars / 4).

    Deterministic and content-only, so a chunk's estimate never changes
    between ingest and query time.
    """
    if not text:
        return 0
    return ceil(len(text) / CHARS_PER_TOKEN)
