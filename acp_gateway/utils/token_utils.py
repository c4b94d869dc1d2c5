from __future__ import annotations

from math import ceil

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return ceil(len(text) / CHARS_PER_TOKEN)
