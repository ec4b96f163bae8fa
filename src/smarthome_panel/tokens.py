"""Cheap prompt token estimation."""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Approximate the model-token cost of `text` as ceil(len / 4).

    This is not a tokenizer; it only needs to be monotonic in length and
    stable for before/after comparisons.
    """

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
