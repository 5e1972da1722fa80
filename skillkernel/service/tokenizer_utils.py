from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_token_count(text: str) -> int:
    """Character-based token estimate used for prompt budgets.

    One token per four characters, rounded up, independent of the provider.
    """

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
