from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Protocol


class Tokenizer(Protocol):
    def encode(self, text: str) -> Sequence[int]: ...


def estimate_tokens(text: str, chars_per_token: float = 4.0) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text) / chars_per_token))


class EstimatingTokenizer:
    """Length-based stand-in for a real tokenizer; ids are meaningless."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self._chars_per_token = chars_per_token

    def encode(self, text: str) -> list[int]:
        return list(range(estimate_tokens(text, chars_per_token=self._chars_per_token)))
