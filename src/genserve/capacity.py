from __future__ import annotations


class SequenceBudget:
    """Backpressure watermark over concurrent sequences and reserved tokens.

    ``max_tokens == 0`` disables the token watermark.
    """

    def __init__(self, max_sequences: int, max_tokens: int = 0) -> None:
        if max_sequences <= 0:
            raise ValueError("max_sequences must be positive")
        if max_tokens < 0:
            raise ValueError("max_tokens must be >= 0")
        self._max_sequences = max_sequences
        self._max_tokens = max_tokens
        self._reserved_tokens = 0
        self._allocations: dict[str, int] = {}

    @property
    def active_sequences(self) -> int:
        return len(self._allocations)

    @property
    def reserved_tokens(self) -> int:
        return self._reserved_tokens

    @property
    def max_sequences(self) -> int:
        return self._max_sequences

    def try_reserve(self, request_id: str, tokens: int) -> bool:
        if request_id in self._allocations:
            return False
        if self.active_sequences + 1 > self._max_sequences:
            return False
        tokens = max(0, tokens)
        if self._max_tokens and self._reserved_tokens + tokens > self._max_tokens:
            return False
        self._allocations[request_id] = tokens
        self._reserved_tokens += tokens
        return True

    def release(self, request_id: str) -> None:
        tokens_reserved = self._allocations.pop(request_id, 0)
        self._reserved_tokens = max(0, self._reserved_tokens - tokens_reserved)
