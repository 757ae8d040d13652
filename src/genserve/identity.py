from __future__ import annotations

import uuid
from typing import Generic, TypeVar

T = TypeVar("T")


def new_request_id() -> str:
    return uuid.uuid4().hex


class InflightRequestRegistry(Generic[T]):
    """Track in-flight request IDs to prevent concurrent collisions.

    Callers run on the event loop thread and never await between the
    membership check and the update.
    """

    def __init__(self) -> None:
        self._active: dict[str, T] = {}

    def __len__(self) -> int:
        return len(self._active)

    def claim(self, request_id: str, handle: T) -> bool:
        if request_id in self._active:
            return False
        self._active[request_id] = handle
        return True

    def ids(self) -> list[str]:
        return list(self._active)

    def get(self, request_id: str) -> T | None:
        return self._active.get(request_id)

    def release(self, request_id: str) -> None:
        self._active.pop(request_id, None)
