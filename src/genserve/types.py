from __future__ import annotations

import enum
from dataclasses import dataclass

from genserve.errors import InvalidStateTransition


class GenerationState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {GenerationState.COMPLETED, GenerationState.ABORTED, GenerationState.FAILED}
)

_ALLOWED_TRANSITIONS: dict[GenerationState, frozenset[GenerationState]] = {
    GenerationState.QUEUED: frozenset(
        {GenerationState.RUNNING, GenerationState.COMPLETED, GenerationState.ABORTED}
    ),
    GenerationState.RUNNING: frozenset(
        {
            GenerationState.STREAMING,
            GenerationState.COMPLETED,
            GenerationState.ABORTED,
            GenerationState.FAILED,
        }
    ),
    GenerationState.STREAMING: frozenset(
        {GenerationState.COMPLETED, GenerationState.ABORTED, GenerationState.FAILED}
    ),
    GenerationState.COMPLETED: frozenset(),
    GenerationState.ABORTED: frozenset(),
    GenerationState.FAILED: frozenset(),
}


def check_transition(current: GenerationState, target: GenerationState) -> None:
    # Queued -> Completed is only used by degenerate zero-budget requests.
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(f"cannot move from {current.value} to {target.value}")


@dataclass(frozen=True, slots=True)
class SamplingParams:
    max_tokens: int
    temperature: float
    top_p: float
    top_k: int
    stop: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    request_id: str
    prompt: str
    sampling: SamplingParams
    context_length: int
    input_token_count: int
    stream: bool
    created_at: float
    context_length_clamped: bool = False
    endpoint: str = "generate"

    @property
    def max_new_tokens(self) -> int:
        return self.sampling.max_tokens

    @property
    def degenerate(self) -> bool:
        """True when the prompt leaves no room for generated tokens."""
        return self.sampling.max_tokens <= 0

    @property
    def estimated_total_tokens(self) -> int:
        return self.input_token_count + max(0, self.sampling.max_tokens)


@dataclass(frozen=True, slots=True)
class GenerationOutput:
    """Engine snapshot for one request: ``text`` is cumulative, not a delta."""

    request_id: str
    text: str
    token_count: int
    finished: bool = False
    finish_reason: str | None = None


@dataclass(frozen=True, slots=True)
class TokenChunk:
    delta: str
    offset: int
    finish_reason: str | None = None

    @property
    def is_final(self) -> bool:
        return self.finish_reason is not None
