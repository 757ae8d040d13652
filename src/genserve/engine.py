from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from genserve.config import ServerConfig
from genserve.tokenization import Tokenizer
from genserve.types import GenerationOutput, GenerationRequest


class InferenceEngine(Protocol):
    """Opaque generation capability shared by every request on a replica.

    ``generate`` returns the cumulative output of one request. The last item
    has ``finished=True``. After ``abort`` the iterator for that request ends,
    with or without a final item. ``abort`` must tolerate unknown ids.
    """

    @property
    def tokenizer(self) -> Tokenizer: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def generate(self, request: GenerationRequest) -> AsyncIterator[GenerationOutput]: ...

    async def abort(self, request_id: str) -> None: ...


def build_engine(config: ServerConfig) -> InferenceEngine:
    if config.engine_backend == "vllm":
        from genserve.vllm_engine import VLLMEngine

        return VLLMEngine(config)

    from genserve.scheduler import ContinuousBatchingEngine

    return ContinuousBatchingEngine(
        max_active_sequences=config.max_num_seqs,
        queue_capacity=max(config.max_concurrent_sequences, config.max_num_seqs),
        decode_step_seconds=config.simulated_decode_step_seconds,
        idle_sleep_seconds=config.simulated_idle_sleep_seconds,
    )
