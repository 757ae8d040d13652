from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from genserve.config import ServerConfig
from genserve.tokenization import Tokenizer
from genserve.types import GenerationOutput, GenerationRequest

logger = logging.getLogger(__name__)


class VLLMEngine:
    """Adapter over ``vllm.AsyncLLMEngine``; requires the ``vllm`` extra."""

    def __init__(self, config: ServerConfig) -> None:
        self._config = config
        self._engine: Any = None
        self._tokenizer: Tokenizer | None = None

    @property
    def tokenizer(self) -> Tokenizer:
        if self._tokenizer is None:
            raise RuntimeError("engine has not been started")
        return self._tokenizer

    async def start(self) -> None:
        from vllm.engine.arg_utils import AsyncEngineArgs
        from vllm.engine.async_llm_engine import AsyncLLMEngine

        engine_args = AsyncEngineArgs(
            model=self._config.model_id,
            tensor_parallel_size=self._config.tensor_parallel_size,
            max_num_seqs=self._config.max_num_seqs,
            max_model_len=self._config.max_model_len,
            max_num_batched_tokens=self._config.max_num_batched_tokens,
            gpu_memory_utilization=self._config.gpu_memory_utilization,
            dtype="bfloat16",
            trust_remote_code=True,
            enable_chunked_prefill=True,
        )
        logger.info(f"Engine Args Initialized: {engine_args}")
        self._engine = AsyncLLMEngine.from_engine_args(engine_args)
        self._tokenizer = await self._engine.get_tokenizer()
        logger.info(f"vLLM engine initialized for {self._config.model_id}")

    async def stop(self) -> None:
        if self._engine is not None and hasattr(self._engine, "shutdown_background_loop"):
            self._engine.shutdown_background_loop()
        self._engine = None

    async def generate(self, request: GenerationRequest) -> AsyncIterator[GenerationOutput]:
        from vllm.sampling_params import SamplingParams

        sampling = request.sampling
        params = SamplingParams(
            max_tokens=sampling.max_tokens,
            temperature=sampling.temperature,
            top_p=sampling.top_p,
            top_k=sampling.top_k,
            stop=list(sampling.stop) or None,
        )
        async for request_output in self._engine.generate(request.prompt, params, request.request_id):
            completion = request_output.outputs[0]
            yield GenerationOutput(
                request_id=request.request_id,
                text=completion.text,
                token_count=len(completion.token_ids),
                finished=request_output.finished,
                finish_reason=completion.finish_reason if request_output.finished else None,
            )

    async def abort(self, request_id: str) -> None:
        if self._engine is not None:
            await self._engine.abort(request_id)
