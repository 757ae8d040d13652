from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from genserve.tokenization import EstimatingTokenizer, Tokenizer
from genserve.types import GenerationOutput, GenerationRequest

logger = logging.getLogger(__name__)

_END = object()


@dataclass
class SimulatedJob:
    request: GenerationRequest
    outputs: asyncio.Queue = field(default_factory=asyncio.Queue)
    text: str = ""
    generated_tokens: int = 0
    done: bool = False


class ContinuousBatchingEngine:
    """In-process engine that decodes one pseudo-token per active sequence per step.

    Finished sequences leave the batch at the end of a step and queued jobs
    take their slots immediately, so short requests never wait for long ones.
    Output is deterministic: ``tok1 tok2 tok3 ...``.
    """

    def __init__(
        self,
        max_active_sequences: int,
        queue_capacity: int,
        decode_step_seconds: float,
        idle_sleep_seconds: float,
        tokenizer: Tokenizer | None = None,
    ) -> None:
        self._max_active_sequences = max_active_sequences
        self._decode_step_seconds = decode_step_seconds
        self._idle_sleep_seconds = idle_sleep_seconds
        self._queue: asyncio.Queue[SimulatedJob] = asyncio.Queue(maxsize=queue_capacity)
        self._active_sequences: list[SimulatedJob] = []
        self._jobs: dict[str, SimulatedJob] = {}
        self._tokenizer = tokenizer or EstimatingTokenizer()

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def tokenizer(self) -> Tokenizer:
        return self._tokenizer

    @property
    def active_count(self) -> int:
        return len(self._active_sequences)

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="continuous-batching-engine")
        logger.info(
            f"Simulated engine started: max_active_sequences={self._max_active_sequences}, "
            f"decode_step={self._decode_step_seconds}s"
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

        while not self._queue.empty():
            job = self._queue.get_nowait()
            self._queue.task_done()
            self._fail(job, RuntimeError("engine stopped before execution"))

        for job in self._active_sequences:
            self._fail(job, RuntimeError("engine stopped during execution"))
        self._active_sequences.clear()
        logger.info("Simulated engine stopped")

    async def generate(self, request: GenerationRequest) -> AsyncIterator[GenerationOutput]:
        if request.request_id in self._jobs:
            raise RuntimeError(f"request {request.request_id} is already running")
        if self._queue.full():
            raise RuntimeError("engine queue is full")

        job = SimulatedJob(request=request)
        self._jobs[request.request_id] = job
        self._queue.put_nowait(job)
        try:
            while True:
                item = await job.outputs.get()
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
                if item.finished:
                    return
        finally:
            # Consumer went away early: drop the job so its slot frees up.
            self._discard(request.request_id)

    async def abort(self, request_id: str) -> None:
        job = self._jobs.get(request_id)
        if job is None:
            return
        self._discard(request_id)
        job.outputs.put_nowait(_END)
        logger.debug(f"Simulated engine aborted request {request_id}")

    def _discard(self, request_id: str) -> None:
        job = self._jobs.pop(request_id, None)
        if job is not None:
            job.done = True

    def _fail(self, job: SimulatedJob, exc: BaseException) -> None:
        if job.done:
            return
        self._discard(job.request.request_id)
        job.outputs.put_nowait(exc)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._refill_slots()

            if not self._active_sequences:
                await asyncio.sleep(self._idle_sleep_seconds)
                continue

            await asyncio.sleep(self._decode_step_seconds)
            try:
                for job in self._active_sequences:
                    self._decode_single_step(job)
            except Exception as exc:
                logger.error(f"Decode step failed: {exc}", exc_info=True)
                for job in self._active_sequences:
                    self._fail(job, exc)

            self._active_sequences = [job for job in self._active_sequences if not job.done]
            self._refill_slots()

    def _refill_slots(self) -> None:
        while len(self._active_sequences) < self._max_active_sequences:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            if job.done:
                continue
            self._active_sequences.append(job)

    def _decode_single_step(self, job: SimulatedJob) -> None:
        if job.done:
            return

        next_index = job.generated_tokens + 1
        piece = f"tok{next_index}" if next_index == 1 else f" tok{next_index}"
        emitted = len(job.text)
        job.text += piece
        job.generated_tokens = next_index

        finish_reason = None
        for stop in job.request.sampling.stop:
            position = job.text.find(stop) if stop else -1
            if position >= 0:
                # Text already handed out is never retracted.
                job.text = job.text[: max(position, emitted)]
                finish_reason = "stop"
                break
        if finish_reason is None and job.generated_tokens >= job.request.max_new_tokens:
            finish_reason = "length"

        finished = finish_reason is not None
        job.outputs.put_nowait(
            GenerationOutput(
                request_id=job.request.request_id,
                text=job.text,
                token_count=job.generated_tokens,
                finished=finished,
                finish_reason=finish_reason,
            )
        )
        if finished:
            self._discard(job.request.request_id)
