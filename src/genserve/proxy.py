from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable

from genserve.capacity import SequenceBudget
from genserve.engine import InferenceEngine
from genserve.errors import (
    DuplicateRequestError,
    EngineFailure,
    EngineInitializationError,
    EngineOverloaded,
)
from genserve.identity import InflightRequestRegistry
from genserve.telemetry import Telemetry
from genserve.types import (
    GenerationOutput,
    GenerationRequest,
    GenerationState,
    check_transition,
)

logger = logging.getLogger(__name__)


class GenerationStream:
    """Lazy, single-use sequence of engine outputs for one admitted request.

    Nothing reaches the engine until the first ``__anext__``. The last item
    always has ``finished=True``; an aborted request ends with
    ``finish_reason="abort"``.
    """

    def __init__(self, proxy: GenerationEngineProxy, request: GenerationRequest) -> None:
        self.request = request
        self.state = GenerationState.QUEUED
        self.error: str | None = None
        self._proxy = proxy
        self._consumed = False
        self._released = False
        self._first_output_at: float | None = None

    @property
    def request_id(self) -> str:
        return self.request.request_id

    def __aiter__(self) -> AsyncIterator[GenerationOutput]:
        if self._consumed:
            raise RuntimeError(f"generation stream for {self.request_id} cannot be restarted")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[GenerationOutput]:
        if self.state is GenerationState.ABORTED:
            yield self._abort_output("", 0)
            return

        if self.request.degenerate:
            self.finish(GenerationState.COMPLETED)
            yield GenerationOutput(
                request_id=self.request_id,
                text="",
                token_count=0,
                finished=True,
                finish_reason="length",
            )
            return

        source = self._proxy._engine.generate(self.request)
        self.transition(GenerationState.RUNNING)
        last_text, last_count = "", 0
        exhausted = False
        try:
            async for output in source:
                if self.state is GenerationState.ABORTED:
                    break
                if self._first_output_at is None:
                    self._first_output_at = self._proxy._clock()
                    self._proxy._telemetry.observe_ttft(
                        self.request.endpoint, self._first_output_at - self.request.created_at
                    )
                last_text, last_count = output.text, output.token_count
                if output.finished:
                    self.finish(GenerationState.COMPLETED, token_count=output.token_count)
                    if output.finish_reason is None:
                        output = GenerationOutput(
                            request_id=output.request_id,
                            text=output.text,
                            token_count=output.token_count,
                            finished=True,
                            finish_reason="stop",
                        )
                    yield output
                    return
                if self.request.stream and self.state is GenerationState.RUNNING:
                    self.transition(GenerationState.STREAMING)
                yield output
            exhausted = True
        except Exception as exc:
            if self.state is GenerationState.ABORTED:
                return
            self.error = str(exc) or exc.__class__.__name__
            self.finish(GenerationState.FAILED)
            logger.error(f"Generation failed for request {self.request_id}: {self.error}", exc_info=True)
            raise EngineFailure(self.request_id, self.error) from exc
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
            if not exhausted and not self.state.is_terminal:
                # Consumer stopped early without going through abort().
                await self._proxy.abort(self.request_id, reason="closed")

        if self.state is GenerationState.ABORTED:
            yield self._abort_output(last_text, last_count)
            return

        self.error = "engine ended the stream without a final output"
        self.finish(GenerationState.FAILED)
        raise EngineFailure(self.request_id, self.error)

    def _abort_output(self, text: str, token_count: int) -> GenerationOutput:
        return GenerationOutput(
            request_id=self.request_id,
            text=text,
            token_count=token_count,
            finished=True,
            finish_reason="abort",
        )

    def transition(self, target: GenerationState) -> None:
        check_transition(self.state, target)
        self.state = target

    def finish(self, target: GenerationState, token_count: int = 0) -> None:
        self.transition(target)
        if self._released:
            return
        self._released = True
        self._proxy._release(self, token_count)


class GenerationEngineProxy:
    """Sole path to the shared engine on this replica.

    Enforces the backpressure watermark, tracks every admitted request and
    exposes the ongoing-request gauge the autoscaler samples.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        budget: SequenceBudget,
        telemetry: Telemetry,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._budget = budget
        self._telemetry = telemetry
        self._clock = clock
        self._registry: InflightRequestRegistry[GenerationStream] = InflightRequestRegistry()
        self._started = False

    @property
    def max_concurrent_sequences(self) -> int:
        return self._budget.max_sequences

    async def start(self) -> None:
        if self._started:
            return
        try:
            await self._engine.start()
        except Exception as exc:
            logger.error(f"Error initializing engine: {exc}", exc_info=True)
            raise EngineInitializationError(str(exc)) from exc
        self._started = True
        self._telemetry.set_ongoing_requests(0)

    async def stop(self) -> None:
        for request_id in self._registry.ids():
            await self.abort(request_id, reason="shutdown")
        if self._started:
            await self._engine.stop()
            self._started = False

    async def submit(self, request: GenerationRequest) -> GenerationStream:
        stream = GenerationStream(self, request)
        if not self._registry.claim(request.request_id, stream):
            raise DuplicateRequestError(f"request {request.request_id} is already in flight")
        if not self._budget.try_reserve(request.request_id, request.estimated_total_tokens):
            self._registry.release(request.request_id)
            raise EngineOverloaded(
                f"replica is at capacity ({self._budget.active_sequences} sequences, "
                f"{self._budget.reserved_tokens} reserved tokens)"
            )
        self._telemetry.set_ongoing_requests(self.ongoing_request_count())
        return stream

    async def abort(self, request_id: str, reason: str = "client") -> bool:
        stream = self._registry.get(request_id)
        if stream is None or stream.state.is_terminal:
            return False
        engine_saw_request = stream.state is not GenerationState.QUEUED
        stream.finish(GenerationState.ABORTED)
        self._telemetry.record_abort(reason)
        logger.info(f"Aborted request {request_id} ({reason})")
        if engine_saw_request:
            await self._engine.abort(request_id)
        return True

    def ongoing_request_count(self) -> int:
        return len(self._registry)

    def state_of(self, request_id: str) -> GenerationState | None:
        stream = self._registry.get(request_id)
        return None if stream is None else stream.state

    def _release(self, stream: GenerationStream, token_count: int) -> None:
        request = stream.request
        self._registry.release(request.request_id)
        self._budget.release(request.request_id)
        self._telemetry.set_ongoing_requests(self.ongoing_request_count())
        self._telemetry.observe_request_duration(
            request.endpoint, stream.state.value, self._clock() - request.created_at
        )
        if stream.state is GenerationState.COMPLETED:
            self._telemetry.add_generated_tokens(request.endpoint, token_count)
