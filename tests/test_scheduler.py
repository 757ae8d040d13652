from __future__ import annotations

import asyncio
import time
import unittest

from fakes import make_request, sampling_params

from genserve.scheduler import ContinuousBatchingEngine
from genserve.types import GenerationRequest


def build_engine(max_active_sequences: int = 2) -> ContinuousBatchingEngine:
    return ContinuousBatchingEngine(
        max_active_sequences=max_active_sequences,
        queue_capacity=10,
        decode_step_seconds=0.01,
        idle_sleep_seconds=0.001,
    )


async def run_to_completion(engine: ContinuousBatchingEngine, request: GenerationRequest) -> tuple[list, float]:
    outputs = [output async for output in engine.generate(request)]
    return outputs, time.monotonic()


class ContinuousBatchingEngineTests(unittest.IsolatedAsyncioTestCase):
    async def test_engine_refills_slot_immediately(self) -> None:
        engine = build_engine(max_active_sequences=2)
        await engine.start()
        try:
            results = await asyncio.wait_for(
                asyncio.gather(
                    run_to_completion(engine, make_request("req-1", max_tokens=5)),
                    run_to_completion(engine, make_request("req-2", max_tokens=1)),
                    run_to_completion(engine, make_request("req-3", max_tokens=1)),
                ),
                timeout=5.0,
            )
        finally:
            await engine.stop()

        (req_1_outputs, req_1_done), _, (req_3_outputs, req_3_done) = results

        # req-3 should not wait for req-1 to fully complete because req-2 frees a slot.
        self.assertLess(req_3_done, req_1_done)
        self.assertEqual(req_1_outputs[-1].text, "tok1 tok2 tok3 tok4 tok5")
        self.assertEqual(req_1_outputs[-1].finish_reason, "length")
        self.assertEqual(req_3_outputs[-1].token_count, 1)

    async def test_outputs_are_cumulative(self) -> None:
        engine = build_engine()
        await engine.start()
        try:
            outputs, _ = await run_to_completion(engine, make_request(max_tokens=3))
        finally:
            await engine.stop()

        self.assertEqual([output.text for output in outputs], ["tok1", "tok1 tok2", "tok1 tok2 tok3"])
        self.assertEqual([output.finished for output in outputs], [False, False, True])

    async def test_stop_sequence_ends_generation(self) -> None:
        engine = build_engine()
        request = GenerationRequest(
            request_id="req-stop",
            prompt="count",
            sampling=sampling_params(10, stop=(" tok3",)),
            context_length=8192,
            input_token_count=2,
            stream=False,
            created_at=0.0,
        )
        await engine.start()
        try:
            outputs, _ = await run_to_completion(engine, request)
        finally:
            await engine.stop()

        self.assertEqual(outputs[-1].text, "tok1 tok2")
        self.assertEqual(outputs[-1].finish_reason, "stop")

    async def test_abort_ends_stream_and_frees_slot(self) -> None:
        engine = build_engine(max_active_sequences=1)
        await engine.start()
        try:
            iterator = engine.generate(make_request("req-long", max_tokens=1000))
            first = await iterator.__anext__()
            await engine.abort("req-long")
            remaining = [output async for output in iterator]
            await engine.abort("req-long")

            outputs, _ = await asyncio.wait_for(
                run_to_completion(engine, make_request("req-next", max_tokens=2)), timeout=5.0
            )
        finally:
            await engine.stop()

        self.assertEqual(first.text, "tok1")
        self.assertTrue(all(not output.finished for output in remaining))
        self.assertEqual(outputs[-1].text, "tok1 tok2")
        self.assertEqual(engine.active_count, 0)
