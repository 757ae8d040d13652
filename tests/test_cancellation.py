from __future__ import annotations

import asyncio
import unittest

from fakes import ScriptedEngine, make_request

from genserve.cancellation import CancellationWatcher
from genserve.capacity import SequenceBudget
from genserve.errors import ClientDisconnected
from genserve.multiplexer import StreamMultiplexer
from genserve.proxy import GenerationEngineProxy
from genserve.telemetry import Telemetry
from genserve.types import GenerationState


class DisconnectAfter:
    """Reports a disconnect from the ``calls``-th check onwards."""

    def __init__(self, calls: int | None) -> None:
        self._calls = calls
        self.checks = 0

    async def __call__(self) -> bool:
        self.checks += 1
        return self._calls is not None and self.checks >= self._calls


class CancellationWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.engine = ScriptedEngine(hang_after=2)
        self.proxy = GenerationEngineProxy(
            engine=self.engine,
            budget=SequenceBudget(max_sequences=4),
            telemetry=Telemetry(),
        )
        await self.proxy.start()
        self.multiplexer = StreamMultiplexer()

    async def test_disconnect_mid_generation_aborts_exactly_once(self) -> None:
        watcher = CancellationWatcher(self.proxy, poll_interval_s=60.0)
        stream = await self.proxy.submit(make_request())
        is_disconnected = DisconnectAfter(calls=2)

        with self.assertRaises(ClientDisconnected):
            await self.multiplexer.collect(
                watcher.watch(stream.request_id, self.multiplexer.chunks(stream), is_disconnected)
            )

        self.assertEqual(self.engine.abort_calls, ["req-1"])
        self.assertEqual(stream.state, GenerationState.ABORTED)
        self.assertEqual(self.proxy.ongoing_request_count(), 0)

    async def test_poller_notices_disconnect_while_engine_is_silent(self) -> None:
        engine = ScriptedEngine(hang_after=0)
        proxy = GenerationEngineProxy(engine=engine, budget=SequenceBudget(max_sequences=4), telemetry=Telemetry())
        await proxy.start()
        watcher = CancellationWatcher(proxy, poll_interval_s=0.01)
        stream = await proxy.submit(make_request())
        gone = asyncio.Event()

        async def is_disconnected() -> bool:
            return gone.is_set()

        async def consume() -> None:
            async for _ in watcher.watch(stream.request_id, self.multiplexer.chunks(stream), is_disconnected):
                pass

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.03)
        gone.set()

        with self.assertRaises(ClientDisconnected):
            await asyncio.wait_for(consumer, timeout=2.0)
        self.assertEqual(engine.abort_calls, ["req-1"])
        self.assertEqual(stream.state, GenerationState.ABORTED)

    async def test_connected_client_receives_everything_without_abort(self) -> None:
        engine = ScriptedEngine()
        proxy = GenerationEngineProxy(engine=engine, budget=SequenceBudget(max_sequences=4), telemetry=Telemetry())
        await proxy.start()
        watcher = CancellationWatcher(proxy, poll_interval_s=0.01)
        stream = await proxy.submit(make_request())

        text, finish_reason = await self.multiplexer.collect(
            watcher.watch(stream.request_id, self.multiplexer.chunks(stream), DisconnectAfter(calls=None))
        )

        self.assertEqual(text, "Hello world")
        self.assertEqual(finish_reason, "stop")
        self.assertEqual(engine.abort_calls, [])
        self.assertEqual(stream.state, GenerationState.COMPLETED)

    async def test_transport_closing_stream_aborts_request(self) -> None:
        watcher = CancellationWatcher(self.proxy, poll_interval_s=60.0)
        stream = await self.proxy.submit(make_request(stream=True))
        watched = watcher.watch(stream.request_id, self.multiplexer.chunks(stream), DisconnectAfter(calls=None))

        first = await watched.__anext__()
        await watched.aclose()

        self.assertEqual(first.delta, "Hel")
        self.assertEqual(self.engine.abort_calls, ["req-1"])
        self.assertEqual(stream.state, GenerationState.ABORTED)

    async def test_cancelled_consumer_closes_pending_engine_read(self) -> None:
        engine = ScriptedEngine(hang_after=0)
        proxy = GenerationEngineProxy(engine=engine, budget=SequenceBudget(max_sequences=4), telemetry=Telemetry())
        await proxy.start()
        watcher = CancellationWatcher(proxy, poll_interval_s=60.0)
        stream = await proxy.submit(make_request(stream=True))
        closed = []

        async def tracked():
            try:
                async for chunk in self.multiplexer.chunks(stream):
                    yield chunk
            finally:
                closed.append(True)

        async def consume() -> None:
            async for _ in watcher.watch(stream.request_id, tracked(), DisconnectAfter(calls=None)):
                pass

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.02)
        consumer.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await consumer
        self.assertEqual(closed, [True])
        self.assertEqual(engine.abort_calls, ["req-1"])
        self.assertEqual(stream.state, GenerationState.ABORTED)
        self.assertEqual(proxy.ongoing_request_count(), 0)
