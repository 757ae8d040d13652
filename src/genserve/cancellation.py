from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from typing import TypeVar

from genserve.errors import ClientDisconnected
from genserve.proxy import GenerationEngineProxy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DisconnectCheck = Callable[[], Awaitable[bool]]


class CancellationWatcher:
    """Abort a generation when its client goes away.

    Each ``__anext__`` on the wrapped iterator is raced against a disconnect
    poller, so a client that leaves during a long prefill is noticed before
    the next chunk exists. Best effort: a request may still complete if it
    finishes before the disconnect is observed.
    """

    def __init__(self, proxy: GenerationEngineProxy, poll_interval_s: float = 0.5) -> None:
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        self._proxy = proxy
        self._poll_interval_s = poll_interval_s

    async def watch(
        self,
        request_id: str,
        chunks: AsyncIterable[T],
        is_disconnected: DisconnectCheck,
    ) -> AsyncIterator[T]:
        iterator = chunks.__aiter__()
        disconnect_task = asyncio.create_task(self._wait_disconnect(is_disconnected))
        next_task: asyncio.Future | None = None
        emitted = 0
        exhausted = False
        aborted = False
        try:
            while True:
                if (disconnect_task.done() and disconnect_task.result()) or await is_disconnected():
                    aborted = await self._abort(request_id, emitted)
                    raise ClientDisconnected(request_id)

                next_task = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_task, disconnect_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_task in done:
                    try:
                        chunk = next_task.result()
                    except StopAsyncIteration:
                        exhausted = True
                        return
                    emitted += 1
                    yield chunk
                    continue

                disconnect_task.result()
                aborted = await self._abort(request_id, emitted)
                next_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_task
                raise ClientDisconnected(request_id)
        finally:
            disconnect_task.cancel()
            if next_task is not None and not next_task.done():
                next_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_task
            if not exhausted and not aborted:
                # Closed by the transport or failed: release engine resources.
                await self._proxy.abort(request_id, reason="closed")
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None and (next_task is None or next_task.done()):
                await aclose()

    async def _abort(self, request_id: str, emitted: int) -> bool:
        logger.warning(f"Client disconnected for request {request_id} after {emitted} chunks")
        await self._proxy.abort(request_id, reason="client")
        return True

    async def _wait_disconnect(self, is_disconnected: DisconnectCheck) -> bool:
        while True:
            await asyncio.sleep(self._poll_interval_s)
            if await is_disconnected():
                return True
