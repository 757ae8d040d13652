from __future__ import annotations

import json
from collections.abc import AsyncIterable, AsyncIterator

from genserve.errors import StreamOrderError
from genserve.types import GenerationOutput, TokenChunk


class StreamMultiplexer:
    """Render cumulative engine output as client-facing deltas.

    Holds only a character offset into the request's text, never the request.
    """

    async def chunks(self, outputs: AsyncIterable[GenerationOutput]) -> AsyncIterator[TokenChunk]:
        offset = 0
        async for output in outputs:
            if len(output.text) < offset:
                raise StreamOrderError(
                    f"request {output.request_id}: text shrank from {offset} to {len(output.text)} chars"
                )
            delta = output.text[offset:]
            offset += len(delta)
            if output.finished:
                yield TokenChunk(delta=delta, offset=offset, finish_reason=output.finish_reason or "stop")
                return
            if delta:
                yield TokenChunk(delta=delta, offset=offset)

    async def ndjson(self, chunks: AsyncIterable[TokenChunk]) -> AsyncIterator[bytes]:
        async for chunk in chunks:
            yield encode_line({"text": chunk.delta})

    async def collect(self, chunks: AsyncIterable[TokenChunk]) -> tuple[str, str | None]:
        """Buffer to the terminal chunk; returns ``(text, finish_reason)``."""
        parts: list[str] = []
        finish_reason = None
        async for chunk in chunks:
            parts.append(chunk.delta)
            finish_reason = chunk.finish_reason
        return "".join(parts), finish_reason

    @staticmethod
    def raw_payload(prompt: str, generated_text: str) -> dict[str, list[str]]:
        # The raw endpoint echoes the prompt; chat completions do not.
        return {"text": [prompt + generated_text]}


def encode_line(payload: dict) -> bytes:
    return (json.dumps(payload) + "\n").encode("utf-8")
