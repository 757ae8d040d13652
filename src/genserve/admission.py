from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from genserve.config import ServerConfig
from genserve.errors import AdmissionError
from genserve.identity import new_request_id
from genserve.schemas import ChatCompletionRequest, RawGenerateRequest
from genserve.telemetry import Telemetry
from genserve.tokenization import Tokenizer
from genserve.types import GenerationRequest, SamplingParams

logger = logging.getLogger(__name__)


class RequestAdmission:
    """Turn raw request bodies into immutable, budgeted ``GenerationRequest``s.

    Admission never touches the engine. Out-of-set context lengths are
    clamped to the configured default, and a prompt that fills the whole
    window is admitted as a zero-length completion instead of failing.
    """

    def __init__(
        self,
        config: ServerConfig,
        tokenizer: Tokenizer,
        telemetry: Telemetry,
        id_factory: Callable[[], str] = new_request_id,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._tokenizer = tokenizer
        self._telemetry = telemetry
        self._id_factory = id_factory
        self._clock = clock

    def admit(self, raw: Any) -> GenerationRequest:
        if not isinstance(raw, dict):
            raise AdmissionError("request body must be a JSON object")
        if "prompt" not in raw:
            raise AdmissionError("request body is missing 'prompt'")
        try:
            body = RawGenerateRequest.model_validate(raw)
        except ValidationError as exc:
            raise AdmissionError(_describe(exc)) from exc

        return self._build(
            prompt=body.prompt,
            stream=body.stream,
            requested_context_length=body.context_length,
            max_tokens=body.max_tokens,
            temperature=body.temperature,
            top_p=body.top_p,
            top_k=body.top_k,
            stop=body.stop,
            endpoint="generate",
        )

    def admit_chat(self, chat_request: ChatCompletionRequest, prompt: str) -> GenerationRequest:
        if not prompt:
            raise AdmissionError("chat messages rendered to an empty prompt")
        return self._build(
            prompt=prompt,
            stream=chat_request.stream,
            requested_context_length=None,
            max_tokens=chat_request.max_tokens,
            temperature=chat_request.temperature,
            top_p=chat_request.top_p,
            top_k=chat_request.top_k,
            stop=chat_request.stop,
            endpoint="chat",
        )

    def resolve_context_length(self, requested: int | None) -> tuple[int, bool]:
        default = self._config.default_context_length
        if requested is None:
            return default, False
        if requested in self._config.allowed_context_lengths:
            return requested, False
        return default, True

    def _build(
        self,
        prompt: str,
        stream: bool,
        requested_context_length: int | None,
        max_tokens: int | None,
        temperature: float | None,
        top_p: float | None,
        top_k: int | None,
        stop: str | list[str] | None,
        endpoint: str,
    ) -> GenerationRequest:
        request_id = self._id_factory()
        context_length, clamped = self.resolve_context_length(requested_context_length)
        if clamped:
            self._telemetry.record_context_length_clamp()
            logger.warning(
                f"Request {request_id}: context_length={requested_context_length} is not one of "
                f"{sorted(self._config.allowed_context_lengths)}; using {context_length}"
            )

        input_token_count = len(self._tokenizer.encode(prompt))
        window = min(context_length, self._config.max_model_len)
        requested_max_tokens = (
            max_tokens if max_tokens is not None else self._config.sampling.max_tokens
        )
        max_new_tokens = min(requested_max_tokens, window - input_token_count)
        if max_new_tokens <= 0:
            self._telemetry.record_degenerate_request()
            logger.warning(
                f"Request {request_id}: {input_token_count} input tokens leave no room in a "
                f"{window}-token window; completing with empty output"
            )
            max_new_tokens = 0

        defaults = self._config.sampling
        sampling = SamplingParams(
            max_tokens=max_new_tokens,
            temperature=defaults.temperature if temperature is None else temperature,
            top_p=defaults.top_p if top_p is None else top_p,
            top_k=defaults.top_k if top_k is None else top_k,
            stop=_normalize_stop(stop),
        )
        logger.info(
            f"Admitted request {request_id} ({endpoint}) with {input_token_count} input tokens, "
            f"max_new_tokens={max_new_tokens}, stream={stream}"
        )
        return GenerationRequest(
            request_id=request_id,
            prompt=prompt,
            sampling=sampling,
            context_length=context_length,
            input_token_count=input_token_count,
            stream=stream,
            created_at=self._clock(),
            context_length_clamped=clamped,
            endpoint=endpoint,
        )


def _normalize_stop(stop: str | list[str] | None) -> tuple[str, ...]:
    if stop is None:
        return ()
    if isinstance(stop, str):
        return (stop,) if stop else ()
    return tuple(item for item in stop if item)


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "body"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)
