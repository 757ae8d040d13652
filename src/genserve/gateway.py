from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from genserve.admission import RequestAdmission
from genserve.cancellation import CancellationWatcher
from genserve.capacity import SequenceBudget
from genserve.chat import ChatServing
from genserve.config import ServerConfig
from genserve.engine import InferenceEngine, build_engine
from genserve.errors import (
    AdmissionError,
    ClientDisconnected,
    DuplicateRequestError,
    EngineFailure,
    EngineOverloaded,
)
from genserve.multiplexer import StreamMultiplexer, encode_line
from genserve.proxy import GenerationEngineProxy, GenerationStream
from genserve.schemas import (
    ChatCompletionRequest,
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    ModelCard,
    ModelList,
)
from genserve.telemetry import Telemetry
from genserve.types import GenerationRequest, TokenChunk

logger = logging.getLogger(__name__)

CLIENT_CLOSED_REQUEST = 499


@dataclass
class Services:
    config: ServerConfig
    telemetry: Telemetry
    proxy: GenerationEngineProxy
    admission: RequestAdmission
    multiplexer: StreamMultiplexer
    watcher: CancellationWatcher
    chat: ChatServing


async def _start_services(config: ServerConfig, engine: InferenceEngine) -> Services:
    telemetry = Telemetry()
    proxy = GenerationEngineProxy(
        engine=engine,
        budget=SequenceBudget(
            max_sequences=config.max_concurrent_sequences,
            max_tokens=config.max_token_budget,
        ),
        telemetry=telemetry,
    )
    # Fails the lifespan, so a replica whose engine cannot start never serves.
    await proxy.start()
    return Services(
        config=config,
        telemetry=telemetry,
        proxy=proxy,
        admission=RequestAdmission(config=config, tokenizer=engine.tokenizer, telemetry=telemetry),
        multiplexer=StreamMultiplexer(),
        watcher=CancellationWatcher(proxy=proxy, poll_interval_s=config.disconnect_poll_interval_s),
        chat=ChatServing(
            model_id=config.model_id,
            tokenizer=engine.tokenizer,
            response_role=config.response_role,
            chat_template=config.chat_template,
        ),
    )


def create_app(
    config: ServerConfig | None = None,
    engine: InferenceEngine | None = None,
) -> FastAPI:
    app_config = config or ServerConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Replica for {app_config.model_id} is initializing...")
        services = await _start_services(app_config, engine or build_engine(app_config))
        app.state.services = services
        logger.info("Replica is ready to serve")
        yield
        await services.proxy.stop()

    app = FastAPI(title="genserve", version="0.1.0", lifespan=lifespan)

    async def submit(
        services: Services, gen_request: GenerationRequest
    ) -> GenerationStream | JSONResponse:
        endpoint = gen_request.endpoint
        try:
            return await services.proxy.submit(gen_request)
        except EngineOverloaded as exc:
            services.telemetry.record_request_outcome(endpoint, "rejected", "overloaded")
            return _error_response(endpoint, 429, str(exc), "overloaded")
        except DuplicateRequestError as exc:
            services.telemetry.record_request_outcome(endpoint, "rejected", "duplicate_id")
            return _error_response(endpoint, 409, str(exc), "duplicate_request")

    def watched_chunks(
        services: Services, stream: GenerationStream, raw_request: Request
    ) -> AsyncIterator[TokenChunk]:
        return services.watcher.watch(
            stream.request_id,
            services.multiplexer.chunks(stream),
            raw_request.is_disconnected,
        )

    async def stream_with_outcome(
        services: Services, gen_request: GenerationRequest, body: AsyncIterable[bytes | str]
    ) -> AsyncIterator[bytes | str]:
        endpoint = gen_request.endpoint
        try:
            async for part in body:
                yield part
        except ClientDisconnected:
            services.telemetry.record_request_outcome(endpoint, "cancelled", "client_disconnect")
            return
        except EngineFailure as exc:
            services.telemetry.record_request_outcome(endpoint, "failed", "engine_error")
            if endpoint == "chat":
                yield f"data: {_error_body(endpoint, 500, exc.message, 'engine_error')}\n\n"
            else:
                yield encode_line({"error": exc.message})
            return
        services.telemetry.record_request_outcome(endpoint, "completed", "ok")
        logger.info(f"Completed streaming request {gen_request.request_id}")

    async def collect(
        services: Services, gen_request: GenerationRequest, stream: GenerationStream, raw_request: Request
    ) -> tuple[str, str | None] | Response:
        endpoint = gen_request.endpoint
        try:
            text, finish_reason = await services.multiplexer.collect(
                watched_chunks(services, stream, raw_request)
            )
        except ClientDisconnected:
            services.telemetry.record_request_outcome(endpoint, "cancelled", "client_disconnect")
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except EngineFailure as exc:
            services.telemetry.record_request_outcome(endpoint, "failed", "engine_error")
            return _error_response(endpoint, 500, exc.message, "engine_error")
        if finish_reason == "abort":
            services.telemetry.record_request_outcome(endpoint, "cancelled", "aborted")
            return _error_response(endpoint, 503, "request was aborted", "aborted")
        services.telemetry.record_request_outcome(endpoint, "completed", "ok")
        logger.info(f"Completed request {gen_request.request_id}")
        return text, finish_reason

    @app.post("/")
    async def basic_generate(raw_request: Request) -> Response:
        services: Services = app.state.services
        try:
            body = await raw_request.json()
        except ValueError:
            services.telemetry.record_request_outcome("generate", "rejected", "invalid")
            return JSONResponse(status_code=400, content={"error": "Invalid JSON in request body"})
        try:
            gen_request = services.admission.admit(body)
        except AdmissionError as exc:
            services.telemetry.record_request_outcome("generate", "rejected", "invalid")
            return JSONResponse(status_code=400, content={"error": str(exc)})

        stream = await submit(services, gen_request)
        if isinstance(stream, Response):
            return stream

        if gen_request.stream:
            body_iter = services.multiplexer.ndjson(watched_chunks(services, stream, raw_request))
            return StreamingResponse(
                stream_with_outcome(services, gen_request, body_iter),
                media_type="application/x-ndjson",
                background=BackgroundTask(services.proxy.abort, gen_request.request_id, "closed"),
            )

        result = await collect(services, gen_request, stream, raw_request)
        if isinstance(result, Response):
            return result
        text, _ = result
        return JSONResponse(content=services.multiplexer.raw_payload(gen_request.prompt, text))

    @app.get("/v1/models", response_model=ModelList)
    async def get_models() -> ModelList:
        return ModelList(data=[ModelCard(id=app_config.model_id)])

    @app.post("/v1/chat/completions")
    async def create_chat_completion(raw_request: Request) -> Response:
        services: Services = app.state.services
        try:
            chat_request = ChatCompletionRequest.model_validate(await raw_request.json())
        except (ValueError, ValidationError) as exc:
            services.telemetry.record_request_outcome("chat", "rejected", "invalid")
            return _error_response("chat", 400, str(exc), "invalid_request_error")
        if chat_request.model is not None and chat_request.model != app_config.model_id:
            services.telemetry.record_request_outcome("chat", "rejected", "unknown_model")
            return _error_response(
                "chat", 404, f"The model `{chat_request.model}` does not exist.", "model_not_found"
            )

        prompt = services.chat.render_prompt(chat_request.messages)
        try:
            gen_request = services.admission.admit_chat(chat_request, prompt)
        except AdmissionError as exc:
            services.telemetry.record_request_outcome("chat", "rejected", "invalid")
            return _error_response("chat", 400, str(exc), "invalid_request_error")

        stream = await submit(services, gen_request)
        if isinstance(stream, Response):
            return stream

        if chat_request.stream:
            events = services.chat.event_stream(
                gen_request, watched_chunks(services, stream, raw_request)
            )
            return StreamingResponse(
                stream_with_outcome(services, gen_request, events),
                media_type="text/event-stream",
                background=BackgroundTask(services.proxy.abort, gen_request.request_id, "closed"),
            )

        result = await collect(services, gen_request, stream, raw_request)
        if isinstance(result, Response):
            return result
        text, finish_reason = result
        completion = services.chat.build_response(gen_request, text, finish_reason)
        return JSONResponse(content=completion.model_dump())

    @app.get("/metrics")
    async def metrics() -> Response:
        body, content_type = Telemetry.scrape()
        return Response(content=body, media_type=content_type)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        services: Services = app.state.services
        return HealthResponse(
            status="ok",
            model=app_config.model_id,
            ongoing_requests=services.proxy.ongoing_request_count(),
            max_concurrent_sequences=services.proxy.max_concurrent_sequences,
        )

    return app


def _error_content(endpoint: str, status_code: int, message: str, kind: str) -> dict:
    # Chat errors use the OpenAI envelope; the raw endpoint keeps a flat message.
    if endpoint == "chat":
        return ErrorResponse(error=ErrorDetail(message=message, type=kind, code=status_code)).model_dump()
    return {"error": message}


def _error_body(endpoint: str, status_code: int, message: str, kind: str) -> str:
    return json.dumps(_error_content(endpoint, status_code, message, kind))


def _error_response(endpoint: str, status_code: int, message: str, kind: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=_error_content(endpoint, status_code, message, kind),
    )
