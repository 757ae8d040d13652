import asyncio
import json
import os
import threading
import time
import unittest
from unittest import mock

from fakes import ScriptedEngine, TemplatingTokenizer
from fastapi.testclient import TestClient

from genserve.config import ServerConfig
from genserve.errors import ConfigurationError, EngineInitializationError
from genserve.gateway import create_app


def build_config(**overrides) -> ServerConfig:
    values = dict(model_id="test-model", disconnect_poll_interval_s=60.0)
    values.update(overrides)
    return ServerConfig(**values)


class RawGenerateTests(unittest.TestCase):
    def test_non_streaming_response_echoes_prompt(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.post("/", json={"prompt": "Say: "})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"text": ["Say: Hello world"]})

    def test_streamed_lines_concatenate_to_non_streaming_text(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            streamed = client.post("/", json={"prompt": "Say: ", "stream": True})
            buffered = client.post("/", json={"prompt": "Say: "})

        self.assertEqual(streamed.status_code, 200)
        self.assertTrue(streamed.headers["content-type"].startswith("application/x-ndjson"))
        lines = [json.loads(line) for line in streamed.text.splitlines() if line]
        self.assertEqual([line["text"] for line in lines], ["Hel", "lo", " wor", "ld"])
        self.assertEqual("Say: " + "".join(line["text"] for line in lines), buffered.json()["text"][0])

    def test_simulated_engine_serves_end_to_end(self) -> None:
        app = create_app(build_config(max_num_seqs=2))

        with TestClient(app) as client:
            response = client.post("/", json={"prompt": "Hello", "max_tokens": 3})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"text": ["Hellotok1 tok2 tok3"]})

    def test_missing_prompt_is_rejected_with_400(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.post("/", json={"stream": True})

        self.assertEqual(response.status_code, 400)
        self.assertIn("prompt", response.json()["error"])

    def test_invalid_json_is_rejected_with_400(self) -> None:
        engine = ScriptedEngine()
        app = create_app(build_config(), engine=engine)

        with TestClient(app) as client:
            response = client.post(
                "/", content=b"{not json", headers={"content-type": "application/json"}
            )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid JSON in request body"})
        self.assertEqual(engine.generate_calls, [])

    def test_unsupported_context_length_is_clamped_not_rejected(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.post("/", json={"prompt": "Hi ", "context_length": 5000})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"text": ["Hi Hello world"]})

    def test_prompt_filling_the_window_returns_prompt_only(self) -> None:
        engine = ScriptedEngine()
        app = create_app(build_config(), engine=engine)
        prompt = "x" * 32768  # 8192 estimated tokens, the whole window

        with TestClient(app) as client:
            response = client.post("/", json={"prompt": prompt})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"text": [prompt]})
        self.assertEqual(engine.generate_calls, [])

    def test_engine_failure_returns_500(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.post("/", json={"prompt": "boom"})
            healthy = client.post("/", json={"prompt": "fine "})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "engine exploded"})
        self.assertEqual(healthy.status_code, 200)

    def test_engine_failure_mid_stream_ends_with_error_line(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.post("/", json={"prompt": "boom", "stream": True})

        lines = [json.loads(line) for line in response.text.splitlines() if line]
        self.assertEqual(lines, [{"text": "Hel"}, {"error": "engine exploded"}])

    def test_rejects_request_beyond_capacity_with_429(self) -> None:
        app = create_app(
            build_config(max_concurrent_sequences=1),
            engine=ScriptedEngine(step_delay=0.2),
        )
        first_status: list[int] = []

        with TestClient(app) as client:
            def run_first() -> None:
                first_status.append(client.post("/", json={"prompt": "slow"}).status_code)

            first_thread = threading.Thread(target=run_first)
            first_thread.start()
            time.sleep(0.1)

            second = client.post("/", json={"prompt": "fast"})
            first_thread.join()

        self.assertEqual(first_status[0], 200)
        self.assertEqual(second.status_code, 429)
        self.assertIn("at capacity", second.json()["error"])


class ChatCompletionTests(unittest.TestCase):
    messages = [{"role": "user", "content": "Hi"}]

    def test_chat_completion_is_not_prompt_prefixed(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.post(
                "/v1/chat/completions", json={"model": "test-model", "messages": self.messages}
            )

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(body["object"], "chat.completion")
        self.assertEqual(body["model"], "test-model")
        self.assertEqual(body["choices"][0]["message"], {"role": "assistant", "content": "Hello world"})
        self.assertEqual(body["choices"][0]["finish_reason"], "stop")
        self.assertEqual(
            body["usage"]["total_tokens"],
            body["usage"]["prompt_tokens"] + body["usage"]["completion_tokens"],
        )

    def test_chat_stream_emits_sse_events_and_done(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.post(
                "/v1/chat/completions", json={"messages": self.messages, "stream": True}
            )

        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        events = [line[len("data: "):] for line in response.text.split("\n\n") if line]
        self.assertEqual(events[-1], "[DONE]")
        chunks = [json.loads(event) for event in events[:-1]]
        self.assertEqual(chunks[0]["choices"][0]["delta"], {"role": "assistant", "content": ""})
        content = "".join(chunk["choices"][0]["delta"].get("content", "") for chunk in chunks)
        self.assertEqual(content, "Hello world")
        self.assertEqual(chunks[-1]["choices"][0]["finish_reason"], "stop")
        self.assertEqual(len({chunk["id"] for chunk in chunks}), 1)

    def test_unknown_model_returns_404(self) -> None:
        engine = ScriptedEngine()
        app = create_app(build_config(), engine=engine)

        with TestClient(app) as client:
            response = client.post(
                "/v1/chat/completions", json={"model": "other-model", "messages": self.messages}
            )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["type"], "model_not_found")
        self.assertEqual(engine.generate_calls, [])

    def test_empty_messages_are_rejected_with_400(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.post("/v1/chat/completions", json={"messages": []})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], 400)


class ReplicaEndpointTests(unittest.TestCase):
    def test_lists_served_model(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.get("/v1/models")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["object"], "list")
        self.assertEqual([card["id"] for card in response.json()["data"]], ["test-model"])

    def test_health_reports_ongoing_requests(self) -> None:
        app = create_app(build_config(max_concurrent_sequences=7), engine=ScriptedEngine())

        with TestClient(app) as client:
            response = client.get("/health")

        self.assertEqual(
            response.json(),
            {"status": "ok", "model": "test-model", "ongoing_requests": 0, "max_concurrent_sequences": 7},
        )

    def test_metrics_exposes_request_counters(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine())

        with TestClient(app) as client:
            client.post("/", json={"prompt": "count me "})
            response = client.get("/metrics")

        self.assertEqual(response.status_code, 200)
        self.assertIn("genserve_requests_total", response.text)
        self.assertIn("genserve_ongoing_requests", response.text)

    def test_engine_initialization_failure_prevents_serving(self) -> None:
        app = create_app(build_config(), engine=ScriptedEngine(fail_on_start=True))

        with self.assertRaises(EngineInitializationError):
            with TestClient(app):
                pass

    def test_missing_model_id_fails_fast(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError):
                create_app()


class ClientDisconnectTests(unittest.IsolatedAsyncioTestCase):
    async def test_disconnect_before_completion_returns_499_and_aborts_once(self) -> None:
        gone = asyncio.Event()

        def on_output(index: int) -> None:
            if index == 1:
                gone.set()

        engine = ScriptedEngine(hang_after=2, on_output=on_output)
        app = create_app(build_config(), engine=engine)
        body_sent = False
        messages: list[dict] = []

        async def receive() -> dict:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": b'{"prompt": "wait"}', "more_body": False}
            if not gone.is_set():
                await gone.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            messages.append(message)

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/",
            "raw_path": b"/",
            "root_path": "",
            "query_string": b"",
            "headers": [(b"content-type", b"application/json")],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }

        async with app.router.lifespan_context(app):
            await asyncio.wait_for(app(scope, receive, send), timeout=5.0)
            ongoing = app.state.services.proxy.ongoing_request_count()

        self.assertEqual(messages[0]["type"], "http.response.start")
        self.assertEqual(messages[0]["status"], 499)
        self.assertEqual(b"".join(message.get("body", b"") for message in messages[1:]), b"")
        self.assertEqual(len(engine.abort_calls), 1)
        self.assertEqual(ongoing, 0)


class ChatTemplateTests(unittest.TestCase):
    def test_chat_prompt_comes_from_tokenizer_template(self) -> None:
        engine = ScriptedEngine()
        engine.tokenizer = TemplatingTokenizer()
        app = create_app(build_config(chat_template="{{ custom }}"), engine=engine)

        with TestClient(app) as client:
            response = client.post(
                "/v1/chat/completions", json={"messages": [{"role": "user", "content": "Hi"}]}
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(engine.tokenizer.calls[0]["chat_template"], "{{ custom }}")
        self.assertTrue(engine.tokenizer.calls[0]["add_generation_prompt"])
