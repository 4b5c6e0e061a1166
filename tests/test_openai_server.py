import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from config import ServerConfig
from conftest import FakeEngine
from openai_server import AdmissionGate, ChatCompletionsReq, create_app, sampling_params
from request_log import STATUS_TIMEOUT

MODEL_ID = "test-model"
TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "get_weather",
            "description": "Get the current weather for a given city",
            "parameters": {
                "type": "object",
                "properties": {"city": {"type": "string"}},
                "required": ["city"],
            },
        },
    }
]
TOOL_OUTPUT = [
    "<think>The user wants weather.</think>",
    '<tool_call>{"name": "get_weather", "arguments": {"city": "Paris"}}</tool_call>',
]


def make_client(engine, request_log=None, **config_overrides) -> TestClient:
    config = ServerConfig(model_id=MODEL_ID, **config_overrides)
    return TestClient(create_app(engine, config, request_log))


def parse_sse(body: str):
    frames = [f for f in body.split("\n\n") if f]
    out = []
    for frame in frames:
        assert frame.startswith("data: ")
        payload = frame[len("data: ") :]
        out.append(payload if payload == "[DONE]" else json.loads(payload))
    return out


def test_models_listing(engine_factory) -> None:
    resp = make_client(engine_factory()).get("/v1/models")
    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "list"
    assert [m["id"] for m in body["data"]] == [MODEL_ID]
    assert body["data"][0]["object"] == "model"


def test_non_streaming_tool_call(engine_factory, request_log) -> None:
    engine = engine_factory(TOOL_OUTPUT)
    resp = make_client(engine, request_log).post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "Weather in Paris?"}], "tools": TOOLS},
    )
    assert resp.status_code == 200
    body = resp.json()
    choice = body["choices"][0]
    assert choice["finish_reason"] == "tool_calls"
    assert choice["message"]["content"] is None
    call = choice["message"]["tool_calls"][0]
    assert call["type"] == "function"
    assert call["function"]["name"] == "get_weather"
    assert json.loads(call["function"]["arguments"]) == {"city": "Paris"}
    assert body["usage"]["total_tokens"] == (
        body["usage"]["prompt_tokens"] + body["usage"]["completion_tokens"]
    )
    assert engine.rendered[0]["tools"][0]["function"]["name"] == "get_weather"
    assert request_log.entry_count == 1


def test_non_streaming_plain_answer(engine_factory) -> None:
    engine = engine_factory(["Paris is the capital."])
    resp = make_client(engine).post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "Capital of France?"}], "stream": False},
    )
    body = resp.json()
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "Paris is the capital."}
    assert body["choices"][0]["finish_reason"] == "stop"


def test_streaming_response(engine_factory) -> None:
    engine = engine_factory(["Hi", " there", "<tool_call>oops</tool_call>"])
    client = make_client(engine)
    with client.stream(
        "POST",
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "hello"}], "stream": True},
    ) as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        body = "".join(resp.iter_text())

    frames = parse_sse(body)
    assert frames[-1] == "[DONE]"
    assert frames[-2]["choices"][0]["finish_reason"] == "stop"
    assert "usage" in frames[-2]
    text = "".join(f["choices"][0]["delta"].get("content", "") for f in frames[:-2])
    assert text == "Hi there<tool_call>oops</tool_call>"
    assert frames[0]["choices"][0]["delta"]["role"] == "assistant"


def test_streaming_tool_calls(engine_factory) -> None:
    engine = engine_factory(TOOL_OUTPUT)
    resp = make_client(engine).post(
        "/v1/chat/completions",
        json={
            "messages": [{"role": "user", "content": "Weather in Paris?"}],
            "tools": TOOLS,
            "stream": True,
        },
    )
    frames = parse_sse(resp.text)
    calls = [f["choices"][0]["delta"]["tool_calls"][0] for f in frames[:-2]]
    assert calls[0]["id"].startswith("call_")
    assert calls[0]["function"]["name"] == "get_weather"
    assert "id" not in calls[1]
    assert json.loads(calls[1]["function"]["arguments"]) == {"city": "Paris"}
    assert frames[-2]["choices"][0]["finish_reason"] == "tool_calls"


def test_streaming_engine_error_event(engine_factory) -> None:
    engine = engine_factory(["a", "b"], fail_after=1)
    resp = make_client(engine).post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "x"}], "stream": True},
    )
    frames = parse_sse(resp.text)
    assert frames[-1] == {"error": {"message": "out of memory", "type": "server_error"}}
    assert "[DONE]" not in frames


def test_non_streaming_engine_error_is_500(engine_factory) -> None:
    engine = engine_factory(["a"], fail_after=0)
    resp = make_client(engine).post(
        "/v1/chat/completions", json={"messages": [{"role": "user", "content": "x"}]}
    )
    assert resp.status_code == 500
    assert resp.json() == {"error": {"message": "out of memory", "type": "server_error"}}


def test_malformed_body_is_400_before_generation(engine_factory) -> None:
    engine = engine_factory(["never"])
    resp = make_client(engine).post("/v1/chat/completions", json={"stream": True})
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_request_error"
    assert engine.calls == []


def test_unknown_route_is_json_404(engine_factory) -> None:
    resp = make_client(engine_factory()).get("/nope")
    assert resp.status_code == 404
    assert resp.json() == {"error": {"message": "Not found", "type": "not_found"}}


def test_queue_full_is_429(engine_factory) -> None:
    client = make_client(engine_factory(["x"]), queue_max=0)
    resp = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "x"}]})
    assert resp.status_code == 429
    assert "queue full" in resp.json()["error"]["message"]


def test_gate_released_after_requests(engine_factory) -> None:
    client = make_client(engine_factory(["ok"]), queue_max=1)
    for stream in (False, True, False):
        resp = client.post(
            "/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "x"}], "stream": stream},
        )
        assert resp.status_code == 200
    assert client.get("/health").json()["queue_size"] == 0


class SlowEngine(FakeEngine):
    async def complete(self, prompt_tokens, params):
        await asyncio.sleep(5)
        return await super().complete(prompt_tokens, params)


def test_non_streaming_timeout_is_504(request_log) -> None:
    client = make_client(SlowEngine(["late"]), request_log, req_timeout=0.05)
    resp = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "x"}]})

    assert resp.status_code == 504
    assert resp.json() == {"error": {"message": "Request timed out", "type": "server_error"}}
    assert request_log.recent(1)[0]["status"] == STATUS_TIMEOUT
    assert client.get("/health").json()["queue_size"] == 0


def test_cors_preflight(engine_factory) -> None:
    resp = make_client(engine_factory()).options(
        "/v1/chat/completions",
        headers={
            "Origin": "http://example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"


def test_requests_endpoints(engine_factory, request_log) -> None:
    client = make_client(engine_factory(["done"]), request_log)
    client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "x"}]})
    recent = client.get("/requests/recent", params={"n": 5}).json()
    assert recent["count"] == 1
    assert recent["requests"][0]["status"] == "ok"
    stats = client.get("/requests/stats").json()
    assert stats["total_requests"] == 1
    assert client.get("/health").json()["requests_total"] == 1


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({}, 4096),
        ({"max_tokens": 100}, 100),
        ({"max_completion_tokens": 50}, 50),
        ({"max_tokens": 100000}, 8192),
    ],
)
def test_sampling_params_token_budget(payload, expected) -> None:
    req = ChatCompletionsReq(messages=[{"role": "user", "content": "x"}], **payload)
    params = sampling_params(req, ServerConfig())
    assert params.max_tokens == expected
    assert params.temperature == 0.0
    assert params.top_p == 1.0


def test_admission_gate() -> None:
    gate = AdmissionGate(1)
    assert gate.try_acquire()
    assert not gate.try_acquire()
    gate.release()
    assert gate.try_acquire()
