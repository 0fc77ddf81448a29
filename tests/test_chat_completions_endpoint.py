import json

import httpx

from azure_gateway import __version__

from gateway_test_utils import TEST_API_KEY, TEST_ENDPOINT, parse_sse, sse_body

SSE_CONTENT_TYPE = {"content-type": "text/event-stream"}


def _chat_completion(**overrides):
    payload = {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt4-deployment",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "hello"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
    }
    payload.update(overrides)
    return payload


# ---------------- blocking ----------------
def test_chat_mode_forwards_to_deployment_and_echoes_model(client, chat_env, backend):
    fake = backend(lambda request: httpx.Response(200, json=_chat_completion()))
    messages = [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": None, "tool_calls": [{"id": "c1", "type": "function"}]},
        {"role": "tool", "tool_call_id": "c1", "content": "42"},
    ]

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": messages, "temperature": 0})

    assert resp.status_code == 200
    assert resp.json()["model"] == "gpt-4"
    assert resp.json()["choices"][0]["message"]["content"] == "hello"
    assert resp.headers["access-control-allow-origin"] == "*"

    assert str(fake.last.url) == (
        f"{TEST_ENDPOINT}/openai/deployments/gpt4-deployment/chat/completions?api-version=2024-02-15-preview"
    )
    assert fake.last.headers["api-key"] == TEST_API_KEY
    assert "authorization" not in fake.last.headers
    sent = fake.last_json()
    assert "model" not in sent
    assert sent["messages"] == messages
    assert sent["temperature"] == 0


def test_responses_style_input_is_accepted_in_chat_mode(client, chat_env, backend):
    fake = backend(lambda request: httpx.Response(200, json=_chat_completion()))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "input": "Say hi"})

    assert resp.status_code == 200
    sent = fake.last_json()
    assert sent["messages"] == [{"role": "user", "content": "Say hi"}]
    assert "input" not in sent


def test_codex_mode_calls_responses_api(client, codex_env, backend):
    fake = backend(
        lambda request: httpx.Response(
            200,
            json={"id": "resp_1", "created_at": 1700000000, "output_text": "hello", "usage": {"input_tokens": 3, "output_tokens": 1}},
        )
    )

    resp = client.post("/v1/chat/completions", json={"model": "codex-x", "input": "Say hi"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "chat.completion"
    assert body["model"] == "codex-x"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "hello"}
    assert body["usage"] == {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}

    assert fake.last.url.path == "/openai/responses"
    assert fake.last.headers["authorization"] == f"Bearer {TEST_API_KEY}"
    sent = fake.last_json()
    assert sent["model"] == "codex-deployment"
    assert sent["input"] == [{"role": "user", "content": [{"type": "input_text", "text": "Say hi"}]}]
    assert sent["max_output_tokens"] == 16384


def test_backend_error_keeps_status_and_hides_key(client, chat_env, backend):
    backend(
        lambda request: httpx.Response(
            429, json={"error": {"message": f"Rate limit exceeded for key {TEST_API_KEY}"}}
        )
    )

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}]})

    assert resp.status_code == 429
    err = resp.json()["error"]
    assert err["code"] == "azure_api_error"
    assert err["type"] == "server_error"
    assert err["message"].startswith("Azure OpenAI API error: 429")
    assert TEST_API_KEY not in resp.text


def test_unreachable_backend_is_an_opaque_500(client, chat_env, backend):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend(refuse)

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}]})

    assert resp.status_code == 500
    assert resp.json() == {
        "error": {"message": "Internal server error", "type": "server_error", "code": "internal_error"}
    }


# ---------------- malformed / configuration ----------------
def test_missing_messages(client, chat_env, backend):
    fake = backend(lambda request: httpx.Response(200, json=_chat_completion()))

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4"})

    assert resp.status_code == 400
    assert resp.json()["error"] == {
        "message": "Invalid request: messages array is required",
        "type": "invalid_request_error",
        "code": "missing_messages",
        "param": "messages",
    }
    assert fake.requests == []


def test_missing_model(client, chat_env):
    resp = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "x"}]})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "missing_model"
    assert resp.json()["error"]["param"] == "model"


def test_body_that_is_not_json(client, chat_env):
    resp = client.post(
        "/v1/chat/completions", content=b"{oops", headers={"content-type": "application/json"}
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_json"


def test_unconfigured_model_is_a_configuration_error(client):
    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}]})
    assert resp.status_code == 500
    err = resp.json()["error"]
    assert err["code"] == "configuration_error"
    assert "configuration not found" in err["message"]


def test_invalid_endpoint_is_a_configuration_error(client, monkeypatch):
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "not-a-url")
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", TEST_API_KEY)
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT_NAME", "d")

    resp = client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}]})

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "configuration_error"
    assert resp.json()["error"]["message"] == "Azure OpenAI endpoint must be a valid URL"


# ---------------- streaming ----------------
def test_chat_stream_overwrites_model_and_passes_done(client, chat_env, backend):
    chunk = {"id": "c1", "object": "chat.completion.chunk", "model": "gpt4-deployment",
             "choices": [{"index": 0, "delta": {"content": "hi"}, "finish_reason": None}]}
    fake = backend(
        lambda request: httpx.Response(200, headers=SSE_CONTENT_TYPE, content=sse_body(json.dumps(chunk), "[DONE]"))
    )

    resp = client.post(
        "/v1/chat/completions",
        json={"model": "gpt-4", "stream": True, "stream_options": {"include_usage": True},
              "messages": [{"role": "user", "content": "x"}]},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    frames = parse_sse(resp.text)
    assert frames[0]["model"] == "gpt-4"
    assert frames[0]["choices"][0]["delta"] == {"content": "hi"}
    assert frames[-1] == "[DONE]"
    assert frames.count("[DONE]") == 1

    sent = fake.last_json()
    assert sent["stream"] is True
    assert "stream_options" not in sent


def test_codex_stream_moves_text_into_delta(client, codex_env, backend):
    frames_in = [json.dumps({"id": "x", "choices": [{"index": 0, "text": "he"}]}),
                 json.dumps({"id": "x", "choices": [{"index": 0, "text": "llo"}]}),
                 "[DONE]"]
    backend(lambda request: httpx.Response(200, headers=SSE_CONTENT_TYPE, content=sse_body(*frames_in)))

    resp = client.post("/v1/chat/completions", json={"model": "codex-x", "stream": True, "input": "Say hi"})

    frames = parse_sse(resp.text)
    assert [f["choices"][0]["delta"]["content"] for f in frames[:-1]] == ["he", "llo"]
    assert all(f["model"] == "codex-x" and f["object"] == "chat.completion.chunk" for f in frames[:-1])
    assert frames[-1] == "[DONE]"


def test_codex_event_stream_is_reassembled(client, codex_env, backend):
    raw = (
        b'event: response.created\ndata: {"type":"response.created","response":{"id":"resp_7"}}\n\n'
        b'event: response.output_text.delta\ndata: {"type":"response.output_text.delta","delta":"Hi"}\n\n'
        b'event: response.completed\ndata: {"type":"response.completed","response":{"id":"resp_7",'
        b'"usage":{"input_tokens":2,"output_tokens":1}}}\n\n'
    )
    backend(lambda request: httpx.Response(200, headers=SSE_CONTENT_TYPE, content=raw))

    resp = client.post("/v1/chat/completions", json={"model": "codex-x", "stream": True, "input": "Say hi"})

    frames = parse_sse(resp.text)
    assert frames[0]["id"] == "resp_7"
    assert frames[0]["choices"][0]["delta"] == {"role": "assistant", "content": "Hi"}
    assert frames[1]["choices"][0]["finish_reason"] == "stop"
    assert frames[1]["usage"]["total_tokens"] == 3
    assert frames[-1] == "[DONE]"
    assert "event: response.output_text.delta" in resp.text


def test_stream_error_is_json_with_backend_status(client, chat_env, backend):
    backend(lambda request: httpx.Response(401, json={"error": {"message": f"bad key {TEST_API_KEY}"}}))

    resp = client.post(
        "/v1/chat/completions",
        json={"model": "gpt-4", "stream": True, "messages": [{"role": "user", "content": "x"}]},
    )

    assert resp.status_code == 401
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.json()["error"]["code"] == "azure_api_error"
    assert TEST_API_KEY not in resp.text


def test_unparseable_stream_lines_are_forwarded(client, chat_env, backend):
    backend(lambda request: httpx.Response(200, headers=SSE_CONTENT_TYPE, content=sse_body("not json", "[DONE]")))

    resp = client.post(
        "/v1/chat/completions",
        json={"model": "gpt-4", "stream": True, "messages": [{"role": "user", "content": "x"}]},
    )

    assert parse_sse(resp.text) == ["not json", "[DONE]"]


# ---------------- models / CORS ----------------
def test_preflight(client):
    resp = client.options("/v1/chat/completions")
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["access-control-allow-methods"] == "POST, OPTIONS"
    assert resp.headers["access-control-allow-headers"] == "Content-Type, Authorization"


def test_models_list(client, codex_env):
    resp = client.get("/v1/models")
    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "list"
    assert [m["id"] for m in body["data"]] == ["codex-x"]
    assert body["data"][0]["owned_by"] == "azure-openai"
    assert resp.headers["access-control-allow-methods"] == "GET, OPTIONS"

    assert client.options("/v1/models").headers["access-control-allow-methods"] == "GET, OPTIONS"


def test_models_list_empty_when_unconfigured(client):
    assert client.get("/v1/models").json() == {"object": "list", "data": []}


def test_models_info_reports_type(client, codex_env):
    assert client.get("/api/models/info").json() == {"models": [{"id": "codex-x", "name": "codex-x", "type": "codex"}]}


# ---------------- config editor / simple chat ----------------
def test_config_round_trip(client, isolated_env):
    payload = {
        "default": {"endpoint": "https://e.example", "apiKey": "file-key"},
        "models": {"gpt-4": {"deploymentName": "dep"}},
    }

    resp = client.post("/api/config", json=payload)

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["message"] == "Config saved successfully"
    got = client.get("/api/config").json()
    assert got["default"]["apiKey"] == "file-key"
    assert got["models"] == {"gpt-4": {"deploymentName": "dep"}}
    assert (isolated_env / "models.json").exists()
    assert client.get("/v1/models").json()["data"][0]["id"] == "gpt-4"


def test_config_rejects_non_object(client):
    resp = client.post("/api/config", json=["nope"])
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid config format"}


def test_simple_chat(client, chat_env, backend):
    fake = backend(lambda request: httpx.Response(200, json=_chat_completion()))

    resp = client.post("/api/chat", json={"model": "gpt-4", "messages": [{"role": "user", "content": "x"}]})

    assert resp.status_code == 200
    assert resp.json()["model"] == "gpt-4"
    assert "/deployments/gpt4-deployment/" in fake.last.url.path


def test_simple_chat_validation(client, chat_env):
    resp = client.post("/api/chat", json={"model": "gpt-4"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid request: messages array is required"}


def test_root_and_health(client):
    assert client.get("/").json()["ok"] is True
    assert client.get("/health").json()["message"] == "OK"


def test_openapi_reports_package_version(client):
    assert client.get("/openapi.json").json()["info"]["version"] == __version__
