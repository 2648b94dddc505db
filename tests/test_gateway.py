import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

import coderouter.main as main_mod
from coderouter.backend import BackendHTTPError, LocalSlot
from coderouter.config import DEFAULT_ROUTING_RULES, default_tier_models
from coderouter.remote import RemoteApiError
from coderouter.router import RoutingEngine


LOCAL_MODEL = "mlx-community/Qwen2.5-Coder-7B-Instruct-4bit"
ALL_LOCAL = {k: 1 for k in DEFAULT_ROUTING_RULES}


def _completion(text):
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}]}


class FakeBackend:
    def __init__(self, text="Hello!", exc=None, stream_pieces=None):
        self.text = text
        self.exc = exc
        self.stream_pieces = stream_pieces or []
        self.payloads = []
        self.streams = []

    async def chat_completion(self, payload):
        self.payloads.append(payload)
        if self.exc:
            raise self.exc
        return _completion(self.text)

    async def open_chat_stream(self, payload):
        self.payloads.append(payload)
        if self.exc:
            raise self.exc
        stream = FakeStream(self.stream_pieces)
        self.streams.append(stream)
        return stream


class FakeStream:
    def __init__(self, pieces):
        self.lines = []
        for p in pieces:
            self.lines.append("data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": p}}]}))
            self.lines.append("")
        self.lines.append("data: [DONE]")
        self.closed = False

    async def aiter_lines(self):
        for line in self.lines:
            yield line

    async def aclose(self):
        self.closed = True


class FakeSupervisor:
    def __init__(self, healthy=True, oom=False):
        self.healthy = healthy
        self.oom = oom
        self.restarts = 0

    async def is_healthy(self):
        return self.healthy

    def is_oom_crash(self):
        return self.oom

    async def restart(self):
        self.restarts += 1
        self.healthy = True
        return 1


def _setup(monkeypatch, backend, intent="simple_code", rules=None, supervisor=None):
    monkeypatch.setattr(main_mod.settings, "local_model", LOCAL_MODEL)
    monkeypatch.setattr(main_mod.settings, "remote_api_key", "sk-test")
    monkeypatch.setattr(main_mod.settings, "remote_passthrough_errors", False)
    monkeypatch.setattr(main_mod.settings, "debug", False)
    monkeypatch.setattr(main_mod, "backend", backend)
    monkeypatch.setattr(main_mod, "slot", LocalSlot())
    monkeypatch.setattr(main_mod, "supervisor", supervisor or FakeSupervisor())
    monkeypatch.setattr(main_mod, "_get_httpx_client", lambda: None)

    async def classifier(text):
        return intent

    engine = RoutingEngine(rules or DEFAULT_ROUTING_RULES, default_tier_models(LOCAL_MODEL), classifier)
    monkeypatch.setattr(main_mod, "engine", engine)
    return engine


def _req(text="hello", **extra):
    body = {"model": "claude-sonnet-4-5", "max_tokens": 256, "messages": [{"role": "user", "content": text}]}
    body.update(extra)
    return body


def _events(raw: bytes):
    out = []
    for frame in raw.decode().split("\n\n"):
        if frame.strip():
            event_line, data_line = frame.split("\n", 1)
            out.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return out


def test_local_non_streaming_with_tool_call(monkeypatch):
    be = FakeBackend(text="On it.\n<function=bash>\n<parameter=command>ls</parameter>\n</function>")
    _setup(monkeypatch, be, rules=ALL_LOCAL)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 200
    data = r.json()
    assert data["stop_reason"] == "tool_use"
    assert data["content"][0] == {"type": "text", "text": "On it."}
    assert data["content"][1]["name"] == "Bash"
    assert data["content"][1]["input"] == {"command": "ls"}
    assert be.payloads[0]["model"] == LOCAL_MODEL
    assert be.payloads[0]["stop"] == ["</tool_call>"]
    assert main_mod.slot.in_flight == 0
    last = client.get("/_debug/last").json()
    assert last["phase"] == "local_ok"
    assert last["target"] == "local"


def test_local_streaming(monkeypatch):
    be = FakeBackend(stream_pieces=["Hel", "lo th", "ere.", "\n<tool_call>\n<function=glob>\n", "<parameter=pattern>*.py</parameter>\n</function>"])
    _setup(monkeypatch, be, rules=ALL_LOCAL)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req(stream=True))
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = _events(r.content)
    names = [n for n, _ in events]
    assert names[0] == "message_start"
    assert names[-1] == "message_stop"
    text = "".join(d["delta"]["text"] for n, d in events if n == "content_block_delta" and d["delta"]["type"] == "text_delta")
    assert text == "Hello there."
    tool_starts = [d for n, d in events if n == "content_block_start" and d["content_block"]["type"] == "tool_use"]
    assert tool_starts[0]["content_block"]["name"] == "Glob"
    assert be.payloads[0]["stream"] is True
    assert be.streams[0].closed
    assert main_mod.slot.in_flight == 0


def test_unparseable_body_is_server_error(monkeypatch):
    _setup(monkeypatch, FakeBackend(), rules=ALL_LOCAL)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 500
    assert r.json()["error"]["type"] == "api_error"


def test_invalid_request_rejected(monkeypatch):
    _setup(monkeypatch, FakeBackend(), rules=ALL_LOCAL)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json={"model": "m"})
    assert r.status_code == 400
    assert r.json()["type"] == "error"
    assert r.json()["error"]["type"] == "invalid_request_error"


def test_hard_question_relayed_to_remote(monkeypatch):
    be = FakeBackend()
    _setup(monkeypatch, be, intent="hard_question")
    relayed = []

    async def fake_relay(client, body, model, headers):
        relayed.append((model, headers))
        return 200, {"id": "msg_remote", "type": "message", "content": [{"type": "text", "text": "remote"}]}

    monkeypatch.setattr(main_mod, "relay_messages", fake_relay)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req("design a distributed system"))
    assert r.status_code == 200
    assert r.json()["id"] == "msg_remote"
    assert relayed[0][0] == "claude-opus-4-6"
    assert relayed[0][1]["x-api-key"] == "sk-test"
    assert be.payloads == []


def test_remote_http_error_falls_back_to_local(monkeypatch):
    be = FakeBackend(text="local answer")
    _setup(monkeypatch, be, intent="hard_question")

    async def fake_relay(client, body, model, headers):
        raise RemoteApiError(429, '{"type":"error","error":{"type":"rate_limit_error","message":"slow down"}}')

    monkeypatch.setattr(main_mod, "relay_messages", fake_relay)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 200
    assert r.json()["content"][0]["text"] == "local answer"
    assert client.get("/_debug/last").json()["fallback"] == "remote_status_429"


def test_remote_http_error_passthrough(monkeypatch):
    _setup(monkeypatch, FakeBackend(), intent="hard_question")
    monkeypatch.setattr(main_mod.settings, "remote_passthrough_errors", True)

    async def fake_relay(client, body, model, headers):
        raise RemoteApiError(429, '{"type":"error","error":{"type":"rate_limit_error","message":"slow down"}}')

    monkeypatch.setattr(main_mod, "relay_messages", fake_relay)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 429
    assert r.json()["error"]["message"] == "slow down"


def test_remote_transport_error_always_falls_back(monkeypatch):
    be = FakeBackend(text="local")
    _setup(monkeypatch, be, intent="hard_question")
    monkeypatch.setattr(main_mod.settings, "remote_passthrough_errors", True)

    async def fake_relay(client, body, model, headers):
        raise httpx.ConnectError("no route to host")

    monkeypatch.setattr(main_mod, "relay_messages", fake_relay)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 200
    assert r.json()["content"][0]["text"] == "local"


def test_no_credentials_serves_locally(monkeypatch):
    be = FakeBackend(text="local")
    _setup(monkeypatch, be, intent="hard_question")
    monkeypatch.setattr(main_mod.settings, "remote_api_key", None)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 200
    assert len(be.payloads) == 1


def test_remote_streaming_relays_raw_events(monkeypatch):
    _setup(monkeypatch, FakeBackend(), intent="hard_question")
    sse = b'event: message_stop\ndata: {"type":"message_stop"}\n\n'

    class RawStream:
        closed = False

        async def aiter_raw(self):
            yield sse

        async def aclose(self):
            RawStream.closed = True

    async def fake_open(client, body, model, headers):
        assert model == "claude-opus-4-6"
        return RawStream()

    monkeypatch.setattr(main_mod, "open_relay_stream", fake_open)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req(stream=True))
    assert r.status_code == 200
    assert r.content == sse
    assert RawStream.closed


def test_oversized_prompt_escalates_to_remote(monkeypatch):
    _setup(monkeypatch, FakeBackend(), intent="simple_code")
    relayed = []

    async def fake_relay(client, body, model, headers):
        relayed.append(model)
        return 200, {"id": "msg_remote"}

    monkeypatch.setattr(main_mod, "relay_messages", fake_relay)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req("x" * 50000))
    assert r.status_code == 200
    assert relayed == ["claude-sonnet-4-5-20250929"]
    assert client.get("/_debug/last").json()["reason"] == "oversized"


def test_oom_crash_is_non_retryable_error(monkeypatch):
    be = FakeBackend(exc=httpx.ConnectError("connection refused"))
    sup = FakeSupervisor(healthy=False, oom=True)
    _setup(monkeypatch, be, rules=ALL_LOCAL, supervisor=sup)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "api_error"
    assert "memory" in r.json()["error"]["message"]
    assert sup.restarts == 0
    assert main_mod.slot.in_flight == 0


def test_crashed_backend_restarted_and_retried(monkeypatch):
    class OnceDown(FakeBackend):
        async def chat_completion(self, payload):
            self.payloads.append(payload)
            if len(self.payloads) == 1:
                raise httpx.ConnectError("connection refused")
            return _completion("back up")

    be = OnceDown()
    sup = FakeSupervisor(healthy=False)
    _setup(monkeypatch, be, rules=ALL_LOCAL, supervisor=sup)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 200
    assert r.json()["content"][0]["text"] == "back up"
    assert sup.restarts == 1


def test_backend_http_error_surfaced(monkeypatch):
    be = FakeBackend(exc=BackendHTTPError(500, '{"error": {"message": "model exploded"}}'))
    sup = FakeSupervisor(healthy=True)
    _setup(monkeypatch, be, rules=ALL_LOCAL, supervisor=sup)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 500
    assert r.json()["error"] == {"type": "api_error", "message": "model exploded"}
    assert sup.restarts == 0


def test_count_tokens_estimate(monkeypatch):
    _setup(monkeypatch, FakeBackend(), rules=ALL_LOCAL)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages/count_tokens", json={"model": "m", "messages": [{"role": "user", "content": "hello"}]})
    assert r.status_code == 200
    # len('[{"role":"user","content":"hello"}]') == 35
    assert r.json() == {"input_tokens": 9}


def test_root_status(monkeypatch):
    _setup(monkeypatch, FakeBackend(), rules=ALL_LOCAL)
    client = TestClient(main_mod.app)
    data = client.get("/").json()
    assert data["ok"] is True
    assert data["local_model"] == LOCAL_MODEL
    assert data["in_flight"] == 0


@pytest.mark.asyncio
async def test_concurrent_local_requests_overflow_to_remote(monkeypatch):
    release = asyncio.Event()

    class BlockingBackend(FakeBackend):
        async def chat_completion(self, payload):
            self.payloads.append(payload)
            await release.wait()
            return _completion("first")

    be = BlockingBackend()
    _setup(monkeypatch, be, intent="simple_code")
    relayed = []

    async def fake_relay(client, body, model, headers):
        relayed.append(model)
        release.set()
        return 200, {"id": "msg_remote", "content": [{"type": "text", "text": "second"}]}

    monkeypatch.setattr(main_mod, "relay_messages", fake_relay)

    transport = httpx.ASGITransport(app=main_mod.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        first = asyncio.create_task(client.post("/v1/messages", json=_req("one")))
        for _ in range(200):
            if main_mod.slot.in_flight:
                break
            await asyncio.sleep(0.01)
        assert main_mod.slot.in_flight == 1
        second = await client.post("/v1/messages", json=_req("two"))
        first_resp = await first

    assert second.json()["id"] == "msg_remote"
    assert relayed == ["claude-sonnet-4-5-20250929"]
    assert first_resp.json()["content"][0]["text"] == "first"
    assert len(be.payloads) == 1
    assert main_mod.slot.in_flight == 0


@pytest.mark.parametrize(
    "failure",
    [RemoteApiError(503, '{"type":"error","error":{"type":"api_error","message":"down"}}'), httpx.ConnectError("no route to host")],
)
def test_remote_stream_failure_falls_back_to_local_stream(monkeypatch, failure):
    be = FakeBackend(stream_pieces=["served ", "locally"])
    _setup(monkeypatch, be, intent="hard_question")

    async def fake_open(client, body, model, headers):
        raise failure

    monkeypatch.setattr(main_mod, "open_relay_stream", fake_open)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req(stream=True))
    assert r.status_code == 200
    events = _events(r.content)
    text = "".join(d["delta"]["text"] for n, d in events if n == "content_block_delta" and d["delta"]["type"] == "text_delta")
    assert text == "served locally"
    assert be.streams[0].closed
    assert main_mod.slot.in_flight == 0
    assert client.get("/_debug/last").json()["fallback"].startswith("remote_")


def test_remote_non_json_success_falls_back_to_local(monkeypatch):
    be = FakeBackend(text="local")
    _setup(monkeypatch, be, intent="hard_question")
    portal = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>sign in</html>")))
    monkeypatch.setattr(main_mod, "_get_httpx_client", lambda: portal)
    client = TestClient(main_mod.app)
    r = client.post("/v1/messages", json=_req())
    assert r.status_code == 200
    assert r.json()["content"][0]["text"] == "local"
    assert client.get("/_debug/last").json()["fallback"] == "remote_DecodingError"


def _scope():
    return {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/v1/messages",
        "raw_path": b"/v1/messages",
        "query_string": b"",
        "root_path": "",
        "headers": [(b"host", b"test"), (b"content-type", b"application/json")],
        "client": ("127.0.0.1", 50000),
        "server": ("test", 80),
    }


@pytest.mark.asyncio
async def test_stream_cleanup_when_send_fails_before_headers(monkeypatch):
    be = FakeBackend(stream_pieces=["never", " sent"])
    _setup(monkeypatch, be, rules=ALL_LOCAL)
    body = json.dumps(_req(stream=True)).encode()
    messages = [{"type": "http.request", "body": body, "more_body": False}]

    async def receive():
        if messages:
            return messages.pop(0)
        await asyncio.Event().wait()

    async def send(message):
        if message["type"] == "http.response.start":
            raise OSError("connection reset by peer")

    with pytest.raises(Exception):
        await main_mod.app(_scope(), receive, send)
    assert main_mod.slot.in_flight == 0
    assert be.streams[0].closed


@pytest.mark.asyncio
async def test_client_disconnect_mid_stream_releases_slot(monkeypatch):
    be = FakeBackend(stream_pieces=["A first piece long enough to send.", " more", " and more"])
    _setup(monkeypatch, be, rules=ALL_LOCAL)
    body = json.dumps(_req(stream=True)).encode()
    messages = [{"type": "http.request", "body": body, "more_body": False}]
    got_text = asyncio.Event()
    sent = []

    async def receive():
        if messages:
            return messages.pop(0)
        if not got_text.is_set():
            await got_text.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)
        if message["type"] == "http.response.body" and b"text_delta" in message.get("body", b""):
            got_text.set()

    await main_mod.app(_scope(), receive, send)
    assert sent[0]["type"] == "http.response.start"
    streamed = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    assert b"message_stop" not in streamed
    assert main_mod.slot.in_flight == 0
    assert be.streams[0].closed
    assert main_mod._RECENT[-1]["phase"] == "client_disconnected"
