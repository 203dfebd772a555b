from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import concierge.server as server
from concierge.config import BridgeConfig
from concierge.conversation_log import ConversationLog
from concierge.llm_client import FakeLLMClient
from concierge.prompts import DEFAULT_CHAT_RULES, PromptSet, load_prompt_set
from concierge.rate_limit import FixedWindowRateLimiter


@pytest.fixture
def chat_env(monkeypatch):
    """Fresh process-level chat state plus a scripted provider."""
    state: dict = {"llm": FakeLLMClient(tokens=["We open ", "at eight."])}
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.delenv("LLM_PROVIDER", raising=False)
    monkeypatch.setattr(server, "_PROMPTS", load_prompt_set(BridgeConfig()))
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    monkeypatch.setattr(server, "build_llm_client", lambda cfg: state["llm"])
    monkeypatch.setattr(
        server,
        "_CHAT_LIMITER",
        FixedWindowRateLimiter(limit=30, window_ms=60_000, now_ms=lambda: 0),
    )
    monkeypatch.setattr(server, "_CONVERSATIONS", ConversationLog(max_size=1000))
    return state


def test_healthz() -> None:
    client = TestClient(server.app)
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_health_reports_status_and_timestamp() -> None:
    client = TestClient(server.app)
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["timestamp"].endswith("Z")


def test_chat_returns_reply_and_uses_chat_prompt(chat_env) -> None:
    client = TestClient(server.app)
    resp = client.post(
        "/api/chat",
        json={
            "conversationId": "conv-1",
            "messages": [{"role": "user", "content": "When do you open?"}],
        },
    )
    assert resp.status_code == 200
    assert resp.json() == {"reply": "We open at eight."}

    req = chat_env["llm"].requests[0]
    assert req["max_output_tokens"] == 1024
    assert req["system_prompt"].startswith(DEFAULT_CHAT_RULES.splitlines()[0])
    assert [m.as_dict() for m in req["messages"]] == [{"role": "user", "content": "When do you open?"}]


def test_chat_cleans_messages(chat_env) -> None:
    messages = [{"role": "assistant" if i % 2 else "user", "content": f"m{i}"} for i in range(60)]
    messages[-1] = {"role": "system", "content": "x" * 6000}
    messages[-2] = {"role": "assistant", "content": 42}
    client = TestClient(server.app)
    resp = client.post("/api/chat", json={"messages": messages})
    assert resp.status_code == 200

    sent = chat_env["llm"].requests[0]["messages"]
    assert len(sent) == 50
    assert sent[0].content == "m10"
    assert sent[-2].role == "assistant"
    assert sent[-2].content == "42"
    assert sent[-1].role == "user"
    assert len(sent[-1].content) == 5000


def test_chat_accepts_message_and_history_shape(chat_env) -> None:
    client = TestClient(server.app)
    resp = client.post(
        "/api/chat",
        json={
            "message": "And on Sunday?",
            "history": [
                {"role": "user", "content": "When do you open?"},
                {"role": "assistant", "content": "At eight."},
            ],
        },
    )
    assert resp.status_code == 200
    sent = chat_env["llm"].requests[0]["messages"]
    assert [(m.role, m.content) for m in sent] == [
        ("user", "When do you open?"),
        ("assistant", "At eight."),
        ("user", "And on Sunday?"),
    ]


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"messages": []},
        {"messages": "hello"},
        {"message": "   "},
    ],
)
def test_chat_rejects_missing_messages(chat_env, body) -> None:
    client = TestClient(server.app)
    resp = client.post("/api/chat", json=body)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Messages array is required."}
    assert chat_env["llm"].requests == []


def test_chat_rejects_invalid_json(chat_env) -> None:
    client = TestClient(server.app)
    resp = client.post("/api/chat", content=b"{nope", headers={"content-type": "application/json"})
    assert resp.status_code == 400


def test_chat_without_provider_is_500(chat_env) -> None:
    chat_env["llm"] = None
    client = TestClient(server.app)
    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 500
    assert "missing API key" in resp.json()["error"]


def test_chat_upstream_failure_is_502(chat_env) -> None:
    chat_env["llm"] = FakeLLMClient(tokens=[], error=RuntimeError("HTTP 529 overloaded"))
    client = TestClient(server.app)
    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 502
    assert resp.json() == {"error": "AI service temporarily unavailable."}


def test_chat_empty_model_output_uses_fallback(chat_env) -> None:
    chat_env["llm"] = FakeLLMClient(tokens=["  "])
    client = TestClient(server.app)
    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 200
    assert resp.json() == {"reply": "I'm sorry, I couldn't generate a response."}


def test_chat_rate_limit(chat_env, monkeypatch) -> None:
    monkeypatch.setattr(
        server, "_CHAT_LIMITER", FixedWindowRateLimiter(limit=2, window_ms=60_000, now_ms=lambda: 0)
    )
    client = TestClient(server.app)
    body = {"messages": [{"role": "user", "content": "hi"}]}
    assert client.post("/api/chat", json=body).status_code == 200
    assert client.post("/api/chat", json=body).status_code == 200
    resp = client.post("/api/chat", json=body)
    assert resp.status_code == 429
    assert resp.json() == {"error": "Too many requests. Please wait a moment."}
    assert len(chat_env["llm"].requests) == 2


def test_metrics_endpoint_counts_chat_requests(chat_env) -> None:
    client = TestClient(server.app)
    client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    text = client.get("/metrics").text
    assert "# TYPE chat_requests_total counter" in text


def test_conversations_require_configured_password(chat_env, monkeypatch) -> None:
    client = TestClient(server.app)
    client.post("/api/chat", json={"conversationId": "c1", "messages": [{"role": "user", "content": "hi"}]})

    # Unset password: never readable.
    assert client.get("/api/conversations").status_code == 401
    assert client.get("/api/conversations", headers={"X-Admin-Password": ""}).status_code == 401

    monkeypatch.setenv("ADMIN_PASSWORD", "s3cret")
    assert client.get("/api/conversations", headers={"X-Admin-Password": "wrong"}).status_code == 401

    resp = client.get("/api/conversations", headers={"X-Admin-Password": "s3cret"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 1
    convo = body["conversations"][0]
    assert convo["id"] == "c1"
    assert [m["role"] for m in convo["messages"]] == ["user", "assistant"]
    assert convo["messages"][-1]["content"] == "We open at eight."

    assert client.get("/api/conversations?password=s3cret").status_code == 200


def test_conversation_listing_and_lookup(chat_env, monkeypatch) -> None:
    monkeypatch.setenv("ADMIN_PASSWORD", "pw")
    client = TestClient(server.app)
    for cid in ("a", "b", "c"):
        client.post("/api/chat", json={"conversationId": cid, "messages": [{"role": "user", "content": cid}]})
    # Touching "a" again makes it the most recent.
    client.post("/api/chat", json={"conversationId": "a", "messages": [{"role": "user", "content": "again"}]})

    hdr = {"X-Admin-Password": "pw"}
    listing = client.get("/api/conversations", headers=hdr).json()
    assert [c["id"] for c in listing["conversations"]] == ["a", "c", "b"]

    page = client.get("/api/conversations?limit=1&offset=1", headers=hdr).json()
    assert page["total"] == 3
    assert [c["id"] for c in page["conversations"]] == ["c"]

    one = client.get("/api/conversations/b", headers=hdr)
    assert one.status_code == 200
    assert one.json()["messages"][0]["content"] == "b"

    missing = client.get("/api/conversations/zzz", headers=hdr)
    assert missing.status_code == 404
    assert missing.json() == {"error": "Conversation not found"}


def test_chat_accepts_numeric_conversation_id(chat_env, monkeypatch) -> None:
    monkeypatch.setenv("ADMIN_PASSWORD", "pw")
    client = TestClient(server.app)
    resp = client.post(
        "/api/chat",
        json={"conversationId": 1718000000000, "messages": [{"role": "user", "content": "x"}]},
    )
    assert resp.status_code == 200
    assert resp.json() == {"reply": "We open at eight."}

    one = client.get("/api/conversations/1718000000000", headers={"X-Admin-Password": "pw"})
    assert one.status_code == 200
    assert one.json()["id"] == "1718000000000"


def test_chat_uses_prompts_loaded_at_startup(chat_env, monkeypatch, tmp_path) -> None:
    kb = tmp_path / "kb.md"
    kb.write_text("Changed after startup.", encoding="utf-8")
    monkeypatch.setenv("KNOWLEDGE_BASE_PATH", str(kb))
    monkeypatch.setattr(server, "_PROMPTS", PromptSet(voice="voice prompt", chat="chat prompt"))

    def _no_reload(cfg):
        raise AssertionError("prompt files re-read per request")

    monkeypatch.setattr(server, "load_prompt_set", _no_reload)
    client = TestClient(server.app)
    resp = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 200
    assert chat_env["llm"].requests[0]["system_prompt"] == "chat prompt"
