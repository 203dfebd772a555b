from __future__ import annotations

import asyncio
import hmac
import logging
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from .bounded_queue import BoundedDequeQueue
from .chat_relay import ChatInputError, ChatRelay, ChatRequest, ChatUnavailableError
from .clock import RealClock
from .completion import CompletionClient, CompletionError
from .config import BridgeConfig
from .conversation_log import ConversationLog, utc_now_iso
from .log import configure_logging, log_event
from .metrics import METRIC, CompositeMetrics, Metrics
from .orchestrator import Orchestrator
from .prom_export import GLOBAL_PROM
from .prompts import PromptSet, load_prompt_set
from .provider import build_llm_client
from .rate_limit import FixedWindowRateLimiter
from .trace import TraceSink
from .transport_ws import Transport, socket_reader, socket_writer


logger = logging.getLogger("concierge.server")


class StarletteTransport(Transport):
    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws

    async def recv_text(self) -> str:
        message = await self._ws.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=int(message.get("code") or 1000))
        if message.get("text") is not None:
            return str(message["text"])
        # Binary frames are decoded leniently; the reader drops them if they do not parse.
        return bytes(message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def send_text(self, text: str) -> None:
        await self._ws.send_text(text)

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        try:
            await self._ws.close(code=code, reason=reason)
        except Exception:
            return


_BOOT_CFG = BridgeConfig.from_env()
configure_logging(level=_BOOT_CFG.log_level, fmt=_BOOT_CFG.log_format)

_REPO_ROOT = Path(__file__).resolve().parents[1]
_PUBLIC_DIR = _REPO_ROOT / "public"

# Shared by every chat request in this process.
_CHAT_LIMITER = FixedWindowRateLimiter(
    limit=_BOOT_CFG.chat_rate_limit,
    window_ms=_BOOT_CFG.chat_rate_window_ms,
    now_ms=RealClock().now_ms,
)
_CONVERSATIONS = ConversationLog(max_size=_BOOT_CFG.conversation_log_max)
# Knowledge base and rules files are read once; edits need a restart.
_PROMPTS: PromptSet = load_prompt_set(_BOOT_CFG)

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(_BOOT_CFG.allowed_origins) or ["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def _coerce_int(value: Any, default: int, min_value: int | None = None, max_value: int | None = None) -> int:
    try:
        coerced = int(value)
    except (TypeError, ValueError):
        return default
    if min_value is not None and coerced < min_value:
        return min_value
    if max_value is not None and coerced > max_value:
        return max_value
    return coerced


def _client_ip(request: Request) -> str:
    if request.client is not None and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for", "")
    return forwarded.split(",")[0].strip() or "unknown"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _admin_denied(request: Request, cfg: BridgeConfig) -> Optional[JSONResponse]:
    # No configured password means the log is never readable.
    provided = request.headers.get("x-admin-password") or request.query_params.get("password") or ""
    if not cfg.admin_password or not hmac.compare_digest(
        provided.encode("utf-8"), cfg.admin_password.encode("utf-8")
    ):
        return _error(401, "Unauthorized")
    return None


@app.get("/healthz")
async def healthz() -> dict[str, bool]:
    return {"ok": True}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "timestamp": utc_now_iso()}


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    return PlainTextResponse(GLOBAL_PROM.render())


@app.post("/api/chat")
async def chat(request: Request) -> JSONResponse:
    GLOBAL_PROM.inc(METRIC["chat_requests_total"], 1)
    decision = _CHAT_LIMITER.hit(_client_ip(request))
    if not decision.allowed:
        GLOBAL_PROM.inc(METRIC["chat_rate_limited_total"], 1)
        return _error(429, "Too many requests. Please wait a moment.")

    cfg = BridgeConfig.from_env()
    try:
        body = await request.json()
        chat_req = ChatRequest.model_validate(body if isinstance(body, dict) else {})
    except (ValueError, ValidationError):
        return _error(400, "Messages array is required.")

    llm = build_llm_client(cfg)
    completion = None
    if llm is not None:
        completion = CompletionClient(
            llm=llm,
            system_prompt=_PROMPTS.chat,
            max_output_tokens=cfg.chat_max_output_tokens,
        )
    relay = ChatRelay(
        completion=completion,
        conversations=_CONVERSATIONS,
        fallback_reply=cfg.chat_fallback_reply,
        max_messages=cfg.chat_max_messages,
        max_chars=cfg.chat_max_message_chars,
    )
    try:
        reply = await relay.reply(chat_req)
    except ChatUnavailableError as e:
        return _error(500, str(e))
    except ChatInputError as e:
        return _error(400, str(e))
    except CompletionError:
        GLOBAL_PROM.inc(METRIC["chat_upstream_error_total"], 1)
        return _error(502, "AI service temporarily unavailable.")
    finally:
        if llm is not None:
            await llm.aclose()
    return JSONResponse({"reply": reply})


@app.get("/api/conversations")
async def list_conversations(
    request: Request,
    limit: str | None = None,
    offset: str | None = None,
) -> JSONResponse:
    denied = _admin_denied(request, BridgeConfig.from_env())
    if denied is not None:
        return denied
    page = _coerce_int(limit, 50, max_value=200)
    total, conversations = _CONVERSATIONS.list(
        limit=page if page > 0 else 50,
        offset=_coerce_int(offset, 0, min_value=0),
    )
    return JSONResponse({"total": total, "conversations": conversations})


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(request: Request, conversation_id: str) -> JSONResponse:
    denied = _admin_denied(request, BridgeConfig.from_env())
    if denied is not None:
        return denied
    convo = _CONVERSATIONS.get(conversation_id)
    if convo is None:
        return _error(404, "Conversation not found")
    return JSONResponse(convo)


@app.websocket("/llm-websocket/{call_id}")
async def llm_websocket(ws: WebSocket, call_id: str) -> None:
    await _run_session(ws, call_id)


async def _run_session(ws: WebSocket, call_id: str) -> None:
    cfg = BridgeConfig.from_env()
    await ws.accept()
    log_event(logger, "connect", component="ws_session", route="/llm-websocket", call_id=call_id)

    clock = RealClock()
    session_metrics = Metrics()
    metrics = CompositeMetrics(session_metrics, GLOBAL_PROM)
    trace = TraceSink()

    inbound_q: BoundedDequeQueue = BoundedDequeQueue(maxsize=cfg.inbound_queue_max)
    outbound_q: BoundedDequeQueue = BoundedDequeQueue(maxsize=cfg.outbound_queue_max)
    shutdown_evt = asyncio.Event()
    llm = build_llm_client(cfg)
    if llm is None:
        log_event(
            logger,
            "no_completion_provider",
            level=logging.WARNING,
            component="ws_session",
            call_id=call_id,
            provider=cfg.llm_provider,
        )
    completion = CompletionClient(
        llm=llm,
        system_prompt=_PROMPTS.voice,
        max_output_tokens=cfg.voice_max_output_tokens,
    )

    transport = StarletteTransport(ws)
    orch = Orchestrator(
        call_id=call_id,
        config=cfg,
        clock=clock,
        metrics=metrics,
        trace=trace,
        inbound_q=inbound_q,
        outbound_q=outbound_q,
        shutdown_evt=shutdown_evt,
        completion=completion,
    )

    reader_task = asyncio.create_task(
        socket_reader(
            transport=transport,
            inbound_q=inbound_q,
            metrics=metrics,
            shutdown_evt=shutdown_evt,
            max_frame_bytes=cfg.ws_max_frame_bytes,
            call_id=call_id,
        )
    )
    writer_task = asyncio.create_task(
        socket_writer(
            transport=transport,
            outbound_q=outbound_q,
            metrics=metrics,
            shutdown_evt=shutdown_evt,
            clock=clock,
            inbound_q=inbound_q,
            ws_write_timeout_ms=cfg.ws_write_timeout_ms,
            ws_close_on_write_timeout=cfg.ws_close_on_write_timeout,
            ws_max_consecutive_write_timeouts=cfg.ws_max_consecutive_write_timeouts,
            call_id=call_id,
        )
    )
    orch_task = asyncio.create_task(orch.run())

    try:
        await orch_task
    except Exception as e:
        log_event(
            logger,
            "session_crashed",
            level=logging.ERROR,
            exc_info=True,
            component="ws_session",
            call_id=call_id,
            error=type(e).__name__,
        )
        await orch.end_session(reason="internal_error")
    finally:
        shutdown_evt.set()
        reader_task.cancel()
        writer_task.cancel()
        await asyncio.gather(reader_task, writer_task, return_exceptions=True)
        if llm is not None:
            await llm.aclose()
        await transport.close(code=1000, reason="session_end")


# Mounted last: a mount at "/" would otherwise shadow the API routes.
if _PUBLIC_DIR.exists():
    app.mount("/", StaticFiles(directory=str(_PUBLIC_DIR), html=True), name="public")
