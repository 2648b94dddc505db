from __future__ import annotations

import json
import logging
import math
import os
import sys
import time
from collections import deque
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .backend import (
    BackendHTTPError,
    BackendOutOfMemoryError,
    BackendStartupError,
    BackendSupervisor,
    LocalBackend,
    LocalSlot,
    is_connection_error,
    iter_stream_chunks,
)
from .config import settings
from .prompt_trimmer import get_model_tier, tier_char_budget
from .recovery import local_backend_recoveries, run_with_recovery
from .remote import RemoteApiError, open_relay_stream, relay_messages, remote_auth_headers
from .router import EscalationState, RoutingDecision, RoutingEngine, classify_intent, session_id_for
from .schemas.anthropic import ErrorResponse, MessagesRequest
from .stream import StreamTranslator
from .transform import (
    anthropic_to_openai_payload,
    completion_text,
    openai_to_anthropic_response,
    payload_char_length,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="coderouter")

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # h2 not installed: HTTP/1.1 only
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


_RECENT = deque(maxlen=64)

backend = LocalBackend(_get_httpx_client, settings.backend_base_url)
supervisor = BackendSupervisor(
    _get_httpx_client,
    settings.backend_base_url,
    settings.local_model,
    settings.backend_command,
    settings.backend_log_file,
    settings.backend_pid_file,
    ready_timeout=settings.backend_ready_timeout,
)
slot = LocalSlot()
escalation = EscalationState()


async def _classify(text: str) -> str:
    return await classify_intent(text, backend, settings.local_model)


engine = RoutingEngine(
    settings.routing_rules,
    settings.tier_models,
    _classify,
    escalation,
    classify_max_chars=settings.classify_max_chars,
)


def configure_logging(debug: Optional[bool] = None) -> None:
    level = logging.DEBUG if (settings.debug if debug is None else debug) else logging.INFO
    logging.basicConfig(
        level=level,
        format="[proxy] %(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _anthropic_error_for_status(status: int, message: str) -> Dict[str, Any]:
    t = "api_error"
    if status == 400:
        t = "invalid_request_error"
    elif status == 401:
        t = "authentication_error"
    elif status == 403:
        t = "permission_error"
    elif status == 404:
        t = "not_found_error"
    elif status == 429:
        t = "rate_limit_error"
    elif status == 529:
        t = "overloaded_error"
    elif 500 <= status < 600:
        t = "api_error"
    return ErrorResponse(error={"type": t, "message": message}).model_dump()


def _error_response(status: int, message: str, error_type: Optional[str] = None) -> JSONResponse:
    content = _anthropic_error_for_status(status, message)
    if error_type:
        content["error"]["type"] = error_type
    return JSONResponse(status_code=status, content=content)


def _upstream_message(body: str) -> str:
    try:
        j = json.loads(body) if body else {}
    except ValueError:
        return body
    if isinstance(j, dict):
        err = j.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if j.get("message"):
            return str(j["message"])
    return body


def _local_error_response(e: Exception, rec: Dict[str, Any]) -> JSONResponse:
    rec["exception_type"] = type(e).__name__
    rec["message"] = str(e)
    if isinstance(e, BackendOutOfMemoryError):
        rec["phase"] = "local_oom"
        # 400 so vendor clients do not retry into the same crash
        return _error_response(400, str(e), "api_error")
    if isinstance(e, BackendHTTPError):
        rec["phase"] = f"local_status_{e.status}"
        return _error_response(e.status, _upstream_message(e.body))
    if isinstance(e, BackendStartupError):
        rec["phase"] = "local_startup_failed"
        return _error_response(503, f"Local backend failed to start: {e}")
    rec["phase"] = "local_unreachable"
    return _error_response(502, f"Local backend unreachable at {settings.backend_base_url}: {e}")


def _dump_last_request(body: Dict[str, Any]) -> None:
    path = os.path.join(os.path.dirname(settings.backend_log_file), "last-request.json")
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(body, f, ensure_ascii=False, indent=2)
    except OSError as e:
        logger.debug("could not write %s: %s", path, e)


@app.post("/v1/messages")
async def messages(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="x-api-key"),
    authorization: str | None = Header(default=None, alias="authorization"),
):
    _rec: Dict[str, Any] = {"phase": "start", "ts": time.time()}
    try:
        body = await request.json()
    except Exception as e:
        _rec["phase"] = "bad_body"
        _RECENT.append(_rec)
        logger.warning("unparseable request body: %s", e)
        return _error_response(500, f"Could not parse request body: {e}")

    try:
        parsed = MessagesRequest.model_validate(body)
    except ValidationError as e:
        _rec["phase"] = "invalid"
        _RECENT.append(_rec)
        return _error_response(400, str(e))
    _rec["request_model"] = parsed.model
    _rec["stream"] = bool(parsed.stream)
    if settings.debug:
        _dump_last_request(body)

    local_body = parsed.model_dump(exclude_none=True)
    decision = await engine.decide(local_body, session_id_for(body))
    decision = engine.divert_if_busy(decision, slot.in_flight)

    model_tier = get_model_tier(settings.local_model)
    payload: Optional[Dict[str, Any]] = None
    if decision.target == "local":
        payload = anthropic_to_openai_payload(local_body, settings.local_model, model_tier)
        decision = engine.divert_if_oversized(decision, payload_char_length(payload), tier_char_budget(model_tier))
    _record_decision(_rec, decision)

    if decision.target == "local":
        # Slot taken with no await since the busy check
        slot.acquire()
        return await _serve_local(request, parsed, local_body, payload, _rec)

    headers = remote_auth_headers(x_api_key, authorization)
    if headers is None:
        logger.warning("no credentials for the remote API; serving tier %d locally", decision.tier)
        _rec["fallback"] = "no_credentials"
    else:
        try:
            if parsed.stream:
                return await _serve_remote_stream(body, decision, headers, _rec)
            status, data = await relay_messages(_get_httpx_client(), body, decision.remote_model, headers)
            _rec["phase"] = "remote_ok"
            _RECENT.append(_rec)
            return JSONResponse(status_code=status, content=data)
        except RemoteApiError as e:
            if settings.remote_passthrough_errors:
                _rec["phase"] = f"remote_status_{e.status}"
                _RECENT.append(_rec)
                return JSONResponse(
                    status_code=e.status,
                    content=e.json_body() or _anthropic_error_for_status(e.status, e.body),
                )
            logger.warning("remote %s failed with HTTP %d; falling back to local", decision.remote_model, e.status)
            _rec["fallback"] = f"remote_status_{e.status}"
        except httpx.HTTPError as e:
            logger.warning("remote %s unreachable (%s); falling back to local", decision.remote_model, e)
            _rec["fallback"] = f"remote_{type(e).__name__}"

    if payload is None:
        payload = anthropic_to_openai_payload(local_body, settings.local_model, model_tier)
    slot.acquire()
    return await _serve_local(request, parsed, local_body, payload, _rec)


def _record_decision(rec: Dict[str, Any], decision: RoutingDecision) -> None:
    rec.update(
        {
            "tier": decision.tier,
            "intent": decision.intent,
            "target": decision.target,
            "remote_model": decision.remote_model,
            "reason": decision.reason,
        }
    )


def _once(fn: Callable[[], Awaitable[None]]) -> Callable[[], Awaitable[None]]:
    done = False

    async def run() -> None:
        nonlocal done
        if done:
            return
        done = True
        await fn()

    return run


class _ClosingStreamingResponse(StreamingResponse):
    """StreamingResponse that runs ``on_close`` even when the body never starts.

    A client that goes away before the headers are sent means the body
    iterator is never entered, so its own ``finally`` cannot be relied on.
    """

    def __init__(self, content: Any, on_close: Callable[[], Awaitable[None]], **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._on_close()


async def _with_recovery(attempt):
    return await run_with_recovery(
        attempt,
        local_backend_recoveries(supervisor, attempt, auto_restart=settings.auto_restart_backend),
    )


async def _serve_local(
    request: Request,
    parsed: MessagesRequest,
    local_body: Dict[str, Any],
    payload: Dict[str, Any],
    rec: Dict[str, Any],
):
    """Serve from the local backend. The caller has already acquired ``slot``."""
    display_model = settings.local_model or parsed.model
    rec["oai_model"] = payload.get("model")

    if not parsed.stream:
        try:
            oai = await _with_recovery(lambda: backend.chat_completion(payload))
        except (BackendHTTPError, BackendOutOfMemoryError, BackendStartupError) as e:
            _RECENT.append(rec)
            return _local_error_response(e, rec)
        except Exception as e:
            if not is_connection_error(e):
                raise
            _RECENT.append(rec)
            return _local_error_response(e, rec)
        finally:
            slot.release()
        rec["phase"] = "local_ok"
        _RECENT.append(rec)
        return JSONResponse(content=openai_to_anthropic_response(completion_text(oai), display_model))

    try:
        upstream = await _with_recovery(lambda: backend.open_chat_stream(payload))
    except (BackendHTTPError, BackendOutOfMemoryError, BackendStartupError) as e:
        slot.release()
        _RECENT.append(rec)
        return _local_error_response(e, rec)
    except BaseException as e:
        slot.release()
        if isinstance(e, Exception) and is_connection_error(e):
            _RECENT.append(rec)
            return _local_error_response(e, rec)
        raise

    translator = StreamTranslator(display_model)

    async def close_upstream():
        try:
            await upstream.aclose()
        finally:
            slot.release()
            _RECENT.append(rec)

    cleanup = _once(close_upstream)

    async def event_stream():
        rec["phase"] = "local_stream"
        try:
            async for chunk in iter_stream_chunks(upstream):
                if await request.is_disconnected():
                    logger.info("client disconnected during stream")
                    rec["phase"] = "client_disconnected"
                    return
                out = translator.push(chunk)
                if out:
                    yield out
            yield translator.finish()
            rec["phase"] = "local_stream_ok"
        except httpx.HTTPError as e:
            # Backend dropped mid-stream: close the message with what arrived
            logger.warning("local stream interrupted: %s", e)
            rec["phase"] = "local_stream_interrupted"
            rec["message"] = str(e)
            yield translator.finish()
        finally:
            await cleanup()

    return _ClosingStreamingResponse(event_stream(), cleanup, media_type="text/event-stream")


async def _serve_remote_stream(
    body: Dict[str, Any],
    decision: RoutingDecision,
    headers: Dict[str, str],
    rec: Dict[str, Any],
):
    # Opened before responding so an error can still fall back to local
    upstream = await open_relay_stream(_get_httpx_client(), body, decision.remote_model, headers)

    async def close_upstream():
        try:
            await upstream.aclose()
        finally:
            _RECENT.append(rec)

    cleanup = _once(close_upstream)

    async def relay():
        rec["phase"] = "remote_stream"
        try:
            async for raw in upstream.aiter_raw():
                if raw:
                    yield raw
            rec["phase"] = "remote_stream_ok"
        except httpx.HTTPError as e:
            logger.warning("remote stream interrupted: %s", e)
            rec["phase"] = "remote_stream_interrupted"
        finally:
            await cleanup()

    return _ClosingStreamingResponse(relay(), cleanup, media_type="text/event-stream")


@app.post("/v1/messages/count_tokens")
async def count_tokens(request: Request):
    try:
        body = await request.json()
    except Exception as e:
        return _error_response(500, f"Could not parse request body: {e}")
    messages = body.get("messages") if isinstance(body, dict) else None
    text = json.dumps(messages or [], ensure_ascii=False, separators=(",", ":"))
    return {"input_tokens": math.ceil(len(text) / 4)}


@app.get("/")
async def root():
    return {
        "ok": True,
        "backend": settings.backend_base_url,
        "local_model": settings.local_model,
        "in_flight": slot.in_flight,
    }


@app.get("/_debug/last")
async def debug_last():
    return _RECENT[-1] if _RECENT else {}


@app.on_event("startup")
async def _startup_client():
    # Initialize shared HTTP client eagerly to establish pools
    _ = _get_httpx_client()
    return None


@app.on_event("shutdown")
async def _shutdown_close_client():
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        except Exception as e:
            logger.debug("error closing HTTP client: %s", e)
        _HTTPX_CLIENT = None


def run() -> None:
    import uvicorn

    configure_logging()
    logger.info(
        "listening on http://%s:%d, local backend %s (%s)",
        settings.host,
        settings.port,
        settings.backend_base_url,
        settings.local_model or "unset",
    )
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
