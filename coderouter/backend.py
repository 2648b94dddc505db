from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import signal
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


OOM_PATTERNS = (
    "out of memory",
    "memoryerror",
    "cannot allocate memory",
    "failed to allocate",
    "mlock failed",
)
OOM_LOG_TAIL = 2048


class BackendError(Exception):
    """Base class for local backend failures."""


class BackendHTTPError(BackendError):
    """The backend answered with an HTTP error status (an application error)."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"backend returned HTTP {status}: {body[:500]}")
        self.status = status
        self.body = body


class BackendOutOfMemoryError(BackendError):
    pass


class BackendStartupError(BackendError):
    pass


def is_connection_error(exc: BaseException) -> bool:
    """True for transport failures (refused, reset, dropped), never for HTTP errors."""
    return isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, httpx.ConnectTimeout, ConnectionError))


class LocalBackend:
    """Client for the local OpenAI-compatible Chat Completions server."""

    def __init__(self, client_factory: Callable[[], httpx.AsyncClient], base_url: str) -> None:
        self._client_factory = client_factory
        self.base_url = base_url.rstrip("/")

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/v1/chat/completions"

    async def chat_completion(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = self._client_factory()
        resp = await client.post(self.completions_url, json={**payload, "stream": False}, timeout=None)
        if resp.status_code >= 400:
            raise BackendHTTPError(resp.status_code, resp.text)
        return resp.json()

    async def open_chat_stream(self, payload: Dict[str, Any]) -> httpx.Response:
        """Send a streaming request and return the open response.

        The caller owns the response and must ``aclose()`` it.
        """
        client = self._client_factory()
        req = client.build_request(
            "POST",
            self.completions_url,
            json={**payload, "stream": True},
            headers={"Accept": "text/event-stream"},
            timeout=None,
        )
        resp = await client.send(req, stream=True)
        if resp.status_code >= 400:
            try:
                body = (await resp.aread()).decode("utf-8", errors="ignore")
            finally:
                await resp.aclose()
            raise BackendHTTPError(resp.status_code, body)
        return resp


async def iter_stream_chunks(resp: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """Parsed ``data:`` payloads of an OpenAI SSE stream, up to ``[DONE]``."""
    async for line in resp.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return
        try:
            chunk = json.loads(data)
        except ValueError:
            logger.debug("skipping non-JSON stream line: %r", data[:200])
            continue
        if isinstance(chunk, dict):
            yield chunk


class LocalSlot:
    """In-flight counter for the single-slot local backend.

    ``acquire`` is synchronous so a caller can check ``in_flight`` and take the
    slot with no await in between.
    """

    def __init__(self) -> None:
        self.in_flight = 0

    def acquire(self) -> None:
        self.in_flight += 1

    def release(self) -> None:
        self.in_flight = max(0, self.in_flight - 1)


class BackendSupervisor:
    """Minimal lifecycle control for the local backend process."""

    def __init__(
        self,
        client_factory: Callable[[], httpx.AsyncClient],
        base_url: str,
        model: str,
        command: str,
        log_file: str,
        pid_file: str,
        ready_timeout: float = 300.0,
        poll_interval: float = 1.0,
    ) -> None:
        self._client_factory = client_factory
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.command = command
        self.log_file = log_file
        self.pid_file = pid_file
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._restart_lock = asyncio.Lock()

    @property
    def port(self) -> int:
        url = httpx.URL(self.base_url)
        return url.port or (443 if url.scheme == "https" else 80)

    async def is_healthy(self) -> bool:
        try:
            resp = await self._client_factory().get(f"{self.base_url}/v1/models", timeout=httpx.Timeout(5.0))
        except httpx.HTTPError:
            return False
        return resp.status_code < 400

    def is_oom_crash(self) -> bool:
        try:
            with open(self.log_file, "rb") as f:
                f.seek(0, os.SEEK_END)
                size = f.tell()
                f.seek(max(0, size - OOM_LOG_TAIL))
                tail = f.read().decode("utf-8", errors="ignore").lower()
        except OSError:
            return False
        return any(p in tail for p in OOM_PATTERNS)

    def _read_pid(self) -> Optional[int]:
        try:
            with open(self.pid_file, "r", encoding="utf-8") as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def stop(self) -> bool:
        pid = self._read_pid()
        if pid is None:
            return False
        try:
            os.kill(pid, signal.SIGTERM)
            stopped = True
        except OSError:
            stopped = False
        try:
            os.unlink(self.pid_file)
        except OSError:
            pass
        return stopped

    async def start(self) -> int:
        if not self.model:
            raise BackendStartupError("LOCAL_MODEL is not set; cannot start the backend")
        argv = shlex.split(self.command.format(model=self.model, port=self.port))
        os.makedirs(os.path.dirname(self.log_file) or ".", exist_ok=True)
        os.makedirs(os.path.dirname(self.pid_file) or ".", exist_ok=True)
        with open(self.log_file, "wb") as log:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdout=log,
                    stderr=log,
                    stdin=asyncio.subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                raise BackendStartupError(f"failed to launch backend: {e}") from e
        with open(self.pid_file, "w", encoding="utf-8") as f:
            f.write(f"{proc.pid}\n")
        logger.info("started backend pid=%d: %s", proc.pid, " ".join(argv))
        return proc.pid

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        timeout = self.ready_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            if await self.is_healthy():
                return
            if time.monotonic() >= deadline:
                raise BackendStartupError(f"backend not ready after {timeout:.0f}s")
            await asyncio.sleep(self.poll_interval)

    async def restart(self) -> Optional[int]:
        """Stop, start and wait for the backend; one restart at a time.

        Returns None when a concurrent caller already brought the backend back.
        """
        async with self._restart_lock:
            if await self.is_healthy():
                logger.info("backend already healthy; skipping restart")
                return None
            self.stop()
            pid = await self.start()
            await self.wait_ready()
            return pid
