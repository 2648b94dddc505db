"""Ordered recovery steps for failed backend calls.

Each step pairs a predicate with an action. The first step whose predicate
matches handles the failure; when none match the original exception
propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Sequence, TypeVar

from .backend import BackendOutOfMemoryError, is_connection_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

OOM_REMEDIATION = (
    "The local model server crashed because it ran out of memory. "
    "Choose a smaller model (fewer parameters or a lower-bit quantization), "
    "close memory-heavy applications, or shorten the conversation, then retry."
)


@dataclass
class RecoveryStep:
    name: str
    matches: Callable[[BaseException], Awaitable[bool]]
    recover: Callable[[BaseException], Awaitable[Any]]


async def run_with_recovery(attempt: Callable[[], Awaitable[T]], steps: Sequence[RecoveryStep]) -> T:
    try:
        return await attempt()
    except Exception as exc:
        for step in steps:
            if await step.matches(exc):
                logger.warning("recovering from %s via %s", type(exc).__name__, step.name)
                return await step.recover(exc)
        raise


def local_backend_recoveries(supervisor: Any, retry: Callable[[], Awaitable[Any]], auto_restart: bool = True) -> List[RecoveryStep]:
    """Out-of-memory check first, then a single restart-and-retry.

    Only connection failures against an unhealthy backend are recoverable;
    HTTP errors from a running backend always propagate.
    """

    async def crashed(exc: BaseException) -> bool:
        return is_connection_error(exc) and not await supervisor.is_healthy()

    async def crashed_oom(exc: BaseException) -> bool:
        return await crashed(exc) and supervisor.is_oom_crash()

    async def fail_oom(exc: BaseException) -> Any:
        raise BackendOutOfMemoryError(OOM_REMEDIATION) from exc

    async def crashed_restartable(exc: BaseException) -> bool:
        return auto_restart and await crashed(exc)

    async def restart_and_retry(exc: BaseException) -> Any:
        logger.warning("local backend unreachable (%s); restarting", exc)
        await supervisor.restart()
        # Exactly one retry; a second failure propagates
        return await retry()

    return [
        RecoveryStep("out-of-memory", crashed_oom, fail_oom),
        RecoveryStep("restart", crashed_restartable, restart_and_retry),
    ]
