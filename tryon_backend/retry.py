"""
MIT License — retry/backoff orchestration around the inference client

The backend signals quota exhaustion only as free text ("... retry in 0:05:12")
inside an error message. ``parse_quota`` is the one place that reads it.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from tryon_backend.errors import (
    FatalRemoteError,
    QuotaExceededError,
    RemoteError,
    RetriesExhaustedError,
    TryOnError,
)

logger = logging.getLogger(__name__)

_QUOTA_RE = re.compile(r"retry in (\d+):(\d+):(\d+)", re.IGNORECASE)

Sleep = Callable[[float], Awaitable[None]]


class InferenceClient(Protocol):
    async def submit(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_step_s: float = 5.0  # linear: 5s, 10s, 15s...
    quota_margin_s: float = 1.0


DEFAULT_POLICY = RetryPolicy()


@dataclass(frozen=True)
class QuotaSignal:
    hours: int
    minutes: int
    seconds: int

    @property
    def wait_s(self) -> int:
        return self.hours * 3600 + self.minutes * 60 + self.seconds


def parse_quota(message: Optional[str]) -> Optional[QuotaSignal]:
    """Return the server-declared wait if ``message`` carries one."""
    if not message:
        return None
    m = _QUOTA_RE.search(message)
    if m is None:
        return None
    hours, minutes, seconds = (int(g) for g in m.groups())
    return QuotaSignal(hours=hours, minutes=minutes, seconds=seconds)


class Phase(str, Enum):
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    WAITING_QUOTA = "waiting_quota"
    WAITING_BACKOFF = "waiting_backoff"
    FAILED = "failed"


@dataclass(frozen=True)
class Step:
    phase: Phase
    delay_s: float = 0.0
    error: Optional[TryOnError] = None


def next_step(attempt: int, error: RemoteError, policy: RetryPolicy = DEFAULT_POLICY) -> Step:
    """Decide what follows failed attempt ``attempt`` (0-indexed)."""
    last = attempt >= policy.max_attempts - 1
    message = error.message

    quota = parse_quota(message)
    if quota is not None:
        if last:
            return Step(
                Phase.FAILED,
                error=QuotaExceededError(quota.hours, quota.minutes, quota.seconds, detail=message),
            )
        return Step(Phase.WAITING_QUOTA, delay_s=quota.wait_s + policy.quota_margin_s)

    if not error.retryable:
        return Step(Phase.FAILED, error=FatalRemoteError(message, detail=error.detail))

    if last:
        return Step(
            Phase.FAILED,
            error=RetriesExhaustedError(policy.max_attempts, message, detail=error.detail),
        )
    return Step(Phase.WAITING_BACKOFF, delay_s=policy.backoff_step_s * (attempt + 1))


async def execute(
    client: InferenceClient,
    endpoint: str,
    params: Dict[str, Any],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    sleep: Sleep = asyncio.sleep,
) -> Dict[str, Any]:
    """Call ``client.submit`` until it succeeds or ``policy`` gives up.

    Attempts run strictly one after another. Raises QuotaExceededError,
    RetriesExhaustedError or FatalRemoteError; never returns a partial result.
    """
    for attempt in range(policy.max_attempts):
        logger.info(f"Attempt {attempt + 1}: sending request to {endpoint}")
        try:
            result = await client.submit(endpoint, params)
        except RemoteError as e:
            logger.error(f"Attempt {attempt + 1} failed: {e.message}")
            step = next_step(attempt, e, policy)
        else:
            logger.info(f"Attempt {attempt + 1} succeeded")
            return result

        if step.phase == Phase.FAILED:
            raise step.error
        if step.phase == Phase.WAITING_QUOTA:
            logger.warning(f"GPU quota exceeded, waiting {step.delay_s:.0f}s before retrying")
        else:
            logger.info(f"Retrying in {step.delay_s:.0f} seconds...")
        await sleep(step.delay_s)

    # max_attempts < 1
    raise RetriesExhaustedError(policy.max_attempts, "no attempts allowed")
