"""
MIT License — per-caller usage throttle

Advisory limiter: each caller gets a fixed number of successful generations
per window. Only consume writes. Check and consume are separate steps, so
parallel submissions from one caller can both pass the check.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple, TypeVar

from tryon_backend.errors import ThrottledError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UsageWindow:
    tries_remaining: int
    window_reset_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "tries_remaining": self.tries_remaining,
            "window_reset_at": self.window_reset_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, object]) -> "UsageWindow":
        return cls(
            tries_remaining=int(d["tries_remaining"]),
            window_reset_at=datetime.fromisoformat(str(d["window_reset_at"])),
        )


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    tries_remaining: int
    reset_in: timedelta


class UsageStore(Protocol):
    def get(self, caller_id: str) -> Optional[UsageWindow]:
        ...

    def put(self, caller_id: str, window: UsageWindow, now: datetime) -> None:
        """Save `window` and forget every window that elapsed before `now`."""
        ...


class InMemoryUsageStore:
    def __init__(self) -> None:
        self._windows: Dict[str, UsageWindow] = {}

    def get(self, caller_id: str) -> Optional[UsageWindow]:
        w = self._windows.get(caller_id)
        return UsageWindow(w.tries_remaining, w.window_reset_at) if w else None

    def put(self, caller_id: str, window: UsageWindow, now: datetime) -> None:
        self._windows = {k: w for k, w in self._windows.items() if w.window_reset_at > now}
        self._windows[caller_id] = UsageWindow(window.tries_remaining, window.window_reset_at)


class JsonFileUsageStore:
    """Keeps every caller's window in one JSON file, replaced atomically."""

    def __init__(self, path: os.PathLike | str) -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, Dict[str, object]]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Usage store {self.path} unreadable, starting fresh: {e}")
            return {}

    def get(self, caller_id: str) -> Optional[UsageWindow]:
        raw = self._load().get(caller_id)
        return UsageWindow.from_dict(raw) if raw else None

    def put(self, caller_id: str, window: UsageWindow, now: datetime) -> None:
        data = {
            k: raw for k, raw in self._load().items()
            if UsageWindow.from_dict(raw).window_reset_at > now
        }
        data[caller_id] = window.to_dict()
        self._write(json.dumps(data, indent=2, sort_keys=True))

    def _write(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", dir=str(self.path.parent), prefix=self.path.name + ".", suffix=".tmp",
            delete=False, encoding="utf-8",
        ) as f:
            tmp_path = Path(f.name)
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)


def format_reset_in(reset_in: timedelta) -> str:
    total = max(0, int(reset_in.total_seconds()))
    hours, rest = divmod(total, 3600)
    minutes = rest // 60
    return f"{hours}h {minutes}m"


class UsageThrottle:
    def __init__(
        self,
        store: Optional[UsageStore] = None,
        *,
        default_tries: int = 1,
        window: timedelta = timedelta(hours=24),
        clock: Clock = utc_now,
    ) -> None:
        self.store = store if store is not None else InMemoryUsageStore()
        self.default_tries = default_tries
        self.window = window
        self.clock = clock

    def _current(self, caller_id: str) -> Tuple[UsageWindow, datetime]:
        """The caller's live window. A missing or elapsed window reads as a fresh one."""
        now = self.clock()
        w = self.store.get(caller_id)
        if w is None or now >= w.window_reset_at:
            w = UsageWindow(self.default_tries, now + self.window)
        return w, now

    def check(self, caller_id: str) -> UsageDecision:
        w, now = self._current(caller_id)
        return UsageDecision(
            allowed=w.tries_remaining > 0,
            tries_remaining=w.tries_remaining,
            reset_in=w.window_reset_at - now,
        )

    # read-only: nothing is stored until a try is consumed
    status = check

    def consume(self, caller_id: str) -> UsageDecision:
        w, now = self._current(caller_id)
        w.tries_remaining = max(0, w.tries_remaining - 1)
        self.store.put(caller_id, w, now)
        return UsageDecision(
            allowed=w.tries_remaining > 0,
            tries_remaining=w.tries_remaining,
            reset_in=w.window_reset_at - now,
        )

    async def check_and_consume(
        self,
        caller_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> Tuple[T, UsageDecision]:
        """Run ``operation`` if the caller has a try left; charge it only on success."""
        decision = self.check(caller_id)
        if not decision.allowed:
            logger.info(f"Caller {caller_id} throttled, resets in {format_reset_in(decision.reset_in)}")
            raise ThrottledError(
                f"Daily limit reached. Next try available in {format_reset_in(decision.reset_in)}",
                reset_in=decision.reset_in,
            )
        result = await operation()
        return result, self.consume(caller_id)
