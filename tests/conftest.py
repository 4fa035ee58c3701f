import io
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image

from tryon_backend.errors import RemoteError


def make_png(size=(64, 96), color=(200, 40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def gallery(url: str) -> dict:
    """A response shaped like the Space's gallery output."""
    return {"data": [[{"image": {"url": url, "path": "/tmp/out.webp"}, "caption": None}]]}


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedClient:
    """Replays a list of results; exceptions in the script are raised."""

    def __init__(self, *script) -> None:
        self.script = list(script)
        self.calls: list[tuple[str, dict]] = []

    async def submit(self, endpoint: str, params: dict) -> dict:
        self.calls.append((endpoint, params))
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def quota_error() -> RemoteError:
    return RemoteError(
        "You have exceeded your GPU quota (60s requested vs. 0s left). Please retry in 0:02:05"
    )
