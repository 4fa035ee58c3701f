from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock, RecordingSleep, ScriptedClient, gallery, make_png
from tryon_backend.errors import RemoteError
from tryon_backend.service import TryOnService
from tryon_backend.throttle import UsageThrottle
from tryon_backend.types import ImageInput, SubmissionState


def _service(client, clock: FakeClock, sleep: RecordingSleep, **kwargs) -> TryOnService:
    return TryOnService(client, UsageThrottle(clock=clock), sleep=sleep, **kwargs)


def _form(**overrides):
    form = dict(
        model_image=make_png(),
        garment_image=make_png(color=(10, 10, 200)),
        n_samples="1",
        n_steps="20",
        image_scale="2",
        seed="-1",
    )
    form.update(overrides)
    return form


@pytest.mark.asyncio
async def test_no_category_routes_to_hd(clock, sleep) -> None:
    client = ScriptedClient(gallery("https://x/out.webp"))
    outcome = await _service(client, clock, sleep).submit("alice", **_form())

    assert outcome.state == SubmissionState.SUCCEEDED
    assert outcome.result == "https://x/out.webp"
    assert outcome.tries_remaining == 0

    endpoint, params = client.calls[0]
    assert endpoint == "/process_hd"
    assert "category" not in params
    assert isinstance(params["vton_img"], ImageInput)
    assert params["vton_img"].content_type == "image/jpeg"
    assert params["vton_img"].filename.startswith("modelImage-")
    assert params["garm_img"].filename.startswith("garmentImage-")
    assert (params["n_samples"], params["n_steps"], params["image_scale"], params["seed"]) == (1, 20, 2.0, -1)


@pytest.mark.asyncio
async def test_dress_routes_to_dc_with_category(clock, sleep) -> None:
    client = ScriptedClient(gallery("https://x/out.webp"))
    await _service(client, clock, sleep).submit("alice", **_form(category="Dress"))

    endpoint, params = client.calls[0]
    assert endpoint == "/process_dc"
    assert params["category"] == "Dress"


@pytest.mark.asyncio
async def test_missing_image_is_rejected_before_any_call(clock, sleep) -> None:
    client = ScriptedClient()
    service = _service(client, clock, sleep)
    outcome = await service.submit("alice", **_form(garment_image=None))

    assert outcome.state == SubmissionState.FAILED
    assert outcome.status_code == 400
    assert outcome.code == "validation_error"
    assert outcome.error == "Model image and garment image are required"
    assert client.calls == []
    assert service.throttle.check("alice").tries_remaining == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"category": "Hat"},
        {"n_steps": "0"},
        {"n_samples": "lots"},
        {"image_scale": "0"},
        {"seed": "1.5"},
        {"model_image": b"not an image"},
    ],
)
async def test_bad_parameters_are_validation_errors(clock, sleep, overrides) -> None:
    client = ScriptedClient()
    outcome = await _service(client, clock, sleep).submit("alice", **_form(**overrides))
    assert outcome.status_code == 400
    assert outcome.code == "validation_error"
    assert client.calls == []


@pytest.mark.asyncio
async def test_oversized_upload(clock, sleep) -> None:
    outcome = await _service(ScriptedClient(), clock, sleep, max_upload_bytes=10).submit("alice", **_form())
    assert outcome.status_code == 413
    assert outcome.code == "upload_too_large"


@pytest.mark.asyncio
async def test_defaults_fill_missing_numbers(clock, sleep) -> None:
    client = ScriptedClient(gallery("u"))
    await _service(client, clock, sleep).submit(
        "alice", model_image=make_png(), garment_image=make_png(), n_steps="30.0",
    )
    _, params = client.calls[0]
    assert (params["n_samples"], params["n_steps"], params["image_scale"], params["seed"]) == (1, 30, 2.0, -1)


@pytest.mark.asyncio
async def test_throttled_caller_causes_no_network_activity(clock, sleep) -> None:
    client = ScriptedClient(gallery("https://x/1.webp"), gallery("https://x/2.webp"))
    service = _service(client, clock, sleep)
    await service.submit("alice", **_form())

    outcome = await service.submit("alice", **_form())
    assert outcome.state == SubmissionState.THROTTLED
    assert outcome.status_code == 429
    assert outcome.code == "throttled"
    assert outcome.error.startswith("Daily limit reached. Next try available in 24h 0m")
    assert outcome.retry_after_s == 24 * 3600
    assert len(client.calls) == 1

    clock.advance(hours=24, seconds=1)
    assert (await service.submit("alice", **_form())).success


@pytest.mark.asyncio
async def test_failed_generation_keeps_the_try(clock, sleep) -> None:
    client = ScriptedClient(RemoteError("a"), RemoteError("b"), RemoteError("c"))
    service = _service(client, clock, sleep)
    outcome = await service.submit("alice", **_form())

    assert outcome.state == SubmissionState.FAILED
    assert outcome.status_code == 502
    assert outcome.error == "Failed after 3 attempts: c"
    assert service.throttle.check("alice").tries_remaining == 1


@pytest.mark.asyncio
async def test_no_result_is_not_retried_and_keeps_the_try(clock, sleep) -> None:
    client = ScriptedClient({"data": [[{}]]})
    service = _service(client, clock, sleep)
    outcome = await service.submit("alice", **_form())

    assert outcome.code == "no_result"
    assert outcome.error == "No image data received from the model"
    assert len(client.calls) == 1
    assert service.throttle.check("alice").tries_remaining == 1


@pytest.mark.asyncio
async def test_quota_outcome_carries_retry_after(clock, sleep) -> None:
    client = ScriptedClient(*[RemoteError("Please retry in 0:10:00")] * 3)
    outcome = await _service(client, clock, sleep).submit("alice", **_form())

    assert outcome.status_code == 429
    assert outcome.code == "quota_exceeded"
    assert outcome.error == "GPU quota exceeded. Please try again in 0h 10m 0s"
    assert outcome.retry_after_s == 600
    assert sleep.calls == [601, 601]


@pytest.mark.asyncio
async def test_wall_clock_ceiling_abandons_the_attempt(clock) -> None:
    class HangingClient:
        async def submit(self, endpoint, params):
            await asyncio.sleep(10)

    service = TryOnService(HangingClient(), UsageThrottle(clock=clock), timeout_s=0.01)
    outcome = await service.submit("alice", **_form())

    assert outcome.status_code == 504
    assert outcome.code == "timeout"
    assert service.throttle.check("alice").tries_remaining == 1


@pytest.mark.asyncio
async def test_unexpected_errors_are_normalized(clock, sleep) -> None:
    client = ScriptedClient(KeyError("surprise"))
    outcome = await _service(client, clock, sleep, expose_details=True).submit("alice", **_form())

    assert outcome.status_code == 500
    assert outcome.code == "internal_error"
    assert outcome.details["type"] == "TryOnError"


@pytest.mark.asyncio
async def test_details_hidden_unless_enabled(clock, sleep) -> None:
    client = ScriptedClient({"data": None})
    hidden = await _service(client, clock, sleep).submit("alice", **_form())
    assert hidden.details is None

    client = ScriptedClient({"data": None})
    shown = await _service(client, clock, sleep, expose_details=True).submit("bob", **_form())
    assert shown.details == {"type": "NoResultError", "detail": "response has no data list"}
