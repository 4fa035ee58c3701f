"""
MIT License — try-on request façade

Throttle gate, then orchestrated remote call, then result extraction. Every
failure is turned into a TryOnOutcome here; nothing raises past ``submit``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from tryon_backend import extract, retry
from tryon_backend.errors import (
    GenerationTimeoutError,
    InvalidRequestError,
    ThrottledError,
    TryOnError,
)
from tryon_backend.images import prepare_image
from tryon_backend.throttle import UsageThrottle
from tryon_backend.types import GenerationRequest, SubmissionState, TryOnOutcome

logger = logging.getLogger(__name__)

Number = Union[str, int, float, None]


def _number(value: Number, field: str, cast: type) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        as_float = float(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"'{field}' must be a number")
    if cast is int:
        # "20.0" from a slider is still an integer
        if not as_float.is_integer():
            raise InvalidRequestError(f"'{field}' must be a whole number")
        return int(as_float)
    return as_float


class TryOnService:
    def __init__(
        self,
        client: retry.InferenceClient,
        throttle: UsageThrottle,
        *,
        policy: retry.RetryPolicy = retry.DEFAULT_POLICY,
        sleep: retry.Sleep = asyncio.sleep,
        timeout_s: Optional[float] = 60.0,
        max_upload_bytes: int = 10 * 1024 * 1024,
        max_image_side: int = 1536,
        expose_details: bool = False,
    ) -> None:
        self.client = client
        self.throttle = throttle
        self.policy = policy
        self.sleep = sleep
        self.timeout_s = timeout_s
        self.max_upload_bytes = max_upload_bytes
        self.max_image_side = max_image_side
        self.expose_details = expose_details

    def build_request(
        self,
        *,
        model_image: Optional[bytes],
        garment_image: Optional[bytes],
        category: Optional[str] = None,
        n_samples: Number = None,
        n_steps: Number = None,
        image_scale: Number = None,
        seed: Number = None,
    ) -> GenerationRequest:
        if not model_image or not garment_image:
            raise InvalidRequestError("Model image and garment image are required")

        fields = {
            "n_samples": _number(n_samples, "nSamples", int),
            "n_steps": _number(n_steps, "nSteps", int),
            "image_scale": _number(image_scale, "imageScale", float),
            "seed": _number(seed, "seed", int),
        }
        fields = {k: v for k, v in fields.items() if v is not None}

        person = prepare_image(
            model_image, field="modelImage",
            max_bytes=self.max_upload_bytes, max_side=self.max_image_side,
        )
        garment = prepare_image(
            garment_image, field="garmentImage",
            max_bytes=self.max_upload_bytes, max_side=self.max_image_side,
        )
        try:
            return GenerationRequest(
                person_image=person,
                garment_image=garment,
                category=(category or None),
                **fields,
            )
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise InvalidRequestError(f"Invalid generation parameters: {problems}")

    async def generate(self, request: GenerationRequest) -> str:
        """Orchestrated call plus extraction. Raises TryOnError subclasses."""
        raw = await retry.execute(
            self.client, request.endpoint, request.to_params(), self.policy, sleep=self.sleep,
        )
        logger.info(f"Raw result type: {type(raw).__name__}")
        return extract.extract(raw)

    async def _generate_bounded(self, request: GenerationRequest) -> str:
        if self.timeout_s is None:
            return await self.generate(request)
        try:
            return await asyncio.wait_for(self.generate(request), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            raise GenerationTimeoutError(
                f"Generation did not finish within {self.timeout_s:.0f} seconds"
            )

    async def submit(self, caller_id: str, **form: Any) -> TryOnOutcome:
        """Validate, gate on the caller's usage window, generate, normalize."""
        try:
            request = self.build_request(**form)
            logger.info(f"Submitting try-on for {caller_id} to {request.endpoint}")
            artifact, usage = await self.throttle.check_and_consume(
                caller_id, lambda: self._generate_bounded(request),
            )
        except ThrottledError as e:
            return self._failure(e, SubmissionState.THROTTLED)
        except TryOnError as e:
            return self._failure(e, SubmissionState.FAILED)
        except Exception as e:
            logger.exception(f"Unexpected error while generating for {caller_id}")
            return self._failure(
                TryOnError(f"Failed to process model response: {e}"), SubmissionState.FAILED
            )

        logger.info(f"Try-on for {caller_id} succeeded: {artifact[:80]}")
        return TryOnOutcome(
            state=SubmissionState.SUCCEEDED,
            result=artifact,
            tries_remaining=usage.tries_remaining,
        )

    def _failure(self, error: TryOnError, state: SubmissionState) -> TryOnOutcome:
        logger.error(f"Try-on {state.value}: [{error.code}] {error.message}")
        return TryOnOutcome(
            state=state,
            status_code=error.status_code,
            error=error.message,
            code=error.code,
            retry_after_s=error.retry_after_s,
            details=({"type": type(error).__name__, "detail": error.detail} if self.expose_details else None),
        )
