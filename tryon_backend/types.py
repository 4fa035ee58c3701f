from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Category = Literal["Upper-body", "Lower-body", "Dress"]

HD_ENDPOINT = "/process_hd"
DC_ENDPOINT = "/process_dc"


class ImageInput(BaseModel):
    data: bytes
    filename: str = "image.jpg"
    content_type: str = "image/jpeg"

    @field_validator("data")
    @classmethod
    def _non_empty(cls, v: bytes) -> bytes:
        if not v:
            raise ValueError("image is empty")
        return v


class GenerationRequest(BaseModel):
    person_image: ImageInput
    garment_image: ImageInput
    category: Optional[Category] = None
    n_samples: int = Field(default=1, ge=1, le=4)
    n_steps: int = Field(default=20, ge=1, le=40)
    image_scale: float = Field(default=2.0, gt=0, le=5.0)
    seed: int = Field(default=-1, le=2147483647)  # negative means random

    @property
    def endpoint(self) -> str:
        return DC_ENDPOINT if self.category else HD_ENDPOINT

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "vton_img": self.person_image,
            "garm_img": self.garment_image,
        }
        if self.category:
            params["category"] = self.category
        params.update(
            n_samples=self.n_samples,
            n_steps=self.n_steps,
            image_scale=self.image_scale,
            seed=self.seed,
        )
        return params


class SubmissionState(str, Enum):
    IDLE = "idle"
    THROTTLED = "throttled"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TryOnOutcome(BaseModel):
    state: SubmissionState
    status_code: int = 200
    result: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None
    retry_after_s: Optional[int] = None
    tries_remaining: Optional[int] = None
    details: Optional[Any] = None

    @property
    def success(self) -> bool:
        return self.state == SubmissionState.SUCCEEDED


class TryOnResult(BaseModel):
    result: str
    success: bool = True
    triesRemaining: Optional[int] = None


class TryOnFailure(BaseModel):
    error: str
    success: bool = False
    code: str
    retryAfter: Optional[int] = None
    details: Optional[Any] = None


class UsageStatus(BaseModel):
    triesLeft: int
    timeUntilReset: str
    resetInSeconds: int
