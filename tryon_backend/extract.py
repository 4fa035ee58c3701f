from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union

from tryon_backend.errors import NoResultError


@dataclass(frozen=True)
class ValidShape:
    url: str


@dataclass(frozen=True)
class UnexpectedShape:
    reason: str


ResponseShape = Union[ValidShape, UnexpectedShape]


def _first(value: Any) -> Any:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)) and value:
        return value[0]
    return None


def inspect_response(raw: Any) -> ResponseShape:
    """Walk ``raw["data"][0][0]["image"]["url"]`` one level at a time."""
    if not isinstance(raw, Mapping):
        return UnexpectedShape("response is not an object")

    data = raw.get("data")
    if not isinstance(data, Sequence) or isinstance(data, (str, bytes)):
        return UnexpectedShape("response has no data list")

    gallery = _first(data)
    if gallery is None:
        return UnexpectedShape("data list is empty")

    entry = _first(gallery)
    if not isinstance(entry, Mapping):
        return UnexpectedShape("gallery has no entries")

    image = entry.get("image")
    if not isinstance(image, Mapping):
        return UnexpectedShape("gallery entry has no image")

    url = image.get("url")
    if not isinstance(url, str) or not url:
        return UnexpectedShape("image has no url")

    return ValidShape(url)


def extract(raw: Any) -> str:
    shape = inspect_response(raw)
    if isinstance(shape, UnexpectedShape):
        raise NoResultError("No image data received from the model", detail=shape.reason)
    return shape.url
