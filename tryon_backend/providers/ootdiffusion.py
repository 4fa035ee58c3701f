"""
MIT License — Try-On provider (OOTDiffusion on Hugging Face Spaces)
Talks to the Space's Gradio HTTP API: upload inputs, queue a call, read the
event stream until the job completes or errors.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from tryon_backend.errors import RemoteError
from tryon_backend.types import DC_ENDPOINT, HD_ENDPOINT, ImageInput

logger = logging.getLogger(__name__)

DEFAULT_SPACE_URL = "https://levihsu-ootdiffusion.hf.space"
WHOAMI_URL = "https://huggingface.co/api/whoami"

# Positional argument order of each Space endpoint
ENDPOINT_PARAMS: Dict[str, Tuple[str, ...]] = {
    HD_ENDPOINT: ("vton_img", "garm_img", "n_samples", "n_steps", "image_scale", "seed"),
    DC_ENDPOINT: ("vton_img", "garm_img", "category", "n_samples", "n_steps", "image_scale", "seed"),
}


class OOTDiffusionClient:
    """Connection handle to the OOTDiffusion Space.

    One ``submit`` performs exactly one remote procedure call. Retrying is the
    caller's business.
    """

    def __init__(
        self,
        *,
        space_url: str = DEFAULT_SPACE_URL,
        api_prefix: str = "/gradio_api",
        hf_token: str = "",
        timeout_s: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = space_url.rstrip("/") + "/" + api_prefix.strip("/")
        self.base_url = self.base_url.rstrip("/")
        self.hf_token = hf_token
        headers = {"Authorization": f"Bearer {hf_token}"} if hf_token else {}
        self._http = httpx.AsyncClient(headers=headers, timeout=timeout_s, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "OOTDiffusionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def submit(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Run ``endpoint`` with ``params`` and return ``{"data": <outputs>}``."""
        order = ENDPOINT_PARAMS.get(endpoint)
        if order is None:
            raise RemoteError(f"Unknown endpoint {endpoint}", retryable=False)

        name = endpoint.lstrip("/")
        try:
            args = [await self._to_arg(params.get(key)) for key in order]
            logger.info(f"Queueing {endpoint} on {self.base_url}")
            r = await self._http.post(f"{self.base_url}/call/{name}", json={"data": args})
            self._raise_for_status(r, "call")

            body = r.json()
            event_id = body.get("event_id") if isinstance(body, dict) else None
            if not event_id:
                raise RemoteError("Space did not return an event id")
            logger.info(f"Job queued with event id: {event_id}")

            return await self._await_result(name, event_id)
        except httpx.ConnectError as e:
            logger.error(f"Connection error to Space: {e}")
            raise RemoteError(f"Failed to connect to inference backend: {e}")
        except httpx.TimeoutException as e:
            logger.error(f"Timeout talking to Space: {e}")
            raise RemoteError(f"Timeout waiting for inference backend: {e}")
        except httpx.HTTPError as e:
            logger.error(f"HTTP error talking to Space: {e}")
            raise RemoteError(f"Inference backend request failed: {e}")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Malformed response from Space: {e!r}")
            raise RemoteError(f"Malformed response from inference backend: {e}")

    async def whoami(self) -> Dict[str, Any]:
        """Check the configured token against the Hugging Face account API."""
        if not self.hf_token:
            return {"ok": False, "error": "HF_TOKEN not configured"}
        r = await self._http.get(WHOAMI_URL)
        if r.status_code >= 400:
            return {"ok": False, "status_code": r.status_code, "error": r.text}
        return {"ok": True, "name": r.json().get("name")}

    async def _to_arg(self, value: Any) -> Any:
        if isinstance(value, ImageInput):
            return await self._upload(value)
        return value

    async def _upload(self, image: ImageInput) -> Dict[str, Any]:
        files = {"files": (image.filename, image.data, image.content_type)}
        r = await self._http.post(f"{self.base_url}/upload", files=files)
        self._raise_for_status(r, "upload")
        paths: List[str] = r.json()
        if not isinstance(paths, list) or not paths or not isinstance(paths[0], str):
            raise RemoteError(f"Space upload returned no file path: {paths!r}")
        return {
            "path": paths[0],
            "orig_name": image.filename,
            "mime_type": image.content_type,
            "meta": {"_type": "gradio.FileData"},
        }

    async def _await_result(self, name: str, event_id: str) -> Dict[str, Any]:
        event: Optional[str] = None
        async with self._http.stream("GET", f"{self.base_url}/call/{name}/{event_id}") as sr:
            if sr.status_code >= 400:
                await sr.aread()
                self._raise_for_status(sr, "result stream")

            async for line in sr.aiter_lines():
                if line.startswith("event:"):
                    event = line[len("event:"):].strip()
                    continue
                if not line.startswith("data:"):
                    continue

                payload = line[len("data:"):].strip()
                if event == "complete":
                    return {"data": json.loads(payload)}
                if event == "error":
                    raise RemoteError(self._error_message(payload))
                # heartbeat / generating: keep waiting

        raise RemoteError("Result stream ended without a result")

    @staticmethod
    def _error_message(payload: str) -> str:
        try:
            decoded = json.loads(payload) if payload else None
        except ValueError:
            return payload
        if isinstance(decoded, str):
            return decoded
        if isinstance(decoded, dict) and decoded.get("message"):
            return str(decoded["message"])
        logger.warning(f"Space error event without a message: {payload!r}")
        return "Inference backend reported an error"

    @staticmethod
    def _raise_for_status(r: httpx.Response, stage: str) -> None:
        if r.status_code < 400:
            return
        logger.error(f"Space {stage} failed: {r.status_code} {r.text}")
        retryable = r.status_code not in (401, 403)
        raise RemoteError(f"Space {stage} failed: {r.status_code} {r.text}", retryable=retryable)
