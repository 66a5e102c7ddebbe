from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from runner.asset_store import AssetStore
from runner.errors import InstallError, NetworkError
from runner.http_client import LoggedHTTPClient, worker_client
from runner.imaging import DecodedImage, decode_jpeg

log = logging.getLogger("runner.upscale")

UPSCALE_TIMEOUT_S = 300.0


@dataclass
class UpscaleResult:
    image: DecodedImage
    duration_ms: Optional[int] = None


def _header_int(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        log.warning("Ignoring non-integer %s header: %r", name, value)
        return None


class UpscaleClient:
    """Client for a worker started with ``--upscaler_mode``."""

    def __init__(self, base_url: str, store: AssetStore,
                 client_factory: Optional[Callable[[], LoggedHTTPClient]] = None):
        self.base_url = base_url
        self.store = store
        self._client_factory = client_factory or (lambda: worker_client(base_url))

    async def upscale(self, image: DecodedImage, upscaler_id: str) -> UpscaleResult:
        weights = self.store.upscaler_path(upscaler_id)
        if not weights.is_file():
            raise InstallError(f"Upscaler not installed: {upscaler_id}")

        headers = {
            "Content-Type": "application/octet-stream",
            "X-Image-Width": str(image.width),
            "X-Image-Height": str(image.height),
            "X-Upscaler-Path": str(weights.absolute()),
        }
        try:
            async with self._client_factory() as client:
                resp = await client.post("/upscale", content=image.data, headers=headers,
                                         timeout=httpx.Timeout(UPSCALE_TIMEOUT_S))
        except httpx.HTTPError as e:
            raise NetworkError(f"Upscale request failed: {e}") from e
        if not resp.is_success:
            raise NetworkError(f"Upscale failed: HTTP {resp.status_code}")

        result = decode_jpeg(resp.content)
        out_w = _header_int(resp.headers, "X-Output-Width")
        out_h = _header_int(resp.headers, "X-Output-Height")
        if out_w is not None and out_h is not None and (out_w, out_h) != (result.width, result.height):
            log.warning("Upscaler reported %dx%d but returned %dx%d", out_w, out_h, result.width, result.height)
        return UpscaleResult(image=result, duration_ms=_header_int(resp.headers, "X-Duration-Ms"))
