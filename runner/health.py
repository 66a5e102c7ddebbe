from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from runner.states import BackendState, StateView

log = logging.getLogger("runner.health")

HEALTH_TIMEOUT_S = float(os.getenv("RUNNER_HEALTH_TIMEOUT_S", "60"))
HEALTH_POLL_INTERVAL_S = float(os.getenv("RUNNER_HEALTH_POLL_INTERVAL_S", "0.1"))
HEALTH_CONNECT_TIMEOUT_S = 0.1
# Bound on a probe whose connection was accepted but never answered
HEALTH_READ_TIMEOUT_S = 1.0


@dataclass
class HealthResult:
    healthy: bool
    time_to_ready_ms: float
    error: Optional[str] = None


async def await_healthy(
    state: StateView[BackendState],
    base_url: str,
    timeout_s: float = HEALTH_TIMEOUT_S,
    poll_interval_s: float = HEALTH_POLL_INTERVAL_S,
    connect_timeout_s: float = HEALTH_CONNECT_TIMEOUT_S,
    cancel_event: Optional[asyncio.Event] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HealthResult:
    """
    Poll ``GET {base_url}/health`` until it answers 2xx.

    Fails early when the backend state turns to error or ``cancel_event`` is
    set, otherwise only once ``timeout_s`` has fully elapsed. Failed probes
    are retried.
    """
    url = base_url.rstrip("/") + "/health"
    t_start = time.monotonic()
    deadline = t_start + timeout_s
    last_error: Optional[str] = None

    def elapsed_ms() -> float:
        return (time.monotonic() - t_start) * 1000

    async with httpx.AsyncClient(transport=transport) as client:
        while True:
            current = state.value
            if current.is_error:
                return HealthResult(False, elapsed_ms(), current.message)
            if cancel_event is not None and cancel_event.is_set():
                return HealthResult(False, elapsed_ms(), "cancelled")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            probe_timeout = httpx.Timeout(
                min(HEALTH_READ_TIMEOUT_S, remaining),
                connect=min(connect_timeout_s, remaining),
            )
            try:
                resp = await client.get(url, timeout=probe_timeout)
                if resp.is_success:
                    log.info("Worker healthy after %.0fms", elapsed_ms())
                    return HealthResult(True, elapsed_ms(), None)
                last_error = f"HTTP {resp.status_code}"
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval_s, remaining))

    error_msg = f"Timeout after {timeout_s}s"
    if last_error:
        error_msg += f" (last error: {last_error})"
    return HealthResult(False, elapsed_ms(), error_msg)
