"""
Streaming generation client for the worker's ``POST /generate``.

The worker answers with lines of ``data: <json>``:
    {"type": "progress", "step": 5, "total_steps": 20}
    {"type": "complete", "image": "<base64 RGB>", "width": 512, "height": 512, "seed": 42}
    {"type": "error", "message": "..."}
and ends with ``data: [DONE]``.

One generation runs at a time; ``GenerationClient.state`` carries its
GenerationState. Batches run strictly one after another, and after each
image the batch waits (bounded) for ``mark_consumed()`` before the next run.
"""
from __future__ import annotations

import asyncio
import json
import os
import time
import uuid
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import httpx

from runner.errors import ProtocolError
from runner.http_client import LoggedHTTPClient, worker_client
from runner.imaging import decode_rgb_payload
from runner.logging_utils import get_logger
from runner.states import GenerationState, GenerationStatus, StateHolder
from shared.schemas import GenerationRequest

GENERATE_TIMEOUT_S = float(os.getenv("RUNNER_GENERATE_TIMEOUT_S", "3600"))
CONSUME_WAIT_S = 5.0
CONSUME_POLL_S = 0.1
ERROR_RESET_S = 3.0
DEFAULT_RESULT_SIZE = 512

slog = get_logger()

StateCallback = Callable[[int, GenerationState], Optional[Awaitable[None]]]


def effective_batch_count(request: GenerationRequest) -> int:
    """A fixed seed would render the same image every run, so it collapses to one."""
    return 1 if request.seed is not None else request.batch_count


def parse_event(data: str) -> dict:
    try:
        message = json.loads(data)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"malformed event: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError("malformed event: expected a JSON object")
    return message


def _int_field(message: dict, key: str, default: int) -> int:
    value = message.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"malformed {key!r} field: {value!r}") from e


class GenerationClient:
    def __init__(
        self,
        base_url: str,
        client_factory: Optional[Callable[[], LoggedHTTPClient]] = None,
        consume_wait_s: float = CONSUME_WAIT_S,
        consume_poll_s: float = CONSUME_POLL_S,
        error_reset_s: float = ERROR_RESET_S,
    ):
        self.base_url = base_url
        self._client_factory = client_factory or (lambda: worker_client(base_url))
        self.consume_wait_s = consume_wait_s
        self.consume_poll_s = consume_poll_s
        self.error_reset_s = error_reset_s
        self._state: StateHolder[GenerationState] = StateHolder(GenerationState.idle())
        self.state = self._state.view()
        self._consumed = False
        self._active = False
        self._reset_task: Optional[asyncio.Task] = None

    # ----- state -----
    def _publish(self, state: GenerationState) -> GenerationState:
        self._state.set(state)
        return state

    def mark_consumed(self) -> None:
        """Called by whoever took the last image; unblocks the next batch run."""
        self._consumed = True

    def clear_complete(self) -> None:
        if self._state.value.status is GenerationStatus.COMPLETE:
            self._publish(GenerationState.idle())

    def reset(self) -> None:
        self._cancel_reset()
        self._consumed = False
        self._publish(GenerationState.idle())

    def _cancel_reset(self) -> None:
        if self._reset_task is not None and not self._reset_task.done():
            self._reset_task.cancel()
        self._reset_task = None

    def _schedule_reset(self, terminal: GenerationState) -> None:
        async def _reset():
            await asyncio.sleep(self.error_reset_s)
            if self._state.value is terminal:
                self._publish(GenerationState.idle())

        self._cancel_reset()
        self._reset_task = asyncio.get_running_loop().create_task(_reset())

    async def wait_consumed(self) -> bool:
        """Poll for mark_consumed(); False if the wait ran out."""
        deadline = time.monotonic() + self.consume_wait_s
        while not self._consumed:
            if time.monotonic() >= deadline:
                slog.warning("generation_consume_timeout", timeout_s=self.consume_wait_s)
                return False
            await asyncio.sleep(self.consume_poll_s)
        return True

    # ----- single run -----
    async def generate(self, request: GenerationRequest) -> AsyncIterator[GenerationState]:
        """
        Run one generation, yielding Progress states then exactly one
        terminal Complete or Error. Failures never raise; they become Error.
        """
        if self._active:
            yield GenerationState.error("generation already in progress")
            return

        self._active = True
        self._cancel_reset()
        self._consumed = False
        self.clear_complete()
        job_id = str(uuid.uuid4())[:8]
        terminal: Optional[GenerationState] = None
        last_fraction = 0.0
        t0 = time.time()
        slog.info("generation_started", job_id=job_id, steps=request.steps, width=request.width,
                  height=request.height, runtime=request.runtime, seed=request.seed)
        try:
            async with self._client_factory() as client:
                async with client.stream(
                    "POST",
                    "/generate",
                    json=request.to_payload(),
                    timeout=httpx.Timeout(GENERATE_TIMEOUT_S),
                ) as resp:
                    if not resp.is_success:
                        terminal = GenerationState.error(f"Request failed: HTTP {resp.status_code}")
                    else:
                        async for raw_line in resp.aiter_lines():
                            line = raw_line.strip()
                            if not line.startswith("data:"):
                                continue
                            data = line[len("data:"):].strip()
                            if data == "[DONE]":
                                break
                            message = parse_event(data)
                            kind = message.get("type")
                            if kind == "progress":
                                step = _int_field(message, "step", 0)
                                total = _int_field(message, "total_steps", 0)
                                fraction = min(1.0, max(0.0, step / total)) if total > 0 else 0.0
                                last_fraction = max(last_fraction, fraction)
                                yield self._publish(GenerationState.in_progress(last_fraction))
                            elif kind == "complete":
                                image = decode_rgb_payload(
                                    message.get("image") or "",
                                    _int_field(message, "width", DEFAULT_RESULT_SIZE),
                                    _int_field(message, "height", DEFAULT_RESULT_SIZE),
                                )
                                seed = message.get("seed")
                                if seed is not None:
                                    seed = _int_field(message, "seed", -1)
                                terminal = GenerationState.complete(image, None if seed == -1 else seed)
                                break
                            elif kind == "error":
                                terminal = GenerationState.error(str(message.get("message") or "unknown error"))
                                break
                        if terminal is None:
                            terminal = GenerationState.error("stream ended unexpectedly")

        except (asyncio.CancelledError, GeneratorExit):
            self._active = False
            self._publish(GenerationState.idle())
            slog.info("generation_cancelled", job_id=job_id)
            raise
        except ProtocolError as e:
            terminal = GenerationState.error(str(e))
        except httpx.HTTPError as e:
            terminal = GenerationState.error(f"Network error: {str(e) or type(e).__name__}")
        finally:
            self._active = False

        self._publish(terminal)
        duration_ms = (time.time() - t0) * 1000
        if terminal.status is GenerationStatus.COMPLETE:
            slog.info("generation_completed", job_id=job_id, duration_ms=duration_ms, seed=terminal.seed,
                      width=terminal.image.width, height=terminal.image.height)
        else:
            slog.error("generation_failed", job_id=job_id, duration_ms=duration_ms, error=terminal.message)
            self._schedule_reset(terminal)
        yield terminal

    # ----- batches -----
    async def generate_batch(
        self,
        request: GenerationRequest,
        count: Optional[int] = None,
        on_state: Optional[StateCallback] = None,
    ) -> List[GenerationState]:
        """
        Run ``generate`` ``count`` times (default ``request.batch_count``),
        one after another, and return the terminal state of each run.
        """
        runs = request.batch_count if count is None else count
        results: List[GenerationState] = []
        for index in range(runs):
            terminal: Optional[GenerationState] = None
            async for state in self.generate(request):
                terminal = state
                if on_state is not None:
                    maybe = on_state(index, state)
                    if asyncio.iscoroutine(maybe):
                        await maybe
            results.append(terminal)
            if index < runs - 1:
                if terminal.status is GenerationStatus.COMPLETE:
                    await self.wait_consumed()
                self.reset()
        return results
