"""
Observable state for the worker, the download slot and the generation slot.

Each value lives in a ``StateHolder`` owned by exactly one component (the only
writer). Everything else gets a ``StateView``: it can read the current value,
subscribe to changes, or wait for a predicate, but never publish.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Iterator, List, Optional, TypeVar

T = TypeVar("T")


class BackendStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


@dataclass(frozen=True)
class BackendState:
    status: BackendStatus = BackendStatus.IDLE
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "BackendState":
        return cls(BackendStatus.IDLE)

    @classmethod
    def starting(cls) -> "BackendState":
        return cls(BackendStatus.STARTING)

    @classmethod
    def running(cls) -> "BackendState":
        return cls(BackendStatus.RUNNING)

    @classmethod
    def error(cls, message: str) -> "BackendState":
        return cls(BackendStatus.ERROR, message)

    @property
    def is_error(self) -> bool:
        return self.status is BackendStatus.ERROR


class DownloadStatus(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class DownloadState:
    status: DownloadStatus = DownloadStatus.IDLE
    model_id: Optional[str] = None
    progress: float = 0.0
    downloaded_bytes: int = 0
    total_bytes: int = 0
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "DownloadState":
        return cls()

    @classmethod
    def downloading(cls, model_id: str, progress: float, downloaded: int, total: int) -> "DownloadState":
        return cls(DownloadStatus.DOWNLOADING, model_id, progress, downloaded, total)

    @classmethod
    def extracting(cls, model_id: str, downloaded: int = 0, total: int = 0) -> "DownloadState":
        return cls(DownloadStatus.EXTRACTING, model_id, 1.0, downloaded, total)

    @classmethod
    def success(cls, model_id: str, downloaded: int = 0, total: int = 0) -> "DownloadState":
        return cls(DownloadStatus.SUCCESS, model_id, 1.0, downloaded, total)

    @classmethod
    def error(cls, model_id: str, message: str) -> "DownloadState":
        return cls(DownloadStatus.ERROR, model_id, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.status in (DownloadStatus.SUCCESS, DownloadStatus.ERROR)


class GenerationStatus(str, Enum):
    IDLE = "idle"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class GenerationState:
    status: GenerationStatus = GenerationStatus.IDLE
    progress: float = 0.0
    image: Any = None  # DecodedImage on COMPLETE
    seed: Optional[int] = None
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "GenerationState":
        return cls()

    @classmethod
    def in_progress(cls, fraction: float) -> "GenerationState":
        return cls(GenerationStatus.PROGRESS, progress=fraction)

    @classmethod
    def complete(cls, image: Any, seed: Optional[int] = None) -> "GenerationState":
        return cls(GenerationStatus.COMPLETE, progress=1.0, image=image, seed=seed)

    @classmethod
    def error(cls, message: str) -> "GenerationState":
        return cls(GenerationStatus.ERROR, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.status in (GenerationStatus.COMPLETE, GenerationStatus.ERROR)


class StateHolder(Generic[T]):
    """Single-writer published value with change subscriptions."""

    def __init__(self, initial: T):
        self._value = initial
        self._subscribers: List[asyncio.Queue] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        for queue in list(self._subscribers):
            queue.put_nowait(value)

    @contextmanager
    def subscribe(self) -> Iterator[asyncio.Queue]:
        """Queue receiving every value published while the block is open."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield queue
        finally:
            self._subscribers.remove(queue)

    def view(self) -> "StateView[T]":
        return StateView(self)


class StateView(Generic[T]):
    """Read-only side of a StateHolder."""

    def __init__(self, holder: StateHolder[T]):
        self._holder = holder

    @property
    def value(self) -> T:
        return self._holder.value

    def subscribe(self):
        return self._holder.subscribe()

    async def wait_for(self, predicate: Callable[[T], bool], timeout: Optional[float] = None) -> T:
        """Return the first value (current or future) matching predicate; raises asyncio.TimeoutError."""
        with self._holder.subscribe() as queue:
            if predicate(self._holder.value):
                return self._holder.value

            async def _next_match() -> T:
                while True:
                    value = await queue.get()
                    if predicate(value):
                        return value

            return await asyncio.wait_for(_next_match(), timeout)
