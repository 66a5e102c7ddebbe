"""
Runner session: model selection -> worker start -> readiness -> generation
or upscaling -> teardown, over one set of components sharing a config.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from typing import Awaitable, Callable, List, Optional

from runner.asset_store import AssetStore, PreferenceStore
from runner.config import RunnerConfig
from runner.downloader import ModelDownloader
from runner.errors import InstallError, StartupError
from runner.generation import GenerationClient, effective_batch_count
from runner.health import await_healthy
from runner.history import HistoryStore
from runner.imaging import DecodedImage
from runner.logging_utils import get_logger
from runner.process_helpers import tail_lines
from runner.states import DownloadState, GenerationState, GenerationStatus
from runner.supervisor import WorkerHandle, WorkerSupervisor
from runner.upscale import UpscaleClient, UpscaleResult
from shared.model_registry import ModelCatalog, build_catalog
from shared.schemas import AssetRef, GenerationRequest, ModelDescriptor

slog = get_logger()

DownloadCallback = Callable[[DownloadState], Optional[Awaitable[None]]]


async def _maybe_await(result) -> None:
    if asyncio.iscoroutine(result):
        await result


class RunnerSession:
    def __init__(
        self,
        config: RunnerConfig,
        preferences: Optional[PreferenceStore] = None,
        supervisor: Optional[WorkerSupervisor] = None,
        downloader: Optional[ModelDownloader] = None,
        generation: Optional[GenerationClient] = None,
        upscaler: Optional[UpscaleClient] = None,
    ):
        self.config = config
        self.history = HistoryStore(config.history_dir)
        self.store = AssetStore(config.models_dir, self.history, preferences)
        self.catalog: ModelCatalog = build_catalog(config.models_dir, config.soc, config.base_url)
        self.supervisor = supervisor or WorkerSupervisor(config, self.store)
        self.downloader = downloader or ModelDownloader(self.store, config.temp_dir)
        self.generation = generation or GenerationClient(config.worker_url)
        self.upscaler = upscaler or UpscaleClient(config.worker_url, self.store)
        self._worker_key: Optional[tuple] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self) -> None:
        await self.downloader.cancel()
        await self.supervisor.stop()

    # ----- catalog -----
    def refresh_catalog(self) -> ModelCatalog:
        self.catalog = build_catalog(self.config.models_dir, self.config.soc, self.config.base_url)
        return self.catalog

    def descriptor(self, model_id: str) -> ModelDescriptor:
        descriptor = self.catalog.get_model(model_id)
        if descriptor is None:
            raise KeyError(f"Unknown model: {model_id}")
        return descriptor

    def asset_ref(self, asset_id: str) -> AssetRef:
        upscaler = self.catalog.get_upscaler(asset_id)
        if upscaler is not None:
            return upscaler.asset_ref()
        descriptor = self.descriptor(asset_id)
        if descriptor.is_custom or not descriptor.file_uri:
            raise InstallError(f"{asset_id} is a custom model and cannot be downloaded")
        return AssetRef.for_model(descriptor)

    # ----- install -----
    async def install(self, asset_id: str, on_state: Optional[DownloadCallback] = None) -> DownloadState:
        """
        Download and install a model or upscaler; returns the terminal DownloadState.

        An install already in flight, from any caller, is cancelled first.
        """
        asset = self.asset_ref(asset_id)
        terminal = DownloadState.idle()
        async for state in self.downloader.download(asset):
            terminal = state
            if on_state is not None:
                await _maybe_await(on_state(state))
        return terminal

    def uninstall(self, model_id: str) -> bool:
        if self.supervisor.handle is not None and self.supervisor.handle.model_id == model_id:
            raise InstallError(f"{model_id} is loaded by the running worker; stop it first")
        removed = self.store.uninstall(model_id)
        self.refresh_catalog()
        return removed

    # ----- worker -----
    async def _await_ready(self, handle: WorkerHandle) -> WorkerHandle:
        result = await await_healthy(self.supervisor.state, self.config.worker_url,
                                     timeout_s=self.config.health_timeout_s)
        if not result.healthy:
            tail = self.supervisor.output_tail()
            await self.supervisor.stop(handle)
            slog.error("worker_unhealthy", model_id=handle.model_id, error=result.error,
                       output_tail=tail_lines(tail, max_lines=40, max_bytes=4000))
            raise StartupError(f"Worker did not become healthy: {result.error}")
        slog.info("worker_ready", model_id=handle.model_id, mode=handle.mode,
                  duration_ms=result.time_to_ready_ms)
        return handle

    async def ensure_worker(self, descriptor: ModelDescriptor, width: int, height: int) -> WorkerHandle:
        """Reuse the running worker when it serves this model at this size, else (re)start it."""
        handle = self.supervisor.handle
        key = (descriptor.id, width, height)
        if (
            handle is not None
            and self.supervisor.is_running
            and handle.mode == "generate"
            and self._worker_key == key
        ):
            return await self._await_ready(handle)
        self._worker_key = None
        handle = await self.supervisor.start(descriptor, width, height)
        self._worker_key = key
        return await self._await_ready(handle)

    async def ensure_upscaler_worker(self) -> WorkerHandle:
        handle = self.supervisor.handle
        if handle is not None and self.supervisor.is_running and handle.mode == "upscale":
            return await self._await_ready(handle)
        handle = await self.supervisor.start_upscaler()
        return await self._await_ready(handle)

    # ----- jobs -----
    async def generate(
        self,
        model_id: str,
        request: GenerationRequest,
        save_history: bool = True,
        on_state: Optional[Callable[[int, GenerationState], Optional[Awaitable[None]]]] = None,
    ) -> List[GenerationState]:
        descriptor = self.descriptor(model_id)
        if not self.store.is_complete(descriptor, self.config.use_img2img):
            missing = self.store.missing_files(descriptor, self.config.use_img2img)
            raise InstallError(f"{model_id} is not installed or needs an update (missing: {', '.join(missing) or 'v3'})")

        handle = await self.ensure_worker(descriptor, request.width, request.height)
        if (handle.width, handle.height) != (request.width, request.height):
            slog.warning("resolution_fallback", model_id=model_id,
                         requested=f"{request.width}x{request.height}", used=f"{handle.width}x{handle.height}")
            request = request.model_copy(update={"width": handle.width, "height": handle.height})

        count = effective_batch_count(request)
        job_id = str(uuid.uuid4())[:8]
        run_started = {"t": time.time()}

        async def _on_state(index: int, state: GenerationState):
            if state.status is GenerationStatus.COMPLETE:
                if save_history:
                    elapsed = int((time.time() - run_started["t"]) * 1000)
                    self.history.save(model_id, state.image, request, seed=state.seed, generation_time_ms=elapsed)
                if on_state is not None:
                    await _maybe_await(on_state(index, state))
                self.generation.mark_consumed()
                run_started["t"] = time.time()
            elif on_state is not None:
                await _maybe_await(on_state(index, state))
            if state.status is GenerationStatus.ERROR:
                run_started["t"] = time.time()

        with slog.job_context(job_id=job_id, model_id=model_id, batch=count) as ctx:
            results = await self.generation.generate_batch(request, count, on_state=_on_state)
            ok = sum(1 for r in results if r.status is GenerationStatus.COMPLETE)
            ctx.milestone("job_completed", images=ok, failed=len(results) - ok)
        return results

    async def upscale(self, image: DecodedImage, upscaler_id: str) -> UpscaleResult:
        if self.catalog.get_upscaler(upscaler_id) is None:
            raise KeyError(f"Unknown upscaler: {upscaler_id}")
        if not self.store.is_upscaler_installed(upscaler_id):
            raise InstallError(f"Upscaler not installed: {upscaler_id}")
        await self.ensure_upscaler_worker()
        return await self.upscaler.upscale(image, upscaler_id)
