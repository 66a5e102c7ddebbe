"""
Worker process supervisor.

Builds the worker command line and environment for a model, launches it with
merged stdout/stderr, follows its output in a monitor task and stops it
(SIGTERM, then SIGKILL after the grace period). ``WorkerSupervisor.state`` is
the BackendState every other component reads.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from runner.asset_store import AssetStore
from runner.config import RunnerConfig
from runner.errors import (
    ExecutableMissingError,
    ProcessError,
    SpawnError,
    StartupError,
    classify_worker_output,
)
from runner.logging_utils import get_logger
from runner.process_helpers import StreamingProcessLogger, reap_stale_workers
from runner.runtime_env import (
    SAFETY_CHECKER_NAME,
    VENDOR_GPU_SYMLINK,
    build_worker_environment,
    discover_vendor_soc,
    stage_runtime_libraries,
)
from runner.states import BackendState, StateHolder
from shared.schemas import ModelDescriptor

log = logging.getLogger("runner.supervisor")
slog = get_logger()

# Lines longer than this are split by the reader instead of failing it
OUTPUT_LINE_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class WorkerCommand:
    argv: List[str]
    width: int
    height: int
    patch: Optional[Path] = None


@dataclass
class WorkerHandle:
    """A running worker. Only the supervisor touches the process behind it."""
    pid: int
    mode: str  # "generate" or "upscale"
    command: List[str]
    log_file: str
    model_id: Optional[str] = None
    width: int = 512
    height: int = 512
    started_at: float = field(default_factory=time.time)


def build_worker_command(
    executable: Path,
    descriptor: ModelDescriptor,
    model_dir: Path,
    runtime_dir: Path,
    port: int,
    width: int,
    height: int,
    use_img2img: bool = True,
    safety_checker_path: Optional[Path] = None,
    patch: Optional[Path] = None,
) -> WorkerCommand:
    """
    Argument list for a generation worker.

    ``patch`` is the resolution patch file found for (width, height); when the
    accelerator build needs one and it is None, the worker runs at the
    descriptor's default size. CPU builds take any resolution.
    """
    if descriptor.run_on_cpu:
        argv = [
            str(executable),
            "--clip", str(model_dir / "clip.mnn"),
            "--unet", str(model_dir / "unet.mnn"),
            "--vae_decoder", str(model_dir / "vae_decoder.mnn"),
            "--tokenizer", str(model_dir / "tokenizer.json"),
            "--port", str(port),
            "--text_embedding_size", "1024" if descriptor.id == "sd21" else "768",
            "--cpu",
        ]
        if use_img2img:
            argv += ["--vae_encoder", str(model_dir / "vae_encoder.mnn")]
        effective = (width, height)
        patch = None
    else:
        clip = "clip.mnn" if descriptor.use_cpu_clip else "clip.bin"
        argv = [
            str(executable),
            "--clip", str(model_dir / clip),
            "--unet", str(model_dir / "unet.bin"),
            "--vae_decoder", str(model_dir / "vae_decoder.bin"),
            "--tokenizer", str(model_dir / "tokenizer.json"),
            "--backend", str(runtime_dir / "libQnnHtp.so"),
            "--system_library", str(runtime_dir / "libQnnSystem.so"),
            "--port", str(port),
            "--text_embedding_size", str(descriptor.text_embedding_size),
        ]
        default = descriptor.generation_size
        if (width, height) == (default, default):
            patch = None
            effective = (width, height)
        elif patch is not None:
            argv += ["--patch", str(patch)]
            effective = (width, height)
        else:
            effective = (default, default)
        if use_img2img:
            argv += ["--vae_encoder", str(model_dir / "vae_encoder.bin")]
        if descriptor.id.startswith("pony"):
            argv.append("--ponyv55")
        if descriptor.use_cpu_clip:
            argv.append("--use_cpu_clip")

    if safety_checker_path is not None:
        argv += ["--safety_checker", str(safety_checker_path)]
    return WorkerCommand(argv=argv, width=effective[0], height=effective[1], patch=patch)


def build_upscaler_command(executable: Path, runtime_dir: Path, port: int) -> List[str]:
    return [
        str(executable),
        "--upscaler_mode",
        "--backend", str(runtime_dir / "libQnnHtp.so"),
        "--system_library", str(runtime_dir / "libQnnSystem.so"),
        "--port", str(port),
    ]


class WorkerSupervisor:
    def __init__(
        self,
        config: RunnerConfig,
        store: AssetStore,
        vendor_gpu_symlink: Path = VENDOR_GPU_SYMLINK,
        reap_stale: bool = True,
    ):
        self.config = config
        self.store = store
        self.vendor_gpu_symlink = vendor_gpu_symlink
        self.reap_stale = reap_stale
        self._state: StateHolder[BackendState] = StateHolder(BackendState.idle())
        self.state = self._state.view()
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._handle: Optional[WorkerHandle] = None
        self._output: Optional[StreamingProcessLogger] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def executable(self) -> Path:
        return Path(self.config.native_lib_dir) / self.config.executable_name

    @property
    def handle(self) -> Optional[WorkerHandle]:
        return self._handle

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def output_tail(self) -> str:
        return self._output.get_tail() if self._output else ""

    # ----- start -----
    async def start(self, descriptor: ModelDescriptor, width: int = 512, height: int = 512) -> WorkerHandle:
        """
        Launch a generation worker for ``descriptor``; a running worker is
        stopped first. Raises a StartupError subclass after publishing
        BackendState.error.
        """
        await self.stop()
        self._state.set(BackendState.starting())
        slog.info("worker_starting", model_id=descriptor.id, width=width, height=height)
        try:
            await asyncio.to_thread(self._prepare)
            patch = None
            if descriptor.is_npu and (width, height) != (descriptor.generation_size, descriptor.generation_size):
                patch = self.store.find_patch(descriptor.id, width, height)
                if patch is None:
                    log.warning(
                        "No patch file for %dx%d in %s, falling back to %dx%d",
                        width, height, self.store.model_dir(descriptor.id),
                        descriptor.generation_size, descriptor.generation_size,
                    )
            command = build_worker_command(
                self.executable,
                descriptor,
                self.store.model_dir(descriptor.id),
                self.config.runtime_dir,
                self.config.port,
                width,
                height,
                use_img2img=self.config.use_img2img,
                safety_checker_path=self.config.data_dir / SAFETY_CHECKER_NAME if self.config.safety_checker else None,
                patch=patch,
            )
            return await self._launch(command.argv, "generate", descriptor.id, command.width, command.height)
        except StartupError as e:
            self._state.set(BackendState.error(str(e)))
            slog.error("worker_start_failed", model_id=descriptor.id, error=str(e))
            raise

    async def start_upscaler(self) -> WorkerHandle:
        """Launch the worker as a headless upscaler server."""
        await self.stop()
        self._state.set(BackendState.starting())
        slog.info("worker_starting", mode="upscale")
        try:
            await asyncio.to_thread(self._prepare)
            argv = build_upscaler_command(self.executable, self.config.runtime_dir, self.config.port)
            return await self._launch(argv, "upscale", None, 0, 0)
        except StartupError as e:
            self._state.set(BackendState.error(str(e)))
            slog.error("worker_start_failed", mode="upscale", error=str(e))
            raise

    async def restart(self, descriptor: ModelDescriptor, width: int = 512, height: int = 512) -> WorkerHandle:
        await self.stop()
        return await self.start(descriptor, width, height)

    def _prepare(self) -> None:
        # Blocking: staging copies files and reaping waits on old workers. Runs in a thread.
        if not self.executable.is_file():
            raise ExecutableMissingError(str(self.executable))
        stage_runtime_libraries(
            self.config.bundled_runtime_dir,
            self.config.runtime_dir,
            data_dir=self.config.data_dir,
            safety_checker=self.config.safety_checker,
        )
        if self.reap_stale:
            reaped = reap_stale_workers(self.config.executable_name)
            if reaped:
                slog.warning("stale_workers_reaped", count=reaped)

    async def _launch(self, argv: List[str], mode: str, model_id: Optional[str], width: int, height: int) -> WorkerHandle:
        env = build_worker_environment(self.config.runtime_dir, soc=discover_vendor_soc(self.vendor_gpu_symlink))
        output = StreamingProcessLogger(f"worker_{model_id or mode}", log_dir=self.config.log_dir)
        log.debug("COMMAND: %s", " ".join(argv))
        log.debug("LD_LIBRARY_PATH=%s", env["LD_LIBRARY_PATH"])
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.config.native_lib_dir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=OUTPUT_LINE_LIMIT,
            )
        except OSError as e:
            raise SpawnError(f"backend start failed: {e}") from e

        output.start(argv)
        handle = WorkerHandle(
            pid=proc.pid,
            mode=mode,
            command=argv,
            log_file=str(output.log_file.absolute()),
            model_id=model_id,
            width=width,
            height=height,
        )
        self._proc = proc
        self._handle = handle
        self._output = output
        self._stopping = False
        self._monitor_task = asyncio.create_task(self._monitor(proc, output), name=f"worker-monitor-{proc.pid}")
        self._state.set(BackendState.running())
        slog.info("worker_spawned", model_id=model_id, pid=proc.pid, mode=mode, width=width, height=height,
                  log_file=handle.log_file)
        return handle

    # ----- monitor -----
    async def _monitor(self, proc: asyncio.subprocess.Process, output: StreamingProcessLogger) -> None:
        try:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                output.log_line(line)
                log.debug("Backend: %s", line)
            returncode = await proc.wait()
        except Exception as e:
            if self._proc is proc and not self._stopping:
                self._state.set(BackendState.error(f"monitor error: {e}"))
            log.error("Worker monitor failed: %s", e)
            return
        finally:
            output.close()

        if self._proc is not proc or self._stopping:
            return
        hint = classify_worker_output(output.get_tail())
        slog.error(
            "worker_exited",
            pid=proc.pid,
            returncode=returncode,
            category=hint["category"],
            hint=hint["short"],
            log_file=str(output.log_file),
        )
        self._proc = None
        self._handle = None
        self._state.set(BackendState.error(str(ProcessError(returncode))))

    # ----- stop -----
    async def stop(self, handle: Optional[WorkerHandle] = None) -> None:
        """
        Terminate the worker, killing it after the grace period. A no-op when
        nothing is running or ``handle`` is not the current worker.
        """
        if handle is not None and handle is not self._handle:
            return
        proc = self._proc
        if proc is None:
            return

        self._stopping = True
        monitor = self._monitor_task
        t0 = time.time()
        try:
            if proc.returncode is None:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), self.config.stop_timeout_s)
                except asyncio.TimeoutError:
                    slog.warning("worker_stop_timeout", pid=proc.pid, timeout_s=self.config.stop_timeout_s)
                    proc.kill()
                    await proc.wait()
            if monitor is not None:
                done, _ = await asyncio.wait([monitor], timeout=self.config.stop_timeout_s)
                if not done:
                    monitor.cancel()
            self._state.set(BackendState.idle())
            slog.info("worker_stopped", pid=proc.pid, returncode=proc.returncode,
                      duration_ms=(time.time() - t0) * 1000)
        except ProcessLookupError:
            self._state.set(BackendState.idle())
        except OSError as e:
            self._state.set(BackendState.error(f"error: {e}"))
            slog.error("worker_stop_failed", pid=proc.pid, error=str(e))
        finally:
            self._proc = None
            self._handle = None
            self._monitor_task = None
            self._stopping = False
