"""
Download and install pipeline for model packages and upscaler weights.

One download slot: ``ModelDownloader.state`` publishes DownloadState values.
Every new run, whether from ``start()`` or ``download()``, replaces whatever
is in flight, and ``cancel()`` stops it. The byte copy streams into
``<temp>/<id>_<ms>.tmp``; archives are unpacked into ``<temp>/<id>_extract``
and only a fully extracted tree is swapped into the models directory, so
readers never see a half-installed model.
"""
from __future__ import annotations

import asyncio
import os
import shutil
import threading
import time
import zipfile
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import httpx

from runner.asset_store import VERSION_MARKER, AssetStore
from runner.errors import InstallError, NetworkError
from runner.http_client import LoggedHTTPClient, download_client
from runner.logging_utils import get_logger
from runner.states import DownloadState, StateHolder
from shared.schemas import AssetRef

DOWNLOAD_CHUNK_BYTES = int(os.getenv("RUNNER_DOWNLOAD_CHUNK_BYTES", str(32 * 1024)))
PROGRESS_INTERVAL_S = float(os.getenv("RUNNER_PROGRESS_INTERVAL_S", "0.5"))
SUCCESS_RESET_S = 2.0
ERROR_RESET_S = 3.0

slog = get_logger()


def _skip_archive_entry(info: zipfile.ZipInfo) -> bool:
    name = info.filename.replace("\\", "/")
    if info.is_dir() or name.endswith("/"):
        return True
    if name.startswith("__MACOSX") or "/__MACOSX/" in f"/{name}":
        return True
    base = name.rsplit("/", 1)[-1]
    return not base or base.startswith(".")


def extract_flat(archive: Path, dest: Path, cancel_flag: Optional[threading.Event] = None) -> int:
    """
    Unpack every regular file of ``archive`` into ``dest`` by basename.

    Directory entries, dotfiles and macOS metadata are skipped. Returns the
    number of files written.
    """
    dest.mkdir(parents=True, exist_ok=True)
    written = 0
    try:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                if cancel_flag is not None and cancel_flag.is_set():
                    raise InstallError("extraction cancelled")
                if _skip_archive_entry(info):
                    continue
                base = info.filename.replace("\\", "/").rsplit("/", 1)[-1]
                with zf.open(info) as src, open(dest / base, "wb") as out:
                    shutil.copyfileobj(src, out, DOWNLOAD_CHUNK_BYTES)
                written += 1
    except zipfile.BadZipFile as e:
        raise InstallError(f"Invalid archive: {e}") from e
    except OSError as e:
        raise InstallError(f"Extraction failed: {e}") from e
    if written == 0:
        raise InstallError("Archive contained no files")
    return written


def publish_directory(staged: Path, final: Path) -> None:
    """Swap ``staged`` in as ``final``; previous contents are discarded, never merged."""
    final.parent.mkdir(parents=True, exist_ok=True)
    trash = final.parent / f".{final.name}.old"
    moved_aside = False
    try:
        if trash.exists():
            shutil.rmtree(trash)
        if final.exists():
            final.rename(trash)
            moved_aside = True
        shutil.move(str(staged), str(final))
    except OSError as e:
        if moved_aside:
            _restore_previous(trash, final)
        raise InstallError(f"Failed to move model into place: {e}") from e
    shutil.rmtree(trash, ignore_errors=True)


def _restore_previous(trash: Path, final: Path) -> None:
    """Put the previous install back after a failed swap."""
    try:
        if final.exists():
            shutil.rmtree(final)
        trash.rename(final)
    except OSError as e:
        slog.error("install_rollback_failed", path=str(final), error=str(e))


def publish_file(staged: Path, final: Path) -> None:
    try:
        final.parent.mkdir(parents=True, exist_ok=True)
        if final.exists():
            final.unlink()
        staged.replace(final)
    except OSError as e:
        raise InstallError(f"Failed to move file into place: {e}") from e


async def _stop_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    await asyncio.wait([task])


class ModelDownloader:
    def __init__(
        self,
        store: AssetStore,
        temp_root: Path,
        client_factory: Callable[[], LoggedHTTPClient] = download_client,
        progress_interval_s: float = PROGRESS_INTERVAL_S,
        chunk_bytes: int = DOWNLOAD_CHUNK_BYTES,
        success_reset_s: float = SUCCESS_RESET_S,
        error_reset_s: float = ERROR_RESET_S,
    ):
        self.store = store
        self.temp_root = Path(temp_root)
        self._client_factory = client_factory
        self.progress_interval_s = progress_interval_s
        self.chunk_bytes = chunk_bytes
        self.success_reset_s = success_reset_s
        self.error_reset_s = error_reset_s
        self._state: StateHolder[DownloadState] = StateHolder(DownloadState.idle())
        self.state = self._state.view()
        self._task: Optional[asyncio.Task] = None
        self._reset_task: Optional[asyncio.Task] = None
        # Run currently holding the slot and the task driving it.
        self._owner: Optional[object] = None
        self._owner_task: Optional[asyncio.Task] = None

    # ----- slot management -----
    async def start(self, asset: AssetRef) -> asyncio.Task:
        """Cancel whatever is in flight, then run ``download(asset)`` in a task."""
        await self.cancel()

        async def _drain():
            async for _ in self.download(asset):
                pass

        self._task = asyncio.create_task(_drain(), name=f"download-{asset.model_id}")
        return self._task

    async def cancel(self) -> None:
        """Stop the in-flight download; temp files are gone and state is Idle on return."""
        task, self._task = self._task, None
        await _stop_task(task)
        await _stop_task(self._owner_task)
        self._cancel_reset()
        if self._state.value != DownloadState.idle():
            self._state.set(DownloadState.idle())

    async def _claim_slot(self) -> object:
        """Stop the run holding the slot and wait for its cleanup, then take the slot."""
        # Loop: another caller may have claimed the slot while this one waited.
        while self._owner_task is not None and not self._owner_task.done():
            if self._owner_task is asyncio.current_task():
                break
            await _stop_task(self._owner_task)
        token = object()
        self._owner = token
        self._owner_task = asyncio.current_task()
        return token

    def _release_slot(self, token: object) -> None:
        if self._owner is token:
            self._owner = None
            self._owner_task = None

    def _publish(self, token: object, state: DownloadState) -> DownloadState:
        # A superseded run still yields to its own consumer but no longer owns the slot.
        if self._owner is token:
            self._state.set(state)
        return state

    def _cancel_reset(self) -> None:
        if self._reset_task is not None and not self._reset_task.done():
            self._reset_task.cancel()
        self._reset_task = None

    def _schedule_reset(self, terminal: DownloadState, delay: float) -> None:
        async def _reset():
            await asyncio.sleep(delay)
            if self._state.value is terminal:
                self._state.set(DownloadState.idle())

        self._cancel_reset()
        self._reset_task = asyncio.get_running_loop().create_task(_reset())

    # ----- pipeline -----
    async def download(self, asset: AssetRef) -> AsyncIterator[DownloadState]:
        """
        Fetch and install ``asset``, yielding every state it publishes.

        Starting a run cancels the one already holding the slot, whichever
        task drives it, and waits for its cleanup before touching the temp
        directory. The last yielded value is Success or Error. Cancelling the
        consuming task removes temp files and settles the slot to Idle.
        """
        token = await self._claim_slot()
        self._cancel_reset()
        model_id = asset.model_id
        stamp = int(time.time() * 1000)
        temp_file = self.temp_root / f"{model_id}_{stamp}.tmp"
        extract_dir = self.temp_root / f"{model_id}_extract"
        downloaded = 0
        total = 0

        slog.info("download_started", model_id=model_id, url=asset.url, kind=asset.kind, is_zip=asset.is_zip)
        t0 = time.time()
        try:
            yield self._publish(token, DownloadState.downloading(model_id, 0.0, 0, 0))
            self._reset_temp_root()
            async with self._client_factory() as client:
                async with client.stream("GET", asset.url) as resp:
                    if resp.status_code >= 400:
                        raise NetworkError(f"Download failed: HTTP {resp.status_code}")
                    try:
                        total = int(resp.headers.get("Content-Length") or 0)
                    except ValueError:
                        total = 0
                    last_emit = time.monotonic()
                    with open(temp_file, "wb") as f:
                        async for chunk in resp.aiter_raw(self.chunk_bytes):
                            if not chunk:
                                continue
                            f.write(chunk)
                            downloaded += len(chunk)
                            now = time.monotonic()
                            if now - last_emit >= self.progress_interval_s or (total > 0 and downloaded == total):
                                last_emit = now
                                progress = min(1.0, downloaded / total) if total > 0 else 0.0
                                yield self._publish(
                                    token, DownloadState.downloading(model_id, progress, downloaded, total)
                                )

            if asset.is_zip:
                yield self._publish(token, DownloadState.extracting(model_id, downloaded, total))
                await self._run_blocking(self._install_archive, asset, temp_file, extract_dir)
            else:
                await self._run_blocking(self._install_file, asset, temp_file)

            terminal = self._publish(token, DownloadState.success(model_id, downloaded, total))
            slog.info(
                "download_completed",
                model_id=model_id,
                duration_ms=(time.time() - t0) * 1000,
                bytes=downloaded,
            )
            if self._owner is token:
                self._schedule_reset(terminal, self.success_reset_s)

        except (asyncio.CancelledError, GeneratorExit):
            self._cleanup(token, temp_file, extract_dir)
            self._publish(token, DownloadState.idle())
            slog.info("download_cancelled", model_id=model_id, bytes=downloaded)
            raise
        except Exception as e:
            self._cleanup(token, temp_file, extract_dir)
            message = self._describe(e)
            terminal = self._publish(token, DownloadState.error(model_id, message))
            slog.error("download_failed", model_id=model_id, error=message, bytes=downloaded)
            if self._owner is token:
                self._schedule_reset(terminal, self.error_reset_s)
        finally:
            self._cleanup(token, temp_file, extract_dir)
            self._release_slot(token)

        yield terminal

    @staticmethod
    def _describe(exc: Exception) -> str:
        if isinstance(exc, httpx.TimeoutException):
            return f"Download timed out: {exc}"
        if isinstance(exc, httpx.HTTPError):
            return f"Network error: {exc}"
        if isinstance(exc, OSError):
            return f"Filesystem error: {exc}"
        return str(exc) or type(exc).__name__

    def _reset_temp_root(self) -> None:
        # Leftovers from a crashed run are never resumed.
        if self.temp_root.exists():
            shutil.rmtree(self.temp_root)
        self.temp_root.mkdir(parents=True, exist_ok=True)

    def _cleanup(self, token: object, temp_file: Path, extract_dir: Path) -> None:
        if temp_file.exists():
            temp_file.unlink()
        # The extraction directory name is shared; only the slot owner may remove it.
        if self._owner is token and extract_dir.exists():
            shutil.rmtree(extract_dir, ignore_errors=True)

    async def _run_blocking(self, fn, *args):
        """Run filesystem work off the loop; on cancel, stop it before cleanup runs."""
        cancel_flag = threading.Event()
        work = asyncio.ensure_future(asyncio.to_thread(fn, *args, cancel_flag))
        try:
            return await asyncio.shield(work)
        except asyncio.CancelledError:
            cancel_flag.set()
            await asyncio.wait([work])
            if not work.cancelled() and work.exception() is not None:
                slog.debug("install_aborted", error=str(work.exception()))
            raise

    def _install_archive(self, asset: AssetRef, archive: Path, extract_dir: Path, cancel_flag: threading.Event) -> None:
        if extract_dir.exists():
            shutil.rmtree(extract_dir)
        count = extract_flat(archive, extract_dir, cancel_flag)
        if asset.is_npu:
            (extract_dir / VERSION_MARKER).touch()
        if cancel_flag.is_set():
            raise InstallError("install cancelled")
        archive.unlink()
        publish_directory(extract_dir, self.store.model_dir(asset.model_id))
        slog.info("model_installed", model_id=asset.model_id, files=count)

    def _install_file(self, asset: AssetRef, staged: Path, cancel_flag: threading.Event) -> None:
        if cancel_flag.is_set():
            raise InstallError("install cancelled")
        publish_file(staged, self.store.upscaler_path(asset.model_id))
        slog.info("model_installed", model_id=asset.model_id, files=1)
