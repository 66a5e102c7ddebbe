"""
End-to-end session tests against tests/fake_worker.py standing in for the
native worker binary.
"""
import asyncio
import io
import socket
import stat
import sys
import zipfile
from pathlib import Path

import httpx
import pytest

from runner.asset_store import AssetStore, required_files
from runner.config import RunnerConfig
from runner.downloader import ModelDownloader
from runner.errors import InstallError, StartupError
from runner.http_client import LoggedHTTPClient
from runner.imaging import DecodedImage
from runner.session import RunnerSession
from runner.states import BackendStatus, DownloadStatus, GenerationStatus
from runner.supervisor import WorkerSupervisor
from shared.schemas import GenerationRequest

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _config(tmp_path: Path, **overrides) -> RunnerConfig:
    native = tmp_path / "native"
    native.mkdir(exist_ok=True)
    exe = native / "libstable_diffusion_core.so"
    exe.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_WORKER}" "$@"\n')
    exe.chmod(exe.stat().st_mode | stat.S_IXUSR | stat.S_IRUSR)
    values = dict(
        data_dir=tmp_path / "data",
        native_lib_dir=native,
        port=_free_port(),
        soc="SM8550",
        health_timeout_s=15.0,
        stop_timeout_s=2.0,
    )
    values.update(overrides)
    return RunnerConfig(**values)


def _session(config: RunnerConfig, **kwargs) -> RunnerSession:
    supervisor = WorkerSupervisor(config, AssetStore(config.models_dir),
                                  vendor_gpu_symlink=config.data_dir / "no-driver.so", reap_stale=False)
    return RunnerSession(config, supervisor=supervisor, **kwargs)


def _install_files(config: RunnerConfig, session: RunnerSession, model_id: str) -> None:
    descriptor = session.descriptor(model_id)
    directory = config.models_dir / model_id
    directory.mkdir(parents=True, exist_ok=True)
    for name in required_files(descriptor, config.use_img2img):
        (directory / name).write_bytes(b"w")
    if descriptor.is_npu:
        (directory / "v3").touch()


def test_generate_batch_reuses_worker_and_saves_history(tmp_path: Path):
    config = _config(tmp_path)

    async def run():
        async with _session(config) as session:
            _install_files(config, session, "anythingv5cpu")
            request = GenerationRequest(prompt="a cat", steps=3, width=64, height=64, batch_count=2)
            progress = []

            results = await session.generate(
                "anythingv5cpu", request, on_state=lambda i, s: progress.append((i, s.progress))
            )
            pid = session.supervisor.handle.pid
            again = await session.generate("anythingv5cpu", request.model_copy(update={"seed": 9}))
            return session, results, again, pid, progress

    session, results, again, pid, progress = asyncio.run(run())

    assert [r.status for r in results] == [GenerationStatus.COMPLETE] * 2
    assert (results[0].image.width, results[0].image.height) == (64, 64)
    assert results[0].seed == 12345
    assert len(again) == 1
    assert again[0].seed == 9
    assert [p for i, p in progress if i == 0][:3] == pytest.approx([1 / 3, 2 / 3, 1.0])
    assert len(session.history.list_entries("anythingv5cpu")) == 3
    assert session.supervisor.state.value.status is BackendStatus.IDLE
    assert pid > 0


def test_npu_size_without_patch_falls_back(tmp_path: Path):
    config = _config(tmp_path)

    async def run():
        async with _session(config) as session:
            _install_files(config, session, "anythingv5")
            request = GenerationRequest(prompt="a cat", steps=1, width=768, height=768, seed=1)
            return await session.generate("anythingv5", request, save_history=False)

    results = asyncio.run(run())
    assert (results[0].image.width, results[0].image.height) == (512, 512)


def test_worker_crash_mid_generation(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FAKE_WORKER_MODE", "crash")
    config = _config(tmp_path)

    async def run():
        async with _session(config) as session:
            _install_files(config, session, "anythingv5cpu")
            results = await session.generate("anythingv5cpu", GenerationRequest(prompt="x", steps=4, seed=1))
            backend = await session.supervisor.state.wait_for(lambda s: s.is_error, timeout=5.0)
            return results, backend

    results, backend = asyncio.run(run())
    assert results[-1].status is GenerationStatus.ERROR
    assert backend.message == "Backend process exited with code: 1"


def test_worker_exit_during_startup_fails_fast(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FAKE_WORKER_MODE", "exit")
    config = _config(tmp_path, health_timeout_s=30.0)

    async def run():
        async with _session(config) as session:
            _install_files(config, session, "anythingv5cpu")
            with pytest.raises(StartupError, match="exited with code: 1"):
                await session.generate("anythingv5cpu", GenerationRequest(prompt="x"))
            return session.supervisor.state.value

    assert asyncio.run(run()).is_error


def test_worker_that_never_listens_times_out(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FAKE_WORKER_MODE", "hang")
    config = _config(tmp_path, health_timeout_s=0.5)

    async def run():
        async with _session(config) as session:
            _install_files(config, session, "anythingv5cpu")
            with pytest.raises(StartupError, match="Timeout after 0.5s"):
                await session.generate("anythingv5cpu", GenerationRequest(prompt="x"))
            return session.supervisor

    supervisor = asyncio.run(run())
    assert not supervisor.is_running
    assert supervisor.state.value.status is BackendStatus.IDLE


def test_generate_requires_complete_install(tmp_path: Path):
    config = _config(tmp_path)

    async def run():
        async with _session(config) as session:
            await session.generate("anythingv5", GenerationRequest(prompt="x"))

    with pytest.raises(InstallError):
        asyncio.run(run())


def test_uninstall_refused_while_loaded(tmp_path: Path):
    config = _config(tmp_path)

    async def run():
        async with _session(config) as session:
            _install_files(config, session, "anythingv5cpu")
            await session.generate("anythingv5cpu", GenerationRequest(prompt="x", steps=1, seed=1))
            with pytest.raises(InstallError):
                session.uninstall("anythingv5cpu")
            await session.supervisor.stop()
            return session.uninstall("anythingv5cpu")

    assert asyncio.run(run()) is True
    assert not (config.models_dir / "anythingv5cpu").exists()
    assert not (config.history_dir / "anythingv5cpu").exists()


def test_upscale_through_worker(tmp_path: Path):
    config = _config(tmp_path)

    async def run():
        async with _session(config) as session:
            weights = session.store.upscaler_path("upscaler_anime")
            weights.parent.mkdir(parents=True)
            weights.write_bytes(b"w")
            return await session.upscale(DecodedImage(2, 2, bytes(12)), "upscaler_anime")

    result = asyncio.run(run())
    assert (result.image.width, result.image.height) == (8, 8)
    assert result.duration_ms == 5


def test_install_predefined_model(tmp_path: Path):
    config = _config(tmp_path)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name in required_files(RunnerSession(config).descriptor("anythingv5"), True):
            zf.writestr(f"AnythingV5/{name}", b"w")
    payload = buf.getvalue()
    urls = []

    def handler(request):
        urls.append(str(request.url))
        return httpx.Response(200, content=payload)

    downloader = ModelDownloader(
        AssetStore(config.models_dir),
        config.temp_dir,
        client_factory=lambda: LoggedHTTPClient("model_host", transport=httpx.MockTransport(handler)),
    )

    async def run():
        async with _session(config, downloader=downloader) as session:
            seen = []
            terminal = await session.install("anythingv5", on_state=seen.append)
            return session, terminal, seen

    session, terminal, seen = asyncio.run(run())
    assert terminal.status is DownloadStatus.SUCCESS
    assert seen[-1] is terminal
    assert urls == ["https://huggingface.co/xororz/sd-qnn/resolve/main/AnythingV5_qnn2.28_8gen2.zip"]
    assert session.store.is_complete(session.descriptor("anythingv5"), True)


def test_custom_models_cannot_be_downloaded(tmp_path: Path):
    config = _config(tmp_path)
    custom = config.models_dir / "mymodel"
    custom.mkdir(parents=True)
    (custom / "finished").touch()

    session = RunnerSession(config)
    assert session.descriptor("mymodel").is_custom
    with pytest.raises(InstallError):
        session.asset_ref("mymodel")
