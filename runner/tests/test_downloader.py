import asyncio
import io
import threading
import zipfile
from pathlib import Path

import httpx
import pytest

from runner.asset_store import AssetStore
from runner.downloader import ModelDownloader, extract_flat, publish_directory
from runner.errors import InstallError
from runner.http_client import LoggedHTTPClient
from runner.states import DownloadStatus
from shared.schemas import AssetRef


URL = "https://models.example/xororz/sd-qnn/resolve/main/AnythingV5_qnn2.28_min.zip"


def _zip_bytes() -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("AnythingV5/", "")
        zf.writestr("AnythingV5/unet.bin", b"u" * 40)
        zf.writestr("AnythingV5/clip.mnn", b"c" * 20)
        zf.writestr("AnythingV5/.DS_Store", b"junk")
        zf.writestr("__MACOSX/AnythingV5/._unet.bin", b"junk")
        zf.writestr("tokenizer.json", b"{}")
    return buf.getvalue()


def _downloader(tmp_path: Path, handler, **kwargs) -> ModelDownloader:
    kwargs.setdefault("progress_interval_s", 0.0)
    kwargs.setdefault("chunk_bytes", 16)
    return ModelDownloader(
        AssetStore(tmp_path / "models"),
        tmp_path / "temp",
        client_factory=lambda: LoggedHTTPClient("model_host", transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def _collect(downloader: ModelDownloader, asset: AssetRef):
    async def run():
        return [s async for s in downloader.download(asset)]

    return asyncio.run(run())


NPU_ASSET = AssetRef(model_id="anythingv5", url=URL, is_zip=True, is_npu=True)


def test_zip_install_flattens_and_writes_marker(tmp_path: Path):
    payload = _zip_bytes()
    downloader = _downloader(tmp_path, lambda request: httpx.Response(200, content=payload))

    states = _collect(downloader, NPU_ASSET)

    statuses = [s.status for s in states]
    assert statuses[0] is DownloadStatus.DOWNLOADING
    assert statuses[-2:] == [DownloadStatus.EXTRACTING, DownloadStatus.SUCCESS]
    progress = [s.progress for s in states]
    assert progress == sorted(progress)
    assert states[-1].progress == 1.0
    assert states[-1].downloaded_bytes == len(payload)

    model_dir = tmp_path / "models" / "anythingv5"
    assert sorted(p.name for p in model_dir.iterdir()) == ["clip.mnn", "tokenizer.json", "unet.bin", "v3"]
    assert (model_dir / "unet.bin").read_bytes() == b"u" * 40
    assert list((tmp_path / "temp").iterdir()) == []


def test_cpu_zip_has_no_marker(tmp_path: Path):
    payload = _zip_bytes()
    downloader = _downloader(tmp_path, lambda request: httpx.Response(200, content=payload))
    asset = NPU_ASSET.model_copy(update={"model_id": "anythingv5cpu", "is_npu": False})

    assert _collect(downloader, asset)[-1].status is DownloadStatus.SUCCESS
    assert not (tmp_path / "models" / "anythingv5cpu" / "v3").exists()


def test_reinstall_replaces_previous_contents(tmp_path: Path):
    old = tmp_path / "models" / "anythingv5"
    old.mkdir(parents=True)
    (old / "stale.bin").write_bytes(b"old")
    payload = _zip_bytes()
    downloader = _downloader(tmp_path, lambda request: httpx.Response(200, content=payload))

    _collect(downloader, NPU_ASSET)

    assert not (old / "stale.bin").exists()
    assert (old / "unet.bin").exists()
    assert not (tmp_path / "models" / ".anythingv5.old").exists()


def test_single_file_upscaler_install(tmp_path: Path):
    downloader = _downloader(tmp_path, lambda request: httpx.Response(200, content=b"w" * 50))
    asset = AssetRef(model_id="realesrgan_x4plus_anime", url="https://models.example/up.bin",
                     kind="upscaler", is_zip=False)

    states = _collect(downloader, asset)

    assert DownloadStatus.EXTRACTING not in [s.status for s in states]
    assert states[-1].status is DownloadStatus.SUCCESS
    assert downloader.store.upscaler_path("realesrgan_x4plus_anime").read_bytes() == b"w" * 50


def test_http_error_leaves_nothing_behind(tmp_path: Path):
    downloader = _downloader(tmp_path, lambda request: httpx.Response(404, content=b"nope"))

    final = _collect(downloader, NPU_ASSET)[-1]

    assert final.status is DownloadStatus.ERROR
    assert "HTTP 404" in final.message
    assert list((tmp_path / "temp").iterdir()) == []
    assert not (tmp_path / "models" / "anythingv5").exists()


def test_bad_archive_is_an_error(tmp_path: Path):
    downloader = _downloader(tmp_path, lambda request: httpx.Response(200, content=b"not a zip at all"))

    final = _collect(downloader, NPU_ASSET)[-1]

    assert final.status is DownloadStatus.ERROR
    assert "Invalid archive" in final.message
    assert not (tmp_path / "models" / "anythingv5").exists()


def test_unknown_length_reports_zero_progress_until_done(tmp_path: Path):
    async def body():
        yield b"a" * 20
        yield b"b" * 20

    downloader = _downloader(tmp_path, lambda request: httpx.Response(200, content=body()))
    asset = AssetRef(model_id="up", url="https://models.example/up.bin", kind="upscaler", is_zip=False)

    states = _collect(downloader, asset)

    downloading = [s for s in states if s.status is DownloadStatus.DOWNLOADING]
    assert all(s.progress == 0.0 for s in downloading)
    assert downloading[-1].downloaded_bytes == 40
    assert states[-1].status is DownloadStatus.SUCCESS
    assert states[-1].progress == 1.0


def test_cancel_mid_stream_cleans_up_and_goes_idle(tmp_path: Path):
    async def run():
        stall = asyncio.Event()

        async def body():
            yield b"x" * 8
            await stall.wait()
            yield b"y" * 56

        def handler(request):
            return httpx.Response(200, headers={"Content-Length": "64"}, content=body())

        downloader = _downloader(tmp_path, handler)
        await downloader.start(NPU_ASSET)
        await downloader.state.wait_for(lambda s: s.downloaded_bytes >= 8, timeout=5.0)
        await downloader.cancel()
        return downloader

    downloader = asyncio.run(run())

    assert downloader.state.value.status is DownloadStatus.IDLE
    assert list((tmp_path / "temp").iterdir()) == []
    assert not (tmp_path / "models" / "anythingv5").exists()


def test_terminal_state_resets_to_idle(tmp_path: Path):
    async def run():
        downloader = _downloader(
            tmp_path, lambda request: httpx.Response(500), success_reset_s=0.01, error_reset_s=0.01
        )
        final = [s async for s in downloader.download(NPU_ASSET)][-1]
        assert final.status is DownloadStatus.ERROR
        await downloader.state.wait_for(lambda s: s.status is DownloadStatus.IDLE, timeout=1.0)
        return downloader.state.value

    assert asyncio.run(run()).status is DownloadStatus.IDLE


def test_extract_flat_rejects_empty_archive(tmp_path: Path):
    archive = tmp_path / "empty.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("only/", "")
    with pytest.raises(InstallError):
        extract_flat(archive, tmp_path / "out")


def test_second_download_supersedes_the_first(tmp_path: Path):
    payload = _zip_bytes()

    async def run():
        gate = asyncio.Event()
        requests = []

        async def gated():
            yield payload[:16]
            await gate.wait()
            yield payload[16:]

        def handler(request):
            requests.append(request)
            if len(requests) == 1:
                return httpx.Response(200, headers={"Content-Length": str(len(payload))}, content=gated())
            return httpx.Response(200, content=payload)

        downloader = _downloader(tmp_path, handler)
        seen = []

        async def consume(tag):
            async for state in downloader.download(NPU_ASSET):
                seen.append((tag, state.status))

        with downloader.state.subscribe() as published:
            first = asyncio.create_task(consume("first"))
            await downloader.state.wait_for(lambda s: s.downloaded_bytes >= 16, timeout=5.0)
            second = asyncio.create_task(consume("second"))
            results = await asyncio.gather(first, second, return_exceptions=True)
            slot = []
            while not published.empty():
                slot.append(published.get_nowait().status)
        return downloader, seen, results, slot, len(requests)

    downloader, seen, results, slot, request_count = asyncio.run(run())

    assert isinstance(results[0], asyncio.CancelledError)
    assert results[1] is None
    assert request_count == 2
    first = [status for tag, status in seen if tag == "first"]
    second = [status for tag, status in seen if tag == "second"]
    assert DownloadStatus.SUCCESS not in first and DownloadStatus.ERROR not in first
    assert second[-2:] == [DownloadStatus.EXTRACTING, DownloadStatus.SUCCESS]
    assert DownloadStatus.ERROR not in slot
    assert slot[-1] is DownloadStatus.SUCCESS
    # After the superseded run settled, the slot only moved forward.
    tail = slot[slot.index(DownloadStatus.IDLE) + 1:]
    assert tail[-2:] == [DownloadStatus.EXTRACTING, DownloadStatus.SUCCESS]
    assert DownloadStatus.IDLE not in tail
    assert downloader.state.value.status is DownloadStatus.SUCCESS
    assert (tmp_path / "models" / "anythingv5" / "unet.bin").exists()
    assert list((tmp_path / "temp").iterdir()) == []


def test_cancel_while_extracting_leaves_nothing_behind(tmp_path: Path, monkeypatch):
    payload = _zip_bytes()
    extracting = threading.Event()

    def held_extract(archive, dest, cancel_flag=None):
        dest.mkdir(parents=True, exist_ok=True)
        (dest / "partial.bin").write_bytes(b"p")
        extracting.set()
        cancel_flag.wait(timeout=5.0)
        return extract_flat(archive, dest, cancel_flag)

    monkeypatch.setattr("runner.downloader.extract_flat", held_extract)

    async def run():
        downloader = _downloader(tmp_path, lambda request: httpx.Response(200, content=payload))
        await downloader.start(NPU_ASSET)
        await downloader.state.wait_for(lambda s: s.status is DownloadStatus.EXTRACTING, timeout=5.0)
        assert await asyncio.to_thread(extracting.wait, 5.0)
        await downloader.cancel()
        return downloader

    downloader = asyncio.run(run())

    assert downloader.state.value.status is DownloadStatus.IDLE
    assert list((tmp_path / "temp").iterdir()) == []
    assert not (tmp_path / "models" / "anythingv5").exists()


def test_failed_swap_restores_previous_install(tmp_path: Path, monkeypatch):
    staged = tmp_path / "staged"
    staged.mkdir()
    (staged / "new.bin").write_bytes(b"new")
    final = tmp_path / "models" / "anythingv5"
    final.mkdir(parents=True)
    (final / "old.bin").write_bytes(b"old")

    def failing_move(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("runner.downloader.shutil.move", failing_move)

    with pytest.raises(InstallError, match="disk full"):
        publish_directory(staged, final)

    assert (final / "old.bin").read_bytes() == b"old"
    assert not (tmp_path / "models" / ".anythingv5.old").exists()
    assert (staged / "new.bin").exists()
