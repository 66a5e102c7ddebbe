from pathlib import Path

from runner.asset_store import AssetStore, Resolution, required_files
from runner.history import HistoryStore
from shared.schemas import ModelDescriptor


class RecordingPreferences:
    def __init__(self):
        self.cleared = []

    def clear_for_model(self, model_id):
        self.cleared.append(model_id)


def _install(root: Path, model_id: str, names):
    d = root / model_id
    d.mkdir(parents=True, exist_ok=True)
    for name in names:
        (d / name).write_bytes(b"x")
    return d


NPU = ModelDescriptor(id="anythingv5", name="Anything", use_cpu_clip=True)
CPU = ModelDescriptor(id="anythingv5cpu", name="Anything", run_on_cpu=True)


def test_missing_or_empty_dir_is_not_installed(tmp_path: Path):
    store = AssetStore(tmp_path)
    assert store.is_installed("anythingv5") is False
    (tmp_path / "anythingv5").mkdir()
    assert store.is_installed("anythingv5") is False


def test_custom_models_are_always_installed(tmp_path: Path):
    assert AssetStore(tmp_path).is_installed("whatever", is_custom=True) is True


def test_needs_upgrade_only_for_npu_dirs_without_marker(tmp_path: Path):
    store = AssetStore(tmp_path)
    assert store.needs_upgrade("anythingv5", is_npu=True) is False  # absent
    _install(tmp_path, "anythingv5", ["unet.bin"])
    assert store.needs_upgrade("anythingv5", is_npu=True) is True
    assert store.needs_upgrade("anythingv5", is_npu=False) is False
    (tmp_path / "anythingv5" / "v3").touch()
    assert store.needs_upgrade("anythingv5", is_npu=True) is False


def test_required_files_follow_the_command_shape():
    assert required_files(NPU) == ["clip.mnn", "unet.bin", "vae_decoder.bin", "tokenizer.json"]
    assert "clip.bin" in required_files(NPU.model_copy(update={"use_cpu_clip": False}))
    assert required_files(CPU, use_img2img=True)[-1] == "vae_encoder.mnn"


def test_is_complete_requires_files_and_marker(tmp_path: Path):
    store = AssetStore(tmp_path)
    _install(tmp_path, "anythingv5", required_files(NPU))
    assert store.is_complete(NPU) is False
    (tmp_path / "anythingv5" / "v3").touch()
    assert store.is_complete(NPU) is True
    assert store.missing_files(NPU, use_img2img=True) == ["vae_encoder.bin"]


def test_available_resolutions_sorted_by_area(tmp_path: Path):
    _install(tmp_path, "m", ["768.patch", "512x768.patch", "256.patch", "0.patch", "foo.patch", "unet.bin",
                             "768x512.patch"])
    res = AssetStore(tmp_path).available_resolutions("m")
    assert res == [Resolution(256, 256), Resolution(512, 768), Resolution(768, 512), Resolution(768, 768)]


def test_find_patch_prefers_square_name(tmp_path: Path):
    _install(tmp_path, "m", ["768.patch", "768x768.patch", "512x768.patch"])
    store = AssetStore(tmp_path)
    assert store.find_patch("m", 768, 768).name == "768.patch"
    assert store.find_patch("m", 512, 768).name == "512x768.patch"
    assert store.find_patch("m", 768, 512) is None


def test_find_patch_square_falls_back_to_explicit_name(tmp_path: Path):
    _install(tmp_path, "m", ["640x640.patch"])
    assert AssetStore(tmp_path).find_patch("m", 640, 640).name == "640x640.patch"


def test_uninstall_clears_history_and_preferences(tmp_path: Path):
    history = HistoryStore(tmp_path / "history")
    (tmp_path / "history" / "m").mkdir(parents=True)
    (tmp_path / "history" / "m" / "1.png").write_bytes(b"png")
    prefs = RecordingPreferences()
    store = AssetStore(tmp_path / "models", history, prefs)
    _install(tmp_path / "models", "m", ["unet.bin"])

    assert store.uninstall("m") is True

    assert not (tmp_path / "models" / "m").exists()
    assert not (tmp_path / "history" / "m").exists()
    assert prefs.cleared == ["m"]
    assert store.uninstall("m") is False
