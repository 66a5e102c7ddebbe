"""
On-disk layout of installed models.

    <models_root>/<model_id>/
        clip.bin | clip.mnn, unet.bin | unet.mnn, vae_decoder.*, tokenizer.json
        vae_encoder.*              optional, image-to-image
        512.patch, 768x512.patch   optional, non-default resolutions
        v3                         version marker for accelerator installs
    <models_root>/<upscaler_id>/upscaler.bin

Everything here is a plain filesystem query except ``uninstall``. Installs
happen only through ``runner.downloader``.
"""
from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from runner.history import HistoryStore
from shared.schemas import ModelDescriptor

log = logging.getLogger("runner.asset_store")

VERSION_MARKER = "v3"
UPSCALER_FILENAME = "upscaler.bin"

_SQUARE_PATCH = re.compile(r"^(\d+)\.patch$")
_RECT_PATCH = re.compile(r"^(\d+)x(\d+)\.patch$")


@dataclass(frozen=True, order=True)
class Resolution:
    width: int
    height: int

    @property
    def is_square(self) -> bool:
        return self.width == self.height

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


class PreferenceStore(Protocol):
    """Per-model generation preferences; persistence lives outside the runner."""

    def clear_for_model(self, model_id: str) -> None: ...


def required_files(descriptor: ModelDescriptor, use_img2img: bool = False) -> List[str]:
    """Weight files the worker opens for this descriptor's command shape."""
    if descriptor.run_on_cpu:
        files = ["clip.mnn", "unet.mnn", "vae_decoder.mnn", "tokenizer.json"]
        if use_img2img:
            files.append("vae_encoder.mnn")
        return files
    files = [
        "clip.mnn" if descriptor.use_cpu_clip else "clip.bin",
        "unet.bin",
        "vae_decoder.bin",
        "tokenizer.json",
    ]
    if use_img2img:
        files.append("vae_encoder.bin")
    return files


class AssetStore:
    def __init__(self, models_root: Path, history: Optional[HistoryStore] = None,
                 preferences: Optional[PreferenceStore] = None):
        self.models_root = Path(models_root)
        self.history = history
        self.preferences = preferences

    def model_dir(self, model_id: str) -> Path:
        return self.models_root / model_id

    def upscaler_path(self, upscaler_id: str) -> Path:
        return self.model_dir(upscaler_id) / UPSCALER_FILENAME

    def is_installed(self, model_id: str, is_custom: bool = False) -> bool:
        """A directory with at least one entry. Custom models are installed by definition."""
        if is_custom:
            return True
        directory = self.model_dir(model_id)
        if not directory.is_dir():
            return False
        return any(directory.iterdir())

    def is_upscaler_installed(self, upscaler_id: str) -> bool:
        return self.upscaler_path(upscaler_id).is_file()

    def needs_upgrade(self, model_id: str, is_npu: bool) -> bool:
        """Accelerator installs from before the current layout lack the version marker."""
        if not is_npu:
            return False
        directory = self.model_dir(model_id)
        if not directory.exists():
            return False
        return not (directory / VERSION_MARKER).exists()

    def missing_files(self, descriptor: ModelDescriptor, use_img2img: bool = False) -> List[str]:
        directory = self.model_dir(descriptor.id)
        return [name for name in required_files(descriptor, use_img2img) if not (directory / name).is_file()]

    def is_complete(self, descriptor: ModelDescriptor, use_img2img: bool = False) -> bool:
        """Installed, every required weight present and, for accelerator models, current."""
        if not self.is_installed(descriptor.id, descriptor.is_custom):
            return False
        if self.missing_files(descriptor, use_img2img):
            return False
        return descriptor.is_custom or not self.needs_upgrade(descriptor.id, descriptor.is_npu)

    def available_resolutions(self, model_id: str) -> List[Resolution]:
        """Resolutions with a patch file, ordered by pixel count."""
        directory = self.model_dir(model_id)
        if not directory.is_dir():
            return []
        found = set()
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            square = _SQUARE_PATCH.match(entry.name)
            if square:
                size = int(square.group(1))
                if size > 0:
                    found.add(Resolution(size, size))
                continue
            rect = _RECT_PATCH.match(entry.name)
            if rect:
                width, height = int(rect.group(1)), int(rect.group(2))
                if width > 0 and height > 0:
                    found.add(Resolution(width, height))
        return sorted(found, key=lambda r: (r.width * r.height, r.width))

    def find_patch(self, model_id: str, width: int, height: int) -> Optional[Path]:
        """Square sizes try ``{w}.patch`` then ``{w}x{h}.patch``; rectangles only the latter."""
        directory = self.model_dir(model_id)
        candidates = [f"{width}.patch", f"{width}x{height}.patch"] if width == height else [f"{width}x{height}.patch"]
        for name in candidates:
            path = directory / name
            if path.is_file():
                return path
        return None

    def uninstall(self, model_id: str) -> bool:
        """Remove the model directory plus its history and preferences."""
        directory = self.model_dir(model_id)
        existed = directory.exists()
        if existed:
            shutil.rmtree(directory)
        if self.history is not None:
            self.history.clear(model_id)
        if self.preferences is not None:
            self.preferences.clear_for_model(model_id)
        log.info("Uninstalled %s (existed=%s)", model_id, existed)
        return existed
