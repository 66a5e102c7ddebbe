from __future__ import annotations

import json
import logging
import shutil
import time
from pathlib import Path
from typing import List, Optional

from PIL import Image
from pydantic import ValidationError

from runner.imaging import DecodedImage
from shared.schemas import GenerationRequest, HistoryEntry

log = logging.getLogger("runner.history")


class HistoryStore:
    """
    Generated images per model: ``<root>/<model_id>/<ts>.png`` with the
    request parameters in ``<ts>.json`` beside it.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def model_dir(self, model_id: str) -> Path:
        return self.root / model_id

    def save(
        self,
        model_id: str,
        image: DecodedImage,
        request: GenerationRequest,
        seed: Optional[int] = None,
        generation_time_ms: Optional[int] = None,
    ) -> HistoryEntry:
        directory = self.model_dir(model_id)
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = int(time.time() * 1000)
        while (directory / f"{timestamp}.png").exists():
            timestamp += 1

        entry = HistoryEntry(
            model_id=model_id,
            timestamp_ms=timestamp,
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            steps=request.steps,
            cfg=request.cfg,
            seed=seed if seed is not None else request.seed,
            width=image.width,
            height=image.height,
            denoise_strength=request.denoise_strength,
            runtime=request.runtime,
            scheduler=request.scheduler,
            generation_time_ms=generation_time_ms,
        )
        image.to_pil("RGB").save(directory / f"{timestamp}.png", format="PNG")
        (directory / f"{timestamp}.json").write_text(entry.model_dump_json(indent=2), encoding="utf-8")
        return entry

    def list_entries(self, model_id: str) -> List[HistoryEntry]:
        """Newest first. Images without a readable sidecar are skipped."""
        directory = self.model_dir(model_id)
        if not directory.is_dir():
            return []
        entries: List[HistoryEntry] = []
        for png in directory.glob("*.png"):
            entry = self.load_params(model_id, png.stem)
            if entry is not None:
                entries.append(entry)
        return sorted(entries, key=lambda e: e.timestamp_ms, reverse=True)

    def load_params(self, model_id: str, timestamp: str) -> Optional[HistoryEntry]:
        sidecar = self.model_dir(model_id) / f"{timestamp}.json"
        if not sidecar.exists():
            return None
        try:
            return HistoryEntry.model_validate(json.loads(sidecar.read_text(encoding="utf-8")))
        except (ValueError, ValidationError) as e:
            log.warning("Unreadable history params %s: %s", sidecar, e)
            return None

    def load_image(self, model_id: str, timestamp: int) -> DecodedImage:
        with Image.open(self.model_dir(model_id) / f"{timestamp}.png") as img:
            return DecodedImage.from_pil(img)

    def delete(self, model_id: str, timestamp: int) -> bool:
        directory = self.model_dir(model_id)
        removed = False
        for suffix in (".png", ".jpg", ".json"):
            path = directory / f"{timestamp}{suffix}"
            if path.exists():
                path.unlink()
                removed = True
        return removed

    def clear(self, model_id: str) -> None:
        shutil.rmtree(self.model_dir(model_id), ignore_errors=True)
