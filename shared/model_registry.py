"""
Model catalog for the local worker.

Single source of truth for the predefined diffusion models (accelerator and
CPU variants) and the upscaler weights, plus the custom models a user drops
into the models directory by hand.

Accelerator builds are chipset-specific; the download URI carries a suffix
derived from the SoC identifier (see ``chipset_suffix``).
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from shared.schemas import AssetRef, ModelDescriptor

log = logging.getLogger("model_registry")

DEFAULT_BASE_URL = "https://huggingface.co/"

# Sentinel files marking a hand-installed model directory
CUSTOM_CPU_SENTINEL = "finished"
CUSTOM_NPU_SENTINEL = "npucustom"

CHIPSET_SUFFIXES: Dict[str, str] = {
    "SM8475": "8gen1",
    "SM8450": "8gen1",
    "SM8550": "8gen2",
    "SM8550P": "8gen2",
    "QCS8550": "8gen2",
    "QCM8550": "8gen2",
    "SM8650": "8gen2",
    "SM8650P": "8gen2",
    "SM8750": "8gen2",
    "SM8750P": "8gen2",
    "SM8850": "8gen2",
    "SM8850P": "8gen2",
    "SM8735": "8gen2",
    "SM8845": "8gen2",
}

_ANIME_NEGATIVE = (
    "lowres, bad anatomy, bad hands, missing fingers, extra fingers, bad arms, missing legs, "
    "missing arms, poorly drawn face, bad face, fused face, cloned face, three crus, fused feet, "
    "fused thigh, extra crus, ugly fingers, horn, realistic photo, huge eyes, worst face, 2girl, "
    "long fingers, disconnected limbs,"
)
_CUSTOM_NEGATIVE = _ANIME_NEGATIVE.replace("realistic photo, ", "")
_REALISTIC_NEGATIVE = (
    "worst quality, low quality, normal quality, poorly drawn, lowres, low resolution, signature, "
    "watermarks, ugly, out of focus, error, blurry, unclear photo, bad photo, unrealistic, semi "
    "realistic, pixelated, cartoon, anime, cgi, drawing, 2d, 3d, censored, duplicate,"
)
_PHOTO_NEGATIVE = (
    "paintings, cartoon, anime, lowres, bad anatomy, bad hands, text, error, missing fingers, "
    "extra digit, cropped, worst quality, low quality, normal quality, jpeg artifacts, signature, "
    "watermark, username, skin spots, acnes, skin blemishes"
)

# (id, display name, archive stem, default prompt, default negative prompt)
_PREDEFINED = [
    ("anythingv5", "Anything V5.0", "AnythingV5",
     "masterpiece, best quality, 1girl, solo, cute, white hair,", _ANIME_NEGATIVE),
    ("qteamix", "QteaMix", "QteaMix",
     "chibi, best quality, 1girl, solo, cute, pink hair,", _ANIME_NEGATIVE),
    ("absolutereality", "Absolute Reality", "AbsoluteReality",
     "masterpiece, best quality, ultra-detailed, realistic, 8k, a cat on grass,", _REALISTIC_NEGATIVE),
    ("cuteyukimix", "CuteYukiMix", "CuteYukiMix",
     "masterpiece, best quality, 1girl, solo, cute, white hair,", _ANIME_NEGATIVE),
    ("chilloutmix", "ChilloutMix", "ChilloutMix",
     "RAW photo, best quality, realistic, photo-realistic, masterpiece, 1girl, upper body, "
     "facing front, portrait, white shirt", _PHOTO_NEGATIVE),
]

_UPSCALERS = [
    ("upscaler_anime", "Anime upscaler", "realesrgan_x4plus_anime_6b"),
    ("upscaler_realistic", "Realistic upscaler", "4x_UltraSharpV2_Lite"),
]


def chipset_suffix(soc: Optional[str]) -> Optional[str]:
    """Map a SoC model string to the accelerator build suffix, or None if unsupported."""
    if not soc:
        return None
    if soc in CHIPSET_SUFFIXES:
        return CHIPSET_SUFFIXES[soc]
    if soc.startswith("SM"):
        return "min"
    return None


class UpscalerEntry(BaseModel):
    """A single-file upscaler weight."""
    id: str
    name: str
    file_uri: str
    base_url: str = DEFAULT_BASE_URL

    @property
    def download_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.file_uri.lstrip('/')}"

    def asset_ref(self) -> AssetRef:
        return AssetRef(
            model_id=self.id,
            name=self.name,
            url=self.download_url,
            kind="upscaler",
            is_zip=False,
            is_npu=False,
        )


class ModelCatalog(BaseModel):
    """
    Catalog of descriptors the runner knows about: custom models first
    (sorted by name), then predefined accelerator/CPU pairs.
    """
    models: List[ModelDescriptor] = Field(default_factory=list)
    upscalers: List[UpscalerEntry] = Field(default_factory=list)

    def get_model(self, model_id: str) -> Optional[ModelDescriptor]:
        for m in self.models:
            if m.id == model_id:
                return m
        return None

    def get_upscaler(self, upscaler_id: str) -> Optional[UpscalerEntry]:
        for u in self.upscalers:
            if u.id == upscaler_id:
                return u
        return None

    def list_model_ids(self, run_on_cpu: Optional[bool] = None) -> List[str]:
        if run_on_cpu is None:
            return [m.id for m in self.models]
        return [m.id for m in self.models if m.run_on_cpu == run_on_cpu]


def predefined_models(soc: Optional[str] = None, base_url: str = DEFAULT_BASE_URL) -> List[ModelDescriptor]:
    suffix = chipset_suffix(soc) or "min"
    models: List[ModelDescriptor] = []
    for model_id, name, stem, prompt, negative in _PREDEFINED:
        models.append(ModelDescriptor(
            id=model_id,
            name=name,
            base_url=base_url,
            file_uri=f"xororz/sd-qnn/resolve/main/{stem}_qnn2.28_{suffix}.zip",
            approximate_size="1.1GB",
            default_prompt=prompt,
            default_negative_prompt=negative,
            run_on_cpu=False,
            use_cpu_clip=True,
        ))
        models.append(ModelDescriptor(
            id=f"{model_id}cpu",
            name=name,
            base_url=base_url,
            file_uri=f"xororz/sd-mnn/resolve/main/{stem}.zip",
            approximate_size="1.2GB",
            default_prompt=prompt,
            default_negative_prompt=negative,
            run_on_cpu=True,
        ))
    return models


def upscaler_entries(soc: Optional[str] = None, base_url: str = DEFAULT_BASE_URL) -> List[UpscalerEntry]:
    suffix = chipset_suffix(soc) or "min"
    return [
        UpscalerEntry(
            id=upscaler_id,
            name=name,
            file_uri=f"xororz/upscaler/resolve/main/{folder}/upscaler_{suffix}.bin",
            base_url=base_url,
        )
        for upscaler_id, name, folder in _UPSCALERS
    ]


def scan_custom_models(models_root: Path) -> List[ModelDescriptor]:
    """Find hand-installed models by their sentinel file."""
    found: List[ModelDescriptor] = []
    if not models_root.is_dir():
        return found
    for entry in models_root.iterdir():
        if not entry.is_dir():
            continue
        if (entry / CUSTOM_CPU_SENTINEL).exists():
            is_npu = False
        elif (entry / CUSTOM_NPU_SENTINEL).exists():
            is_npu = True
        else:
            continue
        found.append(ModelDescriptor(
            id=entry.name,
            name=entry.name,
            description="Custom model",
            base_url="",
            approximate_size="Custom",
            default_prompt="masterpiece, best quality, a cat sat on a mat,",
            default_negative_prompt=_CUSTOM_NEGATIVE,
            run_on_cpu=not is_npu,
            use_cpu_clip=True,
            is_custom=True,
        ))
    return sorted(found, key=lambda m: m.name.lower())


def build_catalog(models_root: Path, soc: Optional[str] = None, base_url: str = DEFAULT_BASE_URL) -> ModelCatalog:
    """Scan custom models and combine them with the predefined ones."""
    custom = scan_custom_models(models_root)
    predefined = predefined_models(soc, base_url)
    custom_ids = {m.id for m in custom}
    shadowed = [m.id for m in predefined if m.id in custom_ids]
    if shadowed:
        log.warning("Custom models shadow predefined ids: %s", ", ".join(shadowed))
        predefined = [m for m in predefined if m.id not in custom_ids]
    return ModelCatalog(models=custom + predefined, upscalers=upscaler_entries(soc, base_url))


def save_catalog_to_file(catalog: ModelCatalog, path: str) -> None:
    """Dump the catalog to JSON (used by ``runner models --json``)."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(catalog.model_dump(), f, indent=2)
