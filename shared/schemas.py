from __future__ import annotations
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


RuntimeChoice = Literal["cpu", "gpu", "npu"]
AssetKind = Literal["sd", "upscaler"]


# ----- Catalog -----
class ModelDescriptor(BaseModel):
    """A model the worker can load. Built by the catalog, never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    base_url: str = "https://huggingface.co/"
    file_uri: str = ""
    approximate_size: str = ""
    run_on_cpu: bool = False
    use_cpu_clip: bool = False
    text_embedding_size: int = 768
    generation_size: int = 512
    default_prompt: str = ""
    default_negative_prompt: str = ""
    is_custom: bool = False

    @property
    def is_npu(self) -> bool:
        return not self.run_on_cpu

    @property
    def download_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.file_uri.lstrip('/')}"

    @property
    def is_zip(self) -> bool:
        return self.file_uri.lower().endswith(".zip")


class AssetRef(BaseModel):
    """What the download pipeline installs: a model package or an upscaler weight file."""
    model_config = ConfigDict(frozen=True)

    model_id: str
    name: str = ""
    url: str
    kind: AssetKind = "sd"
    is_zip: bool = True
    is_npu: bool = False

    @classmethod
    def for_model(cls, descriptor: ModelDescriptor) -> "AssetRef":
        return cls(
            model_id=descriptor.id,
            name=descriptor.name,
            url=descriptor.download_url,
            kind="sd",
            is_zip=descriptor.is_zip,
            is_npu=descriptor.is_npu,
        )


# ----- Job Requests -----
class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    negative_prompt: str = ""
    steps: int = 28
    cfg: float = 7.0
    seed: Optional[int] = None
    width: int = 512
    height: int = 512
    denoise_strength: float = 0.6
    runtime: RuntimeChoice = "npu"
    image: Optional[str] = None  # base64 RGB, same layout as the worker output
    mask: Optional[str] = None
    scheduler: str = "dpm"
    batch_count: int = Field(default=1, ge=1)

    def to_payload(self) -> Dict[str, Any]:
        """JSON body for POST /generate."""
        payload: Dict[str, Any] = {
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "steps": self.steps,
            "cfg": self.cfg,
            "use_cfg": True,
            "width": self.width,
            "height": self.height,
            "denoise_strength": self.denoise_strength,
            "use_opencl": self.runtime == "gpu",
            "scheduler": self.scheduler,
        }
        if self.seed is not None:
            payload["seed"] = self.seed
        if self.image is not None:
            payload["image"] = self.image
        if self.mask is not None:
            payload["mask"] = self.mask
        return payload


class HistoryEntry(BaseModel):
    """Parameters stored beside a saved image."""
    model_id: str
    timestamp_ms: int
    prompt: str
    negative_prompt: str = ""
    steps: int
    cfg: float
    seed: Optional[int] = None
    width: int
    height: int
    denoise_strength: float = 0.6
    runtime: RuntimeChoice = "npu"
    scheduler: str = "dpm"
    generation_time_ms: Optional[int] = None
