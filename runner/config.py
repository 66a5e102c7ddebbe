from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel

log = logging.getLogger("runner.config")

ROOT_DIR = Path(__file__).resolve().parent.parent
CONFIG_PATH = Path(os.getenv("RUNNER_CONFIG", str(ROOT_DIR / "config" / "runner.yaml")))


class RunnerConfig(BaseModel):
    runner_id: str = "local"
    data_dir: Path = Path("./data")
    native_lib_dir: Path = Path("./native")
    bundled_runtime_dir: Optional[Path] = None
    executable_name: str = "libstable_diffusion_core.so"
    host: str = "127.0.0.1"
    port: int = 8081
    use_img2img: bool = True
    safety_checker: bool = False
    soc: Optional[str] = None
    base_url: str = "https://huggingface.co/"
    health_timeout_s: float = 60.0
    stop_timeout_s: float = 5.0

    @property
    def models_dir(self) -> Path:
        return self.data_dir / "models"

    @property
    def runtime_dir(self) -> Path:
        return self.data_dir / "runtime_libs"

    @property
    def history_dir(self) -> Path:
        return self.data_dir / "history"

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "temp_downloads"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def worker_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    if os.getenv("RUNNER_DATA_DIR"):
        config["data_dir"] = os.environ["RUNNER_DATA_DIR"]
    if os.getenv("RUNNER_PORT"):
        config["port"] = int(os.environ["RUNNER_PORT"])
    if os.getenv("RUNNER_BASE_URL"):
        config["base_url"] = os.environ["RUNNER_BASE_URL"]
    return config


def load_config(path: Optional[Path] = None) -> RunnerConfig:
    """Read the YAML config; a missing file means all defaults."""
    config_path = Path(path) if path else CONFIG_PATH
    raw: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    else:
        log.info("No config at %s, using defaults", config_path)

    unknown = sorted(set(raw) - set(RunnerConfig.model_fields))
    if unknown:
        log.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        for key in unknown:
            raw.pop(key)
    return RunnerConfig.model_validate(_apply_env_overrides(raw))
