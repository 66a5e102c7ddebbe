from __future__ import annotations

from typing import Dict, List


class RunnerError(Exception):
    """Base class for failures the runner turns into terminal state values."""


class StartupError(RunnerError):
    """The worker could not be started. Never retried automatically."""


class ExecutableMissingError(StartupError):
    def __init__(self, path: str):
        super().__init__(f"Worker executable not found: {path}")
        self.path = path


class RuntimeStagingError(StartupError):
    """Bundled runtime libraries could not be copied into the private runtime dir."""


class SpawnError(StartupError):
    pass


class NetworkError(RunnerError):
    """Transport failure talking to the worker or the model host."""


class ProtocolError(RunnerError):
    """Malformed or incomplete event stream, or an unusable image payload."""


class InstallError(RunnerError):
    """Extraction or move failure while publishing an asset."""


class ProcessError(RunnerError):
    def __init__(self, returncode: int):
        super().__init__(f"Backend process exited with code: {returncode}")
        self.returncode = returncode


def _contains_any(message: str, needles: List[str]) -> bool:
    lowered = message.lower()
    return any(needle.lower() in lowered for needle in needles)


def classify_worker_output(msg: str) -> Dict[str, object]:
    """Classify a worker log tail for a short user-facing hint."""
    message = msg or ""
    if _contains_any(message, ["cannot locate symbol", "dlopen failed", "library not found"]):
        return {
            "category": "missing_library",
            "short": "Worker could not load a runtime library.",
            "action": [
                "Check that the bundled runtime libraries were staged into the runtime dir.",
                "Verify the accelerator build matches this chipset.",
            ],
        }
    if _contains_any(message, ["address already in use", "bind failed"]):
        return {
            "category": "port_in_use",
            "short": "Worker port is already in use.",
            "action": ["Stop the stale worker process or change the configured port."],
        }
    if _contains_any(message, ["out of memory", "failed to allocate"]):
        return {
            "category": "oom",
            "short": "Worker ran out of memory.",
            "action": ["Use a smaller resolution or the CPU text encoder and retry."],
        }
    if _contains_any(message, ["no such file", "failed to open"]):
        return {
            "category": "missing_weights",
            "short": "Worker could not open a model file.",
            "action": ["Re-download the model; its directory may be incomplete or outdated."],
        }
    return {
        "category": "unknown",
        "short": "Worker exited unexpectedly.",
        "action": ["Check the worker log file for details."],
    }
