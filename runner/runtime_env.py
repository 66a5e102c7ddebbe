"""
Private runtime directory and process environment for the worker.

The accelerator runtime ships as bundled shared libraries that must be copied
into a directory the worker can load from; the loader path also picks up the
vendor GPU driver directory when it can be discovered.
"""
from __future__ import annotations

import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from runner.errors import RuntimeStagingError

log = logging.getLogger("runner.runtime_env")

SYSTEM_LIB_DIRS = ["/system/lib64", "/vendor/lib64", "/vendor/lib64/egl"]
VENDOR_GPU_SYMLINK = Path(os.getenv("RUNNER_VENDOR_GPU_SYMLINK", "/system/vendor/lib64/egl/libGLES_mali.so"))
SAFETY_CHECKER_NAME = "safety_checker.mnn"

_READ_EXEC = stat.S_IRUSR | stat.S_IXUSR


def _needs_copy(src: Path, dst: Path) -> bool:
    return not dst.exists() or dst.stat().st_size != src.stat().st_size


def stage_runtime_libraries(
    bundled_dir: Optional[Path],
    runtime_dir: Path,
    data_dir: Optional[Path] = None,
    safety_checker: bool = False,
) -> List[str]:
    """
    Copy bundled runtime libraries into ``runtime_dir``.

    Files are copied when missing or when their size differs from the bundled
    copy, then made readable and executable for the owner. With
    ``safety_checker`` the checker model is copied into ``data_dir``. Any I/O
    failure raises RuntimeStagingError; the worker cannot run without these.
    Returns the names of the files that were copied.
    """
    copied: List[str] = []
    try:
        runtime_dir.mkdir(parents=True, exist_ok=True)
        if bundled_dir is not None:
            if not bundled_dir.is_dir():
                raise RuntimeStagingError(f"Bundled runtime directory not found: {bundled_dir}")
            for src in sorted(bundled_dir.iterdir()):
                if not src.is_file():
                    continue
                dst = runtime_dir / src.name
                if _needs_copy(src, dst):
                    shutil.copyfile(src, dst)
                    copied.append(src.name)
                dst.chmod(dst.stat().st_mode | _READ_EXEC)

        if safety_checker:
            if bundled_dir is None or data_dir is None:
                raise RuntimeStagingError("Safety checker enabled but no bundled directory or data dir configured")
            src = bundled_dir / SAFETY_CHECKER_NAME
            dst = data_dir / SAFETY_CHECKER_NAME
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
            dst.chmod(dst.stat().st_mode | stat.S_IRUSR)
            copied.append(SAFETY_CHECKER_NAME)

        runtime_dir.chmod(runtime_dir.stat().st_mode | _READ_EXEC)
    except OSError as e:
        raise RuntimeStagingError(f"Prepare runtime dir failed: {e}") from e

    if copied:
        log.info("Staged runtime files into %s: %s", runtime_dir, ", ".join(copied))
    return copied


def discover_vendor_soc(symlink: Path = VENDOR_GPU_SYMLINK) -> Optional[str]:
    """
    Hardware id taken from the vendor GPU driver's real path, e.g.
    /vendor/lib64/egl/mt6989/libGLES_mali.so -> "mt6989". None when unavailable.
    """
    try:
        if not symlink.exists():
            return None
        parts = Path(os.path.realpath(symlink)).parts
    except OSError as e:
        log.warning("Failed to resolve vendor GPU path %s: %s", symlink, e)
        return None
    if len(parts) < 2:
        return None
    soc = parts[-2]
    return soc if soc and soc != os.sep else None


def build_worker_environment(
    runtime_dir: Path,
    base_env: Optional[Mapping[str, str]] = None,
    soc: Optional[str] = None,
) -> Dict[str, str]:
    """Environment for the worker: inherited vars plus the loader search paths."""
    env = dict(os.environ if base_env is None else base_env)
    lib_paths = [str(runtime_dir)] + list(SYSTEM_LIB_DIRS)
    if soc:
        for path in (f"/vendor/lib64/{soc}", f"/vendor/lib64/egl/{soc}"):
            if path not in lib_paths:
                lib_paths.append(path)
    env["LD_LIBRARY_PATH"] = ":".join(lib_paths)
    env["DSP_LIBRARY_PATH"] = str(runtime_dir)
    return env
