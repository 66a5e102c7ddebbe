"""
Helpers for the worker subprocess: bounded output capture, log files on disk,
and cleanup of workers left behind by a crashed session.
"""

import logging
import os
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, List, Optional

import psutil

log = logging.getLogger("runner.process")

RUNNER_LOG_DIR = Path(os.getenv("RUNNER_LOG_DIR", "./logs"))
OUTPUT_BUFFER_LINES = int(os.getenv("RUNNER_OUTPUT_BUFFER_LINES", "200"))


def get_timestamp() -> str:
    """Timestamp for log filenames."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")


def tail_lines(text: str, max_lines: int = 200, max_bytes: int = 32768) -> str:
    """
    Return the last max_lines lines or max_bytes characters of text,
    whichever is smaller.
    """
    if not text:
        return ""
    if len(text) > max_bytes:
        text = text[-max_bytes:]
    lines = text.splitlines()
    if len(lines) > max_lines:
        lines = lines[-max_lines:]
    return "\n".join(lines)


class StreamingProcessLogger:
    """
    Capture the worker's merged stdout/stderr as it runs.

    Lines go to a timestamped log file and to a bounded in-memory buffer that
    backs error reports when the worker dies.
    """

    def __init__(self, log_prefix: str, max_buffer_lines: int = OUTPUT_BUFFER_LINES, log_dir: Optional[Path] = None):
        self.log_dir = Path(log_dir) if log_dir else RUNNER_LOG_DIR
        self.log_file = self.log_dir / f"{log_prefix}_{get_timestamp()}.log"
        self.buffer: Deque[str] = deque(maxlen=max_buffer_lines)
        self.file_handle = None

    def start(self, cmd: List[str]):
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.file_handle = open(self.log_file, "w", encoding="utf-8")
        self.file_handle.write(f"Command: {' '.join(cmd)}\n")
        self.file_handle.write(f"Timestamp: {get_timestamp()}\n")
        self.file_handle.write("-" * 80 + "\n")
        self.file_handle.flush()

    def log_line(self, line: str):
        if self.file_handle:
            self.file_handle.write(line + "\n")
            self.file_handle.flush()
        self.buffer.append(line)

    def close(self):
        if self.file_handle:
            self.file_handle.close()
            self.file_handle = None

    def get_tail(self) -> str:
        return "\n".join(self.buffer)


def find_stale_workers(executable_name: str, exclude_pid: Optional[int] = None) -> List[psutil.Process]:
    """Processes whose executable or argv[0] ends with the worker binary name."""
    stale: List[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "exe", "cmdline"]):
        try:
            if proc.info["pid"] == exclude_pid:
                continue
            exe = proc.info.get("exe") or ""
            cmdline = proc.info.get("cmdline") or []
            argv0 = cmdline[0] if cmdline else ""
            if exe.endswith(executable_name) or argv0.endswith(executable_name):
                stale.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return stale


def reap_stale_workers(executable_name: str, timeout_s: float = 5.0) -> int:
    """Terminate leftover workers (they hold the fixed port). Returns how many were found."""
    procs = find_stale_workers(executable_name, exclude_pid=os.getpid())
    if not procs:
        return 0
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
    _, alive = psutil.wait_procs(procs, timeout=timeout_s)
    for proc in alive:
        log.warning("Stale worker %s ignored SIGTERM, killing", proc.pid)
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    return len(procs)
