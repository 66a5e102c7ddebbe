"""
Structured logging for the worker runner.

Every event is one line on stdout, either JSON or a compact text form:
- worker lifecycle (spawn, exit, stop)
- downloads and installs
- outbound HTTP calls to the worker and the model host
- generation jobs

Environment variables:
- LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR) [default: INFO]
- LOG_JSON: Enable JSON output (1) or pretty text (0) [default: 1]
- LOG_HTTP_BODY: Include request/response bodies in logs [default: 0]
- LOG_HTTP_MAXLEN: Max length for HTTP body logging [default: 2000]
"""

import json
import logging
import os
import socket
import sys
import time
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "1") == "1"
LOG_HTTP_BODY = os.getenv("LOG_HTTP_BODY", "0") == "1"
LOG_HTTP_MAXLEN = int(os.getenv("LOG_HTTP_MAXLEN", "2000"))

HOSTNAME = socket.gethostname()

# Set from config.runner_id
RUNNER_ID: Optional[str] = None


def set_runner_id(runner_id: str):
    global RUNNER_ID
    RUNNER_ID = runner_id


class StructuredLogger:
    """
    Structured logger that writes one record per event.

    Each record carries ts, level, event, runner_id and hostname, plus
    optional model_id / job_id / duration_ms / error and free-form details.
    """

    def __init__(self, name: str = "runner"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        handler.setFormatter(JSONFormatter() if LOG_JSON else PrettyFormatter())

        self.logger.addHandler(handler)
        self.logger.propagate = False

    def _truncate_body(self, body: Any, max_len: int = LOG_HTTP_MAXLEN) -> Optional[str]:
        if body is None:
            return None
        if isinstance(body, (bytes, bytearray)):
            return f"<{len(body)} bytes>"
        body_str = str(body)
        if len(body_str) > max_len:
            return body_str[:max_len] + f"... (truncated, {len(body_str)} total chars)"
        return body_str

    def log(
        self,
        level: str,
        event: str,
        model_id: Optional[str] = None,
        job_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        stack_trace: Optional[str] = None,
        **details
    ):
        """
        Log a structured event.

        Args:
            level: Log level name
            event: Event name (e.g., "worker_spawned", "http_out")
            model_id: Model the event concerns, if any
            job_id: Generation job identifier, if any
            duration_ms: Duration in milliseconds, if measured
            error: Error message, if any
            stack_trace: Formatted traceback, if any
            **details: Additional event-specific fields
        """
        log_data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "runner_id": RUNNER_ID,
            "hostname": HOSTNAME,
        }
        if model_id:
            log_data["model_id"] = model_id
        if job_id:
            log_data["job_id"] = job_id
        if duration_ms is not None:
            log_data["duration_ms"] = round(duration_ms, 2)
        if error:
            log_data["error"] = error
        if stack_trace:
            log_data["stack_trace"] = stack_trace
        if details:
            log_data["details"] = details

        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method("", extra={"structured": log_data})

    def debug(self, event: str, **kwargs):
        self.log("DEBUG", event, **kwargs)

    def info(self, event: str, **kwargs):
        self.log("INFO", event, **kwargs)

    def warning(self, event: str, **kwargs):
        self.log("WARNING", event, **kwargs)

    def error(self, event: str, **kwargs):
        self.log("ERROR", event, **kwargs)

    def http_out(
        self,
        service: str,
        method: str,
        url: str,
        request_id: str,
        timeout: Optional[float] = None,
        request_body: Any = None,
        status_code: Optional[int] = None,
        response_body: Any = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ):
        """Log an outbound HTTP request."""
        details = {
            "service": service,
            "method": method,
            "url": url,
            "request_id": request_id,
        }
        if timeout is not None:
            details["timeout"] = timeout
        if LOG_HTTP_BODY and request_body is not None:
            details["request_body"] = self._truncate_body(request_body)
        if status_code is not None:
            details["status_code"] = status_code
        if LOG_HTTP_BODY and response_body is not None:
            details["response_body"] = self._truncate_body(response_body)

        if error:
            self.error("http_out_error", duration_ms=duration_ms, error=error, **details)
        else:
            self.info("http_out", duration_ms=duration_ms, **details)

    @contextmanager
    def job_context(self, job_id: str, model_id: str, **initial_details):
        """
        Track a generation job from submission to its terminal state.

        Usage:
            with slog.job_context(job_id="a1b2", model_id="anythingv5") as ctx:
                ctx.milestone("job_progress", step=5)
                ctx.milestone("job_completed", seed=42)
        """
        start_time = time.time()

        class JobContext:
            def __init__(self, logger: "StructuredLogger"):
                self.logger = logger

            def milestone(self, event: str, **details):
                self.logger.info(
                    event,
                    job_id=job_id,
                    model_id=model_id,
                    duration_ms=(time.time() - start_time) * 1000,
                    **details
                )

            def error(self, event: str, error: str, **details):
                self.logger.error(
                    event,
                    job_id=job_id,
                    model_id=model_id,
                    duration_ms=(time.time() - start_time) * 1000,
                    error=error,
                    **details
                )

        ctx = JobContext(self)
        self.info("job_received", job_id=job_id, model_id=model_id, **initial_details)
        try:
            yield ctx
        except Exception as e:
            self.error(
                "job_failed",
                job_id=job_id,
                model_id=model_id,
                duration_ms=(time.time() - start_time) * 1000,
                error=str(e),
                stack_trace=traceback.format_exc(),
            )
            raise


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "structured"):
            return json.dumps(record.structured, default=str)

        log_data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


class PrettyFormatter(logging.Formatter):
    """Formats log records as human-readable text."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "structured"):
            return super().format(record)

        data = record.structured
        parts = [f"[{data.get('ts', '')[:19]}]", f"[{data.get('level', 'INFO')}]", f"[{data.get('event', '')}]"]
        if data.get("model_id"):
            parts.append(f"[model:{data['model_id']}]")
        if data.get("job_id"):
            parts.append(f"[job:{data['job_id'][:8]}]")
        details = data.get("details", {})
        if details:
            parts.append(" ".join(f"{k}={v}" for k, v in details.items()))
        if data.get("error"):
            parts.append(f"ERROR: {data['error']}")
        return " ".join(parts)


_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get the process-wide structured logger."""
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger


def init_logging(runner_id: Optional[str] = None) -> StructuredLogger:
    if runner_id:
        set_runner_id(runner_id)
    logger = get_logger()
    logger.info(
        "logger_config",
        log_level=LOG_LEVEL,
        log_json=LOG_JSON,
        log_http_body=LOG_HTTP_BODY,
        hostname=HOSTNAME,
    )
    return logger


@contextmanager
def timer():
    """
    Measure a block's duration.

    Usage:
        with timer() as t:
            ...
        t.elapsed_ms
    """
    class Timer:
        def __init__(self):
            self.start = time.time()
            self.elapsed_ms = 0.0

        def stop(self):
            self.elapsed_ms = (time.time() - self.start) * 1000
            return self.elapsed_ms

    t = Timer()
    try:
        yield t
    finally:
        t.stop()
