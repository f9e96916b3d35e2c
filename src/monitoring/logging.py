"""
Structured logging for the zkTLS snapshot pipeline.

Provides JSON-formatted logging for log aggregation and a colored console
format for development.

Features:
- JSON output format for easy parsing
- Run context (run_id, provider) attached to every line of a run
- Redaction of snapshot secrets: attribute values, randomness, wallet
  signatures and derived keys never reach a log sink
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Sensitive Data Redaction
# ============================================================

SENSITIVE_PATTERNS = [
    # Tokens, secrets and the snapshot secret material by name
    (re.compile(
        r"(api[_-]?key|token|secret|password|signature|randomness|owner_secret)"
        r"([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
        re.IGNORECASE,
    ), r"\1\2[REDACTED]"),
    # Bearer credentials (wallet signatures, provider session tokens)
    (re.compile(r"(Bearer\s+)([^\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
    # Encrypted snapshot blobs
    (re.compile(r"ENC:1:[A-Za-z0-9+/=]+"), "ENC:1:[REDACTED]"),
    # Wallet signatures (65-byte hex)
    (re.compile(r"\b0x[a-fA-F0-9]{130}\b"), "[REDACTED_SIGNATURE]"),
    # Wallet addresses (show first/last 4 chars)
    (re.compile(r"\b(0x)([a-fA-F0-9]{4})([a-fA-F0-9]{32})([a-fA-F0-9]{4})\b"), r"\1\2...\4"),
    # Email addresses (partial redaction)
    (re.compile(r"([a-zA-Z0-9._%+-]+)@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})"), r"\1[...]@\2"),
]

# Fields that are always replaced wholesale
REDACTED_FIELDS = {
    "attrs",
    "attributes",
    "randomness",
    "signature",
    "owner_secret",
    "key",
    "encryption_key",
    "secret",
    "password",
    "token",
    "auth_token",
    "access_token",
    "authorization",
    "cookies",
    "body",
}

# LogRecord attributes that are not user-supplied extras
_RECORD_FIELDS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
    "thread", "threadName", "message", "taskName",
})


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Recursively redact sensitive data from logs.

    Args:
        data: The data to redact (can be dict, list, string, or other)
        depth: Current recursion depth
        max_depth: Maximum recursion depth to prevent infinite loops

    Returns:
        Data with sensitive information redacted
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower().replace("-", "_")
            if key_lower in REDACTED_FIELDS:
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive_data(value, depth + 1, max_depth)
        return result

    elif isinstance(data, list | tuple):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]

    elif isinstance(data, str):
        return redact_string(data)

    else:
        return data


def redact_string(text: str) -> str:
    if not isinstance(text, str):
        return text

    result = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


# Thread-local storage for run context
_run_context = threading.local()


def set_run_context(**kwargs) -> None:
    if not hasattr(_run_context, "data"):
        _run_context.data = {}
    _run_context.data.update(kwargs)


def clear_run_context() -> None:
    _run_context.data = {}


def get_run_context() -> dict[str, Any]:
    return getattr(_run_context, "data", {})


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_FIELDS}


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Output format:
    {
        "timestamp": "2026-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "orchestrator",
        "message": "Snapshot 9f2c... persisted (notarized_tls)",
        "context": {"run_id": "a1b2c3", "provider": "github"},
        ...
    }
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if self.redact_sensitive:
            message = redact_string(message)

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }

        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and self.include_stack_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        context = get_run_context()
        if context:
            log_entry["context"] = redact_sensitive_data(context) if self.redact_sensitive else context

        extras = _extras(record)
        log_entry.update(redact_sensitive_data(extras) if self.redact_sensitive else extras)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter with colors.

    Redaction applies here too: development logs are still logs.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET

        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        level = record.levelname[0]

        msg = f"{color}{timestamp} {level} [{record.name}]{reset} {redact_string(record.getMessage())}"

        context = get_run_context()
        if context:
            ctx_str = " ".join(f"{k}={v}" for k, v in redact_sensitive_data(context).items())
            msg += f" {color}({ctx_str}){reset}"

        extras = [f"{k}={v}" for k, v in redact_sensitive_data(_extras(record)).items()]
        if extras:
            msg += f" [{', '.join(extras)}]"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON format (LOG_FORMAT=json when None)
        log_file: Optional file path for log output
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    formatter = JSONFormatter() if json_output else ConsoleFormatter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())  # Always JSON for files
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class LoggingContext:
    """
    Context manager for adding temporary context to logs.

    Usage:
        with LoggingContext(run_id="a1b2c3", provider="github"):
            logger.info("Capturing")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context = {}

    def __enter__(self):
        self.previous_context = get_run_context().copy()
        set_run_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        clear_run_context()
        if self.previous_context:
            set_run_context(**self.previous_context)
        return False
