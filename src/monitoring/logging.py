"""
Structured logging for the shielded pool.

Provides JSON-formatted logging suitable for log aggregation, and a colored
console format for development.

Features:
- JSON output format for easy parsing
- Operation context (deposit_id, pool, alias) carried across awaits
- Redaction of deposit secrets before any record reaches a handler
- Configurable log level and optional JSON log file
"""

import contextvars
import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Sensitive Data Redaction
# ============================================================

# Fields whose values never appear in a log record
REDACTED_FIELDS = {
    "secret",
    "nullifier_seed",
    "nullifierseed",
    "out_secret",
    "outsecret",
    "out_nullifier_seed",
    "outnullifierseed",
    "private_inputs",
    "encryption_key",
    "trapdoor",
    "password",
    "api_key",
    "api_secret",
    "token",
    "authorization",
    "private_key",
}

SENSITIVE_PATTERNS = [
    # key=value and "key": "value" forms of the redacted fields
    (re.compile(
        r"(secret|nullifier[_-]?seed|encryption[_-]?key|trapdoor|api[_-]?key|token|password)"
        r"([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
        re.IGNORECASE,
    ), r"\1\2[REDACTED]"),
    # Bearer tokens
    (re.compile(r"(Bearer\s+)([^\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
    # Wallet addresses (show first/last 4 chars)
    (re.compile(r"\b(0x)([a-fA-F0-9]{4})([a-fA-F0-9]{32})([a-fA-F0-9]{4})\b"), r"\1\2...\4"),
]

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
    "thread", "threadName", "message", "taskName",
))


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Recursively redact sensitive data.

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
            if str(key).lower().replace("-", "_") in REDACTED_FIELDS:
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive_data(value, depth + 1, max_depth)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]

    if isinstance(data, str):
        return redact_string(data)

    return data


def redact_string(text: str) -> str:
    """Redact sensitive patterns from a string."""
    if not isinstance(text, str):
        return text

    result = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


# ============================================================
# Operation context
# ============================================================

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "shielded_log_context", default={}
)


def set_log_context(**kwargs) -> None:
    """Add context values for the current task."""
    _log_context.set({**_log_context.get(), **kwargs})


def clear_log_context() -> None:
    _log_context.set({})


def get_log_context() -> dict[str, Any]:
    return dict(_log_context.get())


class LoggingContext:
    """
    Context manager for adding temporary context to logs.

    Usage:
        with LoggingContext(deposit_id="dep_1a2b", pool="0x1111..."):
            logger.info("Broadcasting deposit")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token = None

    def __enter__(self):
        self._token = _log_context.set({**_log_context.get(), **self.context})
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        _log_context.reset(self._token)
        return False


# ============================================================
# Formatters
# ============================================================

class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "privacy_pool",
        "message": "Deposit confirmed",
        "context": {"deposit_id": "dep_1a2b"},
        ...
    }
    """

    def __init__(self, include_stack_info: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_string(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and self.include_stack_info:
            log_entry["exception"] = redact_string(self.formatException(record.exc_info))

        context = get_log_context()
        if context:
            log_entry["context"] = redact_sensitive_data(context)

        for key, value in _extra_fields(record).items():
            log_entry[key] = "[REDACTED]" if key.lower() in REDACTED_FIELDS else redact_sensitive_data(value)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter with colors."""

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

        context = redact_sensitive_data(get_log_context())
        if context:
            ctx_str = " ".join(f"{k}={v}" for k, v in context.items())
            msg += f" {color}({ctx_str}){reset}"

        extras = redact_sensitive_data(_extra_fields(record))
        if extras:
            msg += f" [{', '.join(f'{k}={v}' for k, v in extras.items())}]"

        if record.exc_info:
            msg += "\n" + redact_string(self.formatException(record.exc_info))

        return msg


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: str | None = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON format on the console
        log_file: Optional file path for log output (always JSON)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
