"""Logging configuration for CoursePay.

Structured logging with:
- JSON format for production, console format for development
- Secret masking by key name and by known secret value
- Daily rotated log files
"""

from __future__ import annotations

import logging
import re
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, MutableMapping

import structlog

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "json"  # "json" or "console"
DEFAULT_LOG_RETENTION_DAYS = 30

# Keys whose values are masked. Signatures (vnp_SecureHash) are not secret
# and stay visible for forensic review of rejected callbacks.
SENSITIVE_PATTERNS = [
    re.compile(r".*token.*", re.IGNORECASE),
    re.compile(r".*secret.*", re.IGNORECASE),
    re.compile(r".*password.*", re.IGNORECASE),
    re.compile(r".*api_key.*", re.IGNORECASE),
    re.compile(r".*credential.*", re.IGNORECASE),
    re.compile(r"authorization", re.IGNORECASE),
]

MASK = "***REDACTED***"

# Shorter values would mask ordinary words
MIN_SECRET_LENGTH = 6


def _is_sensitive_key(key: str) -> bool:
    """Check whether a log field name carries a credential.

    Args:
        key: Event dict key, e.g. ``hash_secret`` or ``order_reference``.

    Returns:
        True if the key matches any sensitive pattern.
    """
    return any(pattern.match(key) for pattern in SENSITIVE_PATTERNS)


def _mask_value(value: Any) -> Any:
    """Mask a credential, keeping a short prefix of long values.

    Args:
        value: Field value to mask.

    Returns:
        Masked string, or the value unchanged if it is not a non-empty string.
    """
    if isinstance(value, str) and value:
        return value[:4] + MASK if len(value) > 8 else MASK
    return value


def _scrub_text(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret in text:
            text = text.replace(secret, MASK)
    return text


def mask_sensitive(
    data: MutableMapping[str, Any],
    secrets: Iterable[str] = (),
) -> dict[str, Any]:
    """Return a masked copy of an event dict.

    Args:
        data: Event dict or nested mapping to process. Not mutated.
        secrets: Literal secret values (processor hash secret, bot token)
            to replace wherever they occur inside string fields, such as
            an exception message that echoes a connection string.

    Returns:
        New dict with sensitive keys masked and known secrets scrubbed.
    """
    secrets = tuple(secrets)
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(key, str) and _is_sensitive_key(key):
            result[key] = _mask_value(value)
        elif isinstance(value, dict):
            result[key] = mask_sensitive(value, secrets)
        elif isinstance(value, list):
            result[key] = [
                mask_sensitive(item, secrets) if isinstance(item, dict)
                else _scrub_text(item, secrets) if isinstance(item, str)
                else item
                for item in value
            ]
        elif isinstance(value, str):
            result[key] = _scrub_text(value, secrets)
        else:
            result[key] = value
    return result


class SensitiveDataFilter:
    """structlog processor that keeps credentials out of log lines."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        self.secrets = tuple(s for s in secrets if s and len(s) >= MIN_SECRET_LENGTH)

    def __call__(
        self,
        logger: logging.Logger,
        method_name: str,
        event_dict: MutableMapping[str, Any],
    ) -> MutableMapping[str, Any]:
        """Mask the event dictionary.

        Args:
            logger: The logger instance.
            method_name: The logging method name.
            event_dict: The event dictionary to process.

        Returns:
            Event dictionary with credentials masked.
        """
        return mask_sensitive(event_dict, self.secrets)


def _get_log_level(level_name: str) -> int:
    """Convert a LOG_LEVEL value to a logging constant.

    Args:
        level_name: Level name in any case; unknown names fall back to INFO.

    Returns:
        Logging level constant.
    """
    level = logging.getLevelName(level_name.upper())
    return level if isinstance(level, int) else logging.INFO


def _create_file_handler(log_file: str | Path, retention_days: int) -> TimedRotatingFileHandler:
    """Create a handler rotating at midnight.

    Args:
        log_file: Path to the log file; parent directories are created.
        retention_days: Number of rotated files to keep.

    Returns:
        Configured TimedRotatingFileHandler.
    """
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return TimedRotatingFileHandler(
        filename=str(log_path),
        when="midnight",
        interval=1,
        backupCount=retention_days,
        encoding="utf-8",
    )


def configure_logging(
    level: str = DEFAULT_LOG_LEVEL,
    log_format: str = DEFAULT_LOG_FORMAT,
    log_file: str | None = None,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    enable_console: bool = True,
    secrets: Iterable[str] = (),
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Output format ("json" or "console").
        log_file: Path to log file (None for console only).
        retention_days: Days to retain rotated log files.
        enable_console: Whether to output to stdout.
        secrets: Secret values scrubbed from every string field.

    Example:
        >>> configure_logging(level="DEBUG", log_format="console",
        ...                   secrets=[config.vnpay_hash_secret])
    """
    log_level = _get_log_level(level)
    secret_filter = SensitiveDataFilter(secrets)

    handlers: list[logging.Handler] = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        handlers.append(_create_file_handler(log_file, retention_days))
    for handler in handlers:
        handler.setLevel(log_level)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        # Rendered before masking so tracebacks are scrubbed too
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        secret_filter,
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    for handler in handlers:
        handler.setFormatter(formatter)

    structlog.get_logger(__name__).info(
        "logging_configured",
        level=level,
        format=log_format,
        log_file=log_file,
        masked_secrets=len(secret_filter.secrets),
    )


__all__ = [
    "configure_logging",
    "mask_sensitive",
    "SensitiveDataFilter",
    "SENSITIVE_PATTERNS",
    "MASK",
]
