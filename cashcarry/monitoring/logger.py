"""
Structured logging setup for the cash-and-carry engine.

structlog with JSON output by default. Credential-bearing keys are masked
before rendering, and process-wide fields (environment, demo flag) ride
along on every event via contextvars.
"""
import structlog
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Keys whose values never reach a log line
_SECRET_KEYS = frozenset({
    "api_key",
    "secret_key",
    "passphrase",
    "ok-access-key",
    "ok-access-sign",
    "ok-access-passphrase",
    "authorization",
    "signature",
})
_MASK = "***"


def redact_secrets(_logger, _method_name: str, event_dict: dict) -> dict:
    """structlog processor: mask credential values, including inside header dicts."""
    for key, value in list(event_dict.items()):
        if key.lower() in _SECRET_KEYS and value:
            event_dict[key] = _MASK
        elif isinstance(value, dict):
            event_dict[key] = {
                k: (_MASK if isinstance(k, str) and k.lower() in _SECRET_KEYS and v else v)
                for k, v in value.items()
            }
    return event_dict


def bind_runtime_context(**fields) -> None:
    """Attach fields (environment, simulated, dry_run) to every later log event."""
    structlog.contextvars.bind_contextvars(**fields)


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
        log_format: json for machines, text for a terminal
        log_file: Optional rotating log file. Falls back to CASHCARRY_LOG_FILE.
    """
    if log_file is None:
        log_file = os.getenv("CASHCARRY_LOG_FILE") or None

    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # 10MB per file, 5 backups
        file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(file_handler)
        get_logger(__name__).info("Logging initialized", log_file=str(log_file), log_level=log_level)


def get_logger(name: str) -> structlog.BoundLogger:
    """Structured logger for ``name`` (typically __name__)."""
    return structlog.get_logger(name)
