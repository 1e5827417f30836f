"""Logging setup for BankLink.

Console output always goes to stderr so CLI commands can print JSON on stdout.
Every handler carries a redaction filter: provider access tokens, vault
envelopes and password fields are masked before a record is formatted, so an
exception message that echoes an upstream payload cannot leak a secret into a
log file.
"""

import logging
import os
import re
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

REDACTED = "[REDACTED]"

# Third-party loggers are chatty at INFO and may echo request URLs.
QUIET_LOGGERS = {
    "urllib3": logging.WARNING,
    "requests": logging.WARNING,
    "plaid": logging.WARNING,
    "duckdb": logging.WARNING,
    "tenacity": logging.INFO,
}

_SECRET_PATTERNS = (
    # Plaid access and public tokens
    re.compile(r"\b(?:access|public|link)-(?:sandbox|development|production)-[\w-]+"),
    # Vault envelopes serialized into a message
    re.compile(r'"(?:ciphertext|encrypted)"\s*:\s*"[A-Za-z0-9+/=]+"'),
    # password=..., "password": "...", otp / secret fields alike
    re.compile(
        r"(?i)([\"']?(?:password|passcode|otp|secret|access_token)[\"']?\s*[:=]\s*)"
        r"[\"']?[^\"',\s}]+[\"']?"
    ),
)


class SecretRedactingFilter(logging.Filter):
    """Mask credential material in log records before they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            text = pattern.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
        else:
            text = pattern.sub(REDACTED, text)
    return text


@dataclass
class LoggingConfig:
    """Configuration settings for application logging."""

    level: str = "INFO"
    format_string: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    cli_format_string: str = "%(message)s"
    log_to_file: bool = True
    log_file_path: Path = Path("logs/banklink.log")
    max_file_size_mb: int = 50
    backup_count: int = 5
    force_reconfigure: bool = False

    @classmethod
    def from_environment(cls) -> "LoggingConfig":
        """Build a config from ``LOG_*`` environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_to_file=os.getenv("LOG_TO_FILE", "true").lower() == "true",
            log_file_path=Path(os.getenv("LOG_FILE_PATH", "logs/banklink.log")),
            max_file_size_mb=int(os.getenv("LOG_MAX_FILE_SIZE_MB", "50")),
            backup_count=int(os.getenv("LOG_BACKUP_COUNT", "5")),
        )


def _console_handler(config: LoggingConfig, cli_mode: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    fmt = config.cli_format_string if cli_mode else config.format_string
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def _file_handler(config: LoggingConfig) -> logging.Handler:
    config.log_file_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        config.log_file_path,
        maxBytes=config.max_file_size_mb * 1024 * 1024,
        backupCount=config.backup_count,
    )
    handler.setFormatter(logging.Formatter(config.format_string))
    return handler


def setup_logging(
    config: LoggingConfig | None = None,
    cli_mode: bool = False,
    verbose: bool = False,
) -> None:
    """Configure the root logger.

    Args:
        config: Logging configuration. Loaded from the environment when None.
        cli_mode: Use the bare message format on the console.
        verbose: Force DEBUG level regardless of ``config.level``.
    """
    if config is None:
        config = LoggingConfig.from_environment()

    handlers = [_console_handler(config, cli_mode)]
    if config.log_to_file:
        handlers.append(_file_handler(config))

    redactor = SecretRedactingFilter()
    for handler in handlers:
        handler.addFilter(redactor)

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.level),
        handlers=handlers,
        force=config.force_reconfigure,
    )

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_log_config_summary() -> dict[str, Any]:
    """Describe the active root logger and the environment-derived config."""
    config = LoggingConfig.from_environment()
    root_logger = logging.getLogger()

    return {
        "level": logging.getLevelName(root_logger.level),
        "handlers": [type(h).__name__ for h in root_logger.handlers],
        "redacting": all(
            any(isinstance(f, SecretRedactingFilter) for f in h.filters)
            for h in root_logger.handlers
        ),
        "log_to_file": config.log_to_file,
        "log_file_path": str(config.log_file_path),
    }
