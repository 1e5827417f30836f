"""Centralized logging configuration for BankLink.

Standard usage:
    ```python
    import logging
    from banklink.logging import setup_logging

    # Configure once at application startup
    setup_logging()

    # Get loggers in each module
    logger = logging.getLogger(__name__)
    ```
"""

from .config import (
    LoggingConfig,
    SecretRedactingFilter,
    get_log_config_summary,
    redact,
    setup_logging,
)

__all__ = [
    "LoggingConfig",
    "SecretRedactingFilter",
    "get_log_config_summary",
    "redact",
    "setup_logging",
]
