"""BankLink CLI package.

This package provides the command-line interface for linking institutions,
syncing them and inspecting cached financial summaries.
"""

from .main import app, main

__all__ = ["app", "main"]
