"""Shared utilities for the nesting engine."""

import logging

from rich.console import Console
from rich.logging import RichHandler

# Rich console for pretty output
console = Console(stderr=True)


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Set up logging with Rich handler."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    return logging.getLogger("sheetnest")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module."""
    return logging.getLogger(f"sheetnest.{name}")
