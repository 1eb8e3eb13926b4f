"""
Shared utilities for the tsquery engine.
"""
from .logger import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
]
