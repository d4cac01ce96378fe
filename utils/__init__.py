# utils/__init__.py
"""General utilities for the generation pipeline."""

from .logging import setup_logging

__all__ = ["setup_logging"]
