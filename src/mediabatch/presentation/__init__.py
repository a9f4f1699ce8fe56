"""Presentation layer package."""

from mediabatch.presentation.cli import main

__all__ = ["main"]
