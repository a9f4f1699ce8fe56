"""Batch job submission, polling and result copy-back for media services."""

__version__ = "1.0.0"
