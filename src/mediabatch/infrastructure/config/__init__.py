"""Configuration package."""

from mediabatch.infrastructure.config.loader import ConfigLoader, BatchSettings

__all__ = ["ConfigLoader", "BatchSettings"]
