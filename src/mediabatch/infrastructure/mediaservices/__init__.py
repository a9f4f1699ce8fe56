"""Media services infrastructure."""

from mediabatch.infrastructure.mediaservices.client import MediaServicesClient

__all__ = ['MediaServicesClient']
