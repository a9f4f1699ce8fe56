"""Storage infrastructure."""

from mediabatch.infrastructure.storage.sas_blob import SasBlobAccount, SasBlobContainer
from mediabatch.infrastructure.storage.s3_blob import S3BlobAccount, S3BlobContainer
from mediabatch.infrastructure.storage.local import LocalDirectoryDestination
from mediabatch.infrastructure.storage.factory import open_account, open_container, is_account_url

__all__ = [
    'SasBlobAccount',
    'SasBlobContainer',
    'S3BlobAccount',
    'S3BlobContainer',
    'LocalDirectoryDestination',
    'open_account',
    'open_container',
    'is_account_url',
]
