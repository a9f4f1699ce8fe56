"""Pick a storage client from a URL."""

import logging
from typing import Optional, Tuple
from urllib.parse import urlsplit

from mediabatch.domain.storage import IBlobAccount, IBlobContainer, S3Credentials
from mediabatch.infrastructure.storage.s3_blob import S3BlobAccount, S3BlobContainer
from mediabatch.infrastructure.storage.sas_blob import SasBlobAccount, SasBlobContainer
from mediabatch.shared.retry import RetryStrategy


def _split_s3(url: str) -> Tuple[str, str]:
    parts = urlsplit(url)
    if not parts.netloc:
        raise ValueError("S3 URL needs a bucket: s3://bucket[/prefix]")
    return parts.netloc, parts.path.strip('/')


def is_account_url(url: str) -> bool:
    """True when the URL names a whole account (no container path)."""
    parts = urlsplit(url)
    return not parts.path.strip('/')


def open_container(
    url: str,
    retry: Optional[RetryStrategy] = None,
    credentials: Optional[S3Credentials] = None,
    logger: Optional[logging.Logger] = None
) -> IBlobContainer:
    """
    Open a container client.

    Args:
        url: s3://bucket/prefix or a container SAS URL
        retry: Retry strategy for every call
        credentials: S3 credentials (env if None); unused for SAS URLs
        logger: Logger instance

    Returns:
        Container client
    """
    if url.startswith('s3://'):
        bucket, prefix = _split_s3(url)
        return S3BlobContainer(bucket, prefix=prefix, credentials=credentials, retry=retry, logger=logger)
    return SasBlobContainer(url, retry=retry, logger=logger)


def open_account(
    url: str,
    retry: Optional[RetryStrategy] = None,
    credentials: Optional[S3Credentials] = None,
    logger: Optional[logging.Logger] = None
) -> IBlobAccount:
    """Open an account client from s3://bucket or an account SAS URL."""
    if url.startswith('s3://'):
        bucket, _ = _split_s3(url)
        return S3BlobAccount(bucket, credentials=credentials, retry=retry, logger=logger)
    return SasBlobAccount(url, retry=retry, logger=logger)
