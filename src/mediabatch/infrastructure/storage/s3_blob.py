"""
S3-compatible storage client implementation.

Infrastructure layer for S3-compatible buckets (AWS S3, Backblaze B2) using
boto3. A "container" is a key prefix inside a bucket.
"""

import logging
import mimetypes
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import boto3
import requests
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError
from requests.exceptions import RequestException

from mediabatch.domain.exceptions import AuthorizationExpiredError, StorageError
from mediabatch.domain.storage import (
    BlobDescriptor,
    BlobPage,
    CopyHandle,
    CopyStatus,
    S3Credentials,
)
from mediabatch.shared.retry import RetryStrategy

AUTH_ERROR_CODES = frozenset({
    'AccessDenied',
    'ExpiredToken',
    'InvalidAccessKeyId',
    'SignatureDoesNotMatch',
    'TokenRefreshRequired',
})
NOT_FOUND_CODES = frozenset({'404', 'NoSuchKey', 'NotFound'})


def create_s3_client(credentials: Optional[S3Credentials] = None):
    """Create a boto3 S3 client from credentials (env if None)."""
    credentials = credentials or S3Credentials.from_env()
    if not credentials.validate():
        raise ValueError("S3 credentials not set (S3_KEY/B2_KEY, S3_SECRET/B2_SECRET)")

    kwargs: Dict[str, Any] = {
        'aws_access_key_id': credentials.key_id,
        'aws_secret_access_key': credentials.secret_key,
    }
    if credentials.endpoint:
        kwargs['endpoint_url'] = credentials.endpoint
    if credentials.region:
        kwargs['region_name'] = credentials.region
    return boto3.client('s3', **kwargs)


class _S3Base:
    """Error translation and retries shared by bucket and prefix clients."""

    def __init__(
        self,
        bucket: str,
        credentials: Optional[S3Credentials] = None,
        client=None,
        retry: Optional[RetryStrategy] = None,
        logger: Optional[logging.Logger] = None
    ):
        if not bucket:
            raise ValueError("Bucket name is required")
        self.bucket = bucket
        self.s3 = client or create_s3_client(credentials)
        self.retry = retry or RetryStrategy(max_attempts=3, backoff_seconds=1.0)
        self.logger = logger or logging.getLogger(__name__)

    def _call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        return self.retry.execute(self._translate, operation, func, *args, **kwargs)

    def _translate(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except ClientError as e:
            raise self._client_error(operation, e) from e
        except S3UploadFailedError as e:
            # The transfer manager wraps the ClientError of the failed part
            if isinstance(e.__cause__, ClientError):
                raise self._client_error(operation, e.__cause__) from e
            error_msg = f"{operation} failed on s3://{self.bucket}: {e}"
            if any(f"({code})" in str(e) for code in AUTH_ERROR_CODES):
                self.logger.error(error_msg)
                raise AuthorizationExpiredError(error_msg) from e
            raise StorageError(error_msg) from e
        except BotoCoreError as e:
            error_msg = f"{operation} failed on s3://{self.bucket}: {e}"
            self.logger.error(error_msg)
            raise StorageError(error_msg) from e

    def _client_error(self, operation: str, e: ClientError) -> Exception:
        error = e.response.get('Error', {})
        code = str(error.get('Code', ''))
        status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        error_msg = f"{operation} failed on s3://{self.bucket}: {code} {error.get('Message', '')}".strip()
        if code in AUTH_ERROR_CODES:
            self.logger.error(error_msg)
            return AuthorizationExpiredError(error_msg)
        if status is None and code.isdigit():
            status = int(code)
        return StorageError(error_msg, status_code=status, error_code=code)


class S3BlobContainer(_S3Base):
    """
    Blob container over a bucket prefix.

    Implements IBlobContainer and ICopyTarget.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = '',
        url_expiry: int = 3600,
        **kwargs
    ):
        """
        Initialize S3 container client.

        Args:
            bucket: Bucket name
            prefix: Key prefix acting as the container ('' for the whole bucket)
            url_expiry: Lifetime of presigned URLs in seconds
            **kwargs: credentials, client, retry, logger
        """
        super().__init__(bucket, **kwargs)
        self.prefix = prefix.strip('/') + '/' if prefix.strip('/') else ''
        self.name = self.prefix.rstrip('/') or bucket
        self.url_expiry = url_expiry

    def describe(self) -> str:
        return f"s3://{self.bucket}/{self.prefix}"

    def _key(self, blob_name: str) -> str:
        return f"{self.prefix}{blob_name.lstrip('/')}"

    def list_blobs(self, page_size: int = 1000, cursor: Optional[str] = None) -> BlobPage:
        """List one page of objects under the prefix, metadata included."""
        params: Dict[str, Any] = {
            'Bucket': self.bucket,
            'Prefix': self.prefix,
            'MaxKeys': page_size,
        }
        if cursor:
            params['ContinuationToken'] = cursor

        response = self._call('ListObjectsV2', self.s3.list_objects_v2, **params)

        items = []
        for item in response.get('Contents', []):
            key = item['Key']
            if key.endswith('/'):
                continue
            # Listings carry no user metadata
            head = self._call('HeadObject', self.s3.head_object, Bucket=self.bucket, Key=key)
            items.append(BlobDescriptor(
                name=key[len(self.prefix):],
                size=item.get('Size', 0),
                metadata=dict(head.get('Metadata') or {}),
                content_type=head.get('ContentType'),
                last_modified=str(item.get('LastModified', '')),
            ))

        next_cursor = response.get('NextContinuationToken') if response.get('IsTruncated') else None
        self.logger.debug(f"Listed {len(items)} objects in {self.describe()}")
        return BlobPage(items=items, next_cursor=next_cursor)

    def blob_url(self, blob_name: str) -> str:
        """Presigned GET URL: the capability URL handed to remote jobs."""
        return self._call(
            'GeneratePresignedUrl',
            self.s3.generate_presigned_url,
            'get_object',
            Params={'Bucket': self.bucket, 'Key': self._key(blob_name)},
            ExpiresIn=self.url_expiry
        )

    def download_blob(self, blob_name: str, local_path: Path) -> Path:
        """Download an object to a local file."""
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Downloading s3://{self.bucket}/{self._key(blob_name)} -> {local_path}")
        self._call(
            'DownloadFile',
            self.s3.download_file,
            self.bucket,
            self._key(blob_name),
            str(local_path)
        )
        return local_path

    def upload_file(self, local_path: Path, blob_name: str) -> BlobDescriptor:
        """Upload a local file."""
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"File not found: {local_path}")

        size = local_path.stat().st_size
        content_type = mimetypes.guess_type(local_path.name)[0] or 'application/octet-stream'
        key = self._key(blob_name)
        self.logger.info(f"Uploading {local_path} -> s3://{self.bucket}/{key} ({size} bytes)")
        self._call(
            'UploadFile',
            self.s3.upload_file,
            str(local_path),
            self.bucket,
            key,
            ExtraArgs={'ContentType': content_type}
        )
        return BlobDescriptor(name=blob_name, size=size, content_type=content_type)

    def start_copy(self, source_url: str, target_name: str) -> CopyHandle:
        """
        Copy the blob behind source_url into target_name.

        S3 cannot copy from a foreign URL server-side, so the body is streamed
        through this process; the copy is complete when this returns. A
        retried attempt reopens the source, since a partly read stream cannot
        be rewound.
        """
        key = self._key(target_name)

        def copy_once() -> None:
            with requests.get(source_url, stream=True, timeout=60) as response:
                response.raise_for_status()
                response.raw.decode_content = True
                self._translate('UploadFileobj', self.s3.upload_fileobj, response.raw, self.bucket, key)

        try:
            self.retry.execute(copy_once)
        except RequestException as e:
            # Source side failed; keep the target-side error path for the caller
            self.logger.error(f"Copy into s3://{self.bucket}/{key} failed reading source: {e}")
            return CopyHandle(target_name=target_name, status=CopyStatus.FAILED, description=str(e))

        return CopyHandle(target_name=target_name, status=CopyStatus.SUCCESS)

    def get_copy_status(self, target_name: str) -> CopyHandle:
        """Copies finish synchronously; report whether the target exists."""
        try:
            self._call('HeadObject', self.s3.head_object, Bucket=self.bucket, Key=self._key(target_name))
        except StorageError as e:
            if e.error_code in NOT_FOUND_CODES or e.status_code == 404:
                return CopyHandle(target_name=target_name, status=CopyStatus.FAILED, description="missing")
            raise
        return CopyHandle(target_name=target_name, status=CopyStatus.SUCCESS)

    def set_metadata(self, blob_name: str, metadata: Dict[str, str]) -> None:
        """Replace object metadata with an in-place copy."""
        key = self._key(blob_name)
        self._call(
            'CopyObject',
            self.s3.copy_object,
            Bucket=self.bucket,
            Key=key,
            CopySource={'Bucket': self.bucket, 'Key': key},
            Metadata={k: str(v) for k, v in metadata.items()},
            MetadataDirective='REPLACE'
        )
        self.logger.debug(f"Set metadata on s3://{self.bucket}/{key}: {sorted(metadata)}")

    def delete_container(self) -> None:
        """Delete every object under the prefix."""
        self.logger.info(f"Deleting all objects under {self.describe()}")
        cursor = None
        while True:
            params: Dict[str, Any] = {'Bucket': self.bucket, 'Prefix': self.prefix, 'MaxKeys': 1000}
            if cursor:
                params['ContinuationToken'] = cursor
            response = self._call('ListObjectsV2', self.s3.list_objects_v2, **params)
            keys: List[Dict[str, str]] = [{'Key': item['Key']} for item in response.get('Contents', [])]
            if keys:
                self._call(
                    'DeleteObjects',
                    self.s3.delete_objects,
                    Bucket=self.bucket,
                    Delete={'Objects': keys, 'Quiet': True}
                )
            if not response.get('IsTruncated'):
                return
            cursor = response.get('NextContinuationToken')


class S3BlobAccount(_S3Base):
    """
    A bucket whose top-level prefixes are treated as containers.

    Implements IBlobAccount.
    """

    def describe(self) -> str:
        return f"s3://{self.bucket}"

    def list_containers(self) -> Iterator[str]:
        """Yield every top-level prefix, following continuation tokens."""
        cursor = None
        while True:
            params: Dict[str, Any] = {'Bucket': self.bucket, 'Delimiter': '/'}
            if cursor:
                params['ContinuationToken'] = cursor
            response = self._call('ListObjectsV2', self.s3.list_objects_v2, **params)
            for entry in response.get('CommonPrefixes', []):
                name = entry.get('Prefix', '').rstrip('/')
                if name:
                    yield name
            if not response.get('IsTruncated'):
                return
            cursor = response.get('NextContinuationToken')

    def get_container(self, name: str) -> S3BlobContainer:
        return S3BlobContainer(
            self.bucket,
            prefix=name,
            client=self.s3,
            retry=self.retry,
            logger=self.logger,
        )
