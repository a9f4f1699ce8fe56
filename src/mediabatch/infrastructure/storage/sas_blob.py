"""
Blob storage client driven by SAS (capability) URLs.

Infrastructure layer for Azure Blob storage over its REST API. No storage
credentials are needed: every request carries the SAS query string.
"""

import logging
import mimetypes
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, Iterator, Optional
from urllib.parse import quote, unquote, urlencode, urlsplit

import requests
from requests.exceptions import RequestException

from mediabatch.domain.exceptions import AuthorizationExpiredError, StorageError
from mediabatch.domain.storage import (
    BlobDescriptor,
    BlobPage,
    CopyHandle,
    CopyStatus,
)
from mediabatch.shared.retry import RetryStrategy

API_VERSION = "2021-08-06"
AUTH_ERROR_CODES = frozenset({
    "AuthenticationFailed",
    "AuthorizationFailure",
    "AuthorizationPermissionMismatch",
    "AuthorizationResourceTypeMismatch",
})
CHUNK_SIZE = 4 * 1024 * 1024


class _SasClient:
    """Request plumbing shared by the account and container clients."""

    def __init__(
        self,
        url: str,
        retry: Optional[RetryStrategy] = None,
        timeout: float = 60.0,
        logger: Optional[logging.Logger] = None,
        session: Optional[requests.Session] = None
    ):
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"Not a storage URL: {parts.scheme}://{parts.netloc}{parts.path}")

        self._scheme = parts.scheme
        self._netloc = parts.netloc
        self._path = parts.path
        self._sas = parts.query
        self.retry = retry or RetryStrategy(max_attempts=3, backoff_seconds=1.0)
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.session = session or requests.Session()
        self.session.headers.update({'x-ms-version': API_VERSION})

    def _compose(self, path: str, extra: Optional[Dict[str, str]] = None) -> str:
        query = self._sas
        if extra:
            encoded = urlencode(extra)
            query = f"{query}&{encoded}" if query else encoded
        url = f"{self._scheme}://{self._netloc}/{path.lstrip('/')}"
        return f"{url}?{query}" if query else url

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        return self.retry.execute(self._send, method, url, **kwargs)

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        # Never log the SAS token
        target = url.split('?', 1)[0]
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except RequestException as e:
            error_msg = f"Storage request failed: {method} {target}: {e}"
            self.logger.error(error_msg)
            raise StorageError(error_msg) from e

        if response.status_code >= 400:
            raise self._error_for(response, method, target)
        return response

    def _error_for(self, response, method: str, target: str) -> Exception:
        code = response.headers.get('x-ms-error-code', '')
        message = ''
        if response.content:
            try:
                root = ET.fromstring(response.content)
                code = code or (root.findtext('Code') or '')
                message = root.findtext('Message') or ''
            except ET.ParseError:
                message = response.text[:200]

        error_msg = f"{method} {target} returned {response.status_code} {code}".strip()
        if message:
            error_msg = f"{error_msg}: {message.splitlines()[0]}"

        if response.status_code == 403 and (code in AUTH_ERROR_CODES or not code):
            self.logger.error(error_msg)
            return AuthorizationExpiredError(error_msg)
        return StorageError(error_msg, status_code=response.status_code, error_code=code)


class SasBlobContainer(_SasClient):
    """
    Blob container client built from a container SAS URL.

    Implements IBlobContainer and ICopyTarget.
    """

    def __init__(self, container_url: str, **kwargs):
        """
        Initialize container client.

        Args:
            container_url: https://<account>.blob.core.windows.net/<container>?<sas>
            **kwargs: retry, timeout, logger, session
        """
        super().__init__(container_url, **kwargs)
        segments = [s for s in self._path.split('/') if s]
        if not segments:
            raise ValueError("SAS URL does not point at a container")
        self.name = unquote(segments[0])

    def describe(self) -> str:
        return f"{self._scheme}://{self._netloc}/{self.name}"

    def _container_url(self, extra: Optional[Dict[str, str]] = None) -> str:
        return self._compose(quote(self.name, safe=''), extra)

    def _blob_url(self, blob_name: str, extra: Optional[Dict[str, str]] = None) -> str:
        # Percent-encode ':' and friends or job HTTP inputs fail to resolve the blob
        return self._compose(
            f"{quote(self.name, safe='')}/{quote(blob_name, safe='/')}", extra
        )

    def blob_url(self, blob_name: str) -> str:
        return self._blob_url(blob_name)

    def list_blobs(self, page_size: int = 1000, cursor: Optional[str] = None) -> BlobPage:
        """List one page of blobs with their metadata."""
        params = {
            'restype': 'container',
            'comp': 'list',
            'include': 'metadata',
            'maxresults': str(page_size),
        }
        if cursor:
            params['marker'] = cursor

        response = self._request('GET', self._container_url(params))
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise StorageError(f"Invalid listing for container {self.name}: {e}") from e

        items = []
        for node in root.iter('Blob'):
            props = node.find('Properties')
            metadata = {}
            meta_node = node.find('Metadata')
            if meta_node is not None:
                metadata = {child.tag: child.text or '' for child in meta_node}
            items.append(BlobDescriptor(
                name=node.findtext('Name') or '',
                size=int(props.findtext('Content-Length') or 0) if props is not None else 0,
                metadata=metadata,
                content_type=props.findtext('Content-Type') if props is not None else None,
                last_modified=props.findtext('Last-Modified') if props is not None else None,
            ))

        next_cursor = root.findtext('NextMarker') or None
        self.logger.debug(
            f"Listed {len(items)} blobs in {self.name} (more pages: {bool(next_cursor)})"
        )
        return BlobPage(items=items, next_cursor=next_cursor)

    def download_blob(self, blob_name: str, local_path: Path) -> Path:
        """Download a blob to a local file."""
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Downloading {self.name}/{blob_name} -> {local_path}")
        self.retry.execute(self._download_once, blob_name, local_path)
        return local_path

    def _download_once(self, blob_name: str, local_path: Path) -> None:
        response = self._send('GET', self._blob_url(blob_name), stream=True)
        with response, open(local_path, 'wb') as fh:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    fh.write(chunk)

    def upload_file(self, local_path: Path, blob_name: str) -> BlobDescriptor:
        """Upload a local file as a block blob."""
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"File not found: {local_path}")

        size = local_path.stat().st_size
        content_type = mimetypes.guess_type(local_path.name)[0] or 'application/octet-stream'
        self.logger.info(f"Uploading {local_path} -> {self.name}/{blob_name} ({size} bytes)")

        def put_once():
            with open(local_path, 'rb') as fh:
                return self._send(
                    'PUT',
                    self._blob_url(blob_name),
                    data=fh,
                    headers={
                        'x-ms-blob-type': 'BlockBlob',
                        'Content-Type': content_type,
                        'Content-Length': str(size),
                    }
                )

        self.retry.execute(put_once)
        return BlobDescriptor(name=blob_name, size=size, content_type=content_type)

    def start_copy(self, source_url: str, target_name: str) -> CopyHandle:
        """Start a server-side copy from source_url into target_name."""
        response = self._request(
            'PUT',
            self._blob_url(target_name),
            headers={'x-ms-copy-source': source_url}
        )
        return CopyHandle(
            target_name=target_name,
            status=CopyStatus.parse(response.headers.get('x-ms-copy-status', 'pending')),
            copy_id=response.headers.get('x-ms-copy-id'),
        )

    def get_copy_status(self, target_name: str) -> CopyHandle:
        """Read copy progress from the target blob's properties."""
        response = self._request('HEAD', self._blob_url(target_name))
        headers = response.headers
        status = headers.get('x-ms-copy-status')
        return CopyHandle(
            target_name=target_name,
            # A blob without copy properties was written directly and is complete
            status=CopyStatus.parse(status) if status else CopyStatus.SUCCESS,
            copy_id=headers.get('x-ms-copy-id'),
            progress=headers.get('x-ms-copy-progress'),
            description=headers.get('x-ms-copy-status-description'),
        )

    def set_metadata(self, blob_name: str, metadata: Dict[str, str]) -> None:
        """Replace the metadata of a blob."""
        headers = {f"x-ms-meta-{key}": str(value) for key, value in metadata.items()}
        self._request('PUT', self._blob_url(blob_name, {'comp': 'metadata'}), headers=headers)
        self.logger.debug(f"Set metadata on {self.name}/{blob_name}: {sorted(metadata)}")

    def delete_container(self) -> None:
        """Delete the container."""
        self.logger.info(f"Deleting container {self.name}")
        self._request('DELETE', self._container_url({'restype': 'container'}))


class SasBlobAccount(_SasClient):
    """
    Storage account client built from an account SAS URL.

    Implements IBlobAccount.
    """

    def describe(self) -> str:
        return f"{self._scheme}://{self._netloc}"

    def list_containers(self) -> Iterator[str]:
        """Yield every container name, following NextMarker."""
        marker = None
        while True:
            params = {'comp': 'list'}
            if marker:
                params['marker'] = marker
            response = self._request('GET', self._compose('', params))
            try:
                root = ET.fromstring(response.content)
            except ET.ParseError as e:
                raise StorageError(f"Invalid container listing: {e}") from e

            for node in root.iter('Container'):
                name = node.findtext('Name')
                if name:
                    yield name

            marker = root.findtext('NextMarker') or None
            if not marker:
                return

    def get_container(self, name: str) -> SasBlobContainer:
        """Get a client for one container, sharing this account's SAS."""
        return SasBlobContainer(
            self._compose(quote(name, safe='')),
            retry=self.retry,
            timeout=self.timeout,
            logger=self.logger,
            session=self.session,
        )
