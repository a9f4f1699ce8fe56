"""
Blob storage domain models and protocols.

Domain layer for capability-URL (SAS) scoped blob containers.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Iterator, List, Optional, Protocol


@dataclass(frozen=True)
class BlobDescriptor:
    """Blob listing entry."""
    name: str
    size: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def basename(self) -> str:
        """Get blob name without its virtual directory."""
        return PurePosixPath(self.name).name

    def has_suffix(self, suffixes: Iterable[str]) -> bool:
        """Check if the name ends with one of the suffixes (case-insensitive)."""
        lowered = self.name.lower()
        return any(lowered.endswith(s.lower()) for s in suffixes if s)

    def is_processed(self, marker_key: str) -> bool:
        """The status marker is the only idempotency flag."""
        key = marker_key.lower()
        return any(k.lower() == key and v for k, v in self.metadata.items())

    def __str__(self) -> str:
        return f"{self.name} ({self.size} bytes)"


@dataclass(frozen=True)
class BlobPage:
    """One page of a container listing."""
    items: List[BlobDescriptor]
    next_cursor: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return not self.next_cursor


@dataclass
class S3Credentials:
    """Credentials for an S3-compatible endpoint (AWS S3, Backblaze B2...)."""
    key_id: str
    secret_key: str
    endpoint: Optional[str] = None
    region: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'S3Credentials':
        """Load from environment variables."""
        import os
        return cls(
            key_id=os.getenv('S3_KEY') or os.getenv('B2_KEY', ''),
            secret_key=os.getenv('S3_SECRET') or os.getenv('B2_SECRET', ''),
            endpoint=os.getenv('S3_ENDPOINT') or os.getenv('B2_ENDPOINT') or None,
            region=os.getenv('S3_REGION') or None,
        )

    def validate(self) -> bool:
        """Check if credentials are set."""
        return bool(self.key_id and self.secret_key)


class CopyStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CopyStatus":
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.FAILED


@dataclass(frozen=True)
class CopyHandle:
    """State of one copy into a destination."""
    target_name: str
    status: CopyStatus
    copy_id: Optional[str] = None
    progress: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == CopyStatus.PENDING

    @property
    def succeeded(self) -> bool:
        return self.status == CopyStatus.SUCCESS


class ICopyTarget(Protocol):
    """Anything the materializer can copy blobs into."""

    def describe(self) -> str:
        """Human-readable location for logs."""
        ...

    def start_copy(self, source_url: str, target_name: str) -> CopyHandle:
        """
        Start copying the blob behind source_url into target_name.

        Returns:
            Copy handle (may still be pending)
        """
        ...

    def get_copy_status(self, target_name: str) -> CopyHandle:
        """Get the current state of a copy started with start_copy."""
        ...


class IBlobContainer(ICopyTarget, Protocol):
    """Protocol for a blob container reachable through a capability URL."""

    name: str

    def list_blobs(self, page_size: int = 1000, cursor: Optional[str] = None) -> BlobPage:
        """
        List one page of blobs, metadata included.

        Args:
            page_size: Maximum blobs in the page
            cursor: Continuation cursor from the previous page

        Returns:
            Page with items and the next cursor (None on the last page)
        """
        ...

    def blob_url(self, blob_name: str) -> str:
        """Capability URL granting read access to one blob."""
        ...

    def download_blob(self, blob_name: str, local_path: Path) -> Path:
        """Download a blob to a local file."""
        ...

    def upload_file(self, local_path: Path, blob_name: str) -> BlobDescriptor:
        """Upload a local file as a blob."""
        ...

    def set_metadata(self, blob_name: str, metadata: Dict[str, str]) -> None:
        """Replace the metadata of a blob."""
        ...

    def delete_container(self) -> None:
        """Delete the container and everything in it."""
        ...


class IBlobAccount(Protocol):
    """Protocol for a storage account that holds containers."""

    def list_containers(self) -> Iterator[str]:
        """Yield every container name, following continuation markers."""
        ...

    def get_container(self, name: str) -> IBlobContainer:
        """Get a client for one container."""
        ...


def iter_pages(
    container: IBlobContainer,
    page_size: int = 1000,
    cursor: Optional[str] = None
) -> Iterator[BlobPage]:
    """
    Lazily walk a container listing page by page.

    Restartable: pass the next_cursor of the last consumed page to resume.
    """
    while True:
        page = container.list_blobs(page_size=page_size, cursor=cursor)
        yield page
        if page.is_last:
            return
        cursor = page.next_cursor


def iter_blobs(container: IBlobContainer, page_size: int = 1000) -> Iterator[BlobDescriptor]:
    """Yield every blob of a container."""
    for page in iter_pages(container, page_size=page_size):
        yield from page.items
