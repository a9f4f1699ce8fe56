"""Domain models for batch scanning and result materialization."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .jobs import JobHandle, JobState
from .storage import BlobDescriptor


DEFAULT_MARKER_KEY = "ams_status"


@dataclass(frozen=True)
class SkipPolicy:
    """Which containers and blobs a scan ignores."""

    container_prefixes: Tuple[str, ...] = ("asset-",)
    blob_suffixes: Tuple[str, ...] = (".ism", ".ismc", ".mpi", "_manifest.json", "_metadata.xml")
    skip_processed: bool = True
    marker_key: str = DEFAULT_MARKER_KEY
    skip_containers: Tuple[str, ...] = ()

    def skips_container(self, container_name: str) -> bool:
        """Output containers of earlier jobs and the destination are never scanned."""
        if container_name in self.skip_containers:
            return True
        return any(container_name.startswith(p) for p in self.container_prefixes if p)

    def skip_reason(self, blob: BlobDescriptor) -> Optional[str]:
        """Return why a blob is skipped, or None if it may be submitted."""
        if blob.has_suffix(self.blob_suffixes):
            return "processing artifact"
        if self.skip_processed and blob.is_processed(self.marker_key):
            return f"already marked {self.marker_key}"
        return None


@dataclass
class BatchRecord:
    """
    Jobs submitted for one container batch.

    Owned by the coordinator for the lifetime of one batch; handles are
    replaced wholesale whenever a fresher snapshot is fetched.
    """

    container: str
    capacity: int
    jobs: List[JobHandle] = field(default_factory=list)
    sources: Dict[str, BlobDescriptor] = field(default_factory=dict)
    cursor: Optional[str] = None

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError("Batch capacity must be positive")

    @property
    def submitted(self) -> int:
        return len(self.jobs)

    @property
    def is_full(self) -> bool:
        return self.submitted >= self.capacity

    @property
    def finished(self) -> int:
        return sum(1 for job in self.jobs if job.state == JobState.FINISHED)

    @property
    def errored(self) -> int:
        return sum(1 for job in self.jobs if job.state.is_failure)

    @property
    def processing(self) -> int:
        return self.submitted - self.finished - self.errored

    @property
    def is_closed(self) -> bool:
        return self.finished + self.errored == self.submitted

    def add(self, handle: JobHandle, source: BlobDescriptor) -> None:
        """Track a newly submitted job."""
        if self.is_full:
            raise ValueError(
                f"Batch for {self.container} is full ({self.capacity} jobs)"
            )
        self.jobs.append(handle)
        self.sources[handle.name] = source

    def update(self, handle: JobHandle) -> None:
        """Replace the snapshot of a job with a fresher one."""
        for index, job in enumerate(self.jobs):
            if job.name == handle.name:
                self.jobs[index] = handle
                return
        raise KeyError(f"Job {handle.name} is not part of this batch")

    def pending(self) -> List[JobHandle]:
        return [job for job in self.jobs if not job.is_terminal]

    def summary(self) -> str:
        return (
            f"{self.container}: {self.submitted} submitted, {self.processing} processing, "
            f"{self.finished} finished, {self.errored} errored"
        )


@dataclass
class MaterializeReport:
    """Result of copying one job's outputs."""

    source: str
    destination: str
    copied: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    renamed: Dict[str, str] = field(default_factory=dict)
    source_deleted: bool = False

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class ScanReport:
    """Result of scanning one container."""

    container: str
    skipped_container: bool = False
    pages: int = 0
    batches: int = 0
    submitted: int = 0
    finished: int = 0
    errored: int = 0
    rejected: int = 0
    skipped: int = 0
    orphaned: List[str] = field(default_factory=list)
    materialized: List[MaterializeReport] = field(default_factory=list)

    def absorb(self, record: BatchRecord) -> None:
        """Add the counts of a closed batch."""
        self.batches += 1
        self.finished += record.finished
        self.errored += record.errored

    def __str__(self) -> str:
        if self.skipped_container:
            return f"{self.container}: skipped"
        return (
            f"{self.container}: {self.pages} pages, {self.batches} batches, "
            f"{self.submitted} submitted, {self.finished} finished, {self.errored} errored, "
            f"{self.rejected} rejected, {self.skipped} skipped, {len(self.orphaned)} orphaned"
        )
