"""Copy job outputs to their final destination."""

import logging
import re
import time
from contextlib import nullcontext
from pathlib import Path, PurePosixPath
from typing import Callable, ContextManager, Dict, Iterable, List, Optional, Tuple

from mediabatch.domain.exceptions import (
    AuthorizationExpiredError,
    CopyFailedError,
    RemoteServiceError,
)
from mediabatch.domain.models import MaterializeReport
from mediabatch.domain.protocols import IMetricsCollector
from mediabatch.domain.storage import (
    BlobDescriptor,
    CopyHandle,
    CopyStatus,
    IBlobContainer,
    ICopyTarget,
    iter_blobs,
)
from mediabatch.infrastructure.storage.local import LocalDirectoryDestination
from mediabatch.shared.logging import get_logger

DEFAULT_THUMBNAIL_PATTERN = r"Thumbnail\d*\.(jpg|jpeg|png)"
DEFAULT_MANIFEST_SUFFIX = "_manifest.json"


class ResultMaterializer:
    """
    Copies the blobs a job produced into a destination.

    Copies are fail-soft: a failed copy is recorded and the rest continue.
    The source is deleted only once every copy was attempted and none failed.
    """

    def __init__(
        self,
        poll_interval: float = 2.0,
        copy_timeout: float = 300.0,
        thumbnail_pattern: str = DEFAULT_THUMBNAIL_PATTERN,
        manifest_suffix: str = DEFAULT_MANIFEST_SUFFIX,
        page_size: int = 1000,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[IMetricsCollector] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.poll_interval = poll_interval
        self.copy_timeout = copy_timeout
        self._thumbnail = re.compile(thumbnail_pattern, re.IGNORECASE)
        self.manifest_suffix = manifest_suffix
        self.page_size = page_size
        self._logger = logger or get_logger(__name__)
        self._metrics = metrics
        self._sleep = sleep or time.sleep
        self._clock = clock or time.monotonic

    def _count(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment_counter(name)

    def _timed(self, name: str) -> ContextManager[None]:
        return self._metrics.timed(name) if self._metrics is not None else nullcontext()

    def _manifest_tokens(self, blobs: Iterable[BlobDescriptor]) -> Dict[str, str]:
        """Map each virtual directory to the token of the manifest it holds."""
        tokens: Dict[str, str] = {}
        for blob in blobs:
            base = blob.basename
            if base.lower().endswith(self.manifest_suffix.lower()) and len(base) > len(self.manifest_suffix):
                parent = str(PurePosixPath(blob.name).parent)
                tokens.setdefault(parent, base[:-len(self.manifest_suffix)])
        return tokens

    def target_name(self, blob: BlobDescriptor, tokens: Dict[str, str], flatten: bool = False) -> str:
        """Destination name for a blob, thumbnail rename included."""
        path = PurePosixPath(blob.name)
        base = path.name
        if self._thumbnail.fullmatch(base):
            token = tokens.get(str(path.parent))
            if token is None and len(set(tokens.values())) == 1:
                token = next(iter(tokens.values()))
            if token:
                base = f"{token}_{base}"
        if flatten or str(path.parent) == '.':
            return base
        return str(path.parent / base)

    def plan(
        self,
        blobs: List[BlobDescriptor],
        exclude_extensions: Iterable[str] = (),
        flatten: bool = False
    ) -> Tuple[List[Tuple[str, str]], List[str]]:
        """
        Decide which blobs to copy and under which names.

        Returns:
            (copies as (source name, target name), excluded names)
        """
        exclude = tuple(exclude_extensions)
        tokens = self._manifest_tokens(blobs)
        copies: List[Tuple[str, str]] = []
        excluded: List[str] = []
        for blob in blobs:
            if exclude and blob.has_suffix(exclude):
                excluded.append(blob.name)
                continue
            copies.append((blob.name, self.target_name(blob, tokens, flatten)))
        return copies, excluded

    def materialize(
        self,
        source: IBlobContainer,
        destination: ICopyTarget,
        exclude_extensions: Iterable[str] = (),
        delete_source_on_success: bool = False,
        flatten: bool = False,
        delete_source: Optional[Callable[[], object]] = None
    ) -> MaterializeReport:
        """
        Copy every eligible blob of source into destination.

        Args:
            source: Container holding a job's outputs
            destination: Remote container or local directory
            exclude_extensions: Suffixes never exported (.ism, .ismc, .mpi...)
            delete_source_on_success: Delete the source once all copies succeeded
            flatten: Drop virtual directories from target names
            delete_source: Deletes the source (source.delete_container by default);
                returning False reports the deletion as failed

        Returns:
            Report with copied, excluded, failed and renamed blobs
        """
        report = MaterializeReport(source=source.name, destination=destination.describe())
        with self._timed("materialize"):
            blobs = list(iter_blobs(source, page_size=self.page_size))
            copies, report.excluded = self.plan(blobs, exclude_extensions, flatten)
            self._logger.info(
                f"Materializing {len(copies)} blobs from {source.name} to {report.destination} "
                f"({len(report.excluded)} excluded)"
            )

            seen: Dict[str, str] = {}
            for name, target in copies:
                if target in seen:
                    report.failed[name] = f"target {target} already written from {seen[target]}"
                    self._count("copies_failed")
                    self._logger.warning(f"Not copying {name}: {report.failed[name]}")
                    continue
                seen[target] = name
                if target != name and PurePosixPath(target).name != PurePosixPath(name).name:
                    report.renamed[name] = target

                try:
                    self.copy_blob(source, destination, name, target)
                except CopyFailedError as e:
                    report.failed[name] = str(e)
                    self._count("copies_failed")
                    self._logger.error(str(e))
                    continue
                report.copied.append(target)
                self._count("copies_succeeded")

            if delete_source_on_success:
                if report.failed:
                    self._logger.warning(
                        f"Keeping {source.name}: {len(report.failed)} of {len(copies)} copies failed"
                    )
                else:
                    report.source_deleted = self._delete_source(source, delete_source)

        self._logger.info(
            f"Materialized {source.name}: {len(report.copied)} copied, "
            f"{len(report.failed)} failed, {len(report.renamed)} renamed"
        )
        return report

    def copy_blob(
        self,
        source: IBlobContainer,
        destination: ICopyTarget,
        name: str,
        target: str
    ) -> CopyHandle:
        """
        Copy one blob and wait for the copy to leave the pending state.

        Raises:
            CopyFailedError: Copy failed, was aborted or timed out
            AuthorizationExpiredError: A SAS URL expired
        """
        try:
            handle = destination.start_copy(source.blob_url(name), target)
            handle = self._await_copy(destination, handle)
        except AuthorizationExpiredError:
            raise
        except RemoteServiceError as e:
            raise CopyFailedError(f"Copy of {name} to {target} failed: {e}") from e

        if not handle.succeeded:
            detail = f": {handle.description}" if handle.description else ""
            raise CopyFailedError(f"Copy of {name} to {target} ended {handle.status.value}{detail}")
        self._logger.debug(f"Copied {name} -> {target}")
        return handle

    def _await_copy(self, destination: ICopyTarget, handle: CopyHandle) -> CopyHandle:
        deadline = self._clock() + self.copy_timeout
        while handle.is_pending:
            if self._clock() >= deadline:
                return CopyHandle(
                    target_name=handle.target_name,
                    status=CopyStatus.FAILED,
                    copy_id=handle.copy_id,
                    progress=handle.progress,
                    description=f"timed out after {self.copy_timeout:.0f}s",
                )
            self._sleep(self.poll_interval)
            handle = destination.get_copy_status(handle.target_name)
            self._logger.debug(f"Copy {handle.target_name}: {handle.status.value} {handle.progress or ''}")
        return handle

    def _delete_source(self, source: IBlobContainer, delete_source: Optional[Callable[[], object]]) -> bool:
        self._logger.info(f"All copies succeeded, deleting {source.name}")
        try:
            result = (delete_source or source.delete_container)()
        except AuthorizationExpiredError:
            raise
        except RemoteServiceError as e:
            self._logger.error(f"Could not delete {source.name}: {e}")
            return False
        return result is not False


def download_asset(
    orchestrator,
    materializer: ResultMaterializer,
    asset_name: str,
    output_dir: Path,
    exclude_extensions: Iterable[str] = (),
    flatten: bool = False
) -> MaterializeReport:
    """Download the contents of an asset into output_dir/asset_name."""
    source = orchestrator.open_asset_container(asset_name, permissions="Read")
    destination = LocalDirectoryDestination(Path(output_dir) / asset_name)
    return materializer.materialize(
        source,
        destination,
        exclude_extensions=exclude_extensions,
        flatten=flatten,
    )
