"""Scan storage for media files and encode them in bounded batches."""

import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass, replace
from typing import Callable, ContextManager, Iterable, List, Optional, Sequence

from mediabatch.application.job_orchestrator import JobOrchestrator
from mediabatch.application.materializer import ResultMaterializer
from mediabatch.domain.exceptions import (
    AuthorizationExpiredError,
    InvalidArgumentError,
    RemoteServiceError,
)
from mediabatch.domain.jobs import JobHandle, JobState
from mediabatch.domain.models import BatchRecord, MaterializeReport, ScanReport, SkipPolicy
from mediabatch.domain.protocols import IMetricsCollector
from mediabatch.domain.storage import (
    BlobDescriptor,
    IBlobAccount,
    IBlobContainer,
    ICopyTarget,
    iter_pages,
)
from mediabatch.infrastructure.config.loader import BatchSettings
from mediabatch.shared.logging import get_logger

JOB_METADATA_KEY = "ams_job"


@dataclass
class _Orphan:
    """A job left running when its batch stopped waiting."""
    container: IBlobContainer
    handle: JobHandle
    source: BlobDescriptor
    report: ScanReport


class BatchCoordinator:
    """
    Submits eligible blobs as jobs, one bounded batch at a time.

    Each batch is waited on until every job is terminal before the scan
    moves on, so in-flight jobs never exceed the batch size plus whatever a
    batch timeout left running (capped by max_in_flight).
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        materializer: ResultMaterializer,
        settings: BatchSettings,
        destination: Optional[ICopyTarget] = None,
        output_container_factory: Optional[Callable[[str], IBlobContainer]] = None,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[IMetricsCollector] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize coordinator.

        Args:
            orchestrator: Submits and polls jobs
            materializer: Copies outputs of finished jobs
            settings: Batch, filter and materialization settings
            destination: Where finished outputs go (None: leave them in place)
            output_container_factory: Opens the container of an output asset
            logger: Logger instance
            metrics: Metrics collector
            sleep: Sleep function (time.sleep by default)
            clock: Monotonic clock (time.monotonic by default)
        """
        self._orchestrator = orchestrator
        self._materializer = materializer
        self.settings = settings
        self._destination = destination
        self._open_output = output_container_factory or self._open_output_asset
        self._logger = logger or get_logger(__name__)
        self._metrics = metrics
        self._sleep = sleep or time.sleep
        self._clock = clock or time.monotonic
        self._orphans: List[_Orphan] = []

    def _count(self, name: str, amount: int = 1) -> None:
        if self._metrics is not None:
            self._metrics.increment_counter(name, amount)

    def _timed(self, name: str) -> ContextManager[None]:
        return self._metrics.timed(name) if self._metrics is not None else nullcontext()

    @property
    def orphans(self) -> List[JobHandle]:
        return [orphan.handle for orphan in self._orphans]

    def _skip_policy(self, skip_policy: Optional[SkipPolicy]) -> SkipPolicy:
        policy = skip_policy or self.settings.skip_policy()
        destination_name = getattr(self._destination, "name", None)
        if destination_name and destination_name not in policy.skip_containers:
            # Never encode what this run copies out
            policy = SkipPolicy(
                container_prefixes=policy.container_prefixes,
                blob_suffixes=policy.blob_suffixes,
                skip_processed=policy.skip_processed,
                marker_key=policy.marker_key,
                skip_containers=policy.skip_containers + (destination_name,),
            )
        return policy

    def scan_account(
        self,
        account: IBlobAccount,
        extension_filters: Optional[Sequence[str]] = None,
        batch_size: Optional[int] = None,
        skip_policy: Optional[SkipPolicy] = None
    ) -> List[ScanReport]:
        """Scan every container of a storage account, one after another."""
        reports = []
        for name in account.list_containers():
            container = account.get_container(name)
            reports.append(self.scan_and_submit(container, extension_filters, batch_size, skip_policy))
        self.drain_orphans()
        return reports

    def scan_and_submit(
        self,
        container: IBlobContainer,
        extension_filters: Optional[Sequence[str]] = None,
        batch_size: Optional[int] = None,
        skip_policy: Optional[SkipPolicy] = None
    ) -> ScanReport:
        """
        Submit every eligible blob of a container in batches of batch_size.

        Every page of the listing is drained; a page without eligible blobs
        moves on to the next one. A batch closes when it is full or its page
        ends, and is waited on before the scan continues.

        Raises:
            AuthorizationExpiredError: The SAS URL or access token expired
        """
        filters = tuple(extension_filters or self.settings.extension_filters)
        size = batch_size or self.settings.batch_size
        policy = self._skip_policy(skip_policy)
        report = ScanReport(container=container.name)

        if policy.skips_container(container.name):
            self._logger.info(f"Skipping container {container.name}")
            report.skipped_container = True
            return report

        self._logger.info(f"Scanning container {container.name} for {', '.join(filters)}")
        record: Optional[BatchRecord] = None
        try:
            for page in iter_pages(container, page_size=size):
                report.pages += 1
                self._count("pages_scanned")

                for blob in page.items:
                    reason = self._ineligible(blob, filters, policy)
                    if reason:
                        report.skipped += 1
                        self._count("blobs_skipped")
                        self._logger.debug(f"Skipping {container.name}/{blob.name}: {reason}")
                        continue

                    if record is None:
                        self._reserve_capacity(size)
                        record = BatchRecord(container=container.name, capacity=size, cursor=page.next_cursor)

                    handle = self._submit(container, blob)
                    if handle is None:
                        report.rejected += 1
                        continue
                    record.add(handle, blob)
                    report.submitted += 1

                    if record.is_full:
                        self._close_batch(container, record, report)
                        record = None

                if record is not None and record.submitted:
                    self._close_batch(container, record, report)
                record = None
        except AuthorizationExpiredError:
            if record is not None:
                self._orphan_pending(container, record, report)
                self._logger.warning(
                    f"Scan of {container.name} aborted with jobs running: {', '.join(report.orphaned)}"
                )
            raise

        self._logger.info(f"Finished scanning {report}")
        return report

    def _ineligible(
        self,
        blob: BlobDescriptor,
        filters: Sequence[str],
        policy: SkipPolicy
    ) -> Optional[str]:
        if not blob.has_suffix(filters):
            return "extension not selected"
        return policy.skip_reason(blob)

    def _submit(self, container: IBlobContainer, blob: BlobDescriptor) -> Optional[JobHandle]:
        try:
            return self._orchestrator.submit_url(
                container.blob_url(blob.name),
                self.settings.transform_name,
                correlation={"container": container.name, "blob": blob.name},
            )
        except InvalidArgumentError as e:
            self._logger.warning(f"Job for {container.name}/{blob.name} rejected: {e}")
            return None
        except AuthorizationExpiredError:
            raise
        except RemoteServiceError as e:
            # Retries are spent; the blob stays unmarked for the next scan
            self._logger.error(f"Job for {container.name}/{blob.name} could not be submitted: {e}")
            return None

    def wait_for_batch(
        self,
        record: BatchRecord,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None
    ) -> BatchRecord:
        """
        Re-poll the batch's unfinished jobs until finished + errored == submitted.

        With a timeout, stops waiting once it elapses and leaves the
        remaining jobs running.
        """
        interval = poll_interval or self.settings.poll_interval_seconds
        limit = self.settings.batch_timeout_seconds if timeout is None else timeout
        deadline = None if limit is None else self._clock() + limit

        with self._timed("batch_wait"):
            while not record.is_closed:
                if deadline is not None and self._clock() >= deadline:
                    self._logger.warning(
                        f"Stopped waiting on batch after {limit:.0f}s: {record.summary()}"
                    )
                    break
                self._sleep(interval)
                for job in record.pending():
                    fresh = self._poll(job)
                    if fresh.state != job.state:
                        self._logger.debug(f"{fresh}")
                    record.update(fresh)
                self._logger.info(f"Batch {record.summary()}")
        return record

    def _poll(self, job: JobHandle) -> JobHandle:
        """Refresh a job; one whose status can no longer be read closes as errored."""
        try:
            return self._orchestrator.refresh(job)
        except AuthorizationExpiredError:
            raise
        except RemoteServiceError as e:
            self._logger.error(f"Lost track of job {job.name}: {e}")
            return replace(job, state=JobState.ERROR, error_message=f"status unavailable: {e}")

    def _close_batch(self, container: IBlobContainer, record: BatchRecord, report: ScanReport) -> None:
        self._logger.info(f"Waiting on batch of {record.submitted} jobs from {container.name}")
        self.wait_for_batch(record)

        for handle in record.jobs:
            if handle.is_terminal:
                self._finalize(container, handle, record.sources[handle.name], report)
        self._orphan_pending(container, record, report)
        report.absorb(record)

    def _orphan_pending(self, container: IBlobContainer, record: BatchRecord, report: ScanReport) -> None:
        """Track the batch's running jobs so a later reconcile finalizes them."""
        for handle in record.pending():
            if handle.name in report.orphaned:
                continue
            report.orphaned.append(handle.name)
            self._orphans.append(_Orphan(container, handle, record.sources[handle.name], report))

    def _finalize(
        self,
        container: IBlobContainer,
        handle: JobHandle,
        source: BlobDescriptor,
        report: ScanReport
    ) -> None:
        """Materialize a finished job and mark its source so it is not submitted again."""
        if handle.state == JobState.FINISHED:
            self._count("jobs_finished")
            if self._destination is not None:
                report.materialized.extend(self.materialize_job(handle))
        else:
            self._count("jobs_errored")
            detail = f": {handle.error_message}" if handle.error_message else ""
            self._logger.warning(
                f"Job {handle.name} for {container.name}/{source.name} ended {handle.state.value}{detail}"
            )
        self.annotate(container, source, handle)

    def materialize_job(self, handle: JobHandle) -> List[MaterializeReport]:
        """Copy every output asset of a finished job to the destination."""
        reports = []
        for asset_name in handle.output_assets:
            try:
                source = self._open_output(asset_name)
                reports.append(self._materializer.materialize(
                    source,
                    self._destination,
                    exclude_extensions=self.settings.exclude_extensions,
                    delete_source_on_success=self.settings.delete_source_on_success,
                    flatten=self.settings.flatten_output,
                    delete_source=lambda name=asset_name: self._orchestrator.delete_asset(name),
                ))
            except AuthorizationExpiredError:
                raise
            except RemoteServiceError as e:
                self._logger.error(f"Could not materialize output asset {asset_name} of {handle.name}: {e}")
        return reports

    def _open_output_asset(self, asset_name: str) -> IBlobContainer:
        permissions = "ReadWriteDelete" if self.settings.delete_source_on_success else "Read"
        return self._orchestrator.open_asset_container(asset_name, permissions=permissions)

    def annotate(self, container: IBlobContainer, source: BlobDescriptor, handle: JobHandle) -> None:
        """Write the terminal state into the source blob's metadata."""
        metadata = dict(source.metadata)
        metadata[self.settings.status_metadata_key] = handle.state.value
        metadata[JOB_METADATA_KEY] = handle.name
        try:
            container.set_metadata(source.name, metadata)
        except AuthorizationExpiredError:
            raise
        except RemoteServiceError as e:
            self._logger.error(
                f"Could not mark {container.name}/{source.name} as {handle.state.value}, "
                f"it will be submitted again on the next scan: {e}"
            )

    def _reconcile_orphans(self) -> None:
        """Re-poll orphaned jobs and finalize those that reached a terminal state."""
        still_running = []
        for orphan in self._orphans:
            handle = self._poll(orphan.handle)
            if handle.is_terminal:
                self._logger.info(f"Orphaned job {handle.name} ended {handle.state.value}")
                orphan.report.orphaned.remove(handle.name)
                if handle.state == JobState.FINISHED:
                    orphan.report.finished += 1
                else:
                    orphan.report.errored += 1
                self._finalize(orphan.container, handle, orphan.source, orphan.report)
            else:
                orphan.handle = handle
                still_running.append(orphan)
        self._orphans = still_running

    def _reserve_capacity(self, batch_size: int) -> None:
        """Block until a new batch fits under max_in_flight."""
        if not self._orphans:
            return
        self._reconcile_orphans()
        cap = self.settings.max_in_flight
        if cap is None:
            return

        deadline = self._clock() + self.settings.job_timeout_seconds
        while self._orphans and len(self._orphans) + batch_size > cap:
            if self._clock() >= deadline:
                abandoned = [orphan.handle.name for orphan in self._orphans]
                self._logger.warning(
                    f"Giving up on {len(abandoned)} orphaned jobs still running: {', '.join(abandoned)}"
                )
                self._orphans = []
                return
            self._logger.info(
                f"{len(self._orphans)} orphaned jobs in flight, waiting for room under {cap}"
            )
            self._sleep(self.settings.poll_interval_seconds)
            self._reconcile_orphans()

    def drain_orphans(self, timeout: Optional[float] = None) -> List[JobHandle]:
        """
        Wait for orphaned jobs to end and finalize them.

        Returns:
            Jobs still running when the timeout elapsed
        """
        if not self._orphans:
            return []
        limit = self.settings.job_timeout_seconds if timeout is None else timeout
        deadline = self._clock() + limit
        self._reconcile_orphans()
        while self._orphans and self._clock() < deadline:
            self._sleep(self.settings.poll_interval_seconds)
            self._reconcile_orphans()
        if self._orphans:
            self._logger.warning(
                f"{len(self._orphans)} jobs still running: "
                f"{', '.join(orphan.handle.name for orphan in self._orphans)}"
            )
        return self.orphans

    def scan_containers(self, containers: Iterable[IBlobContainer]) -> List[ScanReport]:
        """Scan several containers and drain what is left running."""
        reports = [self.scan_and_submit(container) for container in containers]
        self.drain_orphans()
        return reports
