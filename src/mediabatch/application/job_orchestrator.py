"""Job submission and polling."""

import logging
import time
import uuid
from pathlib import Path
from typing import Callable, Mapping, Optional, Any

from mediabatch.domain.exceptions import (
    AuthorizationExpiredError,
    InvalidArgumentError,
    PollTimeoutError,
    RemoteJobFailedError,
    RemoteServiceError,
)
from mediabatch.domain.jobs import (
    AssetInput,
    HttpInput,
    IJobService,
    JobHandle,
    JobInput,
    JobOutput,
    JobRequest,
    JobState,
)
from mediabatch.domain.protocols import IMetricsCollector
from mediabatch.domain.storage import IBlobContainer
from mediabatch.domain.transforms import TransformSpec
from mediabatch.infrastructure.storage.factory import open_container
from mediabatch.shared.logging import get_logger


class JobOrchestrator:
    """
    Builds job requests, submits them and polls them to a terminal state.

    Holds no process-wide state: the job service, naming prefix and polling
    policy are passed in explicitly.
    """

    def __init__(
        self,
        job_service: IJobService,
        poll_interval: float = 10.0,
        timeout: float = 600.0,
        name_prefix: str = "encodeH264",
        container_factory: Optional[Callable[[str], IBlobContainer]] = None,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[IMetricsCollector] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize orchestrator.

        Args:
            job_service: Remote job service client
            poll_interval: Seconds between status polls
            timeout: Seconds before await_completion gives up (softly)
            name_prefix: Prefix of generated job and asset names
            container_factory: Opens a container client from a SAS URL
            logger: Logger instance
            metrics: Metrics collector
            sleep: Sleep function (time.sleep by default)
            clock: Monotonic clock (time.monotonic by default)
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._service = job_service
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.name_prefix = name_prefix
        self._container_factory = container_factory or open_container
        self._logger = logger or get_logger(__name__)
        self._metrics = metrics
        self._sleep = sleep or time.sleep
        self._clock = clock or time.monotonic

    def _count(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment_counter(name)

    @staticmethod
    def new_uniqueness() -> str:
        return str(uuid.uuid4())

    def job_name_for(self, uniqueness: str) -> str:
        return f"{self.name_prefix}-job-{uniqueness}"

    def output_asset_name_for(self, uniqueness: str) -> str:
        return f"{self.name_prefix}-output-{uniqueness}"

    def input_asset_name_for(self, uniqueness: str) -> str:
        return f"{self.name_prefix}-input-{uniqueness}"

    def build_request(
        self,
        transform: str,
        input: JobInput,
        output_asset: Optional[str],
        correlation: Optional[Mapping[str, str]] = None,
        preset_override: Optional[Mapping[str, Any]] = None,
        job_name: Optional[str] = None
    ) -> JobRequest:
        """Assemble an immutable job request."""
        return JobRequest(
            transform_name=transform,
            job_name=job_name or self.job_name_for(self.new_uniqueness()),
            input=input,
            output=JobOutput(asset_name=output_asset, preset_override=preset_override),
            correlation_data=dict(correlation or {}),
        )

    def submit(self, request: JobRequest) -> JobHandle:
        """
        Submit a job.

        Raises:
            InvalidArgumentError: If the output asset is unresolved or the
                service rejects the request
        """
        if not request.output.asset_name or not request.output.asset_name.strip():
            self._count("jobs_rejected")
            raise InvalidArgumentError(
                f"Output asset name is not defined for job {request.job_name}. "
                "Check creation of the output asset"
            )

        try:
            handle = self._service.create_job(request)
        except InvalidArgumentError:
            self._count("jobs_rejected")
            raise

        self._count("jobs_submitted")
        self._logger.info(f"Submitted job {handle.name} to transform {request.transform_name}")
        return handle

    def refresh(self, handle: JobHandle) -> JobHandle:
        """
        Fetch a fresh snapshot of a job.

        A transient failure that outlives the per-call retries keeps the
        previous snapshot so the caller's poll loop continues.
        """
        try:
            return self._service.get_job(handle.transform_name, handle.name)
        except AuthorizationExpiredError:
            raise
        except RemoteServiceError as e:
            if not e.is_transient:
                raise
            self._logger.warning(f"Status check for job {handle.name} failed, keeping last state: {e}")
            return handle

    def await_completion(
        self,
        transform: str,
        job_name: str,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None
    ) -> JobHandle:
        """
        Poll a job at a fixed interval until it is terminal or time runs out.

        A timeout is not an error: the last observed handle is returned and
        the caller decides what to do with a job that is still running.
        """
        interval = poll_interval or self.poll_interval
        limit = self.timeout if timeout is None else timeout
        deadline = self._clock() + limit

        handle = self.refresh(JobHandle(name=job_name, transform_name=transform))
        while True:
            self._logger.info(f"Job {handle.name} state: {handle.state.value}, progress: {handle.progress_text}")
            if handle.is_terminal:
                return handle
            if self._clock() >= deadline:
                self._logger.warning(
                    f"Job {handle.name} timed out after {limit:.0f}s in state {handle.state.value}. "
                    "Please retry or check the source file"
                )
                return handle
            self._sleep(interval)
            handle = self.refresh(handle)

    @staticmethod
    def raise_for_state(handle: JobHandle) -> JobHandle:
        """
        Return the handle if the job finished, raise otherwise.

        Raises:
            RemoteJobFailedError: Job ended in Error or Canceled
            PollTimeoutError: Job is not terminal yet
        """
        if handle.state == JobState.FINISHED:
            return handle
        if handle.state.is_failure:
            detail = f": {handle.error_message}" if handle.error_message else ""
            raise RemoteJobFailedError(
                f"Job {handle.name} ended in {handle.state.value}{detail}",
                job_name=handle.name,
                state=handle.state.value,
            )
        raise PollTimeoutError(
            f"Job {handle.name} still {handle.state.value}",
            job_name=handle.name,
            state=handle.state.value,
        )

    def ensure_transform(self, spec: TransformSpec) -> str:
        """Create the transform, or update it if it already exists."""
        return self._service.create_or_update_transform(spec)

    def create_output_asset(self, uniqueness: str) -> Optional[str]:
        """
        Create the output asset for a job.

        Returns:
            Asset name, or None if creation failed
        """
        asset_name = self.output_asset_name_for(uniqueness)
        self._logger.info(f"Creating output asset {asset_name}")
        try:
            return self._service.create_or_update_asset(asset_name)
        except AuthorizationExpiredError:
            raise
        except RemoteServiceError as e:
            self._logger.error(f"Output asset {asset_name} could not be created: {e}")
            return None

    def open_asset_container(self, asset_name: str, permissions: str = "Read") -> IBlobContainer:
        """Open the storage container behind an asset through its SAS URL."""
        urls = self._service.list_container_sas(asset_name, permissions=permissions)
        return self._container_factory(urls[0])

    def delete_asset(self, asset_name: str) -> bool:
        return self._service.delete_asset(asset_name)

    def prepare_input(
        self,
        input_file: Optional[Path] = None,
        input_url: Optional[str] = None,
        uniqueness: Optional[str] = None
    ) -> JobInput:
        """
        Pick the job input for a local file or a URL.

        A local file is uploaded into a new input asset; a URL is used as an
        HTTP input directly.
        """
        if input_file is not None:
            input_file = Path(input_file)
            if not input_file.is_file():
                raise InvalidArgumentError(f"Input file not found: {input_file}")
            asset_name = self.input_asset_name_for(uniqueness or self.new_uniqueness())
            self._service.create_or_update_asset(asset_name)
            container = self.open_asset_container(asset_name, permissions="ReadWrite")
            self._logger.info(f"Uploading {input_file.name} to input asset {asset_name}")
            container.upload_file(input_file, input_file.name)
            return AssetInput(asset_name=asset_name)

        if input_url:
            return HttpInput(files=(input_url,))

        raise InvalidArgumentError("Either an input file or an input URL is required")

    def submit_input(
        self,
        input: JobInput,
        transform: str,
        correlation: Optional[Mapping[str, str]] = None,
        uniqueness: Optional[str] = None,
        preset_override: Optional[Mapping[str, Any]] = None
    ) -> JobHandle:
        """Create an output asset and submit a job writing into it."""
        uniqueness = uniqueness or self.new_uniqueness()
        output_asset = self.create_output_asset(uniqueness)
        request = self.build_request(
            transform,
            input,
            output_asset,
            correlation=correlation,
            preset_override=preset_override,
            job_name=self.job_name_for(uniqueness),
        )
        try:
            return self.submit(request)
        except (InvalidArgumentError, RemoteServiceError):
            if output_asset:
                self._discard_asset(output_asset)
            raise

    def _discard_asset(self, asset_name: str) -> None:
        """Best-effort removal of an output asset no job will write."""
        try:
            self._service.delete_asset(asset_name)
        except AuthorizationExpiredError:
            raise
        except RemoteServiceError as e:
            self._logger.warning(f"Could not delete unused output asset {asset_name}: {e}")

    def submit_url(
        self,
        url: str,
        transform: str,
        correlation: Optional[Mapping[str, str]] = None
    ) -> JobHandle:
        """Submit a job reading from an HTTP(S) or SAS URL."""
        return self.submit_input(HttpInput(files=(url,)), transform, correlation=correlation)
