"""Domain layer package."""

from .exceptions import (
    DomainException,
    ConfigurationError,
    InvalidArgumentError,
    RemoteJobFailedError,
    PollTimeoutError,
    CopyFailedError,
    AuthorizationExpiredError,
    RemoteServiceError,
    StorageError,
)
from .jobs import (
    JobState,
    HttpInput,
    AssetInput,
    SequenceInput,
    TrackSelectedInput,
    JobInput,
    JobOutput,
    JobRequest,
    JobHandle,
    MediaServicesAccount,
    IJobService,
)
from .storage import (
    BlobDescriptor,
    BlobPage,
    S3Credentials,
    CopyStatus,
    CopyHandle,
    ICopyTarget,
    IBlobContainer,
    IBlobAccount,
    iter_pages,
    iter_blobs,
)
from .models import SkipPolicy, BatchRecord, ScanReport, MaterializeReport
from .transforms import TransformSpec, TransformOutput, builtin_preset, content_aware_transform
from .protocols import IMetricsCollector

__all__ = [
    # Exceptions
    "DomainException",
    "ConfigurationError",
    "InvalidArgumentError",
    "RemoteJobFailedError",
    "PollTimeoutError",
    "CopyFailedError",
    "AuthorizationExpiredError",
    "RemoteServiceError",
    "StorageError",
    # Jobs
    "JobState",
    "HttpInput",
    "AssetInput",
    "SequenceInput",
    "TrackSelectedInput",
    "JobInput",
    "JobOutput",
    "JobRequest",
    "JobHandle",
    "MediaServicesAccount",
    "IJobService",
    # Storage
    "BlobDescriptor",
    "BlobPage",
    "S3Credentials",
    "CopyStatus",
    "CopyHandle",
    "ICopyTarget",
    "IBlobContainer",
    "IBlobAccount",
    "iter_pages",
    "iter_blobs",
    # Batch
    "SkipPolicy",
    "BatchRecord",
    "ScanReport",
    "MaterializeReport",
    # Transforms
    "TransformSpec",
    "TransformOutput",
    "builtin_preset",
    "content_aware_transform",
    # Protocols
    "IMetricsCollector",
]
