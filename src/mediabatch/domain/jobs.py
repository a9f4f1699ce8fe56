"""
Remote job domain models and protocols.

Domain layer for the media-processing job service (Transforms, Jobs, Assets).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from .exceptions import InvalidArgumentError
from .transforms import TransformSpec


class JobState(str, Enum):
    """Job states reported by the remote service."""
    QUEUED = "Queued"
    SCHEDULED = "Scheduled"
    PROCESSING = "Processing"
    CANCELING = "Canceling"
    FINISHED = "Finished"
    ERROR = "Error"
    CANCELED = "Canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_failure(self) -> bool:
        return self in (JobState.ERROR, JobState.CANCELED)

    @classmethod
    def parse(cls, value: Optional[str]) -> "JobState":
        """Parse a state string, case-insensitively. Unknown values map to Queued."""
        if value:
            for state in cls:
                if state.value.lower() == str(value).lower():
                    return state
        return cls.QUEUED


TERMINAL_STATES = frozenset({JobState.FINISHED, JobState.ERROR, JobState.CANCELED})


def _clip_time(value: str) -> Dict[str, str]:
    return {"@odata.type": "#Microsoft.Media.AbsoluteClipTime", "time": value}


@dataclass(frozen=True)
class HttpInput:
    """Job input read from one or more HTTP(S) URLs (SAS URLs included)."""
    files: Tuple[str, ...]
    base_uri: Optional[str] = None
    label: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "files", tuple(self.files))
        if not self.files and not self.base_uri:
            raise InvalidArgumentError("HttpInput needs at least one file URL or a base URI")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "@odata.type": "#Microsoft.Media.JobInputHttp",
            "files": list(self.files),
        }
        if self.base_uri:
            payload["baseUri"] = self.base_uri
        if self.label:
            payload["label"] = self.label
        return payload


@dataclass(frozen=True)
class AssetInput:
    """Job input read from an existing asset, optionally clipped."""
    asset_name: str
    files: Tuple[str, ...] = ()
    start: Optional[str] = None  # ISO-8601 duration, e.g. PT0S
    end: Optional[str] = None
    label: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "files", tuple(self.files))
        if not self.asset_name:
            raise InvalidArgumentError("AssetInput needs an asset name")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "@odata.type": "#Microsoft.Media.JobInputAsset",
            "assetName": self.asset_name,
        }
        if self.files:
            payload["files"] = list(self.files)
        if self.start:
            payload["start"] = _clip_time(self.start)
        if self.end:
            payload["end"] = _clip_time(self.end)
        if self.label:
            payload["label"] = self.label
        return payload


@dataclass(frozen=True)
class SequenceInput:
    """Several inputs stitched, in order, into one job."""
    inputs: Tuple[Union[HttpInput, AssetInput], ...]

    def __post_init__(self):
        object.__setattr__(self, "inputs", tuple(self.inputs))
        if not self.inputs:
            raise InvalidArgumentError("SequenceInput needs at least one input")
        for item in self.inputs:
            if not isinstance(item, (HttpInput, AssetInput)):
                raise InvalidArgumentError(
                    f"SequenceInput members must be HttpInput or AssetInput, got {type(item).__name__}"
                )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "@odata.type": "#Microsoft.Media.JobInputSequence",
            "inputs": [item.to_payload() for item in self.inputs],
        }


@dataclass(frozen=True)
class TrackSelectedInput:
    """An HTTP or asset input with the audio tracks to include selected by id."""
    source: Union[HttpInput, AssetInput]
    filename: str
    track_ids: Tuple[int, ...]

    def __post_init__(self):
        object.__setattr__(self, "track_ids", tuple(self.track_ids))
        if not isinstance(self.source, (HttpInput, AssetInput)):
            raise InvalidArgumentError("TrackSelectedInput source must be HttpInput or AssetInput")
        if not self.filename:
            raise InvalidArgumentError("TrackSelectedInput needs the source file name")
        if not self.track_ids:
            raise InvalidArgumentError("TrackSelectedInput needs at least one track id")

    def to_payload(self) -> Dict[str, Any]:
        payload = self.source.to_payload()
        payload["inputDefinitions"] = [{
            "@odata.type": "#Microsoft.Media.InputFile",
            "filename": self.filename,
            "includedTracks": [
                {"@odata.type": "#Microsoft.Media.SelectAudioTrackById", "trackId": track_id}
                for track_id in self.track_ids
            ],
        }]
        return payload


JobInput = Union[HttpInput, AssetInput, SequenceInput, TrackSelectedInput]


@dataclass(frozen=True)
class JobOutput:
    """Output asset a job writes into, with an optional per-job preset override."""
    asset_name: Optional[str]
    label: Optional[str] = None
    preset_override: Optional[Mapping[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "@odata.type": "#Microsoft.Media.JobOutputAsset",
            "assetName": self.asset_name,
        }
        if self.label:
            payload["label"] = self.label
        if self.preset_override:
            payload["presetOverride"] = dict(self.preset_override)
        return payload


@dataclass(frozen=True)
class JobRequest:
    """Everything needed to create one job. Immutable once built."""
    transform_name: str
    job_name: str
    input: JobInput
    output: JobOutput
    correlation_data: Mapping[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {
            "input": self.input.to_payload(),
            "outputs": [self.output.to_payload()],
        }
        if self.correlation_data:
            properties["correlationData"] = dict(self.correlation_data)
        return {"properties": properties}


@dataclass(frozen=True)
class JobHandle:
    """Snapshot of a remote job. Refreshed only by fetching it again."""
    name: str
    transform_name: str
    state: JobState = JobState.QUEUED
    progress: Tuple[int, ...] = ()
    output_assets: Tuple[str, ...] = ()
    correlation_data: Mapping[str, str] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def progress_text(self) -> str:
        if not self.progress:
            return "n/a"
        return ", ".join(f"{p}%" for p in self.progress)

    def __str__(self) -> str:
        return f"Job {self.name} ({self.state.value}, progress {self.progress_text})"


@dataclass
class MediaServicesAccount:
    """Media services account coordinates and credentials."""
    subscription_id: str
    resource_group: str
    account_name: str
    access_token: str = ""
    endpoint: str = "https://management.azure.com"
    api_version: str = "2022-07-01"

    @classmethod
    def from_env(cls) -> 'MediaServicesAccount':
        """Load from environment variables."""
        import os
        return cls(
            subscription_id=os.getenv('SUBSCRIPTIONID', ''),
            resource_group=os.getenv('RESOURCEGROUP', ''),
            account_name=os.getenv('ACCOUNTNAME', ''),
            access_token=os.getenv('AZURE_ACCESS_TOKEN', ''),
            endpoint=os.getenv('ARM_ENDPOINT', 'https://management.azure.com'),
            api_version=os.getenv('MEDIA_API_VERSION', '2022-07-01'),
        )

    def validate(self) -> bool:
        """Check if the account is fully specified."""
        return bool(
            self.subscription_id and self.resource_group
            and self.account_name and self.access_token
        )

    @property
    def base_url(self) -> str:
        return (
            f"{self.endpoint.rstrip('/')}/subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Media/mediaServices/{self.account_name}"
        )


class IJobService(Protocol):
    """Protocol for the remote job service (Transforms, Jobs, Assets)."""

    def create_or_update_transform(self, spec: TransformSpec) -> str:
        """
        Create a transform or update it if it already exists.

        Returns:
            Transform name as stored by the service
        """
        ...

    def create_job(self, request: JobRequest) -> JobHandle:
        """
        Submit a job.

        Raises:
            InvalidArgumentError: If the service rejects the request
        """
        ...

    def get_job(self, transform_name: str, job_name: str) -> JobHandle:
        """Fetch the current state of a job."""
        ...

    def create_or_update_asset(self, asset_name: str) -> str:
        """
        Create an asset (a pointer to a storage container).

        Returns:
            Asset name
        """
        ...

    def list_container_sas(
        self,
        asset_name: str,
        permissions: str = "Read",
        expires_in: int = 3600
    ) -> List[str]:
        """
        Get SAS URLs for the asset's storage container.

        Args:
            asset_name: Asset name
            permissions: 'Read', 'ReadWrite' or 'ReadWriteDelete'
            expires_in: Lifetime of the URLs in seconds

        Returns:
            Container SAS URLs
        """
        ...

    def delete_asset(self, asset_name: str) -> bool:
        """Delete an asset and its container."""
        ...
