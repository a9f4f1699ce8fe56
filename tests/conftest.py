import sys
import os
from dataclasses import replace
from typing import Dict, List, Optional

import pytest

# Ensure src/ is on sys.path so 'mediabatch' is importable without installing
SRC = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src'))
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from mediabatch.domain.exceptions import InvalidArgumentError, StorageError
from mediabatch.domain.jobs import JobHandle, JobState
from mediabatch.domain.storage import BlobDescriptor, BlobPage, CopyHandle, CopyStatus


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeJobService:
    """
    In-memory job service.

    `script` maps a source blob name (from correlation data) or a job name to
    the states returned by successive get_job calls; the last one repeats.
    The special script value "reject" makes create_job raise InvalidArgumentError;
    `create_errors` maps a blob name to the error create_job raises for it.
    """

    def __init__(self, script: Optional[Dict[str, list]] = None, default=(JobState.PROCESSING, JobState.FINISHED)):
        self.script = dict(script or {})
        self.default = list(default)
        self.transforms = {}
        self.assets: List[str] = []
        self.deleted_assets: List[str] = []
        self.requests = []
        self.jobs: Dict[str, dict] = {}
        self.events: List[tuple] = []
        self.get_errors: List[Exception] = []
        self.asset_errors: List[Exception] = []
        self.create_errors: Dict[str, Exception] = {}
        self.active = set()
        self.max_active = 0

    def create_or_update_transform(self, spec):
        self.transforms[spec.name] = spec
        return spec.name

    def create_job(self, request):
        key = request.correlation_data.get("blob", request.job_name)
        states = self.script.get(key, self.script.get(request.job_name, self.default))
        if states == "reject":
            raise InvalidArgumentError(f"rejected {request.job_name}")
        if key in self.create_errors:
            raise self.create_errors[key]
        self.requests.append(request)
        self.jobs[request.job_name] = {"request": request, "states": list(states)}
        self.events.append(("create", key))
        self.active.add(request.job_name)
        self.max_active = max(self.max_active, len(self.active))
        return JobHandle(
            name=request.job_name,
            transform_name=request.transform_name,
            state=JobState.QUEUED,
            output_assets=(request.output.asset_name,),
            correlation_data=dict(request.correlation_data),
        )

    def get_job(self, transform_name, job_name):
        if self.get_errors:
            raise self.get_errors.pop(0)
        job = self.jobs[job_name]
        states = job["states"]
        state = states.pop(0) if len(states) > 1 else states[0]
        key = job["request"].correlation_data.get("blob", job_name)
        self.events.append(("state", key, state))
        if state.is_terminal:
            self.active.discard(job_name)
        return JobHandle(
            name=job_name,
            transform_name=transform_name,
            state=state,
            progress=(100 if state == JobState.FINISHED else 50,),
            output_assets=(job["request"].output.asset_name,),
            correlation_data=dict(job["request"].correlation_data),
            error_message="encode failed" if state == JobState.ERROR else None,
        )

    def create_or_update_asset(self, asset_name):
        if self.asset_errors:
            raise self.asset_errors.pop(0)
        self.assets.append(asset_name)
        return asset_name

    def list_container_sas(self, asset_name, permissions="Read", expires_in=3600):
        return [f"https://fake.blob/{asset_name}?sp={permissions}"]

    def delete_asset(self, asset_name):
        self.deleted_assets.append(asset_name)
        return True

    def job_for(self, blob_name):
        for request in self.requests:
            if request.correlation_data.get("blob") == blob_name:
                return request
        return None


class FakeContainer:
    """
    In-memory blob container and copy target.

    `pages` forces the listing layout (list of lists of names, empty pages
    allowed); otherwise blobs are paged by page_size. `copy_script` maps a
    target name to the statuses returned by start_copy then get_copy_status.
    """

    def __init__(self, name, blobs=(), pages=None, events=None):
        self.name = name
        self.blobs: Dict[str, BlobDescriptor] = {}
        for item in blobs:
            blob = item if isinstance(item, BlobDescriptor) else BlobDescriptor(name=item, size=10)
            self.blobs[blob.name] = blob
        self.pages = pages
        self.events = events if events is not None else []
        self.list_calls: List[Optional[str]] = []
        self.metadata_writes: Dict[str, dict] = {}
        self.copies: Dict[str, str] = {}
        self.copy_script: Dict[str, list] = {}
        self.copy_errors: Dict[str, Exception] = {}
        self._copy_state: Dict[str, list] = {}
        self.uploads: Dict[str, str] = {}
        self.deleted = False

    def describe(self):
        return f"fake://{self.name}"

    def list_blobs(self, page_size=1000, cursor=None):
        self.list_calls.append(cursor)
        if self.pages is not None:
            index = int(cursor or 0)
            names = self.pages[index]
            next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        else:
            names = list(self.blobs)
            start = int(cursor or 0)
            names = names[start:start + page_size]
            end = start + page_size
            next_cursor = str(end) if end < len(self.blobs) else None
        return BlobPage(items=[self.blobs[n] for n in names], next_cursor=next_cursor)

    def blob_url(self, blob_name):
        return f"https://fake.blob/{self.name}/{blob_name}?sig=secret"

    def download_blob(self, blob_name, local_path):
        local_path.write_bytes(b"data")
        return local_path

    def upload_file(self, local_path, blob_name):
        self.uploads[blob_name] = str(local_path)
        blob = BlobDescriptor(name=blob_name, size=local_path.stat().st_size)
        self.blobs[blob_name] = blob
        return blob

    def start_copy(self, source_url, target_name):
        if target_name in self.copy_errors:
            raise self.copy_errors[target_name]
        self.copies[target_name] = source_url
        self.events.append(("copy", target_name))
        statuses = list(self.copy_script.get(target_name, [CopyStatus.SUCCESS]))
        status = statuses.pop(0)
        self._copy_state[target_name] = statuses or [status]
        return CopyHandle(target_name=target_name, status=status, description=f"{status.value} copy")

    def get_copy_status(self, target_name):
        statuses = self._copy_state[target_name]
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        return CopyHandle(target_name=target_name, status=status, description=f"{status.value} copy")

    def set_metadata(self, blob_name, metadata):
        self.metadata_writes[blob_name] = dict(metadata)
        self.blobs[blob_name] = replace(self.blobs[blob_name], metadata=dict(metadata))

    def delete_container(self):
        self.events.append(("delete", self.name))
        self.deleted = True


class FakeAccount:
    def __init__(self, containers):
        self.containers = {c.name: c for c in containers}

    def list_containers(self):
        yield from self.containers

    def get_container(self, name):
        return self.containers[name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_service():
    return FakeJobService()


def make_blob(name, size=10, **metadata):
    return BlobDescriptor(name=name, size=size, metadata=dict(metadata))
