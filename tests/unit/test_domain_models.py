"""
Unit tests for domain models.
"""

import pytest

from mediabatch.domain.exceptions import AuthorizationExpiredError, InvalidArgumentError, RemoteServiceError
from mediabatch.domain.jobs import (
    AssetInput,
    HttpInput,
    JobHandle,
    JobOutput,
    JobRequest,
    JobState,
    MediaServicesAccount,
    SequenceInput,
    TrackSelectedInput,
)
from mediabatch.domain.models import BatchRecord, MaterializeReport, ScanReport, SkipPolicy
from mediabatch.domain.storage import BlobDescriptor, BlobPage, CopyStatus, S3Credentials, iter_pages
from mediabatch.domain.transforms import content_aware_transform

from conftest import FakeContainer, make_blob


class TestJobState:
    """Test JobState enum."""

    def test_terminal_states(self):
        assert JobState.FINISHED.is_terminal
        assert JobState.ERROR.is_terminal
        assert JobState.CANCELED.is_terminal
        assert not JobState.CANCELING.is_terminal
        assert not JobState.PROCESSING.is_terminal

    def test_failure_states(self):
        assert JobState.ERROR.is_failure
        assert JobState.CANCELED.is_failure
        assert not JobState.FINISHED.is_failure

    def test_parse_is_case_insensitive(self):
        assert JobState.parse("finished") == JobState.FINISHED
        assert JobState.parse("PROCESSING") == JobState.PROCESSING

    def test_parse_unknown_is_queued(self):
        assert JobState.parse(None) == JobState.QUEUED
        assert JobState.parse("Bogus") == JobState.QUEUED


class TestJobInputs:
    """Test the job input variants and their payloads."""

    def test_http_input_payload(self):
        payload = HttpInput(files=["https://x/a.mp4?sig=1"]).to_payload()

        assert payload["@odata.type"] == "#Microsoft.Media.JobInputHttp"
        assert payload["files"] == ["https://x/a.mp4?sig=1"]
        assert "baseUri" not in payload

    def test_http_input_requires_a_file(self):
        with pytest.raises(InvalidArgumentError):
            HttpInput(files=[])

    def test_asset_input_with_clip_times(self):
        payload = AssetInput(asset_name="in-1", start="PT0S", end="PT10S").to_payload()

        assert payload["assetName"] == "in-1"
        assert payload["start"] == {"@odata.type": "#Microsoft.Media.AbsoluteClipTime", "time": "PT0S"}
        assert payload["end"]["time"] == "PT10S"

    def test_sequence_input(self):
        sequence = SequenceInput(inputs=[AssetInput("first"), AssetInput("second", start="PT5S")])
        payload = sequence.to_payload()

        assert payload["@odata.type"] == "#Microsoft.Media.JobInputSequence"
        assert [i["assetName"] for i in payload["inputs"]] == ["first", "second"]

    def test_sequence_rejects_nested_sequences(self):
        inner = SequenceInput(inputs=[AssetInput("a")])
        with pytest.raises(InvalidArgumentError):
            SequenceInput(inputs=[inner])

    def test_track_selected_input(self):
        selected = TrackSelectedInput(
            source=AssetInput("multi-audio"),
            filename="movie.mp4",
            track_ids=[1, 3],
        )
        payload = selected.to_payload()

        definition = payload["inputDefinitions"][0]
        assert payload["assetName"] == "multi-audio"
        assert definition["filename"] == "movie.mp4"
        assert [t["trackId"] for t in definition["includedTracks"]] == [1, 3]

    def test_track_selected_needs_tracks(self):
        with pytest.raises(InvalidArgumentError):
            TrackSelectedInput(source=AssetInput("a"), filename="a.mp4", track_ids=[])


class TestJobRequest:
    """Test JobRequest payload."""

    def test_payload_with_correlation_and_override(self):
        request = JobRequest(
            transform_name="t",
            job_name="j",
            input=HttpInput(files=["https://x/a.mp4"]),
            output=JobOutput(asset_name="out", preset_override={"@odata.type": "#Microsoft.Media.StandardEncoderPreset"}),
            correlation_data={"blob": "a.mp4"},
        )

        props = request.to_payload()["properties"]

        assert props["outputs"][0]["assetName"] == "out"
        assert props["outputs"][0]["presetOverride"]["@odata.type"].endswith("StandardEncoderPreset")
        assert props["correlationData"] == {"blob": "a.mp4"}

    def test_request_is_immutable(self):
        request = JobRequest("t", "j", HttpInput(files=["u"]), JobOutput("o"))
        with pytest.raises(AttributeError):
            request.job_name = "other"


class TestJobHandle:
    def test_progress_text(self):
        handle = JobHandle(name="j", transform_name="t", state=JobState.PROCESSING, progress=(40,))
        assert handle.progress_text == "40%"
        assert "Processing" in str(handle)

    def test_no_progress(self):
        assert JobHandle(name="j", transform_name="t").progress_text == "n/a"


class TestMediaServicesAccount:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('SUBSCRIPTIONID', 'sub')
        monkeypatch.setenv('RESOURCEGROUP', 'rg')
        monkeypatch.setenv('ACCOUNTNAME', 'acct')
        monkeypatch.setenv('AZURE_ACCESS_TOKEN', 'token')

        account = MediaServicesAccount.from_env()

        assert account.validate() is True
        assert account.base_url == (
            "https://management.azure.com/subscriptions/sub/resourceGroups/rg"
            "/providers/Microsoft.Media/mediaServices/acct"
        )

    def test_validate_needs_token(self):
        assert MediaServicesAccount("sub", "rg", "acct").validate() is False


class TestBlobDescriptor:
    def test_basename(self):
        assert make_blob("folder/video.mp4").basename == "video.mp4"

    def test_has_suffix_case_insensitive(self):
        assert make_blob("A.MP4").has_suffix([".mp4"])
        assert not make_blob("a.mov").has_suffix([".mp4"])

    def test_is_processed(self):
        assert make_blob("a.mp4", ams_status="Error").is_processed("ams_status")
        assert make_blob("a.mp4", Ams_Status="Finished").is_processed("ams_status")
        assert not make_blob("a.mp4", other="x").is_processed("ams_status")

    def test_str_representation(self):
        assert str(BlobDescriptor(name="test.mp4", size=500)) == "test.mp4 (500 bytes)"


class TestPaging:
    def test_iter_pages_follows_cursor(self):
        container = FakeContainer("c", ["a", "b", "c"], pages=[["a"], [], ["b", "c"]])

        pages = list(iter_pages(container, page_size=2))

        assert len(pages) == 3
        assert container.list_calls == [None, "1", "2"]

    def test_iter_pages_restarts_from_cursor(self):
        container = FakeContainer("c", ["a", "b"], pages=[["a"], ["b"]])

        pages = list(iter_pages(container, cursor="1"))

        assert [b.name for p in pages for b in p.items] == ["b"]

    def test_page_is_last(self):
        assert BlobPage(items=[]).is_last
        assert not BlobPage(items=[], next_cursor="x").is_last


class TestCopyStatus:
    def test_parse(self):
        assert CopyStatus.parse("success") == CopyStatus.SUCCESS
        assert CopyStatus.parse("Pending") == CopyStatus.PENDING
        assert CopyStatus.parse("weird") == CopyStatus.FAILED


class TestS3Credentials:
    def test_from_env_falls_back_to_b2(self, monkeypatch):
        monkeypatch.delenv('S3_KEY', raising=False)
        monkeypatch.delenv('S3_SECRET', raising=False)
        monkeypatch.setenv('B2_KEY', 'env_key')
        monkeypatch.setenv('B2_SECRET', 'env_secret')
        monkeypatch.setenv('B2_ENDPOINT', 'https://s3.custom.com')

        creds = S3Credentials.from_env()

        assert creds.key_id == 'env_key'
        assert creds.secret_key == 'env_secret'
        assert creds.endpoint == 'https://s3.custom.com'
        assert creds.validate() is True


class TestSkipPolicy:
    def test_skips_output_containers(self):
        policy = SkipPolicy()
        assert policy.skips_container("asset-1234")
        assert not policy.skips_container("videos")

    def test_skips_named_containers(self):
        assert SkipPolicy(skip_containers=("results",)).skips_container("results")

    def test_skip_reason(self):
        policy = SkipPolicy()
        assert policy.skip_reason(make_blob("v.ism")) == "processing artifact"
        assert policy.skip_reason(make_blob("abc_manifest.json")) == "processing artifact"
        assert "ams_status" in policy.skip_reason(make_blob("a.mp4", ams_status="Finished"))
        assert policy.skip_reason(make_blob("a.mp4")) is None

    def test_processed_blobs_allowed_when_not_skipping(self):
        policy = SkipPolicy(skip_processed=False)
        assert policy.skip_reason(make_blob("a.mp4", ams_status="Error")) is None


class TestBatchRecord:
    def _handle(self, name, state=JobState.QUEUED):
        return JobHandle(name=name, transform_name="t", state=state)

    def test_capacity_is_enforced(self):
        record = BatchRecord(container="c", capacity=1)
        record.add(self._handle("j1"), make_blob("a.mp4"))

        assert record.is_full
        with pytest.raises(ValueError):
            record.add(self._handle("j2"), make_blob("b.mp4"))

    def test_closed_when_finished_plus_errored_equals_submitted(self):
        record = BatchRecord(container="c", capacity=3)
        for name in ("j1", "j2", "j3"):
            record.add(self._handle(name), make_blob(f"{name}.mp4"))

        record.update(self._handle("j1", JobState.FINISHED))
        record.update(self._handle("j2", JobState.ERROR))
        assert not record.is_closed
        assert record.processing == 1

        record.update(self._handle("j3", JobState.CANCELED))
        assert record.is_closed
        assert (record.finished, record.errored) == (1, 2)

    def test_update_unknown_job(self):
        with pytest.raises(KeyError):
            BatchRecord(container="c", capacity=1).update(self._handle("nope"))

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            BatchRecord(container="c", capacity=0)


class TestReports:
    def test_materialize_report_success(self):
        report = MaterializeReport(source="s", destination="d")
        assert report.success
        report.failed["x"] = "boom"
        assert not report.success

    def test_scan_report_absorbs_batch(self):
        record = BatchRecord(container="c", capacity=2)
        record.add(JobHandle("j1", "t", JobState.FINISHED), make_blob("a.mp4"))
        record.add(JobHandle("j2", "t", JobState.ERROR), make_blob("b.mp4"))
        report = ScanReport(container="c")

        report.absorb(record)

        assert (report.batches, report.finished, report.errored) == (1, 1, 1)


class TestErrors:
    def test_remote_errors_transient(self):
        assert RemoteServiceError("x").is_transient
        assert RemoteServiceError("x", status_code=503).is_transient
        assert RemoteServiceError("x", status_code=429).is_transient
        assert not RemoteServiceError("x", status_code=404).is_transient

    def test_authorization_guidance(self):
        assert "Regenerate the SAS URL" in str(AuthorizationExpiredError("expired"))


class TestTransforms:
    def test_content_aware_transform(self):
        payload = content_aware_transform("BatchRemoteH264ContentAware").to_payload()
        output = payload["properties"]["outputs"][0]

        assert output["preset"]["presetName"] == "ContentAwareEncoding"
        assert output["preset"]["configurations"]["maxHeight"] == 1080
        assert output["onError"] == "StopProcessingJob"
