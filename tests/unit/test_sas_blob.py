"""
Unit tests for the SAS URL blob clients.
"""

import pytest
from unittest.mock import MagicMock

from mediabatch.domain.exceptions import AuthorizationExpiredError, StorageError
from mediabatch.domain.storage import CopyStatus
from mediabatch.infrastructure.storage.sas_blob import SasBlobAccount, SasBlobContainer
from mediabatch.shared.retry import RetryStrategy

CONTAINER_URL = "https://acct.blob.core.windows.net/videos?sv=2021&sig=secret"

LISTING = b"""<?xml version="1.0" encoding="utf-8"?>
<EnumerationResults ContainerName="videos">
  <Blobs>
    <Blob>
      <Name>a.mp4</Name>
      <Properties>
        <Content-Length>1024</Content-Length>
        <Content-Type>video/mp4</Content-Type>
      </Properties>
      <Metadata><ams_status>Finished</ams_status></Metadata>
    </Blob>
    <Blob>
      <Name>folder/b.mov</Name>
      <Properties><Content-Length>2048</Content-Length></Properties>
      <Metadata />
    </Blob>
  </Blobs>
  <NextMarker>2!72!MDAw</NextMarker>
</EnumerationResults>"""


def make_response(status_code=200, content=b"", headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = content
    response.text = content.decode() if content else ""
    response.headers = headers or {}
    return response


def error_body(code, message="Server failed to authenticate the request."):
    return f"<Error><Code>{code}</Code><Message>{message}\nRequestId:1</Message></Error>".encode()


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def container(session):
    return SasBlobContainer(
        CONTAINER_URL,
        session=session,
        retry=RetryStrategy(max_attempts=2, sleep=lambda s: None),
    )


class TestSasBlobContainer:
    def test_name_and_describe(self, container, session):
        assert container.name == "videos"
        assert container.describe() == "https://acct.blob.core.windows.net/videos"
        session.headers.update.assert_called_once_with({'x-ms-version': '2021-08-06'})

    def test_rejects_non_storage_url(self, session):
        with pytest.raises(ValueError):
            SasBlobContainer("ftp://acct/videos", session=session)

    def test_rejects_account_url(self, session):
        with pytest.raises(ValueError):
            SasBlobContainer("https://acct.blob.core.windows.net/?sig=x", session=session)

    def test_list_blobs(self, container, session):
        session.request.return_value = make_response(content=LISTING)

        page = container.list_blobs(page_size=2, cursor="marker-1")

        method, url = session.request.call_args[0]
        assert method == 'GET'
        assert url.startswith("https://acct.blob.core.windows.net/videos?sv=2021&sig=secret&")
        assert "restype=container" in url
        assert "include=metadata" in url
        assert "maxresults=2" in url
        assert "marker=marker-1" in url

        assert [b.name for b in page.items] == ["a.mp4", "folder/b.mov"]
        assert page.items[0].size == 1024
        assert page.items[0].content_type == "video/mp4"
        assert page.items[0].metadata == {"ams_status": "Finished"}
        assert page.items[1].metadata == {}
        assert page.next_cursor == "2!72!MDAw"

    def test_last_page_has_no_cursor(self, container, session):
        session.request.return_value = make_response(
            content=b"<EnumerationResults><Blobs /><NextMarker /></EnumerationResults>"
        )

        page = container.list_blobs()

        assert page.items == []
        assert page.is_last

    def test_blob_url_encodes_name_and_keeps_sas(self, container):
        url = container.blob_url("dir/my video:1.mp4")

        assert url == (
            "https://acct.blob.core.windows.net/videos/dir/my%20video%3A1.mp4?sv=2021&sig=secret"
        )

    def test_expired_sas_is_authorization_error(self, container, session):
        session.request.return_value = make_response(
            403, error_body("AuthenticationFailed"), {'x-ms-error-code': 'AuthenticationFailed'}
        )

        with pytest.raises(AuthorizationExpiredError) as exc:
            container.list_blobs()

        assert "AuthenticationFailed" in str(exc.value)
        assert "sig=secret" not in str(exc.value)
        assert session.request.call_count == 1

    def test_not_found_is_storage_error(self, container, session):
        session.request.return_value = make_response(404, error_body("BlobNotFound", "missing"))

        with pytest.raises(StorageError) as exc:
            container.get_copy_status("x.mp4")

        assert exc.value.status_code == 404
        assert exc.value.error_code == "BlobNotFound"

    def test_server_busy_is_retried(self, container, session):
        session.request.side_effect = [
            make_response(503, error_body("ServerBusy", "busy")),
            make_response(content=LISTING),
        ]

        page = container.list_blobs()

        assert len(page.items) == 2
        assert session.request.call_count == 2

    def test_start_copy(self, container, session):
        session.request.return_value = make_response(
            202, headers={'x-ms-copy-status': 'pending', 'x-ms-copy-id': 'id-1'}
        )

        handle = container.start_copy("https://acct.blob/asset-1/v.mp4?sig=src", "out/v.mp4")

        method, url = session.request.call_args[0]
        assert method == 'PUT'
        assert url == "https://acct.blob.core.windows.net/videos/out/v.mp4?sv=2021&sig=secret"
        assert session.request.call_args[1]['headers'] == {
            'x-ms-copy-source': "https://acct.blob/asset-1/v.mp4?sig=src"
        }
        assert handle.status == CopyStatus.PENDING
        assert handle.copy_id == 'id-1'

    def test_get_copy_status(self, container, session):
        session.request.return_value = make_response(headers={
            'x-ms-copy-status': 'failed',
            'x-ms-copy-status-description': '500 InternalError',
            'x-ms-copy-progress': '10/100',
        })

        handle = container.get_copy_status("v.mp4")

        assert session.request.call_args[0][0] == 'HEAD'
        assert handle.status == CopyStatus.FAILED
        assert handle.description == '500 InternalError'
        assert handle.progress == '10/100'

    def test_blob_without_copy_properties_is_complete(self, container, session):
        session.request.return_value = make_response()

        assert container.get_copy_status("v.mp4").status == CopyStatus.SUCCESS

    def test_set_metadata(self, container, session):
        session.request.return_value = make_response()

        container.set_metadata("a.mp4", {"ams_status": "Error", "ams_job": "j-1"})

        method, url = session.request.call_args[0]
        assert method == 'PUT'
        assert url.endswith("/videos/a.mp4?sv=2021&sig=secret&comp=metadata")
        assert session.request.call_args[1]['headers'] == {
            'x-ms-meta-ams_status': 'Error',
            'x-ms-meta-ams_job': 'j-1',
        }

    def test_upload_file(self, container, session, tmp_path):
        session.request.return_value = make_response(201)
        video = tmp_path / "v.mp4"
        video.write_bytes(b"12345")

        blob = container.upload_file(video, "v.mp4")

        headers = session.request.call_args[1]['headers']
        assert headers['x-ms-blob-type'] == 'BlockBlob'
        assert headers['Content-Length'] == '5'
        assert blob.size == 5
        assert blob.content_type == 'video/mp4'

    def test_download_blob(self, container, session, tmp_path):
        response = make_response()
        response.iter_content.return_value = [b"ab", b"cd"]
        session.request.return_value = response

        path = container.download_blob("a.mp4", tmp_path / "sub" / "a.mp4")

        assert path.read_bytes() == b"abcd"

    def test_delete_container(self, container, session):
        session.request.return_value = make_response(202)

        container.delete_container()

        method, url = session.request.call_args[0]
        assert method == 'DELETE'
        assert "restype=container" in url


class TestSasBlobAccount:
    def test_list_containers_follows_marker(self, session):
        session.request.side_effect = [
            make_response(content=(
                b"<EnumerationResults><Containers>"
                b"<Container><Name>one</Name></Container>"
                b"<Container><Name>asset-1</Name></Container>"
                b"</Containers><NextMarker>m2</NextMarker></EnumerationResults>"
            )),
            make_response(content=(
                b"<EnumerationResults><Containers>"
                b"<Container><Name>two</Name></Container>"
                b"</Containers><NextMarker /></EnumerationResults>"
            )),
        ]
        account = SasBlobAccount("https://acct.blob.core.windows.net/?sv=2021&sig=secret", session=session)

        names = list(account.list_containers())

        assert names == ["one", "asset-1", "two"]
        assert "marker=m2" in session.request.call_args_list[1][0][1]

    def test_get_container_shares_sas(self, session):
        account = SasBlobAccount("https://acct.blob.core.windows.net/?sv=2021&sig=secret", session=session)

        container = account.get_container("videos")

        assert container.name == "videos"
        assert container.blob_url("a.mp4") == "https://acct.blob.core.windows.net/videos/a.mp4?sv=2021&sig=secret"
        assert container.session is session
