"""
Media services REST client implementation.

Infrastructure layer for the remote job service (ARM REST API).
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from requests.exceptions import RequestException

from mediabatch.domain.exceptions import (
    AuthorizationExpiredError,
    InvalidArgumentError,
    RemoteServiceError,
)
from mediabatch.domain.jobs import (
    JobHandle,
    JobRequest,
    JobState,
    MediaServicesAccount,
)
from mediabatch.domain.transforms import TransformSpec
from mediabatch.shared.retry import RetryStrategy

_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse service timestamps such as 2024-05-01T10:00:00.1234567Z."""
    if not value:
        return None
    text = _FRACTION.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class MediaServicesClient:
    """
    Media services REST client.

    Uses requests library to talk to the ARM endpoint of one account.
    """

    def __init__(
        self,
        account: Optional[MediaServicesAccount] = None,
        retry: Optional[RetryStrategy] = None,
        timeout: float = 30.0,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize media services client.

        Args:
            account: Account coordinates and bearer token (loads from env if None)
            retry: Retry strategy applied to every call
            timeout: Per-request timeout in seconds
            logger: Logger instance
        """
        self.account = account or MediaServicesAccount.from_env()
        if not self.account.validate():
            raise ValueError(
                "Media services account not set (SUBSCRIPTIONID, RESOURCEGROUP, "
                "ACCOUNTNAME, AZURE_ACCESS_TOKEN)"
            )

        self.logger = logger or logging.getLogger(__name__)
        self.retry = retry or RetryStrategy(max_attempts=3, backoff_seconds=2.0)
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'Authorization': f'Bearer {self.account.access_token}',
        })

    def _url(self, path: str) -> str:
        return f"{self.account.base_url}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Make API request with retries on transient failures.

        Returns:
            Response JSON ({} for empty bodies)

        Raises:
            AuthorizationExpiredError: On 401/403
            InvalidArgumentError: On 400
            RemoteServiceError: On any other failure
        """
        return self.retry.execute(self._send, method, path, **kwargs)

    def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = self._url(path)
        params = kwargs.pop('params', {})
        params['api-version'] = self.account.api_version

        try:
            response = self.session.request(
                method, url, params=params, timeout=self.timeout, **kwargs
            )
        except RequestException as e:
            error_msg = f"Media services request failed: {method} {path}: {e}"
            self.logger.error(error_msg)
            raise RemoteServiceError(error_msg) from e

        if response.status_code >= 400:
            raise self._error_for(response, method, path)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise RemoteServiceError(
                f"Invalid JSON from {method} {path}", status_code=response.status_code
            ) from e

    def _error_for(self, response, method: str, path: str) -> Exception:
        code = ""
        message = response.text or response.reason or ""
        try:
            error = response.json().get('error', {})
            code = error.get('code', '')
            message = error.get('message', message)
        except ValueError:
            pass

        error_msg = f"{method} {path} returned {response.status_code} {code}: {message}".strip()
        if response.status_code in (401, 403):
            self.logger.error(error_msg)
            return AuthorizationExpiredError(error_msg)
        if response.status_code == 400:
            return InvalidArgumentError(error_msg)
        if response.status_code >= 500 or response.status_code == 429:
            self.logger.warning(error_msg)
        else:
            self.logger.error(error_msg)
        return RemoteServiceError(error_msg, status_code=response.status_code, error_code=code)

    def create_or_update_transform(self, spec: TransformSpec) -> str:
        """Create a transform or update it if it already exists."""
        self.logger.info(f"Creating transform {spec.name} (or updating if it exists)")
        response = self._request(
            'PUT',
            f"transforms/{quote(spec.name)}",
            json=spec.to_payload()
        )
        name = response.get('name', spec.name)
        self.logger.info(f"Transform {name} created (or updated if it existed already)")
        return name

    def create_job(self, request: JobRequest) -> JobHandle:
        """Submit a job to a transform's queue."""
        self.logger.info(f"Submitting job {request.job_name} to transform {request.transform_name}")
        try:
            response = self._request(
                'PUT',
                f"transforms/{quote(request.transform_name)}/jobs/{quote(request.job_name)}",
                json=request.to_payload()
            )
        except RemoteServiceError as e:
            if e.status_code == 404:
                raise InvalidArgumentError(
                    f"Job {request.job_name} rejected, transform or asset missing: {e}"
                ) from e
            raise

        handle = self._parse_job(response, request.transform_name, fallback_name=request.job_name)
        if not handle.correlation_data and request.correlation_data:
            # Older api-versions do not echo correlation data back
            handle = JobHandle(
                name=handle.name,
                transform_name=handle.transform_name,
                state=handle.state,
                progress=handle.progress,
                output_assets=handle.output_assets or (request.output.asset_name,),
                correlation_data=dict(request.correlation_data),
                start_time=handle.start_time,
                end_time=handle.end_time,
                error_message=handle.error_message,
            )
        return handle

    def get_job(self, transform_name: str, job_name: str) -> JobHandle:
        """Get job details."""
        response = self._request(
            'GET',
            f"transforms/{quote(transform_name)}/jobs/{quote(job_name)}"
        )
        return self._parse_job(response, transform_name, fallback_name=job_name)

    def create_or_update_asset(self, asset_name: str) -> str:
        """Create an asset (a pointer to a storage container)."""
        self.logger.debug(f"Creating asset {asset_name}")
        response = self._request(
            'PUT',
            f"assets/{quote(asset_name)}",
            json={'properties': {}}
        )
        return response.get('name', asset_name)

    def list_container_sas(
        self,
        asset_name: str,
        permissions: str = "Read",
        expires_in: int = 3600
    ) -> List[str]:
        """Get SAS URLs for the asset's container."""
        expiry = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        response = self._request(
            'POST',
            f"assets/{quote(asset_name)}/listContainerSas",
            json={
                'permissions': permissions,
                'expiryTime': expiry.strftime('%Y-%m-%dT%H:%M:%SZ'),
            }
        )
        urls = response.get('assetContainerSasUrls') or []
        if not urls:
            raise RemoteServiceError(f"No container SAS URL returned for asset {asset_name}")
        return list(urls)

    def delete_asset(self, asset_name: str) -> bool:
        """Delete an asset and its container."""
        self.logger.info(f"Deleting asset {asset_name}")
        try:
            self._request('DELETE', f"assets/{quote(asset_name)}")
            return True
        except RemoteServiceError as e:
            self.logger.error(f"Delete asset failed: {e}")
            return False

    def _parse_job(
        self,
        data: Dict[str, Any],
        transform_name: str,
        fallback_name: str
    ) -> JobHandle:
        """Build a JobHandle from a job resource."""
        if not isinstance(data, dict):
            raise RemoteServiceError(f"Invalid job resource for {fallback_name}: {data!r}")

        props = data.get('properties') or {}
        outputs = props.get('outputs') or []

        progress = []
        assets = []
        error_message = None
        for output in outputs:
            progress.append(int(output.get('progress') or 0))
            if output.get('assetName'):
                assets.append(output['assetName'])
            error = output.get('error') or {}
            if error.get('message') and not error_message:
                error_message = error['message']

        return JobHandle(
            name=data.get('name') or fallback_name,
            transform_name=transform_name,
            state=JobState.parse(props.get('state')),
            progress=tuple(progress),
            output_assets=tuple(assets),
            correlation_data=dict(props.get('correlationData') or {}),
            start_time=parse_timestamp(props.get('startTime')),
            end_time=parse_timestamp(props.get('endTime')),
            error_message=error_message,
        )
