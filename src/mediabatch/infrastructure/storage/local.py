"""Local directory destination for materialized job outputs."""

import logging
from pathlib import Path
from typing import Optional

import requests

from mediabatch.domain.storage import CopyHandle, CopyStatus


class LocalDirectoryDestination:
    """
    Downloads blobs into a local directory.
    Implements ICopyTarget; copies complete before start_copy returns.
    """

    def __init__(
        self,
        root: Path,
        timeout: int = 600,
        chunk_size: int = 1024 * 1024,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize local destination.

        Args:
            root: Directory receiving the files (created on demand)
            timeout: Request timeout in seconds
            chunk_size: Download chunk size in bytes
            session: Optional requests session
            logger: Logger instance
        """
        self.root = Path(root)
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)
        self._failures = {}

    def describe(self) -> str:
        return str(self.root)

    def path_for(self, target_name: str) -> Path:
        """Resolve a blob name below root, refusing names that escape it."""
        root = self.root.resolve()
        path = (root / target_name.lstrip('/')).resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Target {target_name} escapes {self.root}")
        return path

    def start_copy(self, source_url: str, target_name: str) -> CopyHandle:
        """Download source_url to root/target_name."""
        try:
            destination = self.path_for(target_name)
        except ValueError as e:
            self._failures[target_name] = str(e)
            return CopyHandle(target_name=target_name, status=CopyStatus.FAILED, description=str(e))

        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + '.part')
        downloaded = 0
        try:
            with self.session.get(source_url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(partial, 'wb') as fh:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            fh.write(chunk)
                            downloaded += len(chunk)
            partial.replace(destination)
        except (requests.RequestException, OSError) as e:
            # Never log the SAS query string
            self.logger.error(f"Download of {target_name} failed: {type(e).__name__}")
            partial.unlink(missing_ok=True)
            self._failures[target_name] = str(e)
            return CopyHandle(target_name=target_name, status=CopyStatus.FAILED, description=str(e))

        self._failures.pop(target_name, None)
        self.logger.info(f"Downloaded {downloaded} bytes to {destination}")
        return CopyHandle(target_name=target_name, status=CopyStatus.SUCCESS)

    def get_copy_status(self, target_name: str) -> CopyHandle:
        if target_name in self._failures:
            return CopyHandle(
                target_name=target_name,
                status=CopyStatus.FAILED,
                description=self._failures[target_name],
            )
        try:
            exists = self.path_for(target_name).is_file()
        except ValueError as e:
            return CopyHandle(target_name=target_name, status=CopyStatus.FAILED, description=str(e))
        status = CopyStatus.SUCCESS if exists else CopyStatus.FAILED
        return CopyHandle(target_name=target_name, status=status)
