"""Configuration loading and validation."""

import os
import yaml
from pathlib import Path
from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass, field, fields

from mediabatch.domain.exceptions import ConfigurationError
from mediabatch.domain.jobs import MediaServicesAccount
from mediabatch.domain.models import DEFAULT_MARKER_KEY, SkipPolicy
from mediabatch.shared.logging import get_logger
from mediabatch.shared.retry import RetryStrategy

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("mediabatch.yaml")


def _as_suffixes(value: Any) -> Tuple[str, ...]:
    """Accept a list or a comma separated string; normalise to '.ext' style."""
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(',')
    result = []
    for item in value:
        item = str(item).strip()
        if item:
            result.append(item.lower())
    return tuple(result)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


@dataclass
class BatchSettings:
    """Configuration for a scan, encode or download run."""

    # Media services account
    subscription_id: str = ""
    resource_group: str = ""
    account_name: str = ""
    access_token: str = ""
    arm_endpoint: str = "https://management.azure.com"
    api_version: str = "2022-07-01"

    # Jobs
    transform_name: str = "ContentAwareEncoding"
    name_prefix: str = "encodeH264"
    storage_url: Optional[str] = None

    # Batching and polling
    batch_size: int = 10
    poll_interval_seconds: float = 10.0
    job_timeout_seconds: float = 600.0
    batch_timeout_seconds: Optional[float] = None
    max_in_flight: Optional[int] = None

    # Eligibility
    extension_filters: Tuple[str, ...] = (".wmv", ".mov", ".mp4")
    exclude_extensions: Tuple[str, ...] = (".ism", ".ismc", ".mpi")
    skip_container_prefixes: Tuple[str, ...] = ("asset-",)
    skip_blob_suffixes: Tuple[str, ...] = (".ism", ".ismc", ".mpi", "_manifest.json", "_metadata.xml")
    skip_processed: bool = True
    status_metadata_key: str = DEFAULT_MARKER_KEY

    # Materialization
    destination_url: Optional[str] = None
    output_dir: Optional[Path] = None
    flatten_output: bool = False
    delete_source_on_success: bool = False
    copy_timeout_seconds: float = 300.0

    # Remote calls
    retry_max_attempts: int = 3
    retry_backoff_seconds: float = 2.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Normalise and validate configuration after initialization."""
        self.extension_filters = _as_suffixes(self.extension_filters)
        self.exclude_extensions = _as_suffixes(self.exclude_extensions)
        self.skip_blob_suffixes = _as_suffixes(self.skip_blob_suffixes)
        self.skip_container_prefixes = tuple(
            p.strip() for p in (
                self.skip_container_prefixes.split(',')
                if isinstance(self.skip_container_prefixes, str)
                else self.skip_container_prefixes
            ) if p and p.strip()
        )
        if self.output_dir is not None:
            self.output_dir = Path(self.output_dir)
        if self.log_file is not None:
            self.log_file = Path(self.log_file)
        self._validate()

    def _validate(self):
        """Validate configuration values."""
        if int(self.batch_size) <= 0:
            raise ConfigurationError(f"batch_size must be positive, got: {self.batch_size}")

        if self.poll_interval_seconds <= 0:
            raise ConfigurationError(
                f"poll_interval_seconds must be positive, got: {self.poll_interval_seconds}"
            )

        if self.job_timeout_seconds <= 0:
            raise ConfigurationError(
                f"job_timeout_seconds must be positive, got: {self.job_timeout_seconds}"
            )

        if self.batch_timeout_seconds is not None and self.batch_timeout_seconds <= 0:
            raise ConfigurationError(
                f"batch_timeout_seconds must be positive, got: {self.batch_timeout_seconds}"
            )

        if self.max_in_flight is not None and self.max_in_flight < self.batch_size:
            raise ConfigurationError(
                f"max_in_flight ({self.max_in_flight}) must be at least batch_size ({self.batch_size})"
            )

        if self.copy_timeout_seconds <= 0:
            raise ConfigurationError(
                f"copy_timeout_seconds must be positive, got: {self.copy_timeout_seconds}"
            )

        if self.retry_max_attempts < 1:
            raise ConfigurationError(
                f"retry_max_attempts must be at least 1, got: {self.retry_max_attempts}"
            )

        if not self.extension_filters:
            raise ConfigurationError("extension_filters must not be empty")

        if not self.status_metadata_key:
            raise ConfigurationError("status_metadata_key must not be empty")

        if self.destination_url and self.output_dir:
            raise ConfigurationError("Set either destination_url or output_dir, not both")

    def media_account(self) -> MediaServicesAccount:
        """
        Build the media services account from these settings.

        Raises:
            ConfigurationError: If the account is incomplete
        """
        account = MediaServicesAccount(
            subscription_id=self.subscription_id,
            resource_group=self.resource_group,
            account_name=self.account_name,
            access_token=self.access_token,
            endpoint=self.arm_endpoint,
            api_version=self.api_version,
        )
        if not account.validate():
            raise ConfigurationError(
                "Media services account incomplete: set SUBSCRIPTIONID, RESOURCEGROUP, "
                "ACCOUNTNAME and AZURE_ACCESS_TOKEN"
            )
        return account

    def skip_policy(self) -> SkipPolicy:
        return SkipPolicy(
            container_prefixes=self.skip_container_prefixes,
            blob_suffixes=self.skip_blob_suffixes,
            skip_processed=self.skip_processed,
            marker_key=self.status_metadata_key,
        )

    def retry_strategy(self) -> RetryStrategy:
        return RetryStrategy(
            max_attempts=self.retry_max_attempts,
            backoff_seconds=self.retry_backoff_seconds,
        )


class ConfigLoader:
    """Loads and validates configuration from YAML files and environment variables."""

    # env var -> (field, converter)
    ENV_FIELDS = {
        "SUBSCRIPTIONID": ("subscription_id", str),
        "RESOURCEGROUP": ("resource_group", str),
        "ACCOUNTNAME": ("account_name", str),
        "AZURE_ACCESS_TOKEN": ("access_token", str),
        "ARM_ENDPOINT": ("arm_endpoint", str),
        "MEDIA_API_VERSION": ("api_version", str),
        "TRANSFORM_NAME": ("transform_name", str),
        "NAME_PREFIX": ("name_prefix", str),
        "REMOTESTORAGEACCOUNTSAS": ("storage_url", str),
        "BATCH_SIZE": ("batch_size", int),
        "POLL_INTERVAL": ("poll_interval_seconds", float),
        "JOB_TIMEOUT": ("job_timeout_seconds", float),
        "BATCH_TIMEOUT": ("batch_timeout_seconds", float),
        "MAX_IN_FLIGHT": ("max_in_flight", int),
        "EXTENSION_FILTERS": ("extension_filters", str),
        "EXCLUDE_EXTENSIONS": ("exclude_extensions", str),
        "SKIP_PROCESSED": ("skip_processed", _as_bool),
        "STATUS_METADATA_KEY": ("status_metadata_key", str),
        "DESTINATION_URL": ("destination_url", str),
        "OUTPUT_DIR": ("output_dir", Path),
        "FLATTEN_OUTPUT": ("flatten_output", _as_bool),
        "DELETE_SOURCE_ON_SUCCESS": ("delete_source_on_success", _as_bool),
        "COPY_TIMEOUT": ("copy_timeout_seconds", float),
        "RETRY_MAX_ATTEMPTS": ("retry_max_attempts", int),
        "RETRY_BACKOFF": ("retry_backoff_seconds", float),
        "LOG_LEVEL": ("log_level", str),
        "LOG_FILE": ("log_file", Path),
    }

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize config loader.

        Args:
            config_path: Optional path to YAML config file
        """
        self._explicit = config_path is not None
        self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        self._logger = get_logger(__name__)

    def load(self, overrides: Optional[Dict[str, Any]] = None) -> BatchSettings:
        """
        Load configuration from file and environment.

        Environment variables take precedence over the config file, and
        overrides (from the CLI) take precedence over both.

        Returns:
            BatchSettings instance

        Raises:
            ConfigurationError: If configuration is invalid
        """
        config_dict: Dict[str, Any] = {}

        if self.config_path.exists():
            self._logger.info(f"Loading config from {self.config_path}")
            try:
                with open(self.config_path, 'r') as f:
                    yaml_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}") from e
            if not isinstance(yaml_config, dict):
                raise ConfigurationError(f"{self.config_path} must contain a mapping")
            config_dict.update(yaml_config)
        elif self._explicit:
            self._logger.warning(f"Config file not found: {self.config_path}")

        config_dict.update(self._load_from_env())

        if overrides:
            for k, v in overrides.items():
                if v is None:
                    continue
                config_dict[k] = v

        valid_fields = {f.name for f in fields(BatchSettings)} - {"extra"}
        unknown = {k: v for k, v in config_dict.items() if k not in valid_fields}
        if unknown:
            self._logger.debug(f"Ignoring unknown config keys: {sorted(unknown)}")

        filtered_config = {k: v for k, v in config_dict.items() if k in valid_fields}

        try:
            return BatchSettings(extra=unknown, **filtered_config)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        env_config: Dict[str, Any] = {}
        for name, (key, convert) in self.ENV_FIELDS.items():
            raw = os.getenv(name)
            if raw is None or raw == "":
                continue
            try:
                env_config[key] = convert(raw)
            except ValueError:
                self._logger.warning(f"Invalid {name} value: {raw}")
        return env_config
