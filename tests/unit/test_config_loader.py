"""Test configuration loader."""

import pytest
from pathlib import Path

from mediabatch.domain.exceptions import ConfigurationError
from mediabatch.infrastructure.config import BatchSettings, ConfigLoader


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from the caller's environment and any mediabatch.yaml in cwd."""
    for name in ConfigLoader.ENV_FIELDS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults():
    """Test loading with no file and no environment."""
    config = ConfigLoader().load()

    assert config.batch_size == 10
    assert config.poll_interval_seconds == 10.0
    assert config.extension_filters == (".wmv", ".mov", ".mp4")
    assert config.exclude_extensions == (".ism", ".ismc", ".mpi")
    assert config.status_metadata_key == "ams_status"
    assert config.transform_name == "ContentAwareEncoding"
    assert config.batch_timeout_seconds is None


def test_config_loader_from_yaml(tmp_path):
    """Test loading config from a YAML file."""
    path = tmp_path / "batch.yaml"
    path.write_text(
        "batch_size: 4\n"
        "extension_filters: [.MP4, .mxf]\n"
        "flatten_output: true\n"
        "output_dir: results\n"
        "team: media\n"
    )

    config = ConfigLoader(path).load()

    assert config.batch_size == 4
    assert config.extension_filters == (".mp4", ".mxf")
    assert config.flatten_output is True
    assert config.output_dir == Path("results")
    assert config.extra == {"team": "media"}


def test_default_file_in_cwd(tmp_path):
    """Test that mediabatch.yaml is picked up from the working directory."""
    (tmp_path / "mediabatch.yaml").write_text("name_prefix: nightly\n")

    assert ConfigLoader().load().name_prefix == "nightly"


def test_config_loader_from_env(monkeypatch):
    """Test loading config from environment variables."""
    monkeypatch.setenv('SUBSCRIPTIONID', 'sub')
    monkeypatch.setenv('RESOURCEGROUP', 'rg')
    monkeypatch.setenv('ACCOUNTNAME', 'acct')
    monkeypatch.setenv('AZURE_ACCESS_TOKEN', 'token')
    monkeypatch.setenv('REMOTESTORAGEACCOUNTSAS', 'https://acct.blob.core.windows.net/?sig=x')
    monkeypatch.setenv('BATCH_SIZE', '3')
    monkeypatch.setenv('EXTENSION_FILTERS', '.mp4, .MOV')
    monkeypatch.setenv('DELETE_SOURCE_ON_SUCCESS', 'yes')

    config = ConfigLoader().load()

    assert config.storage_url == 'https://acct.blob.core.windows.net/?sig=x'
    assert config.batch_size == 3
    assert config.extension_filters == ('.mp4', '.mov')
    assert config.delete_source_on_success is True
    account = config.media_account()
    assert account.account_name == 'acct'
    assert account.access_token == 'token'


def test_env_overrides_file(tmp_path, monkeypatch):
    """Test that environment variables win over the config file."""
    path = tmp_path / "batch.yaml"
    path.write_text("batch_size: 4\npoll_interval_seconds: 30\n")
    monkeypatch.setenv('BATCH_SIZE', '6')

    config = ConfigLoader(path).load()

    assert config.batch_size == 6
    assert config.poll_interval_seconds == 30


def test_overrides_win_over_env(monkeypatch):
    """Test that CLI overrides win and None overrides are ignored."""
    monkeypatch.setenv('BATCH_SIZE', '6')
    monkeypatch.setenv('TRANSFORM_NAME', 'FromEnv')

    config = ConfigLoader().load({'batch_size': 2, 'transform_name': None})

    assert config.batch_size == 2
    assert config.transform_name == 'FromEnv'


def test_invalid_env_value_is_skipped(monkeypatch):
    """Test that an unparsable env value falls back to the default."""
    monkeypatch.setenv('BATCH_SIZE', 'many')

    assert ConfigLoader().load().batch_size == 10


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("batch_size: [unclosed\n")

    with pytest.raises(ConfigurationError):
        ConfigLoader(path).load()


def test_yaml_must_be_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")

    with pytest.raises(ConfigurationError):
        ConfigLoader(path).load()


def test_missing_explicit_file_uses_defaults(tmp_path):
    config = ConfigLoader(tmp_path / "missing.yaml").load()

    assert config.batch_size == 10


def test_config_validation_batch_size():
    """Test that a non-positive batch size raises error."""
    with pytest.raises(ConfigurationError):
        BatchSettings(batch_size=0)


def test_config_validation_max_in_flight():
    """Test that the in-flight cap cannot be below one batch."""
    with pytest.raises(ConfigurationError):
        BatchSettings(batch_size=5, max_in_flight=4)


def test_config_validation_empty_filters():
    with pytest.raises(ConfigurationError):
        BatchSettings(extension_filters="")


def test_config_validation_two_destinations():
    with pytest.raises(ConfigurationError):
        BatchSettings(destination_url="https://acct/results?sig=x", output_dir="out")


def test_config_validation_poll_interval():
    with pytest.raises(ConfigurationError):
        BatchSettings(poll_interval_seconds=0)


def test_media_account_incomplete():
    with pytest.raises(ConfigurationError, match="AZURE_ACCESS_TOKEN"):
        BatchSettings(subscription_id="sub").media_account()


def test_skip_policy_and_retry():
    settings = BatchSettings(status_metadata_key="done", skip_processed=False, retry_max_attempts=5)

    policy = settings.skip_policy()
    retry = settings.retry_strategy()

    assert policy.marker_key == "done"
    assert policy.skip_processed is False
    assert retry.max_attempts == 5
