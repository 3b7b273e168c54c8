"""Pytest configuration and shared fixtures."""

import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest

from crawlhost.foundation import config as config_module
from crawlhost.foundation.config import ConfigManager
from crawlhost.foundation.errors import ErrorHandler
from crawlhost.foundation.metrics import MetricsCollector
from crawlhost.hostdb import HostRecord


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep tests away from ~/.crawlhost and from each other's settings."""
    monkeypatch.setenv("CRAWLHOST_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    config_module.reset_config_manager()
    yield
    config_module.reset_config_manager()


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Drop handlers bound to streams that a test may have closed."""
    yield
    package_logger = logging.getLogger("crawlhost")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def cli_runner():
    """Create a Click CLI runner for testing."""
    from click.testing import CliRunner
    return CliRunner()


@pytest.fixture
def temp_config_file(temp_dir):
    """Create a temporary config file for testing."""
    config_file = temp_dir / "test_config.yaml"
    config_file.write_text(
        """
version: "1.0"
global:
  log_level: DEBUG
hostdb:
  report_timezone: UTC
jobs:
  record_metrics: false
"""
    )
    return config_file


@pytest.fixture
def config_manager(temp_dir):
    """Create a test configuration manager."""
    return ConfigManager(config_path=temp_dir / "config.yaml")


@pytest.fixture
def error_handler():
    """Create an error handler for testing."""
    return ErrorHandler()


@pytest.fixture
def metrics_collector():
    """Create a metrics collector for testing."""
    return MetricsCollector()


@pytest.fixture
def checked_at():
    return datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def sample_record(checked_at):
    """A record with every field populated."""
    record = HostRecord(1.5, checked_at, "http://example.com")
    record.unfetched = 1
    record.fetched = 2
    record.not_modified = 3
    record.redir_temp = 4
    record.redir_perm = 5
    record.gone = 6
    record.dns_failures = 7
    record.connection_failures = 8
    record.get_metadata()["lang"] = "en"
    record.get_metadata()["pages"] = 42
    return record


@pytest.fixture
def job_handle():
    """Mock job handle reporting 40% map and 60% reduce progress."""
    handle = Mock()
    handle.map_progress.return_value = 0.4
    handle.reduce_progress.return_value = 0.6
    handle.is_complete.return_value = False
    handle.kill_job.return_value = None
    return handle
