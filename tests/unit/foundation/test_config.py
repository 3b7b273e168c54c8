"""Tests for configuration management."""

from datetime import timezone

import pytest

from crawlhost.foundation.config import (
    ConfigManager,
    CrawlHostConfig,
    get_config_manager,
    reset_config_manager,
    resolve_timezone,
)
from crawlhost.foundation.errors import ConfigurationError


class TestConfigManager:
    """Test suite for ConfigManager."""

    def test_init_with_default_path(self):
        config_manager = ConfigManager()
        assert config_manager.config_path is None
        assert isinstance(config_manager._config, dict)

    def test_init_with_custom_path(self, temp_dir):
        config_path = temp_dir / "custom_config.yaml"
        config_manager = ConfigManager(config_path=config_path)
        assert config_manager.config_path == config_path

    def test_defaults(self, config_manager):
        assert config_manager.get_setting("global.log_level") == "WARNING"
        assert config_manager.get_setting("hostdb.report_timezone") == "UTC"
        assert config_manager.get_setting("jobs.record_metrics") is True

    def test_get_setting_with_default(self, config_manager):
        assert config_manager.get_setting("non.existing", default=42) == 42
        assert config_manager.get_setting("non.existing") is None

    def test_set_setting(self, config_manager):
        config_manager.set_setting("hostdb.report_timezone", "Europe/Berlin")
        assert config_manager.get_setting("hostdb.report_timezone") == "Europe/Berlin"

    def test_set_setting_new_section(self, config_manager):
        config_manager.set_setting("new.setting", "test_value")
        assert config_manager.get_setting("new.setting") == "test_value"

    def test_get_section(self, config_manager):
        assert config_manager.get_section("jobs") == {"record_metrics": True}
        assert config_manager.get_section("missing") is None

    def test_load_from_file(self, temp_config_file):
        config_manager = ConfigManager(config_path=temp_config_file)
        config_manager.load_from_file()
        assert config_manager.get_setting("global.log_level") == "DEBUG"
        assert config_manager.get_setting("jobs.record_metrics") is False
        assert config_manager.config.jobs.record_metrics is False

    def test_load_missing_file_is_noop(self, config_manager):
        config_manager.load_from_file()
        assert config_manager.get_setting("global.log_level") == "WARNING"

    def test_load_invalid_yaml(self, temp_dir):
        config_file = temp_dir / "broken.yaml"
        config_file.write_text("global: [unclosed")
        with pytest.raises(ConfigurationError):
            ConfigManager(config_path=config_file).load_from_file()

    def test_load_non_mapping(self, temp_dir):
        config_file = temp_dir / "list.yaml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(config_path=config_file).load_from_file()

    def test_save_and_reload(self, config_manager):
        config_manager.set_setting("jobs.record_metrics", False)
        config_manager.save_to_file()

        reloaded = ConfigManager(config_path=config_manager.config_path)
        reloaded.load_from_file()
        assert reloaded.get_setting("jobs.record_metrics") is False

    def test_environment_overrides(self, config_manager, monkeypatch):
        monkeypatch.setenv("CRAWLHOST_JOBS__RECORD_METRICS", "false")
        monkeypatch.setenv("CRAWLHOST_HOSTDB__REPORT_TIMEZONE", "UTC")
        config_manager.load_from_environment()
        assert config_manager.get_setting("jobs.record_metrics") is False
        assert config_manager.get_setting("hostdb.report_timezone") == "UTC"

    def test_validate_config(self, config_manager):
        assert config_manager.validate_config()["valid"]

    def test_validate_bad_timezone(self, config_manager):
        config_manager.set_setting("hostdb.report_timezone", "Not/AZone")
        result = config_manager.validate_config()
        assert not result["valid"]
        assert result["errors"]

    def test_validate_unknown_log_level_warns(self, config_manager):
        config_manager.set_setting("global.log_level", "CHATTY")
        result = config_manager.validate_config()
        assert result["valid"]
        assert result["warnings"]

    def test_global_manager_is_shared(self):
        assert get_config_manager() is get_config_manager()

    def test_global_manager_reads_config_file(self, temp_config_file, monkeypatch):
        monkeypatch.setenv("CRAWLHOST_CONFIG_PATH", str(temp_config_file))
        reset_config_manager()

        manager = get_config_manager()
        assert manager.config_path == temp_config_file
        assert manager.get_setting("global.log_level") == "DEBUG"
        assert manager.get_setting("jobs.record_metrics") is False

    def test_global_manager_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CRAWLHOST_JOBS__RECORD_METRICS", "false")
        reset_config_manager()
        assert get_config_manager().get_setting("jobs.record_metrics") is False


class TestTimezones:
    """Test suite for timezone resolution."""

    def test_utc_needs_no_database(self):
        assert resolve_timezone("UTC") is timezone.utc
        assert resolve_timezone("utc") is timezone.utc

    def test_unknown_zone(self):
        with pytest.raises(ValueError):
            resolve_timezone("Not/AZone")

    def test_model_rejects_unknown_zone(self):
        with pytest.raises(ValueError):
            CrawlHostConfig(hostdb={"report_timezone": "Not/AZone"})
