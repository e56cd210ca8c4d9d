"""
Tests for configuration loading.
"""

import json
import pytest
from pathlib import Path

import toml
import yaml

from usage_analytics.utils.config import AnalyticsConfig, ConfigLoader, load_config
from usage_analytics.utils.errors import ConfigurationError


class TestDefaults:
    def test_defaults(self):
        config = AnalyticsConfig()
        assert config.ingestion.rate_limit_per_minute == 1000
        assert config.ingestion.max_batch_size == 100
        assert config.ingestion.buffer_size == 500
        assert config.export.max_concurrent_exports == 5
        assert config.export.max_rows == 1_000_000
        assert config.export.retention_days == 7
        assert config.export.storage_prefix == "analytics-exports/"
        assert config.export.download_url_expiry_hours == 24
        assert config.aggregation.default_retention_days == [1, 7, 14, 30]
        assert config.logging.level == "INFO"


class TestConfigLoader:
    async def test_file_sources_merge_by_priority(self, temp_dir: Path):
        yaml_path = temp_dir / "base.yaml"
        yaml_path.write_text(yaml.safe_dump({
            "ingestion": {"rate_limit_per_minute": 50, "buffer_size": 10},
            "logging": {"level": "debug"},
        }))
        toml_path = temp_dir / "override.toml"
        toml_path.write_text(toml.dumps({"ingestion": {"rate_limit_per_minute": 75}}))
        json_path = temp_dir / "low.json"
        json_path.write_text(json.dumps({"ingestion": {"rate_limit_per_minute": 5}}))

        loader = ConfigLoader()
        loader.add_source(toml_path, priority=20)
        loader.add_source(yaml_path, priority=10)
        loader.add_source(json_path, priority=1)
        config = await loader.load()

        assert config.ingestion.rate_limit_per_minute == 75
        assert config.ingestion.buffer_size == 10
        assert config.logging.level == "DEBUG"
        assert loader.get_config() is config

    async def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("USAGE_ANALYTICS_EXPORT__MAX_ROWS", "10")
        monkeypatch.setenv("USAGE_ANALYTICS_CACHE__BACKEND", "redis")
        monkeypatch.setenv("USAGE_ANALYTICS_DEBUG", "true")

        loader = ConfigLoader()
        loader.add_source({"export": {"max_rows": 99}}, priority=100)
        config = await loader.load()

        assert config.export.max_rows == 10
        assert config.cache.backend == "redis"
        assert config.debug is True

    async def test_env_file(self, temp_dir: Path):
        env_path = temp_dir / "service.env"
        env_path.write_text(
            "# comment\n"
            "USAGE_ANALYTICS_API__PORT=9090\n"
            "STORAGE__BACKEND=memory\n"
        )
        loader = ConfigLoader()
        loader.add_source(env_path)
        config = await loader.load()

        assert config.api.port == 9090
        assert config.storage.backend == "memory"

    async def test_missing_file_is_skipped(self, temp_dir: Path):
        loader = ConfigLoader()
        loader.add_source(temp_dir / "absent.yaml")
        config = await loader.load()
        assert config.app_name == "usage-analytics"

    async def test_invalid_values_raise(self):
        loader = ConfigLoader()
        loader.add_source({"ingestion": {"max_batch_size": 0}})
        with pytest.raises(ConfigurationError) as exc_info:
            await loader.load()
        assert "max_batch_size" in exc_info.value.message

    async def test_unknown_backend_raises(self):
        loader = ConfigLoader()
        loader.add_source({"storage": {"backend": "postgres"}})
        with pytest.raises(ConfigurationError):
            await loader.load()

    async def test_unparsable_file_raises(self, temp_dir: Path):
        path = temp_dir / "broken.json"
        path.write_text("{not json")
        loader = ConfigLoader()
        loader.add_source(path)
        with pytest.raises(ConfigurationError):
            await loader.load()

    def test_unknown_file_type(self, temp_dir: Path):
        with pytest.raises(ConfigurationError):
            ConfigLoader().add_source(temp_dir / "config.ini")

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().get_config()


class TestLoadConfig:
    async def test_paths_and_extra(self, temp_dir: Path):
        path = temp_dir / "service.yaml"
        path.write_text(yaml.safe_dump({"api": {"port": 7000, "api_keys": {"k": "proj-1"}}}))

        config = await load_config([path], {"debug": True})

        assert config.api.port == 7000
        assert config.api.api_keys == {"k": "proj-1"}
        assert config.debug is True
