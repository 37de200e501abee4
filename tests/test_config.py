"""Tests for configuration management and validation."""

import json
import os
from unittest.mock import patch

import pytest
import yaml

from sparklet.config import ConfigManager, SessionConfig, ValidationError
from sparklet.config.schema import BackendType, TieBreak


class TestConfigSchema:
    """Test configuration schema validation."""

    def test_defaults(self):
        """Test the default session configuration."""
        config = SessionConfig()

        assert config.app_name == "sparklet"
        assert config.execution.backend == "threads"
        assert config.execution.max_task_retries == 4
        assert config.cache.storage_level == "memory_only"
        assert config.tuning.num_folds == 3
        assert config.tuning.tie_break == "first"

    def test_enum_values_are_plain_strings(self):
        """Test that enum fields are stored as their values."""
        config = SessionConfig(execution={"backend": "dask"}, tuning={"tie_break": "last"})

        assert config.execution.backend == BackendType.DASK.value
        assert config.tuning.tie_break == TieBreak.LAST.value
        assert isinstance(config.execution.backend, str)

    def test_invalid_retry_bound(self):
        """Test that at least one task attempt is required."""
        with pytest.raises(Exception):
            SessionConfig(execution={"max_task_retries": 0})

    def test_invalid_num_folds(self):
        """Test that cross validation needs two folds."""
        with pytest.raises(Exception):
            SessionConfig(tuning={"num_folds": 1})

    def test_unknown_section_rejected(self):
        """Test that unknown top-level keys are rejected."""
        with pytest.raises(Exception):
            SessionConfig(pipeline={"name": "x"})

    def test_scheduler_address_requires_dask(self):
        """Test cross-field validation of the scheduler address."""
        with pytest.raises(Exception, match="scheduler_address"):
            SessionConfig(execution={"scheduler_address": "tcp://localhost:8786"})

        config = SessionConfig(execution={"backend": "dask", "scheduler_address": "tcp://localhost:8786"})
        assert config.execution.scheduler_address == "tcp://localhost:8786"


class TestConfigManager:
    """Test configuration manager functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config_manager = ConfigManager()
        self.valid_config = {
            "app_name": "test_app",
            "execution": {"max_workers": 2, "default_parallelism": 4},
            "tuning": {"num_folds": 5, "seed": 7},
        }

    def test_load_yaml_config(self, tmp_path):
        """Test loading a YAML configuration."""
        path = tmp_path / "session.yaml"
        path.write_text(yaml.dump(self.valid_config))

        config = self.config_manager.load_config(str(path))

        assert isinstance(config, SessionConfig)
        assert config.app_name == "test_app"
        assert config.tuning.num_folds == 5

    def test_load_json_config(self, tmp_path):
        """Test loading a JSON configuration."""
        path = tmp_path / "session.json"
        path.write_text(json.dumps(self.valid_config))

        config = self.config_manager.load_config(str(path))
        assert config.execution.default_parallelism == 4

    def test_load_nonexistent_file(self):
        """Test loading a missing configuration file."""
        with pytest.raises(FileNotFoundError):
            self.config_manager.load_config("missing/session.yaml")

    def test_unsupported_format(self, tmp_path):
        """Test loading an unsupported file format."""
        path = tmp_path / "session.txt"
        path.write_text("app_name: x")

        with pytest.raises(ValidationError, match="Unsupported configuration file format"):
            self.config_manager.load_config(str(path))

    def test_non_mapping_rejected(self, tmp_path):
        """Test that a file must hold a mapping of sections."""
        path = tmp_path / "session.yaml"
        path.write_text(yaml.dump(["execution"]))

        with pytest.raises(ValidationError, match="mapping"):
            self.config_manager.read_config(path)

    def test_empty_file_gives_defaults(self, tmp_path):
        """Test that an empty file loads the default configuration."""
        path = tmp_path / "session.yaml"
        path.write_text("")

        assert self.config_manager.load_config(path) == SessionConfig()

    def test_invalid_config_raises(self, tmp_path):
        """Test that schema errors are reported with their field path."""
        path = tmp_path / "session.yaml"
        path.write_text(yaml.dump({"execution": {"max_task_retries": 0}}))

        with pytest.raises(ValidationError, match="max_task_retries"):
            self.config_manager.load_config(str(path))

    def test_config_caching(self, tmp_path):
        """Test that loaded configurations are cached per path."""
        path = tmp_path / "session.yaml"
        path.write_text(yaml.dump(self.valid_config))

        first = self.config_manager.load_config(str(path))
        second = self.config_manager.load_config(str(path))
        assert first is second

        self.config_manager.clear_cache()
        assert self.config_manager.load_config(str(path)) is not first

    def test_environment_variable_substitution(self, tmp_path):
        """Test ${VAR}, ${VAR:default} and $VAR substitution."""
        path = tmp_path / "session.yaml"
        path.write_text(yaml.dump({
            "app_name": "${SPARKLET_APP}",
            "checkpoint": {"directory": "${SPARKLET_CKPT:/tmp/ckpt}"},
            "logging": {"file_path": "$SPARKLET_LOG"},
        }))

        with patch.dict(os.environ, {"SPARKLET_APP": "from_env", "SPARKLET_LOG": "/tmp/run.log"}):
            config = self.config_manager.load_config(str(path))

        assert config.app_name == "from_env"
        assert config.checkpoint.directory == "/tmp/ckpt"
        assert config.logging.file_path == "/tmp/run.log"

    def test_validate_schema_warnings(self):
        """Test that custom validations produce warnings, not errors."""
        result = self.config_manager.validate_schema(self.valid_config)
        assert result.valid
        assert result.warnings == []

        result = self.config_manager.validate_schema({"execution": {"max_task_retries": 1}})
        assert result.valid
        assert any("max_task_retries is 1" in w for w in result.warnings)

    def test_validate_schema_errors(self):
        """Test validation result for an invalid configuration."""
        result = self.config_manager.validate_schema({"tuning": {"parallelism": 0}})

        assert not result.valid
        assert result.config is None
        assert any("parallelism" in e for e in result.errors)

    @pytest.mark.parametrize("fmt", ["yaml", "json"])
    def test_save_and_reload(self, tmp_path, fmt):
        """Test that a saved configuration loads back unchanged."""
        config = SessionConfig(**self.valid_config)
        path = tmp_path / f"saved.{fmt}"

        self.config_manager.save_config(config, str(path), format=fmt)
        reloaded = self.config_manager.load_config(str(path))

        assert reloaded == config

    def test_default_config_is_valid(self):
        """Test that the init template validates."""
        result = self.config_manager.validate_schema(self.config_manager.get_default_config())
        assert result.valid
