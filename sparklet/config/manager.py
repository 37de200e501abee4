"""Loading, environment substitution and validation of session configuration files."""

import os
import re
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .schema import SessionConfig, ValidationResult, ValidationError


# ${NAME} or ${NAME:default}
BRACED_VARIABLE = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')
# $NAME, left untouched when NAME is not set
BARE_VARIABLE = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)')

READERS: Dict[str, Callable[[Any], Any]] = {
    '.yaml': yaml.safe_load,
    '.yml': yaml.safe_load,
    '.json': json.load,
}

WRITERS: Dict[str, Callable[[Dict[str, Any], Any], None]] = {
    'yaml': lambda data, f: yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False),
    'json': lambda data, f: json.dump(data, f, indent=2),
}


class ConfigManager:
    """Reads session configuration files and turns them into validated ``SessionConfig`` objects."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._loaded: Dict[Path, SessionConfig] = {}

    def load_config(self, config_path: Union[str, Path], validate: bool = True) -> SessionConfig:
        """
        Read, substitute and validate a YAML or JSON configuration file.

        Results are cached per resolved path until ``clear_cache`` is called.
        With ``validate=False`` only the pydantic model is built, without the
        advisory checks.

        Raises:
            FileNotFoundError: If the file does not exist
            ValidationError: If the file cannot be parsed or fails validation
        """
        path = Path(config_path).resolve()
        if path in self._loaded:
            self.logger.debug(f"Configuration cache hit for {path}")
            return self._loaded[path]

        raw = self.read_config(path)
        if validate:
            result = self.validate_schema(raw)
            if not result.valid:
                self.logger.error(f"Invalid configuration in {path}")
                raise ValidationError(f"Configuration validation failed: {'; '.join(result.errors)}",
                                      result.errors)
            for warning in result.warnings:
                self.logger.warning(warning)
            config = result.config
        else:
            config = SessionConfig(**raw)

        self._loaded[path] = config
        self.logger.info(f"Loaded configuration {config.app_name} from {path}")
        return config

    def read_config(self, config_path: Union[str, Path]) -> Dict[str, Any]:
        """Parse a configuration file and substitute environment variables, without validating it."""
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        reader = READERS.get(path.suffix.lower())
        if reader is None:
            raise ValidationError(f"Unsupported configuration file format: {path.suffix}")

        with open(path, 'r', encoding='utf-8') as f:
            try:
                raw = reader(f)
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ValidationError(f"Cannot parse {path.name}: {e}")

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValidationError(f"{path.name} must contain a mapping of configuration sections")
        return self.resolve_variables(raw)

    def validate_schema(self, config: Dict[str, Any]) -> ValidationResult:
        """Validate a raw configuration mapping; schema violations become errors, advisory checks warnings."""
        try:
            session_config = SessionConfig(**config)
        except PydanticValidationError as e:
            errors = []
            for error in e.errors():
                location = ".".join(str(part) for part in error['loc'])
                errors.append(f"{location}: {error['msg']}" if location else error['msg'])
            return ValidationResult(valid=False, errors=errors)
        except TypeError as e:
            return ValidationResult(valid=False, errors=[f"Configuration must be a mapping: {e}"])

        return ValidationResult(valid=True, warnings=self._advisories(session_config), config=session_config)

    def _advisories(self, config: SessionConfig) -> List[str]:
        """Settings that are valid but probably not what was intended."""
        execution = config.execution
        warnings = []

        if execution.max_workers and execution.default_parallelism \
                and execution.default_parallelism < execution.max_workers:
            warnings.append("default_parallelism is lower than max_workers; some workers will stay idle.")

        if execution.max_task_retries == 1:
            warnings.append("max_task_retries is 1; any task failure will fail its stage.")

        if config.cache.storage_level != "memory_only" and not config.cache.spill_directory \
                and not config.checkpoint.directory:
            warnings.append("Disk storage level without spill_directory; a temporary directory will be used.")

        if config.tuning.parallelism > 1 and execution.backend == "dask":
            warnings.append("Tuning parallelism runs driver threads; fits still share the Dask cluster.")

        return warnings

    def resolve_variables(self, value: Any) -> Any:
        """Substitute environment variables in every string of a nested configuration value."""
        if isinstance(value, dict):
            return {key: self.resolve_variables(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_variables(item) for item in value]
        if isinstance(value, str):
            return self._substitute(value)
        return value

    @staticmethod
    def _substitute(value: str) -> str:
        value = BRACED_VARIABLE.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), value)
        return BARE_VARIABLE.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)

    def save_config(self, config: SessionConfig, output_path: Union[str, Path], format: str = "yaml") -> None:
        """Write a configuration as YAML or JSON."""
        writer = WRITERS.get(format.lower())
        if writer is None:
            raise ValueError(f"Unsupported format: {format}")

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            writer(config.model_dump(mode='json'), f)
        self.logger.info(f"Configuration saved to {path}")

    def clear_cache(self) -> None:
        self._loaded.clear()

    def get_default_config(self) -> Dict[str, Any]:
        """Template written by ``sparklet init-config``."""
        return {
            "app_name": "sparklet_app",
            "execution": {
                "backend": "threads",
                "max_workers": 4,
                "default_parallelism": 4,
                "max_task_retries": 4
            },
            "cache": {
                "storage_level": "memory_only",
                "memory_fraction": 0.25
            },
            "checkpoint": {
                "directory": "./checkpoints",
                "cleanup_on_close": False
            },
            "tuning": {
                "num_folds": 3,
                "seed": 42,
                "parallelism": 1,
                "aggregation": "mean",
                "tie_break": "first"
            },
            "logging": {
                "level": "INFO"
            }
        }
