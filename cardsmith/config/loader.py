"""Engine configuration loading from YAML."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from .models import EngineConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("config") / "engine.yaml"


class ConfigLoadError(Exception):
    """Engine configuration could not be read."""
    pass


class ConfigValidationError(ConfigLoadError):
    """Engine configuration was read but does not match the schema."""

    def __init__(self, errors: List[Dict[str, Any]], file_path: Path):
        self.errors = errors
        self.file_path = file_path
        super().__init__(self.describe())

    def describe(self) -> str:
        """One line per offending setting, e.g. 'batch → parallelism: ...'."""
        problems = [
            f"  • {' → '.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in self.errors
        ]
        return "\n".join([f"Invalid engine configuration in {self.file_path}:"] + problems)


class ConfigLoader:
    """Reads ``config/engine.yaml`` under a base directory."""

    def __init__(self, base_dir: Union[str, Path] = "."):
        self.base_dir = Path(base_dir)

    def read_mapping(self, path: Path) -> Dict[str, Any]:
        """Parse a YAML file whose top level must be a mapping (an empty file counts as one)."""
        try:
            text = Path(path).read_text(encoding="utf-8")
            parsed = yaml.safe_load(text)
        except FileNotFoundError:
            raise ConfigLoadError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigLoadError(f"Invalid YAML in {path}: {e}")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigLoadError(f"Could not read {path}: {e}")

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigLoadError(f"Expected a mapping at the top of {path}, got {type(parsed).__name__}")
        return parsed

    def load_engine_config(self, file_path: Optional[Union[str, Path]] = None) -> EngineConfig:
        """
        Load and validate the engine configuration.

        Args:
            file_path: Explicit file; defaults to config/engine.yaml under the base directory

        Returns:
            EngineConfig, all defaults when the file does not exist

        Raises:
            ConfigLoadError: File unreadable or not a YAML mapping
            ConfigValidationError: Values violate the schema
        """
        path = Path(file_path) if file_path is not None else self.base_dir / DEFAULT_CONFIG_FILE
        if not path.exists():
            logger.info(f"No engine config at {path}, using defaults")
            return EngineConfig()

        settings = self.read_mapping(path)
        try:
            config = EngineConfig.model_validate(settings)
        except ValidationError as e:
            raise ConfigValidationError(e.errors(), path)

        logger.info(f"Loaded engine config from {path}")
        return config
