"""Engine configuration management.

Settings are merged in order: built-in defaults -> engine config file ->
the desired-state document's own `settings` block.

Resolution order for the engine config file:
1. $RECONCILE_CONFIG environment variable
2. reconcile.yaml in the project base directory
3. No file (defaults only)
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


CONFIG_FILE_NAME = 'reconcile.yaml'


@dataclass(frozen=True)
class EngineSettings:
    """Tunables for planning and execution.

    Attributes:
        max_workers: Concurrent backend operations within one batch
        max_attempts: Attempts per step for retryable provider errors
        backoff_base: First retry delay in seconds (doubles per attempt)
        backoff_max: Upper bound for a single retry delay in seconds
        state_dir: Override for the state directory (default: .states/<document>)
    """
    max_workers: int = 4
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    state_dir: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            object.__setattr__(self, 'state_dir', Path(self.state_dir))
        for name in ('max_workers', 'max_attempts'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        for name in ('backoff_base', 'backoff_max'):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                raise ConfigError(f"{name} must be a non-negative number, got {value!r}")

    def merged(self, overrides: Optional[dict]) -> 'EngineSettings':
        """Return a copy with known keys from overrides applied.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(unknown)}")
        return replace(self, **overrides)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after a failed attempt (1-based)."""
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            'max_workers': self.max_workers,
            'max_attempts': self.max_attempts,
            'backoff_base': self.backoff_base,
            'backoff_max': self.backoff_max,
        }
        if self.state_dir is not None:
            d['state_dir'] = str(self.state_dir)
        return d


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the project directory."""
    return Path(__file__).parent.parent  # src/ -> project/


def get_config_path() -> Optional[Path]:
    """Discover the engine config file, if any.

    Raises:
        ConfigError: If $RECONCILE_CONFIG points at a missing file
    """
    if env_path := os.environ.get('RECONCILE_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"RECONCILE_CONFIG={env_path} does not exist")

    local = get_base_dir() / CONFIG_FILE_NAME
    if local.exists():
        return local
    return None


def load_settings(path: Optional[Path] = None,
                  overrides: Optional[dict] = None) -> EngineSettings:
    """Load engine settings.

    Args:
        path: Explicit config file. Default: discovered via get_config_path()
        overrides: Highest-priority values (e.g. a document's settings block)

    Returns:
        Validated EngineSettings
    """
    settings = EngineSettings()
    if path is None:
        path = get_config_path()
    if path is not None:
        data = _parse_yaml(path)
        settings = settings.merged(data.get('engine', data))
    return settings.merged(overrides)


def get_state_dir(document_name: str, settings: Optional[EngineSettings] = None) -> Path:
    """State directory for a document: settings.state_dir or .states/<document>."""
    if settings is not None and settings.state_dir is not None:
        return settings.state_dir
    return get_base_dir() / '.states' / document_name
