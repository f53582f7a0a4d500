"""
Configuration for StateGraph construction and the threepio-graph CLI.

Settings are resolved with the following precedence (highest to lowest):
1. Constructor / explicit overrides
2. Environment variables (``THREEPIO_GRAPH_*``)
3. YAML settings (the ``graph:`` section of a config file, or its top level)
4. Defaults

Example YAML:
    graph:
      max_iterations: 250
      log_level: INFO
      log_state_values: false
      max_concurrency: 8
      checkpoint_dir: ./checkpoints

Example usage:
    >>> from threepio_graph.config import GraphConfig, load_config
    >>> config = load_config("settings.yaml", max_iterations=50)
    >>> graph = StateGraph.from_config(config)
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

import fsspec
import yaml

from .exceptions import GraphConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "THREEPIO_GRAPH_"

DEFAULT_MAX_ITERATIONS = 100

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise GraphConfigError(f"Invalid boolean for '{name}': {value!r}")


def _parse_positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise GraphConfigError(f"Invalid integer for '{name}': {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise GraphConfigError(f"Invalid integer for '{name}': {value!r}")
    if number <= 0:
        raise GraphConfigError(f"'{name}' must be greater than 0, got {number}")
    return number


def _parse_log_level(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        level = logging.getLevelName(text.upper())
        if isinstance(level, int):
            return level
    raise GraphConfigError(f"Invalid log level: {value!r}")


@dataclass
class GraphConfig:
    """
    Settings shared by graphs, runnables and the CLI.

    Attributes:
        max_iterations: Loop guard cap for each invoke() call.
        log_level: Level applied to the engine logger.
        log_state_values: Log full state values (may expose secrets or PII).
        max_concurrency: Upper bound for GraphRunnable.batch_parallel (None = unbounded).
        checkpoint_dir: Default location (any fsspec URL) for FileCheckpointStore.
    """

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    log_level: int = logging.WARNING
    log_state_values: bool = False
    max_concurrency: Optional[int] = None
    checkpoint_dir: Optional[str] = None

    def __post_init__(self):
        self.max_iterations = _parse_positive_int("max_iterations", self.max_iterations)
        self.log_level = _parse_log_level(self.log_level)
        self.log_state_values = _parse_bool("log_state_values", self.log_state_values)
        if self.max_concurrency is not None:
            self.max_concurrency = _parse_positive_int(
                "max_concurrency", self.max_concurrency
            )
        if self.checkpoint_dir is not None:
            self.checkpoint_dir = str(self.checkpoint_dir)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GraphConfig":
        """
        Build a config from a mapping, rejecting unknown keys.

        Raises:
            GraphConfigError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise GraphConfigError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}"
            )
        return cls(**dict(data))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """Collect settings present in the environment (raw strings, not validated)."""
        environ = os.environ if environ is None else environ
        settings: Dict[str, Any] = {}
        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key in environ:
                settings[f.name] = environ[key]
        return settings

    @classmethod
    def resolve(
        cls,
        overrides: Optional[Mapping[str, Any]] = None,
        yaml_settings: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "GraphConfig":
        """
        Resolve configuration with proper precedence.

        Precedence (highest to lowest): overrides, environment, YAML, defaults.
        Overrides whose value is None are ignored.

        Returns:
            GraphConfig: The validated configuration.
        """
        merged: Dict[str, Any] = {}
        merged.update(yaml_settings or {})
        merged.update(cls.from_env(environ))
        merged.update({k: v for k, v in (overrides or {}).items() if v is not None})
        config = cls.from_dict(merged)
        logger.debug(f"Resolved graph configuration: {config.to_dict()}")
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def read_yaml_settings(url: str) -> Dict[str, Any]:
    """
    Read graph settings from a YAML document at ``url`` (any fsspec URL).

    Returns the ``graph:`` section when present, otherwise the top level.

    Raises:
        GraphConfigError: If the file cannot be read or is not a YAML mapping.
    """
    try:
        with fsspec.open(url, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        raise GraphConfigError(f"Config file not found: {url}")
    except yaml.YAMLError as e:
        raise GraphConfigError(f"Invalid YAML in config file '{url}': {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise GraphConfigError(
            f"Config file '{url}' must contain a mapping, got {type(content).__name__}"
        )
    section = content.get("graph", content)
    if not isinstance(section, dict):
        raise GraphConfigError(f"'graph' section in '{url}' must be a mapping")
    return section


def load_config(
    url: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> GraphConfig:
    """
    Load and resolve a GraphConfig from an optional YAML file, the environment
    and keyword overrides.
    """
    yaml_settings = read_yaml_settings(url) if url else None
    return GraphConfig.resolve(overrides, yaml_settings=yaml_settings, environ=environ)
