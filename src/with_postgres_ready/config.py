import logging
import collections.abc
import dataclasses
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Any, Optional, Union

try:
    import tomllib
except ImportError:
    import tomli as tomllib
from importlib import resources

logger = logging.getLogger(__name__)

Duration = Union[float, int, timedelta]

# The global config object, initialized with defaults.
_config: Optional[Dict[str, Any]] = None


def deep_merge(d, u):
    """
    Recursively merges dictionary `u` into `d`.
    `u`'s values overwrite `d`'s values.
    """
    for k, v in u.items():
        if isinstance(v, collections.abc.Mapping):
            d[k] = deep_merge(d.get(k, {}), v)
        else:
            d[k] = v
    return d


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Loads configuration from the default and user-provided TOML files.

    The configuration is loaded in the following order:
    1. The default configuration (`default_config.toml`) packaged with the library.
    2. A user-provided configuration file, which recursively overrides the defaults.

    :param config_path: Path to a user-provided TOML configuration file.
    :return: A dictionary containing the merged configuration.
    """
    global _config

    with resources.files('with_postgres_ready').joinpath('default_config.toml').open('rb') as f:
        default_config = tomllib.load(f)

    if config_path:
        logger.info(f"Loading user-provided configuration from: {config_path}")
        try:
            with open(config_path, 'rb') as f:
                user_config = tomllib.load(f)
            _config = deep_merge(default_config, user_config)
        except FileNotFoundError:
            logger.error(f"Configuration file not found: {config_path}")
            raise
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error parsing TOML file {config_path}: {e}")
            raise
    else:
        logger.info("Using default configuration.")
        _config = default_config

    return _config


def get_config() -> Dict[str, Any]:
    """
    Returns the loaded configuration.

    If the configuration has not been loaded yet, it will be loaded with defaults.

    :return: The configuration dictionary.
    """
    if _config is None:
        load_config()
    return _config


def to_seconds(value: Duration) -> float:
    """Normalise a duration given as seconds or a `timedelta` to float seconds."""
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


@dataclass(frozen=True)
class RunnerConfig:
    """
    Immutable settings for a single `Runner` invocation.

    No validation happens here. Nonsensical values (e.g. a zero startup
    timeout) surface as a `ReadinessTimeout` when the runner polls.
    """

    image: str = "postgres:15.3-alpine3.18"
    port: int = 5432
    startup_timeout: float = 30.0
    connection_timeout: float = 2.0
    poll_interval: float = 0.1
    user: str = "postgres"
    password: str = "postgres"
    database: str = "postgres"

    _DURATIONS = ("startup_timeout", "connection_timeout", "poll_interval")

    def __post_init__(self):
        for name in self._DURATIONS:
            object.__setattr__(self, name, to_seconds(getattr(self, name)))
        object.__setattr__(self, "port", int(self.port))

    def with_options(self, **changes: Any) -> "RunnerConfig":
        """Returns a copy of this config with the given fields replaced."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_mapping(cls, config: Dict[str, Any]) -> "RunnerConfig":
        """
        Builds a config from the `[runner]` table of a loaded configuration.

        Keys that are not runner settings are ignored with a warning.
        """
        runner_section = config.get("runner", {})
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(runner_section) - known)
        if unknown:
            logger.warning(f"Ignoring unknown runner settings: {', '.join(unknown)}")
        return cls(**{k: v for k, v in runner_section.items() if k in known})
