"""
pactum configuration

Configuration with YAML files, environment variables and validation.

Configuration Sources (in order of precedence):
    1. Environment variables (PACTUM_*)
    2. Explicit config file (--config)
    3. Profile config file (<home>/config.yaml)
    4. Project config file (./pactum.yaml)
    5. Default values

There is no process-wide instance; the CLI builds one PactumConfig and passes
it down.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from pactum.errors import ConfigError, ConfigValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROJECT_CONFIG_FILENAME = "pactum.yaml"
PROFILE_CONFIG_FILENAME = "config.yaml"
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        else:
            return value  # type: ignore


@dataclass
class ProfileConfig:
    """Where pactum keeps its per-user state."""
    home: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="~/.pactum",
        env_var="PACTUM_HOME",
        description="Profile directory (template cache, repository mirrors)",
        validator=lambda x: bool(x),
    ))


@dataclass
class ToolsConfig:
    """External executables."""
    git: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="git",
        env_var="PACTUM_GIT",
        description="Repository-control tool",
        validator=lambda x: bool(x),
    ))
    keybase: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="keybase",
        env_var="PACTUM_KEYBASE",
        description="External signing service",
        validator=lambda x: bool(x),
    ))
    pandoc: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="pandoc",
        env_var="PACTUM_PANDOC",
        description="Document compiler",
        validator=lambda x: bool(x),
    ))


@dataclass
class RepositoryConfig:
    default_branch: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="PACTUM_GIT_DEFAULT_BRANCH",
        description="Default branch of template repositories (empty: detect from origin/HEAD)",
    ))


@dataclass
class HttpConfig:
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=60.0,
        env_var="PACTUM_HTTP_TIMEOUT",
        description="Timeout for plain HTTP(S) template fetches",
        validator=lambda x: x > 0,
    ))
    user_agent: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="pactum/0.1",
        env_var="PACTUM_USER_AGENT",
        description="User-Agent header for HTTP(S) fetches",
    ))


@dataclass
class CompilerConfig:
    font: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="Helvetica",
        env_var="PACTUM_FONT",
        description="Main font passed to the document compiler",
        validator=lambda x: bool(x),
    ))
    pdf_engine: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="tectonic",
        env_var="PACTUM_PDF_ENGINE",
        description="PDF engine used by the document compiler",
        validator=lambda x: bool(x),
    ))


@dataclass
class LoggingConfig:
    level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="PACTUM_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x.lower() in LOG_LEVELS,
    ))


@dataclass
class PactumConfig:
    """
    Root configuration for pactum.

    Aggregates all sections and provides loading and validation.
    """
    profile: ProfileConfig = field(default_factory=ProfileConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    compiler: CompilerConfig = field(default_factory=CompilerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    loaded_from: List[Path] = field(default_factory=list, repr=False)

    @property
    def home(self) -> Path:
        return Path(self.profile.home.get()).expanduser()

    @property
    def templates_cache_dir(self) -> Path:
        return self.home / "templates"

    @property
    def mirrors_dir(self) -> Path:
        return self.home / "repos"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {
                    k: extract_values(getattr(obj, k))
                    for k in obj.__dataclass_fields__
                    if k != "loaded_from"
                }
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)

    def apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply nested dictionary values; unknown keys are an error."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                attr = getattr(config_obj, key, None) if key != "loaded_from" else None
                if isinstance(attr, ConfigValue):
                    try:
                        attr.set(value)
                    except (TypeError, ValueError, ConfigValidationError) as e:
                        raise ConfigValidationError(f"{path}: {e}") from e
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Unknown config key: {path}")

        apply_to_config(self, data, "")

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must be a mapping: {path}")
        self.apply_dict(data)
        self.loaded_from.append(path)
        logger.debug(f"Loaded configuration from {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by dotted path.

        Example: config.get("http.timeout_seconds")
        """
        obj: Any = self
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        if isinstance(obj, ConfigValue):
            return obj.get()
        raise ConfigError(f"Invalid config path: {path}")

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    if field_name == "loaded_from":
                        continue
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self)
        return errors


def load_config(
    explicit_path: Optional[Union[str, Path]] = None,
    cwd: Optional[Path] = None,
) -> PactumConfig:
    """Build a configuration from defaults, config files and the environment.

    The project file (``./pactum.yaml``) and the profile file
    (``<home>/config.yaml``) are optional; an explicit path must exist.
    """
    config = PactumConfig()
    project_file = (cwd or Path.cwd()) / PROJECT_CONFIG_FILENAME
    if project_file.is_file():
        config.load_from_file(project_file)
    profile_file = config.home / PROFILE_CONFIG_FILENAME
    if profile_file.is_file():
        config.load_from_file(profile_file)
    if explicit_path is not None:
        config.load_from_file(explicit_path)

    errors = config.validate()
    if errors:
        raise ConfigValidationError("invalid configuration: " + "; ".join(errors))
    return config
