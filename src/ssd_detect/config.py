"""Configuration management using Pydantic Settings.

Settings are built once at startup from, in increasing precedence:
defaults, environment, an optional YAML settings file, the key=value
algorithm config and explicit overrides (the CLI). The result is frozen and
handed to every component that needs it.
"""

from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ssd_detect.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_MEAN_VALUES = "104,117,123"
DEFAULT_RTSP_PATH = "/h264/ch1/sub/av_stream"

# Keys recognized in the key=value algorithm config, mapped to settings paths
ALGORITHM_CONFIG_KEYS: dict[str, tuple[str, ...]] = {
    "threshold": ("detection", "confidence_threshold"),
    "type": ("detection", "file_type"),
    "model": ("network", "model_file"),
    "data": ("network", "weights_file"),
    "listfile": ("list_file",),
}


class NetworkSettings(BaseModel):
    """Detection network files and input geometry overrides."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_file: Path | None = Field(
        default=None,
        description="Network definition (e.g. Caffe .prototxt)",
    )
    weights_file: Path | None = Field(
        default=None,
        description="Trained weights (e.g. Caffe .caffemodel)",
    )
    # Only needed when the input shape cannot be read from the definition
    input_width: int | None = Field(default=None, gt=0)
    input_height: int | None = Field(default=None, gt=0)
    input_channels: Literal[1, 3] | None = Field(default=None)


class PreprocessSettings(BaseModel):
    """Mean subtraction settings."""

    model_config = ConfigDict(frozen=True)

    mean_file: Path | None = Field(
        default=None,
        description="Planar CxHxW mean image (.npy)",
    )
    mean_values: str | None = Field(
        default=None,
        description="One value, or one per channel, separated by ','",
    )

    @model_validator(mode="after")
    def check_single_mean_source(self) -> "PreprocessSettings":
        if self.mean_file is not None and self.mean_values:
            raise ValueError("Cannot specify mean_file and mean_values at the same time")
        return self

    @property
    def effective_mean_values(self) -> str | None:
        """Mean values to use, falling back to the default when no mean is set."""
        if self.mean_file is not None:
            return None
        return self.mean_values or DEFAULT_MEAN_VALUES


class DetectionSettings(BaseModel):
    """Detection output settings."""

    model_config = ConfigDict(frozen=True)

    confidence_threshold: float = Field(
        default=0.01,
        ge=0.0,
        le=1.0,
        description="Only report detections with score at or above this value",
    )
    file_type: Literal["image", "video"] = Field(
        default="image",
        description="Kind of every non-rtsp entry in the list file",
    )


class OutputSettings(BaseModel):
    """Where detection lines are written."""

    model_config = ConfigDict(frozen=True)

    out_file: Path | None = Field(
        default=None,
        description="Output file (stdout when unset)",
    )


class StreamSettings(BaseModel):
    """RTSP camera credentials and read policy."""

    model_config = ConfigDict(frozen=True)

    credentials_file: Path | None = Field(
        default=None,
        description="File holding username, password and camera host",
    )
    username: str | None = None
    password: str | None = None
    host: str | None = None
    path: str = Field(default=DEFAULT_RTSP_PATH, description="Channel path on the camera")

    connection_timeout: float = Field(default=30.0, gt=0.0)
    read_timeout: float = Field(
        default=10.0,
        gt=0.0,
        description="Seconds to wait for a frame before reconnecting",
    )
    reconnect_delay: float = Field(default=1.0, ge=0.0)
    max_reconnect_delay: float = Field(default=30.0, ge=0.0)
    max_reconnects: int = Field(
        default=5,
        ge=0,
        description="Reconnect attempts before the stream is declared lost",
    )
    max_consecutive_failures: int = Field(
        default=30,
        ge=1,
        description="Empty pulls in a row that trigger a reconnect",
    )
    queue_size: int = Field(default=2, ge=1)
    max_frames: int | None = Field(
        default=None,
        gt=0,
        description="Stop a stream after this many frames (unbounded when unset)",
    )

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password and self.host)

    def rtsp_url(self) -> str:
        """Build the camera URL from the configured credentials."""
        if not self.has_credentials:
            raise ConfigurationError("RTSP credentials are not configured")
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"rtsp://{self.username}:{self.password}@{self.host}{path}"


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="SSD_DETECT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    list_file: Path | None = Field(
        default=None,
        description="File listing one input per line",
    )

    network: NetworkSettings = Field(default_factory=NetworkSettings)
    preprocess: PreprocessSettings = Field(default_factory=PreprocessSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)


def read_algorithm_config(path: Path) -> dict[str, str]:
    """Read a key=value algorithm config file.

    Keys and values are whitespace-trimmed, later occurrences win, lines
    without '=' and unknown keys are ignored.

    Args:
        path: Path to the config file.

    Returns:
        Mapping of recognized keys to their raw string values.

    Raises:
        ConfigurationError: If the file cannot be read.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read algorithm config: {path}") from e

    values: dict[str, str] = {}
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key in ALGORITHM_CONFIG_KEYS:
            values[key] = value.strip()
    return values


def read_credentials(path: Path) -> tuple[str, str, str]:
    """Read username, password and camera host, in that order.

    Raises:
        ConfigurationError: If the file cannot be read or is incomplete.
    """
    try:
        tokens = path.read_text(encoding="utf-8").split()
    except OSError as e:
        raise ConfigurationError(f"Cannot read credentials file: {path}") from e

    if len(tokens) < 3:
        raise ConfigurationError(
            f"Credentials file must hold username, password and host: {path}",
            details={"tokens": len(tokens)},
        )
    return tokens[0], tokens[1], tokens[2]


def _set_path(target: dict[str, Any], keys: tuple[str, ...], value: Any) -> None:
    for key in keys[:-1]:
        target = target.setdefault(key, {})
    target[keys[-1]] = value


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def algorithm_config_overrides(values: dict[str, str]) -> dict[str, Any]:
    """Turn algorithm config values into a nested settings dict."""
    nested: dict[str, Any] = {}
    for key, value in values.items():
        _set_path(nested, ALGORITHM_CONFIG_KEYS[key], value)
    return nested


def load_settings(
    config_path: Path | None = None,
    algorithm_config: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from environment and optional config files.

    Args:
        config_path: Optional path to YAML settings file.
        algorithm_config: Optional path to key=value algorithm config.
        overrides: Nested values that take precedence over everything else.

    Returns:
        Frozen Settings instance.

    Raises:
        ConfigurationError: If a file cannot be read or values are invalid.
    """
    import yaml

    settings_dict: dict[str, Any] = {}

    if config_path is not None:
        try:
            with open(config_path) as f:
                settings_dict = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load settings file: {config_path}") from e

    if algorithm_config is not None:
        settings_dict = _deep_merge(
            settings_dict,
            algorithm_config_overrides(read_algorithm_config(algorithm_config)),
        )

    if overrides:
        settings_dict = _deep_merge(settings_dict, overrides)

    try:
        settings = Settings(**settings_dict)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e

    if settings.stream.credentials_file is not None:
        username, password, host = read_credentials(settings.stream.credentials_file)
        stream = settings.stream.model_copy(
            update={"username": username, "password": password, "host": host}
        )
        settings = settings.model_copy(update={"stream": stream})

    logger.debug(
        "Settings resolved",
        file_type=settings.detection.file_type,
        confidence_threshold=settings.detection.confidence_threshold,
        mean_file=str(settings.preprocess.mean_file) if settings.preprocess.mean_file else None,
        mean_values=settings.preprocess.effective_mean_values,
    )
    return settings
