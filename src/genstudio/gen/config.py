from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .types import DEFAULT_IMAGE_MODEL, DEFAULT_IMAGEN_MODEL, DEFAULT_VIDEO_MODEL

CONFIG_FILENAME = "studio.toml"


class PlaceholderProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    image_size: int = Field(default=1024, ge=64, le=4096)
    polls_until_done: int = Field(default=0, ge=0)


class GeminiProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    api_key_env: str = "GEMINI_API_KEY"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    image_model: str = DEFAULT_IMAGE_MODEL
    imagen_model: str = DEFAULT_IMAGEN_MODEL
    video_model: str = DEFAULT_VIDEO_MODEL
    timeout_sec: float = Field(default=120.0, gt=0)


class ProvidersConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    placeholder: Optional[PlaceholderProviderConfig] = None
    gemini: Optional[GeminiProviderConfig] = None


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_sec: float = Field(default=1.0, ge=0)
    degrade_delay_sec: float = Field(default=2.0, ge=0)
    simplify_chars: int = Field(default=300, ge=1)
    truncate_chars: int = Field(default=100, ge=1)
    retry_empty_result: bool = False


class UploadConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    compress_threshold_mb: float = Field(default=5.0, ge=0)
    max_dimension: int = Field(default=2048, ge=16)
    jpeg_quality: int = Field(default=80, ge=1, le=95)


class PollConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    interval_sec: float = Field(default=5.0, ge=0)
    max_polls: Optional[int] = Field(default=120, ge=1)


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)


class ClientConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    base_url: str = "http://127.0.0.1:8000"
    timeout_sec: float = Field(default=300.0, gt=0)
    request_delay_sec: float = Field(default=0.5, ge=0)
    fallback_image: Optional[Path] = None


class StudioConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    default_provider: str = "placeholder"
    providers: ProvidersConfig = ProvidersConfig()
    retry: RetryConfig = RetryConfig()
    upload: UploadConfig = UploadConfig()
    poll: PollConfig = PollConfig()
    server: ServerConfig = ServerConfig()
    client: ClientConfig = ClientConfig()

    @field_validator("default_provider")
    @classmethod
    def validate_default_provider(cls, v: str) -> str:
        if not v:
            raise ValueError("default_provider cannot be empty")
        return v

    @model_validator(mode="after")
    def check_default_provider_exists(self) -> "StudioConfig":
        provider_names = configured_provider_names(self)
        if self.default_provider not in provider_names:
            raise ValueError(
                f"default_provider '{self.default_provider}' is not configured. "
                f"Available providers: {sorted(provider_names)}"
            )
        return self


def configured_provider_names(config: StudioConfig) -> set[str]:
    names = {"placeholder"}
    if config.providers.gemini is not None:
        names.add("gemini")
    for name in config.providers.model_extra or {}:
        names.add(name)
    return names


class ConfigError(Exception):
    def __init__(self, message: str, path: Optional[Path] = None, line: Optional[int] = None):
        self.path = path
        self.line = line
        if path:
            loc = f"{path}"
            if line:
                loc += f":{line}"
            message = f"{loc}: {message}"
        super().__init__(message)


def load_config(config_path: Path) -> StudioConfig:
    if not config_path.exists():
        raise ConfigError(
            f"Config file not found: {config_path}\n"
            f"Copy studio.toml.example to {CONFIG_FILENAME} or pass --config",
            path=config_path,
        )

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore

    try:
        text = config_path.read_text()
        data = tomllib.loads(text)
    except Exception as e:
        raise ConfigError(f"Failed to parse TOML: {e}", path=config_path) from e

    try:
        return StudioConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid configuration: {e}", path=config_path) from e


def find_config(start_dir: Optional[Path] = None) -> Path:
    if start_dir is None:
        start_dir = Path.cwd()

    current = start_dir.resolve()
    while current != current.parent:
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        current = current.parent

    return start_dir / CONFIG_FILENAME


def resolve_config(config_path: Optional[Path] = None) -> StudioConfig:
    """Load an explicit config, or the discovered one, or fall back to defaults."""
    if config_path is not None:
        return load_config(config_path)
    discovered = find_config()
    if discovered.exists():
        return load_config(discovered)
    return StudioConfig()
