import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env values must be visible before app.yaml is interpolated
load_dotenv(Path(__file__).parent.parent / ".env")

CONFIG_PATH_ENV = "LOTMEDIA_CONFIG"

# Top-level app.yaml sections this package reads; anything else belongs to the host app
CONFIG_SECTIONS = ("media", "logfire")

# $NAME or ${NAME}
ENV_REFERENCE = re.compile(r"\$(?:\{([A-Z_][A-Z0-9_]*)\}|([A-Z_][A-Z0-9_]*))")


def _expand(text: str) -> str:
    def lookup(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        if name not in os.environ:
            raise ValueError(f"Environment variable ${name} not set")
        return os.environ[name]

    return ENV_REFERENCE.sub(lookup, text)


def interpolate_env_vars(value):
    """Expand ``$NAME`` and ``${NAME}`` references in every string of *value*."""
    if isinstance(value, dict):
        return {k: interpolate_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]
    if isinstance(value, str):
        return _expand(value)
    return value


def config_path() -> Path:
    """Location of app.yaml, overridable with ``LOTMEDIA_CONFIG``."""
    return Path(os.environ.get(CONFIG_PATH_ENV, "app.yaml")).expanduser()


def load_app_config(path: Path | None = None) -> dict:
    """Read the media-related sections of app.yaml.

    Only :data:`CONFIG_SECTIONS` are interpolated and returned, so an unset
    variable referenced by another part of a shared app.yaml is not an error.
    """
    path = path or config_path()
    if not path.is_file():
        raise FileNotFoundError(f"Media config not found at {path}")

    raw = yaml.safe_load(path.read_text()) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")

    return {name: interpolate_env_vars(raw[name]) for name in CONFIG_SECTIONS if name in raw}


class S3Config(BaseModel):
    """Remote object store connection.

    The store only reports itself enabled when a bucket is set and either
    explicit keys are present or ``use_ambient_credentials`` allows the
    default AWS credential chain (instance role, shared config).
    """

    bucket: str | None = None
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    use_ambient_credentials: bool = False
    prefix: str = ""
    public_url: str | None = None
    acl: str | None = None
    timeout: float = 10.0
    max_pool_connections: int = 10
    presign_ttl: int = 300

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    @property
    def enabled(self) -> bool:
        return bool(self.bucket) and (self.has_credentials or self.use_ambient_credentials)


class LocalStorageConfig(BaseModel):
    """Local fallback trees. Every write lands under each root."""

    roots: list[str] = ["public/uploads", "uploads"]
    url_prefix: str = "/uploads"


class ImagingConfig(BaseModel):
    """Variant geometry and encoding."""

    quality: int = Field(default=85, ge=1, le=100)
    output_format: Literal["webp", "source"] = "webp"
    thumbnail_size: tuple[int, int] = (300, 200)
    medium_size: tuple[int, int] = (800, 600)
    large_size: tuple[int, int] = (1600, 1200)
    extra_variants: bool = True


class UploadConfig(BaseModel):
    """Intake limits applied before any I/O."""

    max_file_size: int = 10 * 1024 * 1024
    max_files: int = 10
    allowed_types: list[str] = ["image/jpeg", "image/png", "image/webp", "image/gif"]
    max_concurrency: int = Field(default=4, ge=1)


class ReadConfig(BaseModel):
    """Read resolution and cache policy."""

    cache_ttl: int = 31536000
    placeholder_ttl: int = 300
    placeholder_path: str | None = None
    legacy_folders: list[str] = ["listings"]


class MediaConfig(BaseModel):
    """Media storage configuration (``media:`` section of app.yaml)."""

    s3: S3Config = S3Config()
    local: LocalStorageConfig = LocalStorageConfig()
    imaging: ImagingConfig = ImagingConfig()
    upload: UploadConfig = UploadConfig()
    read: ReadConfig = ReadConfig()


class LogfireConfig(BaseModel):
    """Pydantic Logfire observability configuration."""

    enabled: bool = False
    service_name: str = "lotmedia"
    environment: str | None = None
    sample_rate: float = 1.0
    console: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    debug: bool = False

    # Media config (loaded from app.yaml)
    media: MediaConfig = MediaConfig()

    # Observability config (loaded from app.yaml)
    logfire: LogfireConfig = LogfireConfig()


@lru_cache
def get_settings() -> Settings:
    """Load settings from the environment, then overlay app.yaml sections."""
    settings = Settings()

    try:
        sections = load_app_config()
    except FileNotFoundError:
        return settings

    models = {"media": MediaConfig, "logfire": LogfireConfig}
    updates = {name: models[name](**(body or {})) for name, body in sections.items()}
    return settings.model_copy(update=updates) if updates else settings
