from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import FurrctorioError

DEFAULT_CONFIG_FILENAME = ".furrctorio.json"
DEFAULT_ENV_FILENAME = ".env"
DEFAULT_MODS_DIR = Path("mods")
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "furrctorio"
DEFAULT_MANIFEST_FILENAME = "furrctorio.mods.json"
DEFAULT_LOCKFILE_FILENAME = "furrctorio.lock"

USER_CONFIG_DIR = Path.home() / ".config" / "furrctorio"
USER_CONFIG_FILENAME = "config.json"
USER_CONFIG_PATH = USER_CONFIG_DIR / USER_CONFIG_FILENAME


class ConfigError(FurrctorioError):
    """Raised when configuration cannot be loaded."""

    exit_code = 2


class NetworkConfig(BaseModel):
    fetch_retries: int = Field(default=3, ge=0, description="Retries for transient download failures")
    retry_backoff: float = Field(default=0.5, ge=0, description="Base delay in seconds, doubled per retry")
    request_timeout: float = Field(default=30.0, gt=0, description="Per request timeout in seconds")
    network_budget: float = Field(default=600.0, gt=0, description="Total seconds allowed for downloads")
    max_workers: int = Field(default=4, ge=1, description="Concurrent downloads")


class FileConfig(BaseModel):
    name: str = "factorio-server"
    factorio_version: Optional[str] = None
    mods_dir: Optional[Path] = None
    cache_dir: Optional[Path] = None
    manifest_file: Optional[Path] = None
    lockfile_file: Optional[Path] = None
    username: Optional[str] = None
    token: Optional[str] = None
    network: Optional[NetworkConfig] = None
    resolver_budget: int = 10_000


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FURRCTORIO_", extra="ignore")

    server_root: Optional[Path] = None
    mods_dir: Optional[Path] = None
    cache_dir: Optional[Path] = None
    username: Optional[str] = None
    token: Optional[str] = None
    fetch_retries: Optional[int] = None
    request_timeout: Optional[float] = None
    max_workers: Optional[int] = None


class FurrConfig(BaseModel):
    server_root: Path
    mods_dir: Path
    cache_dir: Path
    manifest_file: Path
    lockfile_file: Path
    name: str
    factorio_version: Optional[str] = None
    username: Optional[str] = None
    token: Optional[str] = None
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    resolver_budget: int = 10_000


class UserConfig(BaseModel):
    server_root: Optional[Path] = None


def _coerce_path(base: Path, value: Path | str) -> Path:
    path = value if isinstance(value, Path) else Path(value)
    path = path.expanduser()
    return path if path.is_absolute() else (base / path).resolve()


def load_user_config() -> UserConfig:
    if not USER_CONFIG_PATH.exists():
        return UserConfig()
    try:
        data = json.loads(USER_CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:  # pragma: no cover - config errors are user-facing
        raise ConfigError(f"Invalid JSON in {USER_CONFIG_PATH}: {exc}") from exc
    return UserConfig(**data)


def save_user_config(cfg: UserConfig) -> Path:
    USER_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    USER_CONFIG_PATH.write_text(cfg.model_dump_json(indent=2))
    return USER_CONFIG_PATH


def _resolve_initial_root(root: Path | None, user_cfg: UserConfig) -> Path:
    if root is not None:
        return Path(root).expanduser().resolve()

    cwd = Path.cwd().resolve()
    if (cwd / DEFAULT_CONFIG_FILENAME).exists():
        return cwd

    if user_cfg.server_root is not None:
        return Path(user_cfg.server_root).expanduser().resolve()

    return cwd


def _load_file_config(path: Path) -> FileConfig:
    # A missing config file is fine: a bare server root with a mods/ folder works on defaults.
    if not path.exists():
        return FileConfig()
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    return FileConfig(**data)


def load_config(root: Path | None = None) -> FurrConfig:
    """Load configuration from env + .furrctorio.json."""

    user_cfg = load_user_config()
    server_root = _resolve_initial_root(root, user_cfg)
    env_file = server_root / DEFAULT_ENV_FILENAME
    env_settings = EnvSettings(
        _env_file=env_file if env_file.exists() else None,
    )

    if env_settings.server_root:
        server_root = _coerce_path(server_root, env_settings.server_root)

    file_cfg = _load_file_config(server_root / DEFAULT_CONFIG_FILENAME)

    mods_dir = env_settings.mods_dir or file_cfg.mods_dir or DEFAULT_MODS_DIR
    cache_dir = env_settings.cache_dir or file_cfg.cache_dir or DEFAULT_CACHE_DIR
    manifest_file = file_cfg.manifest_file or Path(DEFAULT_MANIFEST_FILENAME)
    lockfile_file = file_cfg.lockfile_file or Path(DEFAULT_LOCKFILE_FILENAME)

    network = (file_cfg.network or NetworkConfig()).model_copy()
    if env_settings.fetch_retries is not None:
        network.fetch_retries = env_settings.fetch_retries
    if env_settings.request_timeout is not None:
        network.request_timeout = env_settings.request_timeout
    if env_settings.max_workers is not None:
        network.max_workers = env_settings.max_workers

    return FurrConfig(
        server_root=server_root,
        mods_dir=_coerce_path(server_root, mods_dir),
        cache_dir=_coerce_path(server_root, cache_dir),
        manifest_file=_coerce_path(server_root, manifest_file),
        lockfile_file=_coerce_path(server_root, lockfile_file),
        name=file_cfg.name,
        factorio_version=file_cfg.factorio_version,
        username=env_settings.username or file_cfg.username,
        token=env_settings.token or file_cfg.token,
        network=network,
        resolver_budget=file_cfg.resolver_budget,
    )
