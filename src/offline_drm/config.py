"""
Settings for the offline resource service.

Values are resolved in three layers, later layers winning:

    1. Built-in defaults (7 day resource TTL, 30 minute token TTL, ...).
    2. A YAML policy file, given explicitly or through OFFLINE_DRM_CONFIG.
    3. OFFLINE_DRM_* environment variables (a `.env` file is honoured).

Example policy file:

    storage:
      data_dir: /var/lib/offline-drm
      shred_on_delete: true
    policy:
      resource_ttl_days: 7
      token_ttl_minutes: 30
    pipeline:
      chunk_size: 65536
      fetch_timeout_seconds: 30
      max_resource_bytes: null
      max_workers: 4
    lifecycle:
      sweep_interval_seconds: 300
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_DATA_DIR = Path("offline-drm-data")
DEFAULT_RESOURCE_TTL = timedelta(days=7)
DEFAULT_TOKEN_TTL = timedelta(minutes=30)
DEFAULT_CHUNK_SIZE = 64 * 1024

# env var -> (yaml section, yaml key)
_ENV_KEYS = {
    "OFFLINE_DRM_DATA_DIR": ("storage", "data_dir"),
    "OFFLINE_DRM_SHRED_ON_DELETE": ("storage", "shred_on_delete"),
    "OFFLINE_DRM_RESOURCE_TTL_DAYS": ("policy", "resource_ttl_days"),
    "OFFLINE_DRM_TOKEN_TTL_MINUTES": ("policy", "token_ttl_minutes"),
    "OFFLINE_DRM_CHUNK_SIZE": ("pipeline", "chunk_size"),
    "OFFLINE_DRM_FETCH_TIMEOUT": ("pipeline", "fetch_timeout_seconds"),
    "OFFLINE_DRM_MAX_RESOURCE_BYTES": ("pipeline", "max_resource_bytes"),
    "OFFLINE_DRM_MAX_WORKERS": ("pipeline", "max_workers"),
    "OFFLINE_DRM_SWEEP_INTERVAL": ("lifecycle", "sweep_interval_seconds"),
}


@dataclass(frozen=True)
class Settings:
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    resource_ttl: timedelta = DEFAULT_RESOURCE_TTL
    token_ttl: timedelta = DEFAULT_TOKEN_TTL
    chunk_size: int = DEFAULT_CHUNK_SIZE
    fetch_timeout: float = 30.0
    max_resource_bytes: Optional[int] = None
    max_workers: int = 4
    sweep_interval_seconds: float = 300.0
    shred_on_delete: bool = True

    @property
    def db_path(self) -> Path:
        return self.data_dir / "registry.sqlite"

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / "blobs"

    def with_overrides(self, **changes: Any) -> "Settings":
        settings = replace(self, **changes)
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.resource_ttl <= timedelta(0) or self.token_ttl <= timedelta(0):
            raise ConfigurationError(detail="TTL values must be positive")
        if self.chunk_size < 1024 or self.chunk_size > 16 * 1024 * 1024:
            raise ConfigurationError(detail=f"chunk_size out of range: {self.chunk_size}")
        if self.max_workers < 1:
            raise ConfigurationError(detail="max_workers must be at least 1")
        if self.max_resource_bytes is not None and self.max_resource_bytes <= 0:
            raise ConfigurationError(detail="max_resource_bytes must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ConfigurationError(detail="sweep_interval_seconds must be positive")


def _read_policy_file(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise ConfigurationError(detail=f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(detail=f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(detail=f"Config root must be a mapping: {path}")
    return data


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(detail=f"Not a boolean: {raw!r}")


def _number(raw: Any, kind: type, name: str) -> Any:
    try:
        return kind(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(detail=f"{name} must be a {kind.__name__}, got {raw!r}") from e


def _merge_env(raw: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for section, values in raw.items():
        if values is not None and not isinstance(values, dict):
            raise ConfigurationError(detail=f"Config section {section!r} must be a mapping")
        merged[section] = dict(values or {})
    for var, (section, key) in _ENV_KEYS.items():
        if var in env and env[var] != "":
            merged.setdefault(section, {})[key] = env[var]
    return merged


def _build(raw: Dict[str, Any]) -> Settings:
    storage = raw.get("storage") or {}
    policy = raw.get("policy") or {}
    pipeline = raw.get("pipeline") or {}
    lifecycle = raw.get("lifecycle") or {}

    kwargs: Dict[str, Any] = {}
    if storage.get("data_dir") is not None:
        kwargs["data_dir"] = Path(str(storage["data_dir"])).expanduser()
    if storage.get("shred_on_delete") is not None:
        kwargs["shred_on_delete"] = _parse_bool(storage["shred_on_delete"])
    if policy.get("resource_ttl_days") is not None:
        kwargs["resource_ttl"] = timedelta(days=_number(policy["resource_ttl_days"], float, "resource_ttl_days"))
    if policy.get("token_ttl_minutes") is not None:
        kwargs["token_ttl"] = timedelta(minutes=_number(policy["token_ttl_minutes"], float, "token_ttl_minutes"))
    if pipeline.get("chunk_size") is not None:
        kwargs["chunk_size"] = _number(pipeline["chunk_size"], int, "chunk_size")
    if pipeline.get("fetch_timeout_seconds") is not None:
        kwargs["fetch_timeout"] = _number(pipeline["fetch_timeout_seconds"], float, "fetch_timeout_seconds")
    if pipeline.get("max_resource_bytes") not in (None, "", "none", "null"):
        kwargs["max_resource_bytes"] = _number(pipeline["max_resource_bytes"], int, "max_resource_bytes")
    if pipeline.get("max_workers") is not None:
        kwargs["max_workers"] = _number(pipeline["max_workers"], int, "max_workers")
    if lifecycle.get("sweep_interval_seconds") is not None:
        kwargs["sweep_interval_seconds"] = _number(
            lifecycle["sweep_interval_seconds"], float, "sweep_interval_seconds"
        )

    settings = Settings(**kwargs)
    settings.validate()
    return settings


def load_settings(
    config_path: Optional[str] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> Settings:
    """Resolve settings from defaults, an optional YAML file and the environment.

    Args:
        config_path: Path to a YAML policy file. Falls back to OFFLINE_DRM_CONFIG.
        env: Environment mapping to read instead of os.environ (tests).
        use_dotenv: Load a `.env` file into os.environ first. Ignored when `env` is given.

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If the file is missing/malformed or a value is invalid
    """
    if env is None:
        if use_dotenv:
            load_dotenv()
        env = os.environ

    path = config_path or env.get("OFFLINE_DRM_CONFIG")
    raw = _read_policy_file(Path(path).expanduser()) if path else {}
    return _build(_merge_env(raw, env))
