"""Store configuration for entitystore."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from entitystore._constants import (
    DEFAULT_API_PREFIX,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RESOURCE_PATHS,
    DEFAULT_STALE_AFTER,
)
from entitystore.exceptions import StoreConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_set(value: str | None) -> frozenset[str]:
    if value is None:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


@dataclasses.dataclass(frozen=True)
class StoreConfig:
    """Registry configuration.

    Parameters
    ----------
    base_url : str or None
        Root URL of the remote persistence service (scheme and host, no
        path). ``None`` means there is no remote: every resource is served
        by the local snapshot.
    api_prefix : str
        Path prefix in front of every resource path.
    data_dir : Path
        Directory holding one local JSON snapshot per resource key.
    request_timeout : float
        Seconds before a remote request is abandoned. Expiry is reported as
        a connectivity failure, which triggers the local fallback.
    mirror_reads : bool
        Write every successful remote list into the local snapshot so the
        fallback serves the last known server state.
    local_only : frozenset[str]
        Resource keys that have no remote endpoint.
    resource_paths : Mapping[str, str]
        Resource key to endpoint path segment. Keys not present use the key
        itself.
    stale_after : float
        Seconds after the last successful list before a store is stale.
        ``0`` disables staleness.
    """

    base_url: str | None = None
    api_prefix: str = DEFAULT_API_PREFIX
    data_dir: Path = Path(".entitystore")
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    mirror_reads: bool = True
    local_only: frozenset[str] = frozenset()
    resource_paths: Mapping[str, str] = dataclasses.field(default_factory=lambda: dict(DEFAULT_RESOURCE_PATHS))
    stale_after: float = DEFAULT_STALE_AFTER

    def __post_init__(self) -> None:
        if self.base_url is not None:
            stripped = self.base_url.strip().rstrip("/")
            if not stripped.startswith(("http://", "https://")):
                raise StoreConfigError(f"base_url must be an http(s) URL, got {self.base_url!r}")
            object.__setattr__(self, "base_url", stripped)
        prefix = "/" + self.api_prefix.strip("/") if self.api_prefix.strip("/") else ""
        object.__setattr__(self, "api_prefix", prefix)
        object.__setattr__(self, "data_dir", Path(self.data_dir))
        object.__setattr__(self, "local_only", frozenset(self.local_only))
        if self.request_timeout <= 0:
            raise StoreConfigError("request_timeout must be positive")
        if self.stale_after < 0:
            raise StoreConfigError("stale_after must not be negative")

    @property
    def has_remote(self) -> bool:
        return self.base_url is not None

    def resource_path(self, key: str) -> str:
        """Endpoint path segment for *key* (without the API prefix)."""
        return self.resource_paths.get(key, key).strip("/")

    @classmethod
    def from_env(cls, **overrides: Any) -> StoreConfig:
        """Create configuration from environment variables.

        Reads optional ``ENTITYSTORE_*`` variables. Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        StoreConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "ENTITYSTORE_BASE_URL": "base_url",
            "ENTITYSTORE_API_PREFIX": "api_prefix",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None and val.strip():
                config_kwargs[field_name] = val

        data_dir_env = env.get("ENTITYSTORE_DATA_DIR")
        if data_dir_env and "data_dir" not in overrides:
            config_kwargs["data_dir"] = Path(data_dir_env).expanduser()

        timeout_env = env.get("ENTITYSTORE_REQUEST_TIMEOUT")
        if timeout_env is not None and "request_timeout" not in overrides:
            config_kwargs["request_timeout"] = float(timeout_env)

        stale_env = env.get("ENTITYSTORE_STALE_AFTER")
        if stale_env is not None and "stale_after" not in overrides:
            config_kwargs["stale_after"] = float(stale_env)

        if "mirror_reads" not in overrides:
            config_kwargs["mirror_reads"] = _env_bool(env.get("ENTITYSTORE_MIRROR_READS"), True)

        if "local_only" not in overrides:
            config_kwargs["local_only"] = _env_set(env.get("ENTITYSTORE_LOCAL_ONLY"))

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
