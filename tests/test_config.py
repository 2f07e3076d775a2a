from __future__ import annotations

from pathlib import Path

import pytest

from entitystore.config import StoreConfig
from entitystore.exceptions import StoreConfigError


def test_defaults_have_no_remote() -> None:
    config = StoreConfig()

    assert config.base_url is None
    assert not config.has_remote
    assert config.api_prefix == "/api/v1"
    assert config.resource_path("teamMembers") == "team-members"
    assert config.resource_path("campaigns") == "campaigns"


def test_from_env_reads_entitystore_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ENTITYSTORE_BASE_URL", "https://api.example.com/")
    monkeypatch.setenv("ENTITYSTORE_API_PREFIX", "api/v2/")
    monkeypatch.setenv("ENTITYSTORE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("ENTITYSTORE_REQUEST_TIMEOUT", "2.5")
    monkeypatch.setenv("ENTITYSTORE_MIRROR_READS", "off")
    monkeypatch.setenv("ENTITYSTORE_LOCAL_ONLY", "notes, drafts,,")
    monkeypatch.setenv("ENTITYSTORE_STALE_AFTER", "0")

    config = StoreConfig.from_env()

    assert config.base_url == "https://api.example.com"
    assert config.api_prefix == "/api/v2"
    assert config.data_dir == tmp_path
    assert config.request_timeout == 2.5
    assert config.mirror_reads is False
    assert config.local_only == frozenset({"notes", "drafts"})
    assert config.stale_after == 0


def test_from_env_overrides_win(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENTITYSTORE_BASE_URL", "https://env.example.com")
    monkeypatch.setenv("ENTITYSTORE_REQUEST_TIMEOUT", "not-used")

    config = StoreConfig.from_env(base_url="https://override.example.com", request_timeout=3.0)

    assert config.base_url == "https://override.example.com"
    assert config.request_timeout == 3.0


def test_from_env_without_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("ENTITYSTORE_BASE_URL", "ENTITYSTORE_MIRROR_READS", "ENTITYSTORE_LOCAL_ONLY"):
        monkeypatch.delenv(name, raising=False)

    config = StoreConfig.from_env()

    assert config.base_url is None
    assert config.mirror_reads is True
    assert config.local_only == frozenset()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"base_url": "ftp://example.com"},
        {"request_timeout": 0},
        {"stale_after": -1},
    ],
)
def test_invalid_values_raise(kwargs: dict[str, object]) -> None:
    with pytest.raises(StoreConfigError):
        StoreConfig(**kwargs)  # type: ignore[arg-type]
