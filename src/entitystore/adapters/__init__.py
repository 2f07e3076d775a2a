"""Persistence adapters.

Only :func:`build_adapter` and the adapter classes are public; the
registry wires them together from a :class:`StoreConfig`.
"""

from __future__ import annotations

import aiohttp

from entitystore._transport import HttpTransport
from entitystore.adapters.base import PersistenceAdapter
from entitystore.adapters.failover import FailoverAdapter
from entitystore.adapters.local import LocalAdapter
from entitystore.adapters.remote import RemoteAdapter
from entitystore.config import StoreConfig


def build_adapter(config: StoreConfig, http_session: aiohttp.ClientSession | None) -> FailoverAdapter:
    """Assemble the failover adapter described by *config*."""
    local = LocalAdapter(config.data_dir)
    remote: RemoteAdapter | None = None
    if config.has_remote and http_session is not None:
        remote = RemoteAdapter(config, HttpTransport(config, http_session))
    return FailoverAdapter(
        local,
        remote,
        local_only=config.local_only,
        mirror_reads=config.mirror_reads,
    )


__all__ = [
    "FailoverAdapter",
    "LocalAdapter",
    "PersistenceAdapter",
    "RemoteAdapter",
    "build_adapter",
]
