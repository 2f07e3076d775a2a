"""Adapter for the remote persistence service.

Wire contract, for a resource whose path segment is ``R``::

    GET    {prefix}/R        -> array of records
    POST   {prefix}/R        -> created record
    PATCH  {prefix}/R/{id}   -> updated record
    DELETE {prefix}/R/{id}   -> no body
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

from entitystore._transport import Transport
from entitystore.adapters.base import parse_record, require_mapping
from entitystore.config import StoreConfig
from entitystore.exceptions import NotFoundError, RemoteServiceError, StoreOperationError
from entitystore.models.record import Record, RecordId

_logger = logging.getLogger(__name__)


class RemoteAdapter:
    """Issues list/create/update/remove against the backend service."""

    def __init__(self, config: StoreConfig, transport: Transport) -> None:
        self._config = config
        self._transport = transport

    def path_for(self, key: str, record_id: RecordId | None = None) -> str:
        path = f"{self._config.api_prefix}/{self._config.resource_path(key)}"
        if record_id is not None:
            path = f"{path}/{quote(str(record_id), safe='')}"
        return path

    async def _call(
        self,
        key: str,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        record_id: RecordId | None = None,
    ) -> Any:
        try:
            return await self._transport.request_json(method, path, payload=payload)
        except StoreOperationError as exc:
            # The transport knows the path, not the resource; fill in context.
            exc.resource = exc.resource or key
            if exc.record_id is None:
                exc.record_id = record_id
            raise

    async def list(self, key: str) -> list[Record]:
        body = await self._call(key, "GET", self.path_for(key))
        if not isinstance(body, list):
            raise RemoteServiceError(
                f"GET {self.path_for(key)} did not return an array",
                resource=key,
            )
        return [parse_record(item, resource=key, error_cls=RemoteServiceError) for item in body]

    async def create(self, key: str, partial: Mapping[str, Any]) -> Record:
        payload = require_mapping(partial, resource=key, what="create payload")
        body = await self._call(key, "POST", self.path_for(key), payload=payload)
        return parse_record(body, resource=key, error_cls=RemoteServiceError)

    async def update(self, key: str, record_id: RecordId, patch: Mapping[str, Any]) -> Record:
        payload = require_mapping(patch, resource=key, what="update patch")
        path = self.path_for(key, record_id)
        body = await self._call(key, "PATCH", path, payload=payload, record_id=record_id)
        return parse_record(body, resource=key, error_cls=RemoteServiceError)

    async def remove(self, key: str, record_id: RecordId) -> None:
        path = self.path_for(key, record_id)
        try:
            await self._call(key, "DELETE", path, record_id=record_id)
        except NotFoundError:
            _logger.debug("DELETE %s: already absent", path)
