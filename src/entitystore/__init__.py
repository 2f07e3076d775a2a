"""entitystore - Live, cached, optimistically mutated record stores per resource."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("entitystore")
except PackageNotFoundError:
    __version__ = "0+local"
from entitystore.adapters import FailoverAdapter, LocalAdapter, PersistenceAdapter, RemoteAdapter
from entitystore.config import StoreConfig
from entitystore.exceptions import (
    ConflictError,
    ConnectivityError,
    EntityStoreError,
    NotFoundError,
    RemoteServiceError,
    StoreConfigError,
    StoreOperationError,
    ValidationError,
)
from entitystore.models import ErrorKind, Record, RecordId, StoreSnapshot, merge_patch
from entitystore.registry import StoreRegistry, StoreStats
from entitystore.state.broker import Subscription, SubscriptionBroker
from entitystore.state.events import ChangeEvent, ChangeKind
from entitystore.state.handle import OperationHandle
from entitystore.state.store import EntityStore

__all__ = [
    "__version__",
    "ChangeEvent",
    "ChangeKind",
    "ConflictError",
    "ConnectivityError",
    "EntityStore",
    "EntityStoreError",
    "ErrorKind",
    "FailoverAdapter",
    "LocalAdapter",
    "NotFoundError",
    "OperationHandle",
    "PersistenceAdapter",
    "Record",
    "RecordId",
    "RemoteAdapter",
    "RemoteServiceError",
    "StoreConfig",
    "StoreConfigError",
    "StoreOperationError",
    "StoreRegistry",
    "StoreSnapshot",
    "StoreStats",
    "Subscription",
    "SubscriptionBroker",
    "ValidationError",
    "merge_patch",
]
