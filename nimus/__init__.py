"""nimus - provision cloud instances and bootstrap them over SSH."""

from .app import Nimus
from .bulk import for_each, raise_for_failures
from .cli import app
from .errors import (
    AlreadyExistsError,
    ConnectError,
    ExecError,
    NimusError,
    NotFoundError,
    OperationTimeout,
    PartialBatchFailure,
    ProviderError,
    TransportError,
    UploadError,
)
from .instances import InstanceManager
from .poller import OperationPoller
from .providers import GoogleProvider, ProviderClient, get_provider
from .remote import RemoteSession, run_remote
from .stores import DriverStore, ProjectStore
from .types import BulkResult, DriverData, InstanceData, ProjectData

__all__ = [
    "Nimus",
    "InstanceManager",
    "OperationPoller",
    "RemoteSession",
    "run_remote",
    "for_each",
    "raise_for_failures",
    "GoogleProvider",
    "ProviderClient",
    "get_provider",
    "DriverStore",
    "ProjectStore",
    "app",
    "BulkResult",
    "DriverData",
    "InstanceData",
    "ProjectData",
    "NimusError",
    "NotFoundError",
    "AlreadyExistsError",
    "ProviderError",
    "OperationTimeout",
    "TransportError",
    "ConnectError",
    "UploadError",
    "ExecError",
    "PartialBatchFailure",
]
