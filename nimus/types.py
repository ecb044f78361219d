"""Type definitions for nimus.

Record keys match the JSON files under ~/.nimus, hence the camelCase.
"""

from typing import Any, Generic, Literal, TypedDict, TypeVar

from .utils import Metrics

ProviderName = Literal["gce"]

T = TypeVar("T")


class NetworkInfo(TypedDict):
    internalIp: str | None
    externalIp: str | None


class InstanceData(TypedDict, total=False):
    """Normalized instance record, stored in a project's instance map."""

    name: str
    machineType: str
    zone: str
    driver: str
    status: str
    os: str
    network: NetworkInfo


class InstanceSpec(TypedDict, total=False):
    """Arguments for creating one instance."""

    name: str
    machineType: str | None
    zone: str | None
    metadata: dict[str, str]


class ProjectData(TypedDict, total=False):
    """Project record. Only name and instances are written to disk."""

    name: str
    instances: dict[str, InstanceData]
    pubKey: str
    prvKey: str


class DriverData(TypedDict):
    """Driver record written to drivers/<name>.json."""

    provider: ProviderName
    name: str
    credentials: dict[str, Any]


class RemoteTarget(TypedDict):
    host: str
    username: str
    port: int


class BulkResult(TypedDict, Generic[T]):
    """Outcome of one unit of a bulk operation. ``item`` is None on failure."""

    item: T | None
    metrics: Metrics


class InstanceStatusRow(TypedDict):
    """One line of ``instance list`` output."""

    project: str
    instance: str
    os: str | None
    internalIp: str | None
    externalIp: str | None
    status: str
