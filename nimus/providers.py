"""Cloud provider clients.

Every provider returns instances in the same normalized shape
(:class:`~nimus.types.InstanceData`) and reports failures as
:class:`~nimus.errors.ProviderError` whose ``code`` is 404 when the
resource is absent.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from .config import DEFAULT_IMAGE_FAMILY, DEFAULT_MACHINE_TYPE, DEFAULT_ZONE
from .errors import AlreadyExistsError, ProviderError
from .poller import OperationPoller
from .types import DriverData, InstanceData, InstanceSpec, ProviderName

logger = logging.getLogger("nimus.providers")

COMPUTE_BASE_URL = "https://compute.googleapis.com/compute/v1"
GCE_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]


class ProviderClient(Protocol):
    provider_name: ProviderName
    name: str

    def create(self, spec: InstanceSpec) -> InstanceData: ...

    def get(self, name: str, zone: str | None = None) -> InstanceData: ...

    def remove(self, name: str, zone: str | None = None) -> None: ...

    def set_metadata(
        self, name: str, items: dict[str, str], zone: str | None = None
    ) -> None: ...


def _last_segment(url: str | None) -> str | None:
    return url.rsplit("/", 1)[-1] if url else url


class GoogleProvider:
    """Google Compute Engine client over the v1 REST API."""

    def __init__(
        self,
        name: str,
        credentials: dict,
        *,
        zone: str | None = None,
        machine_type: str | None = None,
        image_family: str | None = None,
        client: httpx.Client | None = None,
        access_token: str | None = None,
        poller: OperationPoller | None = None,
    ):
        self.provider_name: ProviderName = "gce"
        self.name = name
        self.credentials = credentials
        self.project = credentials.get("project_id")
        self.zone = zone or DEFAULT_ZONE
        self.machine_type = machine_type or DEFAULT_MACHINE_TYPE
        self.image_family = image_family or DEFAULT_IMAGE_FAMILY

        if not self.project:
            raise ProviderError(f"Driver '{name}': credentials have no 'project_id'")

        self.client = client or httpx.Client(base_url=COMPUTE_BASE_URL, timeout=60)
        self.poller = poller or OperationPoller(self._operation_status)
        self._access_token = access_token
        self._google_credentials = None
        self._auth_lock = threading.Lock()

    def _auth_headers(self) -> dict[str, str]:
        if self._access_token:
            return {"Authorization": f"Bearer {self._access_token}"}

        with self._auth_lock:
            if self._google_credentials is None:
                try:
                    self._google_credentials = (
                        service_account.Credentials.from_service_account_info(
                            self.credentials, scopes=GCE_SCOPES
                        )
                    )
                except ValueError as e:
                    raise ProviderError(f"Driver '{self.name}': invalid credentials: {e}")
            if not self._google_credentials.valid:
                logger.debug(f"refreshing access token for driver '{self.name}'")
                try:
                    self._google_credentials.refresh(Request())
                except GoogleAuthError as e:
                    raise ProviderError(
                        f"Driver '{self.name}': could not obtain access token: {e}"
                    ) from e
            return {"Authorization": f"Bearer {self._google_credentials.token}"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | None = None,
        params: dict | None = None,
    ) -> dict:
        """Send one authorized request and return the decoded JSON body.

        :raises AlreadyExistsError: On 409
        :raises ProviderError: On any other non-2xx status or network failure
        """
        logger.debug(f"{method} {path}")
        try:
            response = self.client.request(
                method, path, json=json_body, params=params, headers=self._auth_headers()
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e

        if response.is_success:
            return response.json() if response.content else {}

        message = response.text
        try:
            err = response.json().get("error", {})
            message = err.get("message") or message
        except ValueError:
            pass
        if response.status_code == 409:
            raise AlreadyExistsError(message)
        raise ProviderError(message, code=response.status_code)

    def _zone_path(self, zone: str | None = None) -> str:
        return f"/projects/{self.project}/zones/{zone or self.zone}"

    def _operation_status(self, operation: dict, kind: str) -> dict:
        if kind != "zone":
            raise ProviderError(f"Unsupported operation kind: '{kind}'")
        zone = _last_segment(operation.get("zone")) or self.zone
        return self._request("GET", f"{self._zone_path(zone)}/operations/{operation['name']}")

    def _wait(self, operation: dict) -> dict:
        result = self.poller.wait_for(operation, "zone")
        if result.get("error"):
            errors = result["error"].get("errors") or [{}]
            raise ProviderError(
                errors[0].get("message") or f"Operation '{result.get('name')}' failed",
                code=result.get("httpErrorStatusCode"),
            )
        return result

    def normalize_instance(self, instance: dict) -> InstanceData:
        interfaces = instance.get("networkInterfaces") or [{}]
        access_configs = interfaces[0].get("accessConfigs") or [{}]
        labels = instance.get("labels") or {}
        return {
            "name": instance["name"],
            "machineType": _last_segment(instance.get("machineType")),
            "zone": _last_segment(instance.get("zone")),
            "driver": self.name,
            "status": instance.get("status"),
            "os": labels.get("nimus-os", self.image_family),
            "network": {
                "internalIp": interfaces[0].get("networkIP"),
                "externalIp": access_configs[0].get("natIP"),
            },
        }

    def create(self, spec: InstanceSpec) -> InstanceData:
        """Create an instance with a boot disk and an ephemeral external IP.

        :param spec: Instance name, machine type, zone and metadata
        :return: Normalized instance, fetched after the operation is DONE
        """
        name = spec["name"]
        zone = spec.get("zone") or self.zone
        machine_type = spec.get("machineType") or self.machine_type
        items = [{"key": k, "value": v} for k, v in (spec.get("metadata") or {}).items()]

        operation = self._request(
            "POST",
            f"{self._zone_path(zone)}/instances",
            json_body={
                "name": name,
                "machineType": f"zones/{zone}/machineTypes/{machine_type}",
                "labels": {"nimus-os": self.image_family},
                "networkInterfaces": [
                    {
                        "network": "global/networks/default",
                        "accessConfigs": [
                            {"name": "External NAT", "type": "ONE_TO_ONE_NAT"}
                        ],
                    }
                ],
                "disks": [
                    {
                        "boot": True,
                        "autoDelete": True,
                        "initializeParams": {
                            "sourceImage": f"projects/debian-cloud/global/images/family/{self.image_family}"
                        },
                    }
                ],
                "metadata": {"kind": "compute#metadata", "items": items},
            },
        )
        self._wait(operation)
        logger.debug(f"instance '{name}' created in '{zone}'")
        return self.get(name, zone)

    def get(self, name: str, zone: str | None = None) -> InstanceData:
        return self.normalize_instance(
            self._request("GET", f"{self._zone_path(zone)}/instances/{name}")
        )

    def remove(self, name: str, zone: str | None = None) -> None:
        """Delete an instance and its boot disk.

        :raises ProviderError: code 404 if the instance does not exist
        """
        operation = self._request("DELETE", f"{self._zone_path(zone)}/instances/{name}")
        self._wait(operation)
        logger.debug(f"instance '{name}' removed")

    def set_metadata(
        self, name: str, items: dict[str, str], zone: str | None = None
    ) -> None:
        """Replace instance metadata, using the current fingerprint for the update."""
        current = self._request("GET", f"{self._zone_path(zone)}/instances/{name}")
        fingerprint = (current.get("metadata") or {}).get("fingerprint")
        operation = self._request(
            "POST",
            f"{self._zone_path(zone)}/instances/{name}/setMetadata",
            json_body={
                "fingerprint": fingerprint,
                "items": [{"key": k, "value": v} for k, v in items.items()],
            },
        )
        self._wait(operation)


PROVIDERS: dict[str, type] = {"gce": GoogleProvider}


def validate_driver_data(provider: str, name: str | None, credentials: str | None) -> None:
    """Check driver create arguments before touching the store.

    :raises ProviderError: If the provider is unknown or an argument is missing
    """
    if provider not in PROVIDERS:
        raise ProviderError(
            f"Unknown provider: '{provider}'. Available: {', '.join(PROVIDERS)}"
        )
    if not name:
        raise ProviderError(f"name is required for {provider} driver")
    if not credentials:
        raise ProviderError(f"credentials file path is required for {provider} driver")


def read_credentials(path: str | Path) -> dict:
    """Read a service account JSON file.

    :raises ProviderError: If the file cannot be read or parsed
    """
    path = Path(path).expanduser().resolve()
    try:
        return json.loads(path.read_text())
    except OSError as e:
        raise ProviderError(f"credentials file '{path}' could not be read: {e}")
    except json.JSONDecodeError as e:
        raise ProviderError(f"credentials file '{path}' could not be parsed to json: {e}")


def get_provider(
    driver: DriverData,
    *,
    access_token: str | None = None,
    poll_interval: float | None = None,
    poll_max_checks: int | None = None,
) -> ProviderClient:
    """Build the provider client for a stored driver record."""
    provider = driver.get("provider")
    cls = PROVIDERS.get(provider)
    if cls is None:
        raise ProviderError(
            f"Unknown provider: '{provider}'. Available: {', '.join(PROVIDERS)}"
        )
    client = cls(driver["name"], driver.get("credentials") or {}, access_token=access_token)
    if poll_interval is not None:
        client.poller.interval = poll_interval
    if poll_max_checks is not None:
        client.poller.max_checks = poll_max_checks
    return client
