"""Local JSON persistence for projects and drivers.

Each record lives in its own file and every persist overwrites the whole
file from the in-memory record; nothing is buffered.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Callable

from .errors import AlreadyExistsError, NotFoundError
from .providers import PROVIDERS, ProviderClient, get_provider
from .types import DriverData, ProjectData

logger = logging.getLogger("nimus.stores")


class _JsonStore:
    kind = "record"

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.data: dict[str, dict] = {}

    def _path(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def _read_files(self):
        self.directory.mkdir(parents=True, exist_ok=True)
        for path in sorted(self.directory.glob("*.json")):
            try:
                yield path.stem, json.loads(path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"could not read {self.kind} file '{path.name}': {e}")

    def _serialize(self, record: dict) -> dict:
        return record

    def exists(self, name: str) -> bool:
        return name in self.data

    def get(self, name: str) -> dict | None:
        return self.data.get(name)

    def require(self, name: str) -> dict:
        record = self.data.get(name)
        if record is None:
            raise NotFoundError(f"{self.kind} '{name}' not found")
        return record

    def all(self) -> list[dict]:
        return list(self.data.values())

    def add(self, record: dict) -> None:
        """Register a new record and write it to disk.

        The in-memory entry is dropped again if the write fails.
        """
        name = record["name"]
        if self.exists(name):
            raise AlreadyExistsError(f"a {self.kind} with name '{name}' already exists")
        self.data[name] = record
        try:
            self.persist(name)
        except OSError:
            del self.data[name]
            raise

    def remove(self, name: str) -> None:
        if not self.exists(name):
            raise NotFoundError(f"{self.kind} '{name}' not found")
        self._path(name).unlink(missing_ok=True)
        del self.data[name]

    def persist(self, name: str | None = None) -> list[dict]:
        """Write one record, or every record when ``name`` is None."""
        names = [name] if name is not None else list(self.data)
        written = []
        for n in names:
            payload = self._serialize(self.require(n))
            self.directory.mkdir(parents=True, exist_ok=True)
            self._path(n).write_text(json.dumps(payload, indent=2))
            logger.debug(f"{self.kind} '{n}' persisted")
            written.append(payload)
        return written


class ProjectStore(_JsonStore):
    """Projects and their instance maps.

    Key pairs are read from ``ssh_dir`` on load and never written to the
    project file.
    """

    kind = "project"

    def __init__(self, projects_dir: Path, ssh_dir: Path):
        super().__init__(projects_dir)
        self.ssh_dir = Path(ssh_dir)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def load(self) -> dict[str, ProjectData]:
        self.ssh_dir.mkdir(parents=True, exist_ok=True)
        for name, project in self._read_files():
            try:
                prv_key = (self.ssh_dir / name).read_text()
                pub_key = (self.ssh_dir / f"{name}.pub").read_text()
            except OSError as e:
                logger.error(f"could not read ssh keys of project '{name}': {e}")
                continue
            project.setdefault("name", name)
            project.setdefault("instances", {})
            project["prvKey"] = prv_key
            project["pubKey"] = pub_key
            self.data[name] = project
        return self.data

    def _serialize(self, record: dict) -> dict:
        return {"name": record["name"], "instances": record.get("instances", {})}

    def lock(self, name: str) -> threading.RLock:
        """Lock serializing mutate-and-persist of one project across threads."""
        with self._locks_guard:
            return self._locks.setdefault(name, threading.RLock())


class DriverStore(_JsonStore):
    """Provider accounts, each with a lazily built client."""

    kind = "driver"

    def __init__(
        self,
        drivers_dir: Path,
        *,
        provider_factory: Callable[..., ProviderClient] = get_provider,
        access_token: str | None = None,
        poll_interval: float | None = None,
        poll_max_checks: int | None = None,
    ):
        super().__init__(drivers_dir)
        self.provider_factory = provider_factory
        self._clients: dict[str, ProviderClient] = {}
        self._clients_lock = threading.Lock()
        self._client_options = {
            "access_token": access_token,
            "poll_interval": poll_interval,
            "poll_max_checks": poll_max_checks,
        }

    def load(self) -> dict[str, DriverData]:
        for name, driver in self._read_files():
            if driver.get("provider") not in PROVIDERS:
                logger.error(
                    f"driver '{name}' has unknown provider '{driver.get('provider')}'"
                )
                continue
            driver.setdefault("name", name)
            self.data[name] = driver
        return self.data

    def _serialize(self, record: dict) -> dict:
        return {
            "provider": record["provider"],
            "name": record["name"],
            "credentials": record.get("credentials", {}),
        }

    def remove(self, name: str) -> None:
        super().remove(name)
        self._clients.pop(name, None)

    def client(self, name: str) -> ProviderClient:
        """Provider client for a driver, built on first use.

        :raises NotFoundError: If the driver does not exist
        """
        with self._clients_lock:
            if name not in self._clients:
                self._clients[name] = self.provider_factory(
                    self.require(name), **self._client_options
                )
            return self._clients[name]
