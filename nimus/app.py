"""Top-level facade: stores, projects, drivers and the instance manager."""

import logging
import os
from pathlib import Path

from .config import NimusConfig, load_config
from .errors import AlreadyExistsError, NimusError
from .instances import InstanceManager
from .providers import get_provider, read_credentials, validate_driver_data
from .stores import DriverStore, ProjectStore
from .types import DriverData, ProjectData
from .utils import log, run_cmd, warn

logger = logging.getLogger("nimus.app")


def generate_key_pair(key_path: Path) -> str:
    """Create an RSA key pair at ``key_path`` unless one exists.

    :return: Public key content
    """
    pub_path = key_path.with_name(f"{key_path.name}.pub")
    if not key_path.exists():
        log("creating ssh keys")
        key_path.parent.mkdir(parents=True, exist_ok=True)
        run_cmd(
            "ssh-keygen", "-t", "rsa", "-b", "4096", "-C", "nimus",
            "-N", "", "-q", "-f", str(key_path),
        )
        os.chmod(key_path, 0o400)
    else:
        logger.debug(f"ssh keys exist at '{key_path}'")
    try:
        return pub_path.read_text()
    except OSError as e:
        raise NimusError(f"could not read ssh public key '{pub_path}': {e}")


class Nimus:
    """Loads local state and exposes every project, driver and instance operation."""

    def __init__(
        self,
        config: NimusConfig | None = None,
        *,
        provider_factory=get_provider,
        **manager_options,
    ):
        self.config = config or load_config()
        self.projects = ProjectStore(self.config["projects_dir"], self.config["ssh_dir"])
        self.drivers = DriverStore(
            self.config["drivers_dir"],
            provider_factory=provider_factory,
            access_token=self.config["gce_access_token"],
            poll_interval=self.config["poll_interval"],
            poll_max_checks=self.config["poll_max_checks"],
        )
        self.load()

        manager_options.setdefault("max_workers", self.config["max_workers"])
        manager_options.setdefault("ssh_ready_timeout", self.config["ssh_ready_timeout"])
        self.instance = InstanceManager(self.projects, self.drivers, **manager_options)

    def load(self) -> None:
        self.projects.load()
        logger.debug(f"{len(self.projects.data)} projects loaded")
        self.drivers.load()
        logger.debug(f"{len(self.drivers.data)} drivers loaded")

    def project_create(self, name: str) -> ProjectData:
        if self.projects.exists(name):
            raise AlreadyExistsError(f"a project with name '{name}' already exists")
        key_path = self.config["ssh_dir"] / name
        pub_key = generate_key_pair(key_path)
        project: ProjectData = {
            "name": name,
            "instances": {},
            "pubKey": pub_key,
            "prvKey": key_path.read_text(),
        }
        self.projects.add(project)
        log(f"project '{name}' created")
        return project

    def project_list(self) -> list[tuple[str, int]]:
        return [(p["name"], len(p["instances"])) for p in self.projects.all()]

    def project_remove(self, name: str) -> None:
        project = self.projects.require(name)
        if project["instances"]:
            warn(
                f"project '{name}' still tracks {len(project['instances'])} instance(s): "
                f"{', '.join(project['instances'])}"
            )
        self.projects.remove(name)
        log(f"project '{name}' removed")

    def driver_create(self, provider: str, name: str, credentials_path: str) -> DriverData:
        validate_driver_data(provider, name, credentials_path)
        if self.drivers.exists(name):
            raise AlreadyExistsError(f"a driver with name '{name}' already exists")
        logger.debug(f"credentials path {Path(credentials_path).resolve()}")
        driver: DriverData = {
            "provider": provider,
            "name": name,
            "credentials": read_credentials(credentials_path),
        }
        self.drivers.add(driver)
        log(f"driver '{name}' created")
        return driver

    def driver_list(self) -> list[tuple[str, str]]:
        return [(d["name"], d["provider"]) for d in self.drivers.all()]

    def driver_remove(self, name: str) -> None:
        self.drivers.remove(name)
        log(f"driver '{name}' removed")
