"""Instance lifecycle: create, bootstrap, run, refresh and remove."""

import copy
import logging
from pathlib import Path
from typing import Callable

from .bulk import for_each, numbered_names, resolve_candidates
from .config import SSH_PORT, SSH_USER
from .errors import AlreadyExistsError, NimusError, NotFoundError, is_not_found
from .remote import RemoteSession, run_remote
from .stores import DriverStore, ProjectStore
from .types import BulkResult, InstanceData, InstanceSpec, InstanceStatusRow, RemoteTarget
from .utils import LogStream, confirm, log, warn

logger = logging.getLogger("nimus.instances")

SCRIPTS_DIR = Path(__file__).parent / "scripts"
BOOTSTRAP_SERVICE = "docker"


def get_setup_script_path(
    service: str, instance: InstanceData, scripts_dir: Path = SCRIPTS_DIR
) -> Path:
    """Pick the setup script for an instance's OS.

    Tries ``<service>/<os>.sh`` then ``<service>/<os family>.sh``, where the
    family is the OS name up to the first dash (``debian-12`` -> ``debian``).

    :raises NotFoundError: If neither script exists
    """
    full_os = instance.get("os") or ""
    base_os = full_os.split("-")[0]
    for candidate in (f"{full_os}.sh", f"{base_os}.sh"):
        path = scripts_dir / service / candidate
        if full_os and path.is_file():
            return path
    raise NotFoundError(
        f"could not find setup script : service={service} os={full_os or '?'}"
    )


class InstanceManager:
    """Drives provider operations for the instances of every project.

    Bulk operations fan out one task per instance. Each task mutates and
    persists its project under the project lock as soon as its provider
    operation is terminal, so a crash loses at most the in-flight units.
    """

    def __init__(
        self,
        projects: ProjectStore,
        drivers: DriverStore,
        *,
        bridge: Callable[..., RemoteSession] = run_remote,
        confirm: Callable[[str], bool] = confirm,
        max_workers: int | None = None,
        ssh_ready_timeout: float | None = None,
        scripts_dir: Path = SCRIPTS_DIR,
    ):
        self.projects = projects
        self.drivers = drivers
        self.bridge = bridge
        self.confirm = confirm
        self.max_workers = max_workers
        self.ssh_ready_timeout = ssh_ready_timeout
        self.scripts_dir = scripts_dir

    def _resolve(self, project_name: str, instance_name: str):
        project = self.projects.require(project_name)
        instance = project["instances"].get(instance_name)
        if instance is None:
            raise NotFoundError(
                f"instance '{instance_name}' not found in project '{project_name}'"
            )
        self.drivers.require(instance["driver"])
        return project, instance

    def _persist(self, project_name: str) -> bool:
        try:
            self.projects.persist(project_name)
            return True
        except OSError as e:
            logger.error(f"could not persist project '{project_name}': {e}")
            return False

    def run(
        self,
        project_name: str,
        instance_name: str,
        payload: str,
        *,
        suppress_user_facing_logs: bool = False,
        sink=None,
    ) -> RemoteSession:
        """Run a local script file or a command on an instance over SSH.

        :raises NotFoundError: If the project, instance or its driver is missing
        :raises TransportError: If the session could not be established
        """
        project, instance = self._resolve(project_name, instance_name)
        host = (instance.get("network") or {}).get("externalIp")
        if not host:
            raise NotFoundError(f"instance '{instance_name}' has no external IP")

        target: RemoteTarget = {"host": host, "username": SSH_USER, "port": SSH_PORT}
        kwargs = {}
        if self.ssh_ready_timeout is not None:
            kwargs["ready_timeout"] = self.ssh_ready_timeout
        logger.debug(f"ssh target {target} for instance '{instance_name}'")
        return self.bridge(
            target,
            project["prvKey"],
            payload,
            suppress_user_facing_logs=suppress_user_facing_logs,
            sink=sink,
            label=instance_name,
            **kwargs,
        )

    def setup(self, project_name: str, instance_name: str) -> RemoteSession:
        """Run the bootstrap script for the instance's OS."""
        _, instance = self._resolve(project_name, instance_name)
        script = get_setup_script_path(BOOTSTRAP_SERVICE, instance, self.scripts_dir)

        log(f"({instance_name}) setting up ...")
        stream = LogStream(instance_name)
        session = self.run(
            project_name,
            instance_name,
            str(script),
            suppress_user_facing_logs=True,
            sink=stream,
        )
        log(f"({instance_name}) setup completed")
        return session

    def create(
        self,
        project_name: str,
        driver_name: str,
        spec: InstanceSpec,
        count: int = 1,
        *,
        setup: bool = True,
    ) -> list[BulkResult[InstanceData]]:
        """Create ``count`` instances, register them and bootstrap each one.

        With count > 1 the instances are named ``<name>-1`` to ``<name>-N``.

        :raises NotFoundError: If the driver or project does not exist
        :raises NimusError: If count is below 1
        :raises AlreadyExistsError: If a target name is already in the project
        :return: One result per instance; failed units have item None
        """
        if count < 1:
            raise NimusError(f"count must be at least 1, got {count}")
        driver = self.drivers.require(driver_name)
        project = self.projects.require(project_name)
        provider = self.drivers.client(driver["name"])

        names = numbered_names(spec["name"], count)
        taken = [n for n in names if n in project["instances"]]
        if taken:
            raise AlreadyExistsError(
                f"instance(s) {', '.join(taken)} already exist in project '{project_name}'"
            )

        metadata = {"sshKeys": f"{SSH_USER}:{project['pubKey'].strip()}"}
        specs: list[InstanceSpec] = [
            {**spec, "name": name, "metadata": {**(spec.get("metadata") or {}), **metadata}}
            for name in names
        ]

        def create_one(instance_spec: InstanceSpec) -> InstanceData | None:
            log(f"({instance_spec['name']}) creating instance")
            instance = provider.create(instance_spec)
            logger.debug(f"instance '{instance['name']}' created: {instance}")

            with self.projects.lock(project_name):
                project["instances"][instance["name"]] = instance
                if not self._persist(project_name):
                    return None

            if setup:
                try:
                    self.setup(project_name, instance["name"])
                except Exception as e:
                    logger.error(f"({instance['name']}) could not setup instance: {e}")
            return instance

        results = for_each(
            specs, create_one, label=lambda s: s["name"], max_workers=self.max_workers
        )

        for result in results:
            instance = result["item"]
            if instance is None:
                continue
            log(
                f"({instance['name']}) instance created : "
                f"ip={instance['network']['externalIp']} "
                f"(elapsed {result['metrics'].elapsed()}ms)"
            )
        return results

    def remove(
        self,
        project_name: str,
        instance_name: str,
        *,
        skip_confirmation: bool = False,
    ) -> list[BulkResult[InstanceData]]:
        """Delete an instance, or every ``<name>-N`` instance if none is named exactly.

        A 404 from the provider counts as deleted. Other failures keep the
        instance in the project.

        :raises NotFoundError: If the project or any matching instance is missing
        :return: One result per candidate; [] if the user declined
        """
        project = self.projects.require(project_name)
        candidates = resolve_candidates(project["instances"], instance_name)
        if not candidates:
            raise NotFoundError(
                f"no instances found matching '{instance_name}' in project '{project_name}'"
            )

        if not skip_confirmation:
            if not self.confirm(
                f"Do you really want to remove instance(s) {', '.join(candidates)}?"
            ):
                log("Cancelled")
                return []

        targets = [project["instances"][name] for name in candidates]

        def remove_one(instance: InstanceData) -> InstanceData | None:
            log(f"({instance['name']}) removing instance")
            provider = self.drivers.client(instance["driver"])
            try:
                provider.remove(instance["name"], instance.get("zone"))
            except Exception as e:
                if not is_not_found(e):
                    raise
                logger.debug(f"instance '{instance['name']}' already gone")

            with self.projects.lock(project_name):
                project["instances"].pop(instance["name"], None)
                if not self._persist(project_name):
                    return None
            return instance

        results = for_each(
            targets, remove_one, label=lambda i: i["name"], max_workers=self.max_workers
        )

        for result in results:
            if result["item"] is not None:
                log(
                    f"({result['item']['name']}) instance removed "
                    f"(elapsed {result['metrics'].elapsed()}ms)"
                )
        return results

    def list_instances(self, project_name: str | None = None) -> list[InstanceStatusRow]:
        """Refresh every instance's status from its provider.

        Instances the provider no longer knows are removed locally. Lookups
        that fail for another reason show status FAILED and leave the stored
        record untouched.
        """
        if project_name is not None:
            snapshot = [copy.deepcopy(self.projects.require(project_name))]
        else:
            snapshot = copy.deepcopy(self.projects.all())

        units = [
            (project["name"], instance)
            for project in snapshot
            for instance in project["instances"].values()
        ]
        status: dict[tuple[str, str], str] = {}

        def refresh_one(unit: tuple[str, InstanceData]) -> InstanceData | None:
            name, instance = unit
            key = (name, instance["name"])
            if not self.drivers.exists(instance["driver"]):
                warn(f"({instance['name']}) no driver found : driver={instance['driver']}")
                return None
            provider = self.drivers.client(instance["driver"])
            try:
                updated = provider.get(instance["name"], instance.get("zone"))
            except Exception as e:
                if not is_not_found(e):
                    status[key] = "FAILED"
                    logger.error(f"({instance['name']}) status refresh failed: {e}")
                    return None
                status[key] = "DELETED"
                logger.debug(f"instance '{instance['name']}' deleted externally")
                project = self.projects.get(name)
                if project and instance["name"] in project["instances"]:
                    try:
                        self.remove(name, instance["name"], skip_confirmation=True)
                    except NimusError as remove_error:
                        status[key] = "FAILED"
                        logger.error(
                            f"({instance['name']}) could not drop deleted instance "
                            f"from project '{name}': {remove_error}"
                        )
                return None

            status[key] = updated["status"]
            project = self.projects.get(name)
            with self.projects.lock(name):
                stored = project["instances"].get(instance["name"]) if project else None
                if stored is not None:
                    stored["status"] = updated["status"]
                    stored["network"] = updated["network"]
                    self._persist(name)
            return updated

        log("listing instances")
        results = for_each(
            units,
            refresh_one,
            label=lambda u: u[1]["name"],
            max_workers=self.max_workers,
        )

        rows: list[InstanceStatusRow] = []
        for (name, instance), result in zip(units, results):
            network = (result["item"] or instance).get("network") or {}
            rows.append(
                {
                    "project": name,
                    "instance": instance["name"],
                    "os": instance.get("os"),
                    "internalIp": network.get("internalIp"),
                    "externalIp": network.get("externalIp"),
                    "status": status.get((name, instance["name"]), instance.get("status")),
                }
            )
        return rows
