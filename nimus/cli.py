#!/usr/bin/env python3
"""Provision cloud instances and bootstrap them over SSH.

Usage: nimus <noun> <verb> [options]

Examples:
    nimus project create demo
    nimus driver create gce1 --provider gce --credentials ./service-account.json
    nimus instance create web --project demo --driver gce1 --count 3
    nimus instance list
    nimus instance run web-1 ./deploy.sh --project demo
    nimus instance remove web --project demo
"""

from rich import print
from rich.table import Table

import cyclopts

from .app import Nimus
from .bulk import raise_for_failures
from .config import load_config
from .errors import NimusError
from .utils import error, kebab_case, log, setup_logging

app = cyclopts.App(
    name="nimus", help="Provision and bootstrap cloud instances", sort_key=None
)

instance_app = cyclopts.App(name="instance", help="Manage cloud instances", sort_key=1)
driver_app = cyclopts.App(name="driver", help="Manage provider drivers", sort_key=2)
project_app = cyclopts.App(name="project", help="Manage projects", sort_key=3)

app.command(instance_app)
app.command(driver_app)
app.command(project_app)


def _fail(e: NimusError) -> None:
    error(str(e))


@instance_app.command(name="create")
def create_instance(
    name: str,
    *,
    project: str,
    driver: str,
    machine_type: str | None = None,
    zone: str | None = None,
    count: int = 1,
    no_setup: bool = False,
):
    """Create instances and bootstrap them.

    :param name: Instance name (suffixed -1..-N when count > 1)
    :param project: Project the instances belong to
    :param driver: Driver used to create the instances
    :param machine_type: Machine type (default: n1-standard-1)
    :param zone: Zone (default: us-central1-a)
    :param count: Number of instances to create
    :param no_setup: Skip running the bootstrap script
    """
    try:
        nimus = Nimus()
        results = nimus.instance.create(
            kebab_case(project),
            kebab_case(driver),
            {"name": kebab_case(name), "machineType": machine_type, "zone": zone},
            count,
            setup=not no_setup,
        )
        raise_for_failures(results)
    except NimusError as e:
        _fail(e)


@instance_app.command(name="list")
def list_instances(*, project: str | None = None):
    """Refresh and list instances of every project.

    :param project: Only list this project
    """
    try:
        nimus = Nimus()
        rows = nimus.instance.list_instances(kebab_case(project) if project else None)
    except NimusError as e:
        _fail(e)
        return

    if not rows:
        log("No instances found")
        return

    table = Table("project", "instance", "OS", "private IP", "public IP", "status")
    for row in rows:
        table.add_row(
            row["project"],
            row["instance"],
            row["os"] or "",
            row["internalIp"] or "",
            row["externalIp"] or "",
            row["status"] or "",
        )
    print(table)


@instance_app.command(name="remove")
def remove_instance(name: str, *, project: str, force: bool = False):
    """Remove an instance, or every NAME-N instance when NAME has no exact match.

    :param name: Instance name
    :param project: Project the instance belongs to
    :param force: Skip confirmation prompt
    """
    try:
        nimus = Nimus()
        results = nimus.instance.remove(
            kebab_case(project), kebab_case(name), skip_confirmation=force
        )
        raise_for_failures(results)
    except NimusError as e:
        _fail(e)


@instance_app.command(name="setup")
def setup_instance(name: str, *, project: str):
    """Run the bootstrap script on an existing instance.

    :param name: Instance name
    :param project: Project the instance belongs to
    """
    try:
        Nimus().instance.setup(kebab_case(project), kebab_case(name))
    except NimusError as e:
        _fail(e)


@instance_app.command(name="run")
def run_on_instance(name: str, payload: str, *, project: str, quiet: bool = False):
    """Run a local script file or a shell command on an instance.

    :param name: Instance name
    :param payload: Path to a local script (uploaded first) or a command line
    :param project: Project the instance belongs to
    :param quiet: Hide connection progress messages
    """
    try:
        Nimus().instance.run(
            kebab_case(project),
            kebab_case(name),
            payload,
            suppress_user_facing_logs=quiet,
        )
    except NimusError as e:
        _fail(e)


@driver_app.command(name="create")
def create_driver(name: str, *, credentials: str, provider: str = "gce"):
    """Register a provider account.

    :param name: Driver name
    :param credentials: Service account JSON file
    :param provider: Provider type (only gce is supported)
    """
    try:
        Nimus().driver_create(provider, kebab_case(name), credentials)
    except NimusError as e:
        _fail(e)


@driver_app.command(name="list")
def list_drivers():
    """List registered drivers."""
    drivers = Nimus().driver_list()
    table = Table("name", "provider")
    for name, provider in drivers:
        table.add_row(name, provider)
    print(table)


@driver_app.command(name="remove")
def remove_driver(name: str):
    """Remove a driver.

    :param name: Driver name
    """
    try:
        Nimus().driver_remove(kebab_case(name))
    except NimusError as e:
        _fail(e)


@project_app.command(name="create")
def create_project(name: str):
    """Create a project and its SSH key pair.

    :param name: Project name
    """
    try:
        Nimus().project_create(kebab_case(name))
    except NimusError as e:
        _fail(e)


@project_app.command(name="list")
def list_projects():
    """List projects."""
    projects = Nimus().project_list()
    table = Table("name", "num instances")
    for name, count in projects:
        table.add_row(name, str(count))
    print(table)


@project_app.command(name="remove")
def remove_project(name: str):
    """Remove a project. Its key pair is kept in the ssh directory.

    :param name: Project name
    """
    try:
        Nimus().project_remove(kebab_case(name))
    except NimusError as e:
        _fail(e)


def main():
    try:
        config = load_config()
    except NimusError as e:
        setup_logging()
        _fail(e)
        return
    setup_logging(config["log_level"])
    app()


if __name__ == "__main__":
    main()
