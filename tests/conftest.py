"""Shared fixtures: a throwaway NIMUS_HOME and in-memory provider/SSH doubles."""

import copy
import json
import threading
from pathlib import Path

import pytest

from nimus.app import Nimus
from nimus.config import load_config
from nimus.errors import ProviderError

PROJECT = "demo"
DRIVER = "gce1"


def pytest_addoption(parser):
    parser.addoption(
        "--driver",
        default=None,
        help="Existing nimus driver for integration tests (default: skip them)",
    )
    parser.addoption(
        "--project",
        default="nimus-integration",
        help="Existing nimus project for integration tests",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--driver"):
        return
    skip = pytest.mark.skip(reason="needs --driver to run against a real provider")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


class FakeProvider:
    """In-memory stand-in for a provider client."""

    provider_name = "gce"

    def __init__(self, name: str = DRIVER):
        self.name = name
        self.instances: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.errors: dict[tuple[str, str], Exception] = {}
        self._lock = threading.Lock()

    def fail(self, op: str, name: str, exc: Exception) -> None:
        self.errors[(op, name)] = exc

    def _check(self, op: str, name: str) -> None:
        with self._lock:
            self.calls.append((op, name))
        exc = self.errors.get((op, name))
        if exc is not None:
            raise exc

    def create(self, spec):
        self._check("create", spec["name"])
        n = len(self.instances) + 1
        instance = {
            "name": spec["name"],
            "machineType": spec.get("machineType") or "n1-standard-1",
            "zone": spec.get("zone") or "us-central1-a",
            "driver": self.name,
            "status": "RUNNING",
            "os": "debian-12",
            "network": {"internalIp": f"10.0.0.{n}", "externalIp": f"34.1.1.{n}"},
        }
        with self._lock:
            self.instances[spec["name"]] = instance
            self.last_metadata = spec.get("metadata")
        return copy.deepcopy(instance)

    def get(self, name, zone=None):
        self._check("get", name)
        if name not in self.instances:
            raise ProviderError(f"The resource '{name}' was not found", code=404)
        return copy.deepcopy(self.instances[name])

    def remove(self, name, zone=None):
        self._check("remove", name)
        if name not in self.instances:
            raise ProviderError(f"The resource '{name}' was not found", code=404)
        with self._lock:
            del self.instances[name]

    def set_metadata(self, name, items, zone=None):
        self._check("set_metadata", name)

    def names(self, op: str) -> list[str]:
        return sorted(n for o, n in self.calls if o == op)


class FakeBridge:
    """Records remote runs instead of opening SSH sessions."""

    def __init__(self):
        self.calls: list[dict] = []
        self.errors: dict[str, Exception] = {}
        self._lock = threading.Lock()

    def __call__(self, target, credential_key, payload, **kwargs):
        with self._lock:
            self.calls.append(
                {"target": target, "key": credential_key, "payload": payload, **kwargs}
            )
        exc = self.errors.get(kwargs.get("label"))
        if exc is not None:
            raise exc
        return None

    def labels(self) -> list[str]:
        return sorted(c["label"] for c in self.calls)


@pytest.fixture
def config(tmp_path, monkeypatch):
    for var in ("NIMUS_MAX_WORKERS", "NIMUS_POLL_INTERVAL", "NIMUS_POLL_MAX_CHECKS"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("NIMUS_HOME", str(tmp_path / "nimus"))
    return load_config()


def write_project(config, name: str = PROJECT, instances: dict | None = None) -> None:
    config["ssh_dir"].mkdir(parents=True, exist_ok=True)
    config["projects_dir"].mkdir(parents=True, exist_ok=True)
    (config["ssh_dir"] / name).write_text(f"-----PRIVATE KEY {name}-----\n")
    (config["ssh_dir"] / f"{name}.pub").write_text(f"ssh-rsa AAAA{name} nimus\n")
    (config["projects_dir"] / f"{name}.json").write_text(
        json.dumps({"name": name, "instances": instances or {}})
    )


def write_driver(config, name: str = DRIVER, provider: str = "gce") -> None:
    config["drivers_dir"].mkdir(parents=True, exist_ok=True)
    (config["drivers_dir"] / f"{name}.json").write_text(
        json.dumps(
            {"provider": provider, "name": name, "credentials": {"project_id": "test-project"}}
        )
    )


def read_project_file(config, name: str = PROJECT) -> dict:
    return json.loads((config["projects_dir"] / f"{name}.json").read_text())


def make_instance(name: str, status: str = "RUNNING", driver: str = DRIVER) -> dict:
    return {
        "name": name,
        "machineType": "n1-standard-1",
        "zone": "us-central1-a",
        "driver": driver,
        "status": status,
        "os": "debian-12",
        "network": {"internalIp": "10.0.0.9", "externalIp": "34.9.9.9"},
    }


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def answers():
    """Questions asked through the confirmation prompt, and the answer to give."""
    return {"answer": True, "asked": []}


@pytest.fixture
def make_nimus(config, provider, bridge, answers):
    def confirm(question: str) -> bool:
        answers["asked"].append(question)
        return answers["answer"]

    def factory() -> Nimus:
        return Nimus(
            config,
            provider_factory=lambda driver, **kwargs: provider,
            bridge=bridge,
            confirm=confirm,
        )

    return factory


@pytest.fixture
def nimus(config, make_nimus):
    write_project(config)
    write_driver(config)
    return make_nimus()


@pytest.fixture
def script_file(tmp_path) -> Path:
    path = tmp_path / "deploy.sh"
    path.write_text("#!/bin/bash\necho deployed\n")
    return path
