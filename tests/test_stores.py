"""Project and driver JSON stores."""

import json

import pytest

from nimus.errors import AlreadyExistsError, NotFoundError
from nimus.stores import DriverStore, ProjectStore

from conftest import make_instance, read_project_file, write_driver, write_project


def project_store(config) -> ProjectStore:
    store = ProjectStore(config["projects_dir"], config["ssh_dir"])
    store.load()
    return store


def test_load_project_with_keys(config):
    write_project(config, "demo", {"web": make_instance("web")})
    project = project_store(config).require("demo")
    assert project["instances"]["web"]["status"] == "RUNNING"
    assert project["prvKey"].startswith("-----PRIVATE KEY demo")
    assert project["pubKey"].startswith("ssh-rsa AAAAdemo")


def test_load_skips_bad_records(config):
    write_project(config, "good")
    write_project(config, "keyless")
    (config["ssh_dir"] / "keyless").unlink()
    (config["projects_dir"] / "broken.json").write_text("{oops")

    store = project_store(config)
    assert list(store.data) == ["good"]


def test_persist_never_writes_keys(config):
    write_project(config)
    store = project_store(config)
    store.require("demo")["instances"]["web"] = make_instance("web")
    store.persist("demo")

    on_disk = read_project_file(config)
    assert set(on_disk) == {"name", "instances"}
    assert on_disk["instances"]["web"]["name"] == "web"


def test_add_and_remove(config):
    store = project_store(config)
    store.add({"name": "new", "instances": {}, "pubKey": "pub", "prvKey": "prv"})
    assert (config["projects_dir"] / "new.json").is_file()

    with pytest.raises(AlreadyExistsError):
        store.add({"name": "new", "instances": {}, "pubKey": "", "prvKey": ""})

    store.remove("new")
    assert not store.exists("new")
    assert not (config["projects_dir"] / "new.json").exists()
    with pytest.raises(NotFoundError):
        store.remove("new")


def test_add_rolls_back_when_write_fails(config, monkeypatch):
    store = project_store(config)

    def broken(name=None):
        raise OSError("disk full")

    monkeypatch.setattr(store, "persist", broken)
    with pytest.raises(OSError):
        store.add({"name": "new", "instances": {}, "pubKey": "", "prvKey": ""})
    assert not store.exists("new")


def test_lock_is_per_project(config):
    store = project_store(config)
    assert store.lock("a") is store.lock("a")
    assert store.lock("a") is not store.lock("b")


def test_driver_store_skips_unknown_provider(config):
    write_driver(config, "gce1")
    write_driver(config, "other", provider="vultr")
    store = DriverStore(config["drivers_dir"])
    store.load()
    assert list(store.data) == ["gce1"]


def test_driver_client_is_cached(config, provider):
    write_driver(config)
    built = []

    def factory(driver, **options):
        built.append((driver["name"], options))
        return provider

    store = DriverStore(config["drivers_dir"], provider_factory=factory, poll_interval=0.1)
    store.load()
    assert store.client("gce1") is store.client("gce1")
    assert len(built) == 1
    assert built[0][1]["poll_interval"] == 0.1

    with pytest.raises(NotFoundError):
        store.client("missing")


def test_driver_persist_format(config):
    store = DriverStore(config["drivers_dir"])
    store.load()
    store.add({"provider": "gce", "name": "gce2", "credentials": {"project_id": "p"}})
    on_disk = json.loads((config["drivers_dir"] / "gce2.json").read_text())
    assert on_disk == {"provider": "gce", "name": "gce2", "credentials": {"project_id": "p"}}

    store.remove("gce2")
    assert not (config["drivers_dir"] / "gce2.json").exists()
