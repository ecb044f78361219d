"""Runtime configuration from the environment and an optional .env file."""

import os
from pathlib import Path
from typing import TypedDict

from dotenv import load_dotenv

from .errors import NimusError

SSH_USER = "nimus"
SSH_PORT = 22
REMOTE_SCRIPT_PATH = "/tmp/nimus.script"
DEFAULT_ZONE = "us-central1-a"
DEFAULT_MACHINE_TYPE = "n1-standard-1"
DEFAULT_IMAGE_FAMILY = "debian-12"


class NimusConfig(TypedDict):
    home: Path
    projects_dir: Path
    drivers_dir: Path
    ssh_dir: Path
    poll_interval: float
    poll_max_checks: int
    ssh_ready_timeout: float
    max_workers: int | None
    log_level: str
    gce_access_token: str | None


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise NimusError(f"Invalid value for {name}: '{raw}'")


def load_config(home: str | Path | None = None) -> NimusConfig:
    """Load configuration from NIMUS_* environment variables.

    :param home: Override for NIMUS_HOME (default: ~/.nimus)
    :return: Configuration with derived store directories
    """
    load_dotenv()

    home = Path(home or os.getenv("NIMUS_HOME") or Path.home() / ".nimus").expanduser()
    max_workers = _env_number("NIMUS_MAX_WORKERS", 0, int)

    return {
        "home": home,
        "projects_dir": home / "projects",
        "drivers_dir": home / "drivers",
        "ssh_dir": home / "ssh",
        "poll_interval": _env_number("NIMUS_POLL_INTERVAL", 1.0, float),
        "poll_max_checks": _env_number("NIMUS_POLL_MAX_CHECKS", 60, int),
        "ssh_ready_timeout": _env_number("NIMUS_SSH_READY_TIMEOUT", 600.0, float),
        "max_workers": max_workers if max_workers > 0 else None,
        "log_level": os.getenv("NIMUS_LOG_LEVEL", "INFO"),
        "gce_access_token": os.getenv("NIMUS_GCE_ACCESS_TOKEN") or None,
    }
