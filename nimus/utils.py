"""Shared utility functions."""

import logging
import re
import subprocess
import sys
import time

from rich.console import Console
from rich.logging import RichHandler

from .errors import NimusError

logger = logging.getLogger("nimus")


class Metrics:
    """Wall-clock timer attached to a unit of work.

    Created when a task starts; ``elapsed()`` reports milliseconds since then.
    """

    def __init__(self) -> None:
        self.started = time.monotonic()

    def elapsed(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def __repr__(self) -> str:
        return f"Metrics(elapsed={self.elapsed()}ms)"


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Pass as the sink of a remote session so the output of several concurrent
    sessions is not interleaved mid-line. Each line is prefixed with the
    instance name.
    """

    def __init__(self, prefix: str = "") -> None:
        self.prefix = f"({prefix}) " if prefix else ""
        self._buf = ""

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.info(f"{self.prefix}{line}")

    def flush(self) -> None:
        if self._buf.strip():
            logger.info(f"{self.prefix}{self._buf}")
            self._buf = ""


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl, propagate in [
        ("urllib3", logging.WARNING, True),
        ("httpx", logging.WARNING, True),
        ("httpcore", logging.WARNING, True),
        ("google.auth", logging.WARNING, True),
        ("paramiko", logging.WARNING, True),
        ("fabric", logging.WARNING, True),
        ("invoke", logging.WARNING, True),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = propagate


def log(msg: str) -> Metrics:
    """Log info message and return a timer started at this point."""
    logger.info(msg)
    return Metrics()


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def kebab_case(value: str) -> str:
    """Normalize a user-given name the way instance and project names are stored.

    >>> kebab_case("My Web_Server2")
    'my-web-server2'
    """
    value = re.sub(r"([a-z0-9])([A-Z])", r"\1-\2", value)
    value = re.sub(r"[^A-Za-z0-9]+", "-", value)
    return value.strip("-").lower()


def confirm(question: str) -> bool:
    """Ask a yes/no question on the terminal."""
    answer = input(f"{question} (yes/no): ")
    return answer.strip().lower() in ("y", "yes")


def run_cmd(*args, check: bool = True) -> str:
    """Execute local command and return stdout.

    :raises NimusError: If the command exits non-zero and ``check`` is set
    """
    result = subprocess.run(args, capture_output=True, text=True)
    if check and result.returncode != 0:
        raise NimusError(f"Command failed: {' '.join(args)}: {result.stderr.strip()}")
    return result.stdout.strip()
