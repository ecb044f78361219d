"""Wait for asynchronous provider operations to finish."""

import logging
import time
from typing import Callable

from .errors import OperationTimeout

logger = logging.getLogger("nimus.poller")

POLL_INTERVAL = 1.0
MAX_CHECKS = 60


class OperationPoller:
    """Poll an operation handle on a fixed interval until it reports DONE.

    ``fetch_status(operation, kind)`` returns the current state of the
    operation as a dict with a ``status`` key. Errors it raises are fatal:
    only a not-yet-DONE answer schedules another check.
    """

    def __init__(
        self,
        fetch_status: Callable[[dict, str], dict],
        *,
        interval: float = POLL_INTERVAL,
        max_checks: int = MAX_CHECKS,
        sleep: Callable[[float], None] = time.sleep,
        on_check: Callable[[dict], None] | None = None,
    ):
        self.fetch_status = fetch_status
        self.interval = interval
        self.max_checks = max_checks
        self.sleep = sleep
        self.on_check = on_check

    def wait_for(self, operation: dict, kind: str | None) -> dict:
        """Block until ``operation`` is DONE and return its terminal state.

        :param operation: Operation handle returned by the provider
        :param kind: Operation scope (e.g. "zone"); None if the call was synchronous
        :return: Terminal operation result
        :raises OperationTimeout: If max_checks polls never report DONE
        """
        if kind is None:
            logger.debug("no operation kind, result already terminal")
            return operation

        if operation.get("status") == "DONE":
            return operation

        name = operation.get("name", "?")
        for check in range(self.max_checks):
            if check:
                self.sleep(self.interval)
            result = self.fetch_status(operation, kind)
            logger.debug(f"check [{check}] operation={name} status={result.get('status')}")
            if self.on_check is not None:
                self.on_check(result)
            if result.get("status") == "DONE":
                return result

        raise OperationTimeout(
            f"Operation '{name}' not done after {self.max_checks} checks"
        )
