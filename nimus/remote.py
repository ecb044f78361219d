"""Remote shell sessions: upload a script or run a command on an instance."""

import io
import logging
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, TextIO

import paramiko
from fabric import Connection
from invoke.exceptions import ThreadException

from .config import REMOTE_SCRIPT_PATH
from .errors import ConnectError, ExecError, TransportError, UploadError
from .types import RemoteTarget
from .utils import Metrics, log, warn

logger = logging.getLogger("nimus.remote")

SSH_READY_TIMEOUT = 600
SSH_RETRY_DELAY = 5


class SessionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    UPLOADING = "uploading"
    EXECUTING = "executing"
    STREAMING = "streaming"
    CLOSED = "closed"
    FAILED = "failed"


TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.READY}),
    SessionState.READY: frozenset({SessionState.UPLOADING, SessionState.EXECUTING}),
    SessionState.UPLOADING: frozenset({SessionState.EXECUTING}),
    SessionState.EXECUTING: frozenset({SessionState.STREAMING}),
    SessionState.STREAMING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
    SessionState.FAILED: frozenset(),
}


class Transport(Protocol):
    def connect(self) -> None: ...

    def upload(self, local_path: str, remote_path: str) -> None: ...

    def start(self, command: str, out_stream: TextIO, err_stream: TextIO) -> Any: ...

    def wait(self, handle: Any) -> int | None: ...

    def close(self) -> None: ...


def load_private_key(text: str) -> paramiko.PKey:
    """Parse a private key of any type ssh-keygen produces by default."""
    for key_class in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
        try:
            return key_class.from_private_key(io.StringIO(text))
        except paramiko.SSHException:
            continue
    raise ConnectError("Unsupported or invalid private key")


class FabricTransport:
    """SSH transport over a fabric Connection.

    ``connect`` keeps retrying until ``ready_timeout`` so that a freshly booted
    instance has time to start sshd and install the project key.
    """

    def __init__(
        self,
        target: RemoteTarget,
        private_key: str,
        *,
        ready_timeout: float = SSH_READY_TIMEOUT,
        retry_delay: float = SSH_RETRY_DELAY,
    ):
        self.target = target
        self.ready_timeout = ready_timeout
        self.retry_delay = retry_delay
        self.connection = Connection(
            target["host"],
            user=target["username"],
            port=target["port"],
            connect_kwargs={
                "pkey": load_private_key(private_key),
                "look_for_keys": False,
                "allow_agent": False,
                "banner_timeout": 30,
                "auth_timeout": 30,
            },
            connect_timeout=10,
        )

    def connect(self) -> None:
        host = self.target["host"]
        start = time.monotonic()
        while True:
            try:
                self.connection.open()
                logger.debug(f"connected to '{host}'")
                return
            except (paramiko.SSHException, OSError) as e:
                elapsed = int(time.monotonic() - start)
                if elapsed >= self.ready_timeout:
                    raise ConnectError(
                        f"SSH connection to '{host}' failed after {elapsed}s: {e}"
                    ) from e
                logger.debug(
                    f"SSH not ready on '{host}' ({elapsed}s, {type(e).__name__}), retrying..."
                )
                self.connection.close()
                time.sleep(self.retry_delay)

    def upload(self, local_path: str, remote_path: str) -> None:
        try:
            sftp = self.connection.client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            raise UploadError(f"could not start sftp session: {e}") from e
        try:
            sftp.put(local_path, remote_path)
        except (paramiko.SSHException, OSError) as e:
            raise UploadError(f"upload of '{local_path}' failed: {e}") from e
        finally:
            sftp.close()

    def start(self, command: str, out_stream: TextIO, err_stream: TextIO):
        try:
            return self.connection.run(
                command,
                asynchronous=True,
                warn=True,
                hide=False,
                pty=False,
                in_stream=False,
                out_stream=out_stream,
                err_stream=err_stream,
            )
        except (paramiko.SSHException, OSError) as e:
            raise ExecError(f"could not run '{command}': {e}") from e

    def wait(self, handle) -> int | None:
        try:
            return handle.join().exited
        except (ThreadException, paramiko.SSHException, OSError) as e:
            raise TransportError(f"stream error: {e}") from e

    def close(self) -> None:
        self.connection.close()


def resolve_script(payload: str) -> Path | None:
    """Return the local file ``payload`` names, or None for an inline command."""
    try:
        path = Path(payload).expanduser().resolve()
        return path if path.is_file() else None
    except (OSError, ValueError):
        return None


class RemoteSession:
    """One connect-run-close cycle against an instance.

    State moves along :data:`TRANSITIONS`; any error moves it to FAILED. The
    remote exit code is recorded in ``exit_code`` but does not decide success:
    only connect, upload and exec-dispatch errors fail a session.
    """

    def __init__(
        self,
        transport: Transport,
        payload: str,
        *,
        label: str = "",
        sink: TextIO | None = None,
        suppress_user_facing_logs: bool = False,
        remote_path: str = REMOTE_SCRIPT_PATH,
    ):
        self.transport = transport
        self.payload = payload
        self.label = label
        self.sink = sink or sys.stdout
        self.quiet = suppress_user_facing_logs
        self.remote_path = remote_path
        self.state = SessionState.CONNECTING
        self.history = [SessionState.CONNECTING]
        self.exit_code: int | None = None
        self.uploaded = False
        self.command: str | None = None

    def _advance(self, state: SessionState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal session transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _fail(self) -> None:
        self.state = SessionState.FAILED
        self.history.append(SessionState.FAILED)

    def _info(self, msg: str) -> None:
        if self.quiet:
            logger.debug(msg)
        else:
            log(msg)

    def run(self) -> "RemoteSession":
        metrics = Metrics()
        self._info(f"({self.label}) connecting to instance ...")
        try:
            self.transport.connect()
            self._advance(SessionState.READY)

            script = resolve_script(self.payload)
            if script is not None:
                self._advance(SessionState.UPLOADING)
                self.transport.upload(str(script), self.remote_path)
                self.uploaded = True
                logger.debug(f"({self.label}) uploaded '{script}' to '{self.remote_path}'")
                self.command = f"bash {self.remote_path}"
                self._info(f"({self.label}) running script ...")
            else:
                self.command = self.payload

            self._advance(SessionState.EXECUTING)
            handle = self.transport.start(self.command, self.sink, self.sink)
            self._advance(SessionState.STREAMING)
            try:
                self.exit_code = self.transport.wait(handle)
            except TransportError as e:
                warn(f"({self.label}) session ended abnormally: {e}")
            self._advance(SessionState.CLOSED)
        except Exception:
            self._fail()
            raise
        finally:
            self.transport.close()
            if hasattr(self.sink, "flush"):
                self.sink.flush()

        logger.debug(f"({self.label}) exit code {self.exit_code}")
        self._info(f"({self.label}) disconnected (elapsed {metrics.elapsed()}ms)")
        return self


def run_remote(
    target: RemoteTarget,
    credential_key: str,
    payload: str,
    *,
    suppress_user_facing_logs: bool = False,
    sink: TextIO | None = None,
    transport: Transport | None = None,
    ready_timeout: float = SSH_READY_TIMEOUT,
    label: str | None = None,
) -> RemoteSession:
    """Run a local script file or an inline command on a remote host.

    :param target: Host, user and port to connect to
    :param credential_key: Private key text for the connection
    :param payload: Path to a local script to upload, or a command line
    :param suppress_user_facing_logs: Log progress at debug level only
    :param sink: Where remote stdout and stderr are written (default: stdout)
    :param transport: Transport override (default: fabric over SSH)
    :return: The closed session
    :raises ConnectError: If the host never becomes reachable
    :raises UploadError: If the script cannot be transferred
    :raises ExecError: If the command cannot be started
    """
    if transport is None:
        transport = FabricTransport(target, credential_key, ready_timeout=ready_timeout)
    session = RemoteSession(
        transport,
        payload,
        label=label or target["host"],
        sink=sink,
        suppress_user_facing_logs=suppress_user_facing_logs,
    )
    return session.run()
