"""Remote session state machine against a recording transport."""

import io
import logging
import socket

import paramiko
import pytest
from paramiko.ssh_exception import NoValidConnectionsError

from nimus.config import REMOTE_SCRIPT_PATH
from nimus.errors import ConnectError, ExecError, TransportError, UploadError
from nimus.remote import (
    FabricTransport,
    RemoteSession,
    SessionState,
    resolve_script,
    run_remote,
)

TARGET = {"host": "34.1.1.1", "username": "nimus", "port": 22}


class FakeTransport:
    def __init__(self, *, exit_code=0, fail=None, exc=None, output=""):
        self.calls = []
        self.exit_code = exit_code
        self.fail = fail
        self.exc = exc
        self.output = output
        self.uploads = []
        self.commands = []

    def _maybe_fail(self, op):
        self.calls.append(op)
        if op == self.fail:
            raise self.exc

    def connect(self):
        self._maybe_fail("connect")

    def upload(self, local_path, remote_path):
        self._maybe_fail("upload")
        self.uploads.append((local_path, remote_path))

    def start(self, command, out_stream, err_stream):
        self._maybe_fail("start")
        self.commands.append(command)
        out_stream.write(self.output)
        return object()

    def wait(self, handle):
        self._maybe_fail("wait")
        return self.exit_code

    def close(self):
        self.calls.append("close")


def run(transport, payload, **kwargs):
    return run_remote(TARGET, "key", payload, transport=transport, sink=io.StringIO(), **kwargs)


def test_script_file_is_uploaded_then_run(script_file):
    transport = FakeTransport()
    session = run(transport, str(script_file))

    assert transport.calls == ["connect", "upload", "start", "wait", "close"]
    assert transport.uploads == [(str(script_file.resolve()), REMOTE_SCRIPT_PATH)]
    assert transport.commands == [f"bash {REMOTE_SCRIPT_PATH}"]
    assert session.uploaded
    assert session.history == [
        SessionState.CONNECTING,
        SessionState.READY,
        SessionState.UPLOADING,
        SessionState.EXECUTING,
        SessionState.STREAMING,
        SessionState.CLOSED,
    ]


def test_inline_command_runs_verbatim(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    transport = FakeTransport()
    session = run(transport, "uptime && df -h")

    assert "upload" not in transport.calls
    assert transport.commands == ["uptime && df -h"]
    assert not session.uploaded
    assert SessionState.UPLOADING not in session.history
    assert session.state == SessionState.CLOSED


def test_output_reaches_sink(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    sink = io.StringIO()
    run_remote(
        TARGET, "key", "echo hi", transport=FakeTransport(output="hi\n"), sink=sink
    )
    assert sink.getvalue() == "hi\n"


def test_nonzero_exit_code_does_not_fail_session(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    session = run(FakeTransport(exit_code=3), "false")
    assert session.exit_code == 3
    assert session.state == SessionState.CLOSED


def test_connect_failure_closes_transport(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    transport = FakeTransport(fail="connect", exc=ConnectError("refused"))
    session = RemoteSession(transport, "uptime", sink=io.StringIO())

    with pytest.raises(ConnectError):
        session.run()
    assert session.state == SessionState.FAILED
    assert transport.calls == ["connect", "close"]


def test_upload_failure(script_file):
    transport = FakeTransport(fail="upload", exc=UploadError("sftp refused"))
    session = RemoteSession(transport, str(script_file), sink=io.StringIO())

    with pytest.raises(UploadError):
        session.run()
    assert session.state == SessionState.FAILED
    assert "start" not in transport.calls
    assert transport.calls[-1] == "close"


def test_exec_failure(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    transport = FakeTransport(fail="start", exc=ExecError("channel closed"))
    with pytest.raises(ExecError):
        run(transport, "uptime")
    assert transport.calls[-1] == "close"


def test_stream_error_still_closes_session(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    transport = FakeTransport(fail="wait", exc=TransportError("stream reset"))
    session = run(transport, "uptime")
    assert session.state == SessionState.CLOSED
    assert session.exit_code is None
    assert transport.calls[-1] == "close"


def test_illegal_transition_rejected():
    session = RemoteSession(FakeTransport(), "uptime", sink=io.StringIO())
    with pytest.raises(RuntimeError):
        session._advance(SessionState.STREAMING)


def test_quiet_session_logs_progress_at_debug(tmp_path, monkeypatch, caplog):
    monkeypatch.chdir(tmp_path)
    caplog.set_level(logging.DEBUG, logger="nimus")
    run(FakeTransport(), "uptime", suppress_user_facing_logs=True, label="web-1")

    progress = [r for r in caplog.records if "connecting" in r.getMessage()]
    assert progress
    assert all(r.levelno == logging.DEBUG for r in progress)


def test_resolve_script(script_file, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert resolve_script(str(script_file)) == script_file.resolve()
    assert resolve_script("uptime") is None
    assert resolve_script(str(tmp_path)) is None


class FlakyConnection:
    """fabric Connection double whose first opens fail."""

    def __init__(self, *args, **kwargs):
        self.failures = []
        self.opened = 0
        self.closed = 0

    def open(self):
        if self.failures:
            raise self.failures.pop(0)
        self.opened += 1

    def close(self):
        self.closed += 1


@pytest.fixture
def fabric_transport(monkeypatch):
    monkeypatch.setattr("nimus.remote.Connection", FlakyConnection)
    monkeypatch.setattr("nimus.remote.load_private_key", lambda text: None)

    def make(**kwargs):
        return FabricTransport(TARGET, "key", retry_delay=0, **kwargs)

    return make


def test_connect_retries_until_sshd_is_up(fabric_transport):
    transport = fabric_transport(ready_timeout=60)
    transport.connection.failures = [
        NoValidConnectionsError({("34.1.1.1", 22): ConnectionRefusedError("refused")}),
        socket.timeout("timed out"),
        paramiko.SSHException("Error reading SSH protocol banner"),
    ]
    transport.connect()
    assert transport.connection.opened == 1
    assert transport.connection.closed == 3


def test_connect_gives_up_after_ready_timeout(fabric_transport):
    transport = fabric_transport(ready_timeout=0)
    transport.connection.failures = [
        NoValidConnectionsError({("34.1.1.1", 22): ConnectionRefusedError("refused")})
    ]
    with pytest.raises(ConnectError, match="34.1.1.1"):
        transport.connect()
