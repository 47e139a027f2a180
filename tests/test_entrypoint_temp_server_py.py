"""Tests for :class:`TemporaryServer` and :pyfunc:`initialize_datadir`.

``subprocess.run`` is replaced with a recorder; for the shutdown command the
recorder also reads the credential pipe so that its content can be checked.
"""

from __future__ import annotations

import os
from types import SimpleNamespace
from typing import Any

import pytest

import mysql_entrypoint.entrypoint as ep


CONFIG = ep.RuntimeConfig(datadir="/var/lib/mysql", socket="/run/mysqld/mysqld.sock")


class _RunRecorder:
    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self.calls: list[list[str]] = []
        self.passfiles: list[str] = []

    def __call__(self, cmd: list[str], **kwargs: Any) -> SimpleNamespace:
        self.calls.append(list(cmd))
        for fd in kwargs.get("pass_fds", ()):
            self.passfiles.append(os.read(fd, 4096).decode())
        return SimpleNamespace(returncode=self.returncode)


def test_start_and_stop(monkeypatch: pytest.MonkeyPatch) -> None:
    run = _RunRecorder()
    monkeypatch.setattr(ep.subprocess, "run", run)

    server = ep.TemporaryServer(["mysqld", "--user=mysql"], CONFIG)
    server.start()

    assert server.state is ep.ServerState.RUNNING
    assert run.calls[0] == [
        "mysqld",
        "--user=mysql",
        "--daemonize",
        "--skip-networking",
        "--default-time-zone=SYSTEM",
        "--socket=/run/mysqld/mysqld.sock",
    ]

    server.stop("pa\\ss")

    assert server.state is ep.ServerState.STOPPED
    shutdown = run.calls[1]
    assert shutdown[0] == "mysqladmin"
    assert shutdown[1].startswith("--defaults-extra-file=/dev/fd/")
    assert shutdown[2:] == ["shutdown", "-uroot", "--socket=/run/mysqld/mysqld.sock"]
    assert run.passfiles == ['[client]\npassword="pa\\\\ss"\n']


def test_stop_without_password_sends_empty_profile(monkeypatch: pytest.MonkeyPatch) -> None:
    run = _RunRecorder()
    monkeypatch.setattr(ep.subprocess, "run", run)

    server = ep.TemporaryServer(["mysqld"], CONFIG)
    server.start()
    server.stop(None)

    assert run.passfiles == [""]


def test_start_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ep.subprocess, "run", _RunRecorder(returncode=1))

    server = ep.TemporaryServer(["mysqld"], CONFIG)
    with pytest.raises(ep.BootstrapError, match="Unable to start server."):
        server.start()
    assert server.state is ep.ServerState.NOT_RUNNING


def test_stop_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    run = _RunRecorder()
    monkeypatch.setattr(ep.subprocess, "run", run)
    server = ep.TemporaryServer(["mysqld"], CONFIG)
    server.start()

    run.returncode = 1
    with pytest.raises(ep.BootstrapError, match="Unable to shut down server."):
        server.stop("pw")


def test_invalid_transitions(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ep.subprocess, "run", _RunRecorder())
    server = ep.TemporaryServer(["mysqld"], CONFIG)

    with pytest.raises(ep.BootstrapError):
        server.stop("pw")

    server.start()
    with pytest.raises(ep.BootstrapError):
        server.start()


def test_initialize_datadir(monkeypatch: pytest.MonkeyPatch) -> None:
    run = _RunRecorder()
    monkeypatch.setattr(ep.subprocess, "run", run)

    ep.initialize_datadir(["mysqld", "--datadir=/srv/mysql"])

    assert run.calls == [["mysqld", "--datadir=/srv/mysql", "--initialize-insecure", "--default-time-zone=SYSTEM"]]


def test_initialize_datadir_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ep.subprocess, "run", _RunRecorder(returncode=1))

    with pytest.raises(ep.BootstrapError):
        ep.initialize_datadir(["mysqld"])
