"""Tests for the :pyfunc:`mysql_entrypoint.entrypoint.main` helper.

The *real* implementation never returns because it ultimately replaces the
current process image with either a user-supplied custom command or
``mysqld``.  For test-purposes we therefore monkey-patch the *os.exec*
functions and every step that would talk to a real server, so that the
control flow can be asserted from inside the interpreter.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

import pytest

import mysql_entrypoint.entrypoint as ep


class _Flow:
    """Records the order in which ``main`` drives the individual steps."""

    def __init__(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        self.events: list[str] = []
        self.exec_args: tuple[str, list[str], dict[str, str]] | None = None
        self.config = ep.RuntimeConfig(
            datadir=str(tmp_path / "data"),
            socket=str(tmp_path / "run" / "mysqld.sock"),
        )
        flow = self

        for key in list(ep.MysqlEnv.__annotations__):
            monkeypatch.delenv(key, raising=False)
            monkeypatch.delenv(f"{key}_FILE", raising=False)

        monkeypatch.setattr(ep.mysqld_config, "check_config", lambda args: self.events.append("check_config"))
        monkeypatch.setattr(ep.mysqld_config, "resolve", lambda args: self._record("resolve", self.config))
        monkeypatch.setattr(ep, "ensure_directories", lambda paths: self._record("ensure_directories", []))
        monkeypatch.setattr(ep, "drop_privileges", lambda: self.events.append("drop_privileges"))
        monkeypatch.setattr(ep, "list_init_scripts", lambda: self._record("list_init_scripts", []))
        monkeypatch.setattr(ep, "initialize_datadir", lambda args: self.events.append("initialize_datadir"))
        monkeypatch.setattr(ep, "socket_fix", lambda config, args: self.events.append("socket_fix"))

        class _Server:
            def __init__(self, args: list[str], config: ep.RuntimeConfig) -> None:
                flow.events.append("server_init")

            def start(self) -> None:
                flow.events.append("server_start")

            def stop(self, root_password: str | None) -> None:
                flow.events.append(f"server_stop:{root_password}")

        monkeypatch.setattr(ep, "TemporaryServer", _Server)

        def fake_setup(session: ep.SqlSession, policy: ep.ProvisioningPolicy) -> ep.ProvisioningPolicy:
            self.events.append("setup_database")
            if policy.random_root_password:
                return dataclasses.replace(policy, root_password="generated")
            return policy

        def fake_process(scripts: list[Any], session: ep.SqlSession, env: dict[str, str]) -> dict[str, str]:
            self.events.append("process_init_files")
            self.script_env = dict(env)
            return dict(env, FROM_INIT="1")

        monkeypatch.setattr(ep, "setup_database", fake_setup)
        monkeypatch.setattr(ep, "process_init_files", fake_process)
        monkeypatch.setattr(ep, "expire_root_user", lambda session, policy: self.events.append("expire_root_user"))

        def fake_execvpe(file: str, args: list[str], env: dict[str, str]) -> None:
            self.events.append("exec")
            self.exec_args = (file, list(args), dict(env))

        monkeypatch.setattr(ep.os, "execvpe", fake_execvpe)

    def _record(self, name: str, value: Any) -> Any:
        self.events.append(name)
        return value


@pytest.fixture()
def flow(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> _Flow:
    return _Flow(monkeypatch, tmp_path)


def test_fresh_volume_flow(flow: _Flow, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MYSQL_ROOT_PASSWORD", "secret")

    ep.main(["mysqld", "--character-set-server=utf8mb4"])

    assert flow.events == [
        "check_config",
        "resolve",
        "ensure_directories",
        "drop_privileges",
        "list_init_scripts",
        "initialize_datadir",
        "server_init",
        "server_start",
        "socket_fix",
        "setup_database",
        "process_init_files",
        "expire_root_user",
        "server_stop:secret",
        "socket_fix",
        "exec",
    ]
    assert flow.exec_args is not None
    file, args, env = flow.exec_args
    assert file == "mysqld"
    assert args == ["mysqld", "--character-set-server=utf8mb4"]
    assert env["FROM_INIT"] == "1"
    assert env["MYSQL_ROOT_PASSWORD"] == "secret"


def test_random_password_reaches_scripts_and_shutdown(flow: _Flow, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MYSQL_RANDOM_ROOT_PASSWORD", "yes")

    ep.main([])

    assert flow.script_env["MYSQL_ROOT_PASSWORD"] == "generated"
    assert "server_stop:generated" in flow.events


def test_file_pointers_are_not_handed_off(flow: _Flow, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    secret = tmp_path / "pw"
    secret.write_text("from-file\n", encoding="utf-8")
    monkeypatch.setenv("MYSQL_ROOT_PASSWORD_FILE", str(secret))

    ep.main(["mysqld"])

    assert flow.exec_args is not None
    env = flow.exec_args[2]
    assert env["MYSQL_ROOT_PASSWORD"] == "from-file"
    assert "MYSQL_ROOT_PASSWORD_FILE" not in env


def test_initialized_volume_skips_provisioning(flow: _Flow, tmp_path: Path) -> None:
    """No credentials are needed once the system schema exists."""

    (tmp_path / "data" / "mysql").mkdir(parents=True)

    ep.main(["--max-connections=50"])

    assert flow.events == [
        "check_config",
        "resolve",
        "ensure_directories",
        "drop_privileges",
        "socket_fix",
        "exec",
    ]
    assert flow.exec_args is not None
    assert flow.exec_args[1] == ["mysqld", "--max-connections=50"]


def test_fresh_volume_without_credentials_is_fatal(flow: _Flow, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        ep.main(["mysqld"])

    assert excinfo.value.code == 1
    assert "initialize_datadir" not in flow.events
    assert "exec" not in flow.events
    err = capsys.readouterr().err
    assert "[ERROR] [Entrypoint]: Database is uninitialized" in err


def test_root_user_is_fatal_on_fresh_volume(flow: _Flow, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MYSQL_ROOT_PASSWORD", "secret")
    monkeypatch.setenv("MYSQL_USER", "root")

    with pytest.raises(SystemExit) as excinfo:
        ep.main(["mysqld"])

    assert excinfo.value.code == 1


def test_conflicting_file_env_is_fatal_even_when_initialized(
    flow: _Flow, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    (tmp_path / "data" / "mysql").mkdir(parents=True)
    monkeypatch.setenv("MYSQL_PASSWORD", "")
    monkeypatch.setenv("MYSQL_PASSWORD_FILE", "")

    with pytest.raises(SystemExit) as excinfo:
        ep.main(["mysqld"])

    assert excinfo.value.code == 1
    assert "exec" not in flow.events


def test_config_error_is_fatal(flow: _Flow, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def bad_config(args: list[str]) -> None:
        raise ep.ConfigurationError("mysqld failed while attempting to check config")

    monkeypatch.setattr(ep.mysqld_config, "check_config", bad_config)

    with pytest.raises(SystemExit) as excinfo:
        ep.main(["mysqld", "--bogus"])

    assert excinfo.value.code == 1
    assert "mysqld failed while attempting to check config" in capsys.readouterr().err
    assert flow.events == []


def test_provisioning_failure_is_fatal(flow: _Flow, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MYSQL_ALLOW_EMPTY_PASSWORD", "1")

    def failing(scripts: list[Any], session: ep.SqlSession, env: dict[str, str]) -> None:
        raise ep.ProvisioningError("/docker-entrypoint-initdb.d/b.sh failed with status 3")

    monkeypatch.setattr(ep, "process_init_files", failing)

    with pytest.raises(SystemExit) as excinfo:
        ep.main(["mysqld"])

    assert excinfo.value.code == 1
    assert not any(event.startswith("server_stop") for event in flow.events)
