#!/usr/bin/env python3
"""Read the effective ``mysqld`` configuration.

Rather than re-parsing ``my.cnf`` and its ``!includedir`` fragments, this
tool asks the server binary itself: ``mysqld --verbose --help`` ends with a
two-column table listing every variable together with the value it would run
with after all option files and command-line flags were applied.  The helpers
below run that report and parse the table.

The module doubles as a small command line tool::

    mysqld-config check -- mysqld --datadir=/srv/mysql
    mysqld-config get socket -- mysqld
    mysqld-config resolve -- mysqld
"""

from __future__ import annotations

import argparse
import os
import secrets
import signal
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from types import FrameType
from typing import Dict, List, Optional, Sequence


# Engine-reported files whose parent directory must exist before the server
# can start.  ``secure-file-priv`` already names a directory.
AUX_PATH_KEYS: tuple[str, ...] = (
    "general-log-file",
    "keyring_file_data",
    "pid-file",
    "secure-file-priv",
    "slow-query-log-file",
)

NO_DEFAULT = "(No default value)"


class ConfigurationError(RuntimeError):
    """``mysqld`` rejected its arguments or reported an unusable value."""


@dataclass(frozen=True)
class RuntimeConfig:
    """Paths reported by the engine for one invocation."""

    datadir: str
    socket: str
    aux_paths: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def _log(message: str) -> None:
    """Print *message* to stderr."""

    print(message, file=sys.stderr)


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle termination signals."""

    _log(f"Received signal {signum}, terminating gracefully.")
    sys.exit(1)


def _normalise(key: str) -> str:
    return key.replace("_", "-").lower()


def _unused_index_path() -> str:
    """Return a path that does not exist and is never created."""

    return os.path.join(tempfile.gettempdir(), f"mysqld-config-{secrets.token_hex(8)}.index")


# ---------------------------------------------------------------------------
# Report parsing
# ---------------------------------------------------------------------------

def parse_report(output: str) -> Dict[str, str]:
    """Parse the variables table printed by ``mysqld --verbose --help``.

    Only rows starting in the first column count, so the indented option
    descriptions above the table (``--datadir=name  Path to the database
    root directory``) never shadow a real value.  When a dashed separator
    line is present, parsing starts after it.
    """

    lines = output.splitlines()
    for idx, line in enumerate(lines):
        if line.startswith("---") and set(line.replace(" ", "")) == {"-"}:
            lines = lines[idx + 1:]
            break

    values: Dict[str, str] = {}
    for line in lines:
        if not line or line[0] in " \t":
            continue
        parts = line.split(None, 1)
        key = _normalise(parts[0])
        value = parts[1].strip() if len(parts) > 1 else ""
        if value == NO_DEFAULT:
            value = ""
        values.setdefault(key, value)
    return values


def check_config(args: Sequence[str]) -> None:
    """Fail with :class:`ConfigurationError` when ``mysqld`` rejects *args*."""

    cmd = [*args, "--verbose", "--help"]
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ConfigurationError(f"{cmd[0]}: command not found") from exc

    if proc.returncode != 0:
        raise ConfigurationError(
            "mysqld failed while attempting to check config\n"
            f"\tcommand was: {' '.join(cmd)}\n"
            f"\t{proc.stderr}"
        )


def read_report(args: Sequence[str]) -> Dict[str, str]:
    """Return every variable reported by ``mysqld`` for *args*.

    The trailing ``--log-bin-index`` points at a throw-away path so that the
    query never touches the bin-log index file of a running server.
    """

    cmd = [*args, "--verbose", "--help", f"--log-bin-index={_unused_index_path()}"]
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ConfigurationError(f"{cmd[0]}: command not found") from exc

    if proc.returncode != 0:
        raise ConfigurationError(f"mysqld exited with status {proc.returncode} while reporting its configuration")
    return parse_report(proc.stdout)


def get_config(key: str, args: Sequence[str]) -> Optional[str]:
    """Return the value of *key*, or *None* when absent or empty."""

    value = read_report(args).get(_normalise(key), "")
    return value or None


def resolve(args: Sequence[str]) -> RuntimeConfig:
    """Return the :class:`RuntimeConfig` for *args* using a single report."""

    report = read_report(args)

    datadir = report.get("datadir", "")
    socket = report.get("socket", "")
    if not datadir:
        raise ConfigurationError("mysqld did not report a datadir")
    if not socket:
        raise ConfigurationError("mysqld did not report a socket path")

    aux_paths = {}
    for key in AUX_PATH_KEYS:
        value = report.get(_normalise(key), "")
        if value:
            aux_paths[key] = value

    return RuntimeConfig(datadir=datadir, socket=socket, aux_paths=aux_paths)


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""

    parser = argparse.ArgumentParser(description="Query the effective mysqld configuration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    check_parser = subparsers.add_parser("check", help="Validate the mysqld arguments")
    check_parser.add_argument("mysqld", nargs=argparse.REMAINDER)

    get_parser = subparsers.add_parser("get", help="Print a single configuration value")
    get_parser.add_argument("key", type=str)
    get_parser.add_argument("mysqld", nargs=argparse.REMAINDER)

    resolve_parser = subparsers.add_parser("resolve", help="Print datadir, socket and auxiliary paths")
    resolve_parser.add_argument("mysqld", nargs=argparse.REMAINDER)

    args = parser.parse_args(argv)
    mysqld = list(args.mysqld)
    if mysqld[:1] == ["--"]:
        mysqld = mysqld[1:]
    args.mysqld = mysqld or ["mysqld"]
    return args


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the command line tool."""

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    args = parse_args(argv)

    try:
        if args.command == "check":
            check_config(args.mysqld)
            _log("mysqld configuration is valid.")
        elif args.command == "get":
            value = get_config(args.key, args.mysqld)
            if value is None:
                _log(f"Error: Key '{args.key}' not reported by mysqld")
                sys.exit(1)
            print(value)
        elif args.command == "resolve":
            config = resolve(args.mysqld)
            print(f"datadir = {config.datadir}")
            print(f"socket = {config.socket}")
            for key in sorted(config.aux_paths):
                print(f"{key} = {config.aux_paths[key]}")
    except ConfigurationError as exc:
        _log(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
