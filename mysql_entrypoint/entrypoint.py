#!/usr/bin/env python3
"""MySQL Docker image - **Python entry-point**
=============================================

This module prepares a MySQL data volume on first boot and then hands the
process over to ``mysqld``.  It covers the same ground as the
``docker-entrypoint.sh`` script of the official image: credential policy,
directory ownership, a temporary socket-only server used for provisioning,
the ``/docker-entrypoint-initdb.d`` queue and the final ``exec``.

The matrix below maps every concern of the shell script to the helper that
now owns it.

```
Concern (shell)                    | Python helper              | Status
-----------------------------------+----------------------------+-------
file_env / _FILE indirection       | file_env                   | ✓
docker_setup_env                   | gather_env, resolve_policy | ✓
docker_verify_minimum_env          | verify_minimum_env         | ✓
mysql_get_config / mysql_check_... | tools.src.mysqld_config    | ✓
docker_create_db_directories       | compute/ensure_directories | ✓
exec gosu mysql "$BASH_SOURCE"     | drop_privileges            | ✓ (in-process setuid)
docker_init_database_dir           | initialize_datadir         | ✓
docker_temp_server_start / _stop   | TemporaryServer            | ✓
docker_process_sql                 | SqlSession.execute         | ✓
docker_setup_db                    | setup_database             | ✓
docker_process_init_files          | process_init_files         | ✓
mysql_expire_root_user             | expire_root_user           | ✓
mysql_socket_fix                   | socket_fix                 | ✓
_mysql_want_help                   | wants_help                 | ✓
Overall container flow             | main                       | ✓
```

Every step runs strictly in sequence and every child process is awaited; a
failure anywhere is fatal and reported as a single ``ERROR`` line.  The one
exception is an init artifact with an unknown extension, which is skipped
with a warning.

Passwords never touch the disk.  Client tools receive them through an
option file that lives in an anonymous pipe and is handed over as
``--defaults-extra-file=/dev/fd/N``.
"""

from __future__ import annotations
from typing import IO, Generator, TypedDict
from os import environ

import base64
import bz2
import enum
import gzip
import io
import lzma
import secrets
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Iterable, Mapping, Sequence
import os
import contextlib

from tools.src import mysqld_config
from tools.src.mysqld_config import ConfigurationError, RuntimeConfig

__all__ = [
    "ConfigurationError",
    "EntrypointError",
    "PolicyError",
    "BootstrapError",
    "ProvisioningError",
    "ScriptError",
    "RuntimeConfig",
    "MysqlEnv",
    "ProvisioningPolicy",
    "VolumeState",
    "ScriptKind",
    "InitScript",
    "ServerState",
    "TemporaryServer",
    "SqlSession",
    "file_env",
    "gather_env",
    "resolve_policy",
    "verify_minimum_env",
    "export_env",
    "compute_directories",
    "ensure_directories",
    "drop_privileges",
    "detect_volume_state",
    "initialize_datadir",
    "sql_escape_string_literal",
    "sql_quote_identifier",
    "list_init_scripts",
    "classify_init_script",
    "process_init_files",
    "load_timezones",
    "generate_root_password",
    "setup_database",
    "expire_root_user",
    "socket_fix",
    "normalise_args",
    "is_custom_command",
    "wants_help",
    "main",
    "INITDB_DIR",
    "SYSTEM_USER",
    "TZINFO_DIR",
]


INITDB_DIR = Path("/docker-entrypoint-initdb.d")
TZINFO_DIR = Path("/usr/share/zoneinfo")
SYSTEM_USER = "mysql"
SERVER_COMMAND = "mysqld"

HELP_FLAGS = frozenset({"-?", "--help", "--print-defaults", "-V", "--version"})

# mysql_tzinfo_to_sql emits this abbreviation for zones without one; the
# time_zone_transition_type table only fits 8 characters.
TZINFO_PLACEHOLDER = b"Local time zone must be set--see zic manual page"
TZINFO_REPLACEMENT = b"FCTY"

# Variables bash maintains on its own; they never count as exported by a
# sourced init script.
SHELL_BOOKKEEPING = frozenset({"_", "SHLVL", "PWD", "OLDPWD"})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class EntrypointError(RuntimeError):
    """Base class for every fatal start-up failure raised by this module."""


class PolicyError(EntrypointError):
    """The credential environment is contradictory or incomplete."""


class BootstrapError(EntrypointError):
    """The data directory or the temporary server could not be brought up."""


class ProvisioningError(EntrypointError):
    """A provisioning statement or an init artifact failed."""


class ScriptError(EntrypointError):
    """An init artifact has no known handler.

    Unlike its siblings this error is not fatal: :pyfunc:`process_init_files`
    logs it and continues with the next entry.
    """


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _log(level: str, message: str) -> None:
    """Print one entry-point diagnostic line.

    Notes go to stdout, warnings and errors to stderr.  Every line is flushed
    immediately because the process image is replaced by ``exec`` later on
    and buffered output would be lost.
    """

    stamp = datetime.now().astimezone().isoformat(sep=" ", timespec="seconds")
    stream = sys.stdout if level == "Note" else sys.stderr
    print(f"{stamp} [{level}] [Entrypoint]: {message}", file=stream, flush=True)


def _note(message: str) -> None:
    _log("Note", message)


def _warn(message: str) -> None:
    _log("Warn", message)


# ---------------------------------------------------------------------------
# Environment policy
# ---------------------------------------------------------------------------


class MysqlEnv(TypedDict):
    """Credential and provisioning variables after ``_FILE`` resolution.

    The mapping is *total*: :pyfunc:`gather_env` always fills every key and
    falls back to the documented default when a variable is absent.
    """

    MYSQL_ROOT_PASSWORD: str
    MYSQL_ALLOW_EMPTY_PASSWORD: str
    MYSQL_RANDOM_ROOT_PASSWORD: str
    MYSQL_ROOT_HOST: str
    MYSQL_DATABASE: str
    MYSQL_USER: str
    MYSQL_PASSWORD: str
    MYSQL_INITDB_SKIP_TZINFO: str
    MYSQL_ONETIME_PASSWORD: str


@dataclass(frozen=True)
class ProvisioningPolicy:
    """Typed view of :class:`MysqlEnv` consumed by the provisioning steps."""

    root_password: str | None = None
    allow_empty_root_password: bool = False
    random_root_password: bool = False
    root_host: str = "%"
    database: str | None = None
    user: str | None = None
    user_password: str | None = None
    skip_tzinfo: bool = False
    onetime_root_password: bool = False

    @property
    def creates_remote_root(self) -> bool:
        """Return *True* when a second root account must exist for ``root_host``."""

        return bool(self.root_host) and self.root_host != "localhost"


def file_env(name: str, default: str = "", env: Mapping[str, str] | None = None) -> str:
    """Return the value of *name*, honouring the ``<name>_FILE`` indirection.

    * ``NAME`` and ``NAME_FILE`` both present (even when both are empty) is
      a :class:`PolicyError` - the caller's intent is ambiguous.
    * a non-empty ``NAME`` wins;
    * otherwise the content of the file named by ``NAME_FILE`` is used, with
      trailing newlines removed the way ``$(< file)`` does;
    * otherwise *default*.
    """

    src = environ if env is None else env
    file_var = f"{name}_FILE"

    if name in src and file_var in src:
        raise PolicyError(f"both {name} and {file_var} are set (but are exclusive)")

    if src.get(name):
        return src[name]

    if src.get(file_var):
        path = Path(src[file_var])
        try:
            return path.read_text(encoding="utf-8").rstrip("\n")
        except OSError as exc:
            raise PolicyError(f"cannot read {file_var} ({path}): {exc.strerror or exc}") from exc

    return default


def gather_env(env: Mapping[str, str] | None = None) -> MysqlEnv:
    """Return every policy variable resolved through :pyfunc:`file_env`."""

    src = environ if env is None else env

    def _get(key: str, default: str = "") -> str:
        return file_env(key, default, src)

    return MysqlEnv(
        MYSQL_ROOT_PASSWORD=_get("MYSQL_ROOT_PASSWORD"),
        MYSQL_ALLOW_EMPTY_PASSWORD=_get("MYSQL_ALLOW_EMPTY_PASSWORD"),
        MYSQL_RANDOM_ROOT_PASSWORD=_get("MYSQL_RANDOM_ROOT_PASSWORD"),
        MYSQL_ROOT_HOST=_get("MYSQL_ROOT_HOST", "%"),
        MYSQL_DATABASE=_get("MYSQL_DATABASE"),
        MYSQL_USER=_get("MYSQL_USER"),
        MYSQL_PASSWORD=_get("MYSQL_PASSWORD"),
        MYSQL_INITDB_SKIP_TZINFO=_get("MYSQL_INITDB_SKIP_TZINFO"),
        MYSQL_ONETIME_PASSWORD=_get("MYSQL_ONETIME_PASSWORD"),
    )


def resolve_policy(env: MysqlEnv) -> ProvisioningPolicy:
    return ProvisioningPolicy(
        root_password=env["MYSQL_ROOT_PASSWORD"] or None,
        allow_empty_root_password=bool(env["MYSQL_ALLOW_EMPTY_PASSWORD"]),
        random_root_password=bool(env["MYSQL_RANDOM_ROOT_PASSWORD"]),
        root_host=env["MYSQL_ROOT_HOST"],
        database=env["MYSQL_DATABASE"] or None,
        user=env["MYSQL_USER"] or None,
        user_password=env["MYSQL_PASSWORD"] or None,
        skip_tzinfo=bool(env["MYSQL_INITDB_SKIP_TZINFO"]),
        onetime_root_password=bool(env["MYSQL_ONETIME_PASSWORD"]),
    )


def verify_minimum_env(policy: ProvisioningPolicy) -> None:  # noqa: D401 - imperative mood
    """Reject a policy that cannot provision a fresh volume.

    Exactly one root credential mode must be chosen: an explicit password,
    ``MYSQL_ALLOW_EMPTY_PASSWORD`` or ``MYSQL_RANDOM_ROOT_PASSWORD``.  The
    ``root`` account is created by the bootstrap itself, hence
    ``MYSQL_USER=root`` is refused as well.  A half-specified application
    user only produces a warning.
    """

    chosen = [
        name
        for name, is_set in (
            ("MYSQL_ROOT_PASSWORD", policy.root_password is not None),
            ("MYSQL_ALLOW_EMPTY_PASSWORD", policy.allow_empty_root_password),
            ("MYSQL_RANDOM_ROOT_PASSWORD", policy.random_root_password),
        )
        if is_set
    ]

    if not chosen:
        raise PolicyError(
            "Database is uninitialized and password option is not specified\n"
            "    You need to specify one of the following as an environment variable:\n"
            "    - MYSQL_ROOT_PASSWORD\n"
            "    - MYSQL_ALLOW_EMPTY_PASSWORD\n"
            "    - MYSQL_RANDOM_ROOT_PASSWORD"
        )
    if len(chosen) > 1:
        raise PolicyError(f"{' and '.join(chosen)} are mutually exclusive, set only one of them")

    if policy.user == "root":
        raise PolicyError(
            "MYSQL_USER=\"root\", MYSQL_USER and MYSQL_PASSWORD are for configuring a regular user "
            "and cannot be used for the root user\n"
            "    Remove MYSQL_USER=\"root\" and use one of the following to control the root user password:\n"
            "    - MYSQL_ROOT_PASSWORD\n"
            "    - MYSQL_ALLOW_EMPTY_PASSWORD\n"
            "    - MYSQL_RANDOM_ROOT_PASSWORD"
        )

    if policy.user and not policy.user_password:
        _warn("MYSQL_USER specified, but missing MYSQL_PASSWORD; MYSQL_USER will not be created")
    elif policy.user_password and not policy.user:
        _warn("MYSQL_PASSWORD specified, but missing MYSQL_USER; MYSQL_PASSWORD will be ignored")


def export_env(base: Mapping[str, str], mysql_env: MysqlEnv) -> dict[str, str]:
    """Return the environment handed to children and to the final ``exec``.

    Resolved values replace their raw counterparts and the ``*_FILE``
    pointers are dropped, so a child never sees both forms.
    """

    out = dict(base)
    for key in MysqlEnv.__annotations__:
        out.pop(f"{key}_FILE", None)
    out.update(mysql_env)
    return out


# ---------------------------------------------------------------------------
# Directory provisioning
# ---------------------------------------------------------------------------


def compute_directories(config: RuntimeConfig) -> list[str]:
    """Return the directories ``mysqld`` needs, deduplicated in order."""

    wanted: dict[str, None] = {config.datadir: None, os.path.dirname(config.socket): None}
    for key in mysqld_config.AUX_PATH_KEYS:
        value = config.aux_paths.get(key, "")
        if not value or value == "NULL":
            continue
        # secure-file-priv names a directory, the others name files
        wanted.setdefault(value if key == "secure-file-priv" else os.path.dirname(value), None)
    return [path for path in wanted if path]


def _walk(root: Path) -> Iterable[str]:
    yield str(root)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in (*dirnames, *filenames):
            yield os.path.join(dirpath, name)


def ensure_directories(paths: Iterable[str], owner: str | None = None) -> list[str]:  # noqa: D401
    """Create missing *paths* and hand their content to *owner*.

    Ownership is only fixed when running as root.  Entries already owned by
    the account are left alone, so the return value (one description per
    write) is empty when the helper runs twice over an unchanged tree.
    Symbolic links are re-owned themselves and never followed; the group is
    not touched.
    """

    import pwd

    owner = SYSTEM_USER if owner is None else owner
    targets = [Path(p) for p in paths]
    writes: list[str] = []

    for path in targets:
        if not path.is_dir():
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise BootstrapError(f"cannot create {path}: {exc.strerror or exc}") from exc
            writes.append(f"mkdir {path}")

    if os.geteuid() != 0:
        return writes

    try:
        uid = pwd.getpwnam(owner).pw_uid
    except KeyError as exc:
        raise BootstrapError(f"system user '{owner}' not found") from exc

    for path in targets:
        for entry in _walk(path):
            try:
                if os.lstat(entry).st_uid == uid:
                    continue
                os.lchown(entry, uid, -1)
            except OSError as exc:
                raise BootstrapError(f"cannot change owner of {entry}: {exc.strerror or exc}") from exc
            writes.append(f"chown {entry}")

    return writes


def drop_privileges(user: str | None = None) -> None:  # noqa: D401 - imperative mood
    """Permanently switch to the *mysql* UNIX account for the rest of the process.

    The shell entrypoint re-executed itself through ``gosu`` once the data
    directories were owned by ``mysql``.  Here the same effect is obtained in
    process:

    1. return immediately when not running as root;
    2. look the account up with ``pwd.getpwnam()``;
    3. initialise the supplementary groups;
    4. call ``os.setgid`` **before** ``os.setuid``;
    5. point ``$HOME`` at the account's home directory.

    Every child started afterwards (``mysqld``, the client tools, init
    scripts) and the final ``exec`` therefore run unprivileged.
    """

    import pwd

    if os.geteuid() != 0:
        return

    user = SYSTEM_USER if user is None else user
    try:
        pw = pwd.getpwnam(user)
    except KeyError as exc:  # pragma: no cover - the image always ships the account
        raise BootstrapError(f"system user '{user}' not found") from exc

    _note(f"Switching to dedicated user '{user}'")
    os.initgroups(pw.pw_name, pw.pw_gid)
    os.setgid(pw.pw_gid)
    os.setuid(pw.pw_uid)
    os.environ["HOME"] = pw.pw_dir


# ---------------------------------------------------------------------------
# Volume state & temporary server
# ---------------------------------------------------------------------------


class VolumeState(enum.Enum):
    FRESH = "fresh"
    ALREADY_INITIALIZED = "already-initialized"


def detect_volume_state(config: RuntimeConfig) -> VolumeState:
    """A volume is initialised once the ``mysql`` system schema exists."""

    if Path(config.datadir, "mysql").is_dir():
        return VolumeState.ALREADY_INITIALIZED
    return VolumeState.FRESH


def initialize_datadir(args: Sequence[str]) -> None:
    """Create the system schema with ``mysqld --initialize-insecure``."""

    _note("Initializing database files")
    cmd = [*args, "--initialize-insecure", "--default-time-zone=SYSTEM"]
    try:
        result = subprocess.run(cmd, check=False)
    except FileNotFoundError as exc:
        raise BootstrapError(f"{cmd[0]}: command not found") from exc
    if result.returncode != 0:
        raise BootstrapError(f"database initialisation failed with status {result.returncode}")
    _note("Database files initialized")


@contextlib.contextmanager
def _passfile(password: str | None) -> Generator[int, None, None]:
    """Yield the read end of a pipe holding a ``[client]`` option file.

    The option file only carries a password when *password* is non-empty.
    The client reads escape sequences in option values, so backslashes are
    doubled and line breaks and tabs are written as escapes.
    """

    content = ""
    if password:
        escaped = (
            password.replace("\\", "\\\\")
            .replace("\n", "\\n")
            .replace("\r", "\\r")
            .replace("\t", "\\t")
        )
        content = f'[client]\npassword="{escaped}"\n'

    read_fd, write_fd = os.pipe()
    try:
        with os.fdopen(write_fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        yield read_fd
    finally:
        os.close(read_fd)


class ServerState(enum.Enum):
    NOT_RUNNING = "not-running"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class TemporaryServer:
    """Socket-only ``mysqld`` used while the volume is provisioned.

    ``start`` relies on ``--daemonize``: the launcher only returns once the
    server accepts connections on its socket, so no readiness polling is
    needed.  Networking is disabled to keep clients away until the
    provisioning is complete.
    """

    def __init__(self, args: Sequence[str], config: RuntimeConfig) -> None:
        self.args = list(args)
        self.config = config
        self.state = ServerState.NOT_RUNNING

    def start(self) -> None:
        if self.state is not ServerState.NOT_RUNNING:
            raise BootstrapError(f"temporary server cannot start while {self.state.value}")

        self.state = ServerState.STARTING
        cmd = [
            *self.args,
            "--daemonize",
            "--skip-networking",
            "--default-time-zone=SYSTEM",
            f"--socket={self.config.socket}",
        ]
        try:
            result = subprocess.run(cmd, check=False)
        except FileNotFoundError as exc:
            self.state = ServerState.NOT_RUNNING
            raise BootstrapError("Unable to start server.") from exc
        if result.returncode != 0:
            self.state = ServerState.NOT_RUNNING
            raise BootstrapError("Unable to start server.")
        self.state = ServerState.RUNNING

    def stop(self, root_password: str | None) -> None:
        if self.state is not ServerState.RUNNING:
            raise BootstrapError(f"temporary server cannot stop while {self.state.value}")

        self.state = ServerState.STOPPING
        with _passfile(root_password) as fd:
            cmd = [
                "mysqladmin",
                f"--defaults-extra-file=/dev/fd/{fd}",
                "shutdown",
                "-uroot",
                f"--socket={self.config.socket}",
            ]
            try:
                result = subprocess.run(cmd, pass_fds=(fd,), check=False)
            except FileNotFoundError as exc:
                raise BootstrapError("Unable to shut down server.") from exc
        if result.returncode != 0:
            raise BootstrapError("Unable to shut down server.")
        self.state = ServerState.STOPPED


# ---------------------------------------------------------------------------
# SQL session
# ---------------------------------------------------------------------------


def sql_escape_string_literal(value: str) -> str:
    """Escape *value* for use between single quotes."""

    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("'", "\\'")


def sql_quote_identifier(value: str) -> str:
    """Return *value* as a backtick-quoted identifier."""

    return "`" + value.replace("`", "``") + "`"


def _grant_schema_pattern(name: str) -> str:
    # GRANT treats _ and % in schema names as wildcards
    return name.replace("_", "\\_").replace("%", "\\%")


class SqlSession:
    """Runs SQL batches through the ``mysql`` client over the local socket.

    *database* is the default schema (``MYSQL_DATABASE``); individual calls
    may force another one.  *env* is the environment of the client process,
    ``None`` meaning the current one.
    """

    def __init__(
        self,
        socket: str,
        root_password: str | None = None,
        database: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.socket = socket
        self.root_password = root_password
        self.database = database
        self.env = env

    def command(
        self,
        passfile_fd: int,
        *,
        database: str | None = None,
        extra_args: Sequence[str] = (),
    ) -> list[str]:
        cmd = [
            "mysql",
            f"--defaults-extra-file=/dev/fd/{passfile_fd}",
            "--protocol=socket",
            "-uroot",
            "-hlocalhost",
            f"--socket={self.socket}",
            "--comments",
        ]
        schema = database or self.database
        if schema:
            cmd.append(f"--database={schema}")
        cmd.extend(extra_args)
        return cmd

    def execute(
        self,
        sql: str | bytes | IO[bytes],
        *,
        use_root_password: bool = True,
        database: str | None = None,
        extra_args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Stream *sql* into one client invocation.

        A non-zero client status raises :class:`ProvisioningError`.  Errors
        raised while reading *sql* (for instance a corrupt archive) kill the
        client and propagate unchanged.
        """

        if isinstance(sql, str):
            stream: IO[bytes] = io.BytesIO(sql.encode("utf-8"))
        elif isinstance(sql, bytes):
            stream = io.BytesIO(sql)
        else:
            stream = sql

        password = self.root_password if use_root_password else None
        with _passfile(password) as fd:
            cmd = self.command(fd, database=database, extra_args=extra_args)
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.PIPE,
                    pass_fds=(fd,),
                    env=self.env if env is None else env,
                )
            except FileNotFoundError as exc:
                raise ProvisioningError("mysql: command not found") from exc

            try:
                shutil.copyfileobj(stream, proc.stdin)
            except BrokenPipeError:
                pass  # client exited early, its status is checked below
            except BaseException:
                proc.kill()
                proc.wait()
                raise
            finally:
                with contextlib.suppress(BrokenPipeError):
                    proc.stdin.close()
            returncode = proc.wait()

        if returncode != 0:
            raise ProvisioningError(f"mysql client exited with status {returncode}")


# ---------------------------------------------------------------------------
# Init scripts
# ---------------------------------------------------------------------------


class ScriptKind(enum.Enum):
    EXECUTABLE_SHELL = "executable-shell"
    SOURCED_SHELL = "sourced-shell"
    SQL = "sql"
    SQL_BZ2 = "sql.bz2"
    SQL_GZ = "sql.gz"
    SQL_XZ = "sql.xz"
    SQL_ZST = "sql.zst"
    UNRECOGNIZED = "unrecognized"


_SQL_SUFFIXES: tuple[tuple[str, ScriptKind], ...] = (
    (".sql", ScriptKind.SQL),
    (".sql.bz2", ScriptKind.SQL_BZ2),
    (".sql.gz", ScriptKind.SQL_GZ),
    (".sql.xz", ScriptKind.SQL_XZ),
    (".sql.zst", ScriptKind.SQL_ZST),
)

_DECOMPRESSORS = {
    ScriptKind.SQL_BZ2: bz2.open,
    ScriptKind.SQL_GZ: gzip.open,
    ScriptKind.SQL_XZ: lzma.open,
}


@dataclass(frozen=True)
class InitScript:
    path: Path
    kind: ScriptKind


def classify_init_script(path: Path) -> ScriptKind:
    """Return the handler kind for *path*, based on its name.

    ``*.sh`` files are executed when they carry the executable bit and
    sourced otherwise.
    """

    name = path.name
    if name.endswith(".sh"):
        if os.access(path, os.X_OK):
            return ScriptKind.EXECUTABLE_SHELL
        return ScriptKind.SOURCED_SHELL
    for suffix, kind in _SQL_SUFFIXES:
        if name.endswith(suffix):
            return kind
    return ScriptKind.UNRECOGNIZED


def list_init_scripts(directory: Path | str | None = None) -> list[InitScript]:
    """Return the init artifacts of *directory* in lexical order.

    Hidden entries are ignored.  A missing directory yields an empty list;
    any other listing failure is a :class:`BootstrapError` so that it
    surfaces before the data directory is touched.
    """

    directory = INITDB_DIR if directory is None else Path(directory)
    try:
        names = sorted(os.listdir(directory))
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise BootstrapError(f"cannot list {directory}: {exc.strerror or exc}") from exc

    scripts = []
    for name in names:
        if name.startswith("."):
            continue
        path = directory / name
        scripts.append(InitScript(path=path, kind=classify_init_script(path)))
    return scripts


@contextlib.contextmanager
def open_sql_source(script: InitScript) -> Generator[IO[bytes], None, None]:
    """Yield a binary stream with the decompressed SQL of *script*."""

    if script.kind is ScriptKind.SQL:
        with script.path.open("rb") as fh:
            yield fh
    elif script.kind in _DECOMPRESSORS:
        with _DECOMPRESSORS[script.kind](script.path, "rb") as fh:
            yield fh
    elif script.kind is ScriptKind.SQL_ZST:
        try:
            proc = subprocess.Popen(["zstd", "-dc", str(script.path)], stdout=subprocess.PIPE)
        except FileNotFoundError as exc:
            raise ProvisioningError("zstd: command not found") from exc
        try:
            yield proc.stdout
        finally:
            proc.stdout.close()
            returncode = proc.wait()
        if returncode != 0:
            raise ProvisioningError(f"zstd could not decompress {script.path} (status {returncode})")
    else:
        raise ScriptError(f"{script.path} is not an SQL artifact")


# Helpers offered to sourced scripts written for the shell entrypoint:
# ``"${mysql[@]}"`` and ``docker_process_sql`` talk to the temporary server.
_SOURCE_PRELUDE = r"""
set -eo pipefail
_mysql_passfile() {
	if [ "$1" != '--dont-use-mysql-root-password' ] && [ -n "$MYSQL_ROOT_PASSWORD" ]; then
		printf '[client]\npassword="%s"\n' "$MYSQL_ROOT_PASSWORD"
	fi
}
docker_process_sql() {
	local passfileArgs=()
	if [ "$1" = '--dont-use-mysql-root-password' ]; then
		passfileArgs+=( "$1" )
		shift
	fi
	if [ -n "$MYSQL_DATABASE" ]; then
		set -- --database="$MYSQL_DATABASE" "$@"
	fi
	mysql --defaults-extra-file=<( _mysql_passfile "${passfileArgs[@]}" ) \
		--protocol=socket -uroot -hlocalhost --socket="$SOCKET" --comments "$@"
}
mysql=( docker_process_sql )
"""


def _parse_env_dump(report: bytes) -> dict[str, str]:
    env: dict[str, str] = {}
    for entry in report.split(b"\0"):
        if not entry:
            continue
        key, _, value = entry.partition(b"=")
        env[os.fsdecode(key)] = os.fsdecode(value)
    return env


def _apply_env_delta(before: Mapping[str, str], after: Mapping[str, str]) -> dict[str, str]:
    """Return *after* with bash's own bookkeeping variables taken from *before*."""

    result = {key: value for key, value in after.items() if key not in SHELL_BOOKKEEPING}
    for key in SHELL_BOOKKEEPING:
        if key in before:
            result[key] = before[key]
    return result


def _source_shell_script(path: Path, socket: str, env: dict[str, str]) -> dict[str, str]:
    """Source *path* with bash and return the environment it leaves behind.

    The exported environment is reported as ``env -0`` output over a private
    pipe once the script completes, so whatever the script prints on stdout
    keeps going to the container log.  The script itself runs with that pipe
    closed, so background jobs it starts cannot hold the report open.
    """

    read_fd, write_fd = os.pipe()
    wrapper = (
        f"SOCKET={shlex.quote(socket)}\n"
        + _SOURCE_PRELUDE
        + f'. "$1" {write_fd}>&-\n'
        + f"env -0 >&{write_fd}\n"
    )
    try:
        try:
            proc = subprocess.Popen(
                ["bash", "-c", wrapper, "bash", str(path)],
                env=env,
                pass_fds=(write_fd,),
            )
        finally:
            os.close(write_fd)
    except FileNotFoundError as exc:
        os.close(read_fd)
        raise ProvisioningError("bash: command not found") from exc

    with os.fdopen(read_fd, "rb") as fh:
        report = fh.read()
    returncode = proc.wait()

    if returncode != 0:
        raise ProvisioningError(f"{path} failed with status {returncode}")
    if not report:
        # the script ended the shell with ``exit 0`` before the dump
        return env
    return _apply_env_delta(env, _parse_env_dump(report))


def _process_init_file(script: InitScript, session: SqlSession, env: dict[str, str]) -> dict[str, str]:
    if script.kind is ScriptKind.UNRECOGNIZED:
        raise ScriptError(f"ignoring {script.path}")

    if script.kind is ScriptKind.EXECUTABLE_SHELL:
        _note(f"{script.path}: running {script.path.name}")
        try:
            subprocess.run([str(script.path)], env=env, check=True)
        except subprocess.CalledProcessError as exc:
            raise ProvisioningError(f"{script.path} failed with status {exc.returncode}") from exc
        except OSError as exc:
            raise ProvisioningError(f"cannot execute {script.path}: {exc.strerror or exc}") from exc
        return env

    if script.kind is ScriptKind.SOURCED_SHELL:
        _note(f"{script.path}: sourcing {script.path.name}")
        return _source_shell_script(script.path, session.socket, env)

    _note(f"{script.path}: running {script.path.name}")
    try:
        with open_sql_source(script) as stream:
            session.execute(stream, env=env)
    except (OSError, EOFError, lzma.LZMAError) as exc:
        raise ProvisioningError(f"cannot read {script.path}: {exc}") from exc
    return env


def process_init_files(
    scripts: Iterable[InitScript],
    session: SqlSession,
    env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Run *scripts* one after the other and return the resulting environment.

    Sourced shell scripts may export variables; those changes are visible to
    every later script and end up in the returned mapping, which is what the
    server is finally started with.  The first failing script aborts the
    queue with :class:`ProvisioningError`.  Unrecognised files are skipped
    with a warning.
    """

    current = dict(environ if env is None else env)
    for script in scripts:
        try:
            current = _process_init_file(script, session, current)
        except ScriptError as exc:
            _warn(str(exc))
    return current


# ---------------------------------------------------------------------------
# Provisioning sequencer
# ---------------------------------------------------------------------------


def load_timezones(session: SqlSession, tzinfo_dir: Path | str | None = None) -> None:
    """Fill the ``mysql.time_zone*`` tables from the system zoneinfo database."""

    tzinfo_dir = TZINFO_DIR if tzinfo_dir is None else tzinfo_dir
    try:
        result = subprocess.run(
            ["mysql_tzinfo_to_sql", str(tzinfo_dir)],
            stdout=subprocess.PIPE,
            check=True,
        )
    except subprocess.CalledProcessError as exc:
        raise ProvisioningError(f"mysql_tzinfo_to_sql failed with status {exc.returncode}") from exc
    except FileNotFoundError as exc:
        raise ProvisioningError("mysql_tzinfo_to_sql: command not found") from exc

    sql = result.stdout.replace(TZINFO_PLACEHOLDER, TZINFO_REPLACEMENT)
    session.execute(sql, use_root_password=False, database="mysql")


def generate_root_password() -> str:
    return base64.b64encode(secrets.token_bytes(24)).decode("ascii")


def setup_database(
    session: SqlSession,
    policy: ProvisioningPolicy,
    tzinfo_dir: Path | str | None = None,
) -> ProvisioningPolicy:
    """Provision a freshly initialised server reachable through *session*.

    Returns *policy*, with ``root_password`` filled in when a random one was
    generated.  On return *session* authenticates with the new root
    password.
    """

    if not policy.skip_tzinfo:
        load_timezones(session, tzinfo_dir)

    if policy.random_root_password:
        policy = replace(policy, root_password=generate_root_password())
        _note(f"GENERATED ROOT PASSWORD: {policy.root_password}")

    password = sql_escape_string_literal(policy.root_password or "")
    statements = [
        "-- enable autocommit explicitly (in case it was disabled globally)",
        "SET autocommit = 1;",
        "-- what's done in this file shouldn't be replicated",
        "--  or products like mysql-fabric won't work",
        "SET @@SESSION.SQL_LOG_BIN=0;",
        f"ALTER USER 'root'@'localhost' IDENTIFIED BY '{password}' ;",
        "GRANT ALL ON *.* TO 'root'@'localhost' WITH GRANT OPTION ;",
        "FLUSH PRIVILEGES ;",
    ]
    if policy.creates_remote_root:
        host = sql_escape_string_literal(policy.root_host)
        statements += [
            f"CREATE USER 'root'@'{host}' IDENTIFIED BY '{password}' ;",
            f"GRANT ALL ON *.* TO 'root'@'{host}' WITH GRANT OPTION ;",
        ]
    statements.append("DROP DATABASE IF EXISTS test ;")

    # the server still accepts password-less root logins at this point
    session.execute(
        "\n".join(statements) + "\n",
        use_root_password=False,
        database="mysql",
        extra_args=("--binary-mode",),
    )
    session.root_password = policy.root_password

    if policy.database:
        _note(f"Creating database {policy.database}")
        session.execute(
            f"CREATE DATABASE IF NOT EXISTS {sql_quote_identifier(policy.database)} ;",
            database="mysql",
        )

    if policy.user and policy.user_password:
        user = sql_escape_string_literal(policy.user)
        _note(f"Creating user {policy.user}")
        session.execute(
            f"CREATE USER '{user}'@'%' IDENTIFIED BY "
            f"'{sql_escape_string_literal(policy.user_password)}' ;",
            database="mysql",
        )
        if policy.database:
            _note(f"Giving user {policy.user} access to schema {policy.database}")
            schema = sql_quote_identifier(_grant_schema_pattern(policy.database))
            session.execute(f"GRANT ALL ON {schema}.* TO '{user}'@'%' ;", database="mysql")

    return policy


def expire_root_user(session: SqlSession, policy: ProvisioningPolicy) -> None:
    """Force a password change at the next root login (``MYSQL_ONETIME_PASSWORD``)."""

    if not policy.onetime_root_password:
        return

    hosts = ["localhost"]
    if policy.creates_remote_root:
        hosts.append(policy.root_host)
    statements = [
        f"ALTER USER 'root'@'{sql_escape_string_literal(host)}' PASSWORD EXPIRE;" for host in hosts
    ]
    session.execute("\n".join(statements) + "\n", database="mysql")


# ---------------------------------------------------------------------------
# Hand-off helpers
# ---------------------------------------------------------------------------


def socket_fix(config: RuntimeConfig, args: Sequence[str]) -> None:  # noqa: D401
    """Make the compiled-in default socket path point at the configured one.

    Clients started without options (``mysql`` inside the container, init
    scripts) look for the server at the default location reported by
    ``mysqld --no-defaults``.  When the configuration moves the socket, a
    symbolic link bridges the two.  Failing to create it is not fatal.
    """

    binary = args[0] if args else SERVER_COMMAND
    try:
        default_socket = mysqld_config.get_config("socket", [binary, "--no-defaults"])
    except ConfigurationError as exc:
        _warn(f"cannot determine the default socket path: {exc}")
        return

    if not default_socket or default_socket == config.socket:
        return

    link = Path(default_socket)
    if link.is_symlink() and os.readlink(link) == config.socket:
        return

    try:
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(config.socket)
    except OSError as exc:
        _warn(f"cannot link {default_socket} to {config.socket}: {exc.strerror or exc}")
        return
    _note(f"'{default_socket}' -> '{config.socket}'")


def normalise_args(argv: Sequence[str]) -> list[str]:
    """Return the server command line, defaulting to ``mysqld``.

    ``docker run image --flag`` means ``mysqld --flag``.
    """

    args = list(argv)
    if not args:
        return [SERVER_COMMAND]
    if args[0].startswith("-"):
        return [SERVER_COMMAND, *args]
    return args


def is_custom_command(argv: Sequence[str] | None = None) -> bool:  # noqa: D401 - imperative mood
    """Return *True* when *argv* runs something other than the server.

    Custom commands (``bash``, ``mysql -h db ...``) skip every provisioning
    step and are executed as-is.
    """

    args = normalise_args(sys.argv[1:] if argv is None else argv)
    return args[0] != SERVER_COMMAND


def wants_help(argv: Sequence[str]) -> bool:
    """Return *True* when the server is only asked for help or version output."""

    return any(arg in HELP_FLAGS for arg in argv[1:])


def _bootstrap_fresh_volume(
    args: Sequence[str],
    config: RuntimeConfig,
    policy: ProvisioningPolicy,
    env: dict[str, str],
) -> dict[str, str]:
    verify_minimum_env(policy)

    # listed before anything is written so an unreadable directory cannot
    # leave a half-initialised volume behind
    scripts = list_init_scripts()

    initialize_datadir(args)

    server = TemporaryServer(args, config)
    _note("Starting temp server")
    server.start()
    _note("Temporary server started.")
    socket_fix(config, args)

    session = SqlSession(config.socket, policy.root_password, policy.database, env)
    policy = setup_database(session, policy)
    env = dict(env, MYSQL_ROOT_PASSWORD=policy.root_password or "")

    env = process_init_files(scripts, session, env)
    expire_root_user(session, policy)

    _note("Stopping temporary server")
    server.stop(policy.root_password)
    _note("Temporary server stopped")
    _note("MySQL init process done. Ready for start up.")
    return env


def main(argv: Sequence[str] | None = None) -> None:
    """Prepare the volume when needed and ``exec`` the server.

    The function never returns in production: it replaces the process image
    either with a custom command or with ``mysqld`` so that the server
    becomes *PID 1*.  Tests monkey-patch ``os.execvp``/``os.execvpe``.
    """

    args = normalise_args(sys.argv[1:] if argv is None else argv)

    # ------------------------------------------------------------------
    # 1. Custom commands and help/version requests bypass every step.
    # ------------------------------------------------------------------

    if is_custom_command(args) or wants_help(args):
        os.execvp(args[0], args)  # pragma: no cover - real exec unreachable in tests
        return

    try:
        version = environ.get("MYSQL_VERSION")
        if version:
            _note(f"Entrypoint script for MySQL Server {version} started.")
        else:
            _note("Entrypoint script for MySQL Server started.")

        # --------------------------------------------------------------
        # 2. Validate the server arguments and read the effective paths.
        # --------------------------------------------------------------

        mysqld_config.check_config(args)
        config = mysqld_config.resolve(args)
        mysql_env = gather_env()
        policy = resolve_policy(mysql_env)

        # --------------------------------------------------------------
        # 3. Directories, then give up root for good.
        # --------------------------------------------------------------

        ensure_directories(compute_directories(config))
        drop_privileges()
        env = export_env(environ, mysql_env)

        # --------------------------------------------------------------
        # 4. First boot only: provision through a temporary server.
        # --------------------------------------------------------------

        if detect_volume_state(config) is VolumeState.FRESH:
            env = _bootstrap_fresh_volume(args, config, policy, env)

        # --------------------------------------------------------------
        # 5. Hand over to the real server.
        # --------------------------------------------------------------

        socket_fix(config, args)
        os.execvpe(args[0], args, env)  # pragma: no cover - unreachable in unit tests

    except SystemExit:
        raise
    except Exception as exc:
        _log("ERROR", str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
