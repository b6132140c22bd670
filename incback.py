#!/usr/bin/env python3
"""incback: incremental, hard-linked snapshot backups using rsync."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import shlex
import signal
import sys
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Literal, NamedTuple, TextIO

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

if TYPE_CHECKING:
    from types import FrameType

__version__ = "0.1.0"

APPNAME = "incback"
DEFAULT_CONFIG_FILE = ".incback"
DEFAULT_BACKUP_PREFIX = "BACKUP-"
DEFAULT_RSYNC_OPTIONS = "az"
ALLOWED_RSYNC_OPTIONS = frozenset("azc")
SSH_OPTIONS = "-o BatchMode=yes -o ConnectTimeout=5"

# Failure policies for `remote_command`.
SWALLOW_ERRORS = False
RAISE_ERRORS = True


class ConfigError(ValueError):
    """Invalid, incomplete or unreadable configuration."""


class BackupError(RuntimeError):
    """A precondition of the backup run is not met."""


class CommandError(RuntimeError):
    """An external command exited non-zero or wrote to stderr."""

    def __init__(self, cmd: str, returncode: int, stderr: str) -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr or f"Process exited with code {returncode}"
        super().__init__(f'Error executing command "{cmd}": {detail}')


COLORS = {
    "green": "\033[92m",
    "magenta": "\033[95m",
    "yellow": "\033[93m",
    "red": "\033[91m",
    "orange": "\033[33m",
}


def style(text: str, color: str | None = None, *, bold: bool = False) -> str:
    """Return styled text."""
    color_code = COLORS.get(color, "")  # type: ignore[arg-type]
    bold_code = "\033[1m" if bold else ""
    reset_code = "\033[0m"
    return f"{bold_code}{color_code}{text}{reset_code}"


def sanitize(s: str) -> str:
    """Return a sanitized version of the string."""
    # Paths with undecodable bytes arrive as surrogate escapes.
    return s.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def log(message: str, level: str = "info") -> None:
    """Log a message with the specified log level."""
    levels = {"info": "", "warning": "[WARNING] ", "error": "[ERROR] "}
    output = sys.stderr if level in {"warning", "error"} else sys.stdout
    message = sanitize(message)
    print(f"{style(APPNAME, bold=True)}: {levels[level]}{message}", file=output)


def log_info(message: str) -> None:
    """Log an info message to stdout."""
    log(message, "info")


def log_warn(message: str) -> None:
    """Log a warning message to stderr."""
    log(style(message, "orange"), "warning")


def log_error(message: str) -> None:
    """Log an error message to stderr."""
    log(style(message, "red", bold=True), "error")


def utc_timestamp() -> str:
    """Return the current UTC time as ISO-8601 with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Logger:
    """Timestamped console logger, mirrored to an optional log file.

    Every line written to the file is tagged with its level
    (``info - [2025-11-23T19:30:45.123Z] message``). If the file cannot be
    opened or written, a single warning is printed and logging continues on
    the console only.
    """

    def __init__(self, log_file: str | None = None) -> None:
        self.log_file = os.path.abspath(log_file) if log_file else None
        self._stream: TextIO | None = None
        if self.log_file is None:
            return
        try:
            os.makedirs(os.path.dirname(self.log_file), exist_ok=True)
            self._stream = open(self.log_file, "a", encoding="utf-8")  # noqa: SIM115
        except OSError as e:
            log_warn(f"Logger initialization failed ({self.log_file}): {e}")

    def _log(self, message: str, level: str) -> None:
        line = f"[{utc_timestamp()}] {message}"
        {"info": log_info, "warning": log_warn, "error": log_error}[level](line)
        if self._stream is None:
            return
        try:
            self._stream.write(f"{level} - {sanitize(line)}\n")
            self._stream.flush()
        except (OSError, ValueError) as e:
            self._stream = None
            log_warn(f"Logger file write failed ({self.log_file}): {e}")

    def info(self, message: str) -> None:
        """Log an info message."""
        self._log(message, "info")

    def warn(self, message: str) -> None:
        """Log a warning."""
        self._log(message, "warning")

    def error(self, message: str) -> None:
        """Log an error."""
        self._log(message, "error")

    def close(self) -> None:
        """Close the log file, if one is open."""
        if self._stream is not None:
            self._stream.close()
            self._stream = None


class Config(BaseModel):
    """Validated settings for a single backup run."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    src: str = Field(min_length=1, description="Source path")
    dest: str = Field(min_length=1, description="Destination path")
    remote_role: Literal["src", "dest"] | None = Field(
        None,
        alias="remoteRole",
        description="Which endpoint lives on the remote host",
    )
    remote_user: str | None = Field(None, alias="remoteUser")
    remote_host: str | None = Field(None, alias="remoteHost")
    exclude_from: str | None = Field(
        None,
        alias="excludeFrom",
        description="File with rsync exclude patterns",
    )
    log_file: str | None = Field(None, alias="logFile")
    backup_prefix: str = Field(
        DEFAULT_BACKUP_PREFIX,
        min_length=1,
        alias="backupPrefix",
        description="Prefix of the snapshot directory names",
    )
    rsync_options: str = Field(
        DEFAULT_RSYNC_OPTIONS,
        alias="rsyncOptions",
        description="Single-letter rsync flags, any combination of 'a', 'z' and 'c'",
    )

    @field_validator("src", "dest")
    @classmethod
    def validate_folder(cls, v: str) -> str:
        """Strip trailing slashes, rsync gets them appended explicitly."""
        return v.rstrip("/") or "/"

    @field_validator("src", "dest", "exclude_from", "backup_prefix")
    @classmethod
    def validate_no_single_quote(cls, v: str | None) -> str | None:
        """Reject values that would break the single-quoted shell arguments."""
        if v is not None and "'" in v:
            raise ValueError("may not contain single quote characters")
        return v

    @field_validator("backup_prefix")
    @classmethod
    def validate_backup_prefix(cls, v: str) -> str:
        """Snapshots are direct children of the destination."""
        if "/" in v:
            raise ValueError("may not contain '/'")
        return v

    @field_validator("rsync_options")
    @classmethod
    def validate_rsync_options(cls, v: str) -> str:
        """Restrict the rsync flags to the allow-list."""
        flags = v.lstrip("-")
        if not flags or not set(flags) <= ALLOWED_RSYNC_OPTIONS:
            allowed = ", ".join(sorted(ALLOWED_RSYNC_OPTIONS))
            raise ValueError(f"only the flags {allowed} are allowed, got {v!r}")
        return flags

    @model_validator(mode="after")
    def validate_remote(self) -> Config:
        """Remote settings come as a complete triple or not at all."""
        remote = (self.remote_role, self.remote_user, self.remote_host)
        if any(field is not None for field in remote) and not all(remote):
            raise ValueError(
                "remoteRole, remoteUser and remoteHost must be set together",
            )
        return self

    @property
    def is_remote_src(self) -> bool:
        """Whether the source lives on the remote host."""
        return self.remote_role == "src"

    @property
    def is_remote_dest(self) -> bool:
        """Whether the destination lives on the remote host."""
        return self.remote_role == "dest"


# Config fields that can be set from the command line, by `argparse` dest name.
CONFIG_FIELDS = (
    "src",
    "dest",
    "remote_role",
    "remote_user",
    "remote_host",
    "exclude_from",
    "log_file",
    "backup_prefix",
    "rsync_options",
)


def format_validation_error(error: ValidationError) -> str:
    """Join pydantic's error list into a single line."""
    messages = []
    for e in error.errors():
        loc = ".".join(str(part) for part in e["loc"])
        messages.append(f"{loc}: {e['msg']}" if loc else e["msg"])
    return "; ".join(messages)


def validate_config(data: dict[str, Any], source: str) -> Config:
    """Validate raw settings, raising `ConfigError` with a readable message."""
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        msg = f"Invalid {source}: {format_validation_error(e)}"
        raise ConfigError(msg) from e


def read_config_file(config_file: str | None = None) -> Config:
    """Read the JSON configuration file.

    Without an explicit path, ``.incback`` in the working directory is used.
    Keys with a ``null`` value are treated as absent.
    """
    path = config_file or os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
    if not os.path.isfile(path):
        msg = f"Configuration file {path} not found"
        raise ConfigError(msg)

    try:
        with open(path, encoding="utf-8") as f:
            raw = f.read()
    except (OSError, UnicodeDecodeError) as e:
        msg = f"Invalid configuration file {path}: {e}"
        raise ConfigError(msg) from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        msg = f"Invalid configuration file {path}: {e}"
        raise ConfigError(msg) from e
    if not isinstance(data, dict):
        msg = f"Invalid configuration file {path}: expected a JSON object"
        raise ConfigError(msg)

    options = {key: value for key, value in data.items() if value is not None}
    return validate_config(options, f"configuration file {path}")


def resolve_exclude_file(config: Config, logger: Logger) -> Config:
    """Make the exclude file absolute, or drop it with a warning if missing."""
    if not config.exclude_from:
        return config
    exclude_from = os.path.abspath(config.exclude_from)
    if not os.path.exists(exclude_from):
        logger.warn(f"Exclude file not found: {exclude_from}")
        return config.model_copy(update={"exclude_from": None})
    return config.model_copy(update={"exclude_from": exclude_from})


def build_parser() -> argparse.ArgumentParser:
    """Return the command-line parser."""
    parser = argparse.ArgumentParser(
        prog=APPNAME,
        description="Create timestamped, hard-linked incremental backups using rsync.",
        epilog=f"Without any option, the configuration is read from ./{DEFAULT_CONFIG_FILE}.",
    )
    parser.add_argument(
        "-c",
        "--config",
        help=f"JSON configuration file ({DEFAULT_CONFIG_FILE})."
        " All other configuration options are ignored when this is given.",
    )
    parser.add_argument("-s", "--src", help="Source path.")
    parser.add_argument("-d", "--dest", help="Destination path.")
    parser.add_argument(
        "-R",
        "--remote-role",
        choices=["src", "dest"],
        help="Which of source or destination is on the remote host.",
    )
    parser.add_argument("-U", "--remote-user", help="Remote (SSH) user.")
    parser.add_argument("-H", "--remote-host", help="Remote (SSH) host.")
    parser.add_argument(
        "-e",
        "--exclude-from",
        help="Path to the file containing exclude patterns.",
    )
    parser.add_argument("-l", "--log-file", help="Append log messages to this file.")
    parser.add_argument(
        "-p",
        "--backup-prefix",
        help=f"Prefix of the backup directories. Default: {DEFAULT_BACKUP_PREFIX}",
    )
    parser.add_argument(
        "-o",
        "--rsync-options",
        help="rsync flags, any combination of 'a', 'z' and 'c'."
        f" Default: {DEFAULT_RSYNC_OPTIONS}",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Pass --dry-run to rsync, nothing is copied.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show the output of every command that is run.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    return parser


def get_config(args: argparse.Namespace, parser: argparse.ArgumentParser) -> Config:
    """Build the configuration from parsed arguments.

    Priority: ``--config`` > inline options > ``./.incback``.
    """
    if args.config:
        return read_config_file(args.config)

    options = {
        name: getattr(args, name)
        for name in CONFIG_FIELDS
        if getattr(args, name) is not None
    }
    if not options:
        return read_config_file()

    if not args.src or not args.dest:
        print("Error: Missing or invalid parameters.", file=sys.stderr)
        parser.print_help(sys.stderr)
        sys.exit(1)
    return validate_config(options, "command-line options")


class CmdResult(NamedTuple):
    """Command result."""

    stdout: str
    stderr: str
    returncode: int


Runner = Callable[[str], CmdResult]


async def async_run_cmd(
    cmd: str,
    on_line: Callable[[str], None] | None = None,
) -> CmdResult:
    """Run a shell command, capturing its output."""
    process = await asyncio.create_subprocess_shell(
        cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    # Should not be None because of asyncio.subprocess.PIPE
    assert process.stdout is not None, "Process stdout is None"
    assert process.stderr is not None, "Process stderr is None"

    stdout, stderr = await asyncio.gather(
        read_stream(process.stdout, on_line),
        read_stream(process.stderr, on_line),
    )

    await process.wait()
    assert process.returncode is not None, "Process has not returned"
    return CmdResult(stdout, stderr, process.returncode)


async def read_stream(
    stream: asyncio.StreamReader,
    callback: Callable[[str], None] | None,
) -> str:
    """Read each line from the stream and pass it to the callback."""
    output = []
    while True:
        line = await stream.readline()
        if not line:
            break
        line_str = line.decode("utf-8", "replace").rstrip()
        output.append(line_str)
        if callback is not None:
            callback(f"Command output: {line_str}")
    return "\n".join(output)


def run_cmd(
    cmd: str,
    on_line: Callable[[str], None] | None = None,
) -> CmdResult:
    """Synchronously run a shell command."""
    return asyncio.run(async_run_cmd(cmd, on_line))


def execute_command(cmd: str, runner: Runner = run_cmd) -> str:
    """Run a command and return its stripped stdout.

    Raises `CommandError` on a non-zero exit code and also on any stderr
    output, so warnings from rsync or ssh fail the run.
    """
    result = runner(cmd)
    if result.returncode != 0 or result.stderr:
        raise CommandError(cmd, result.returncode, result.stderr)
    return result.stdout.strip()


def ssh_cmd(user: str, host: str, cmd: str) -> str:
    """Return a non-interactive ssh invocation of `cmd` on `user@host`."""
    return f"ssh {SSH_OPTIONS} {shlex.quote(f'{user}@{host}')} {shlex.quote(cmd)}"


def remote_exists(user: str, host: str, path: str, runner: Runner = run_cmd) -> bool:
    """Check whether `path` exists on the remote host.

    The remote side always exits 0 and answers with ``exists`` or
    ``not_exists``. Anything else, including a failed connection, counts as
    "does not exist".
    """
    cmd = ssh_cmd(user, host, f"test -e '{path}' && echo exists || echo not_exists")
    try:
        return execute_command(cmd, runner) == "exists"
    except (CommandError, OSError):
        return False


def remote_command(
    cmd: str,
    config: Config,
    runner: Runner = run_cmd,
    *,
    raise_on_error: bool = SWALLOW_ERRORS,
) -> str:
    """Run `cmd` on the configured remote host.

    With `SWALLOW_ERRORS` a failure returns an empty string, with
    `RAISE_ERRORS` the `CommandError` propagates.
    """
    if not config.remote_user or not config.remote_host:
        msg = "Remote commands require remoteUser and remoteHost"
        raise ConfigError(msg)
    try:
        return execute_command(
            ssh_cmd(config.remote_user, config.remote_host, cmd),
            runner,
        )
    except CommandError:
        if raise_on_error:
            raise
        return ""


def get_path(path: str, is_remote: bool, config: Config) -> str:  # noqa: FBT001
    """Return `path` in the form rsync expects."""
    if is_remote:
        return f"{config.remote_user}@{config.remote_host}:{path}"
    if os.path.isabs(path):
        return path
    return os.path.join(os.getcwd(), path)


def exists_path(
    path: str,
    is_remote: bool,  # noqa: FBT001
    config: Config,
    runner: Runner = run_cmd,
) -> bool:
    """Check if a local or remote path exists."""
    if is_remote:
        assert config.remote_user is not None
        assert config.remote_host is not None
        return remote_exists(config.remote_user, config.remote_host, path, runner)
    return os.path.exists(path)


def get_latest_backup_dir(config: Config, runner: Runner = run_cmd) -> str | None:
    """Return the newest backup in the destination, if any.

    Snapshot names sort chronologically, so the newest is the last one by
    name. Modification times are copied from the source by rsync.
    """
    cmd = f"ls -d '{config.dest}/{config.backup_prefix}'* | sort -r | head -n 1"
    if config.is_remote_dest:
        output = remote_command(cmd, config, runner, raise_on_error=SWALLOW_ERRORS)
    else:
        if not os.path.exists(config.dest):
            return None
        try:
            output = execute_command(cmd, runner)
        except CommandError:
            # `ls` complains on stderr when nothing matches the prefix.
            return None
    return output or None


def create_dest_dir(config: Config, runner: Runner = run_cmd) -> None:
    """Create the destination directory, including missing parents."""
    if config.is_remote_dest:
        remote_command(
            f"mkdir -p '{config.dest}'",
            config,
            runner,
            raise_on_error=RAISE_ERRORS,
        )
    else:
        os.makedirs(config.dest, exist_ok=True)


def now_str(now: datetime | None = None) -> str:
    """Return the UTC time as an ISO-8601 string without colons, e.g. 2025-11-23T193045."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H%M%S")


def build_rsync_cmd(
    config: Config,
    backup_name: str,
    previous_backup: str | None,
    *,
    dry_run: bool = False,
) -> str:
    """Compose the rsync command for a new snapshot.

    `--link-dest` is relative to the new snapshot, so it points at the
    sibling ``../<previous>/`` directory.
    """
    cmd = f"rsync -{config.rsync_options} --delete"
    if dry_run:
        cmd = f"{cmd} --dry-run"
    if config.exclude_from:
        cmd = f"{cmd} --exclude-from='{config.exclude_from}'"
    if previous_backup:
        previous_name = os.path.basename(previous_backup.rstrip("/"))
        cmd = f"{cmd} --link-dest='../{previous_name}/'"
    src = get_path(config.src, config.is_remote_src, config)
    dest = get_path(config.dest, config.is_remote_dest, config)
    return f"{cmd} -- '{src}/' '{dest}/{backup_name}/'"


def backup(
    config: Config,
    logger: Logger,
    runner: Runner = run_cmd,
    *,
    dry_run: bool = False,
) -> str:
    """Back up ``config.src`` into a new snapshot below ``config.dest``.

    Without a previous snapshot a full copy is made, otherwise rsync
    hard-links unchanged files against the most recent one. Returns the
    rsync-style path of the new snapshot.
    """
    backup_name = f"{config.backup_prefix}{now_str()}"

    if not exists_path(config.src, config.is_remote_src, config, runner):
        msg = f'Source directory "{config.src}" does not exist.'
        raise BackupError(msg)

    dest_path = get_path(config.dest, config.is_remote_dest, config)
    if not exists_path(config.dest, config.is_remote_dest, config, runner):
        logger.info(f"Creating destination {dest_path}")
        try:
            create_dest_dir(config, runner)
        except (CommandError, OSError) as e:
            msg = f'Destination directory "{config.dest}" does not exist and could not be created.'
            raise BackupError(msg) from e

    previous_backup = get_latest_backup_dir(config, runner)
    snapshot = f"{dest_path}/{backup_name}"
    if previous_backup is None:
        logger.info(f"Initial backup to {snapshot}")
    else:
        previous_name = os.path.basename(previous_backup.rstrip("/"))
        logger.info(
            f"Incremental backup to {snapshot} with link-dest to {config.dest}/{previous_name}",
        )

    cmd = build_rsync_cmd(config, backup_name, previous_backup, dry_run=dry_run)
    logger.info(f"Executing command: {cmd}")
    execute_command(cmd, runner)
    if dry_run:
        logger.info("Dry run complete - no backup was saved.")
    else:
        logger.info(f"Backup completed: {snapshot}")
    return snapshot


def terminate_script(
    _signal_number: int,
    _frame: FrameType | None,
) -> None:
    """Terminate the script when CTRL+C is pressed."""
    log_info("SIGINT caught.")
    sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    """Main function."""
    parser = build_parser()
    args = parser.parse_args(argv)
    signal.signal(signal.SIGINT, terminate_script)

    try:
        config = get_config(args, parser)
    except ConfigError as e:
        log_error(f"Startup error: {e}")
        sys.exit(1)

    logger = Logger(config.log_file)
    try:
        config = resolve_exclude_file(config, logger)
        runner = partial(run_cmd, on_line=logger.info) if args.verbose else run_cmd
        backup(config, logger, runner, dry_run=args.dry_run)
    except (BackupError, CommandError, ConfigError, OSError) as e:
        logger.error(f"Backup failed: {e}")
        sys.exit(1)
    finally:
        logger.close()


if __name__ == "__main__":
    main()
