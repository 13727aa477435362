"""Shared plumbing: logging, external commands, user defaults and files."""

import datetime
import logging
import os
import shutil
import subprocess
import threading
import tomllib
from pathlib import Path

from .errors import BundlerError, CommandError, FileError

# Type aliases
Pathlike = Path | str

# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


def error_chain(error: BaseException) -> list[str]:
    """Return the messages of an error and every error that caused it."""
    messages = []
    current: BaseException | None = error
    while current is not None:
        messages.append(f"{type(current).__name__}: {current}")
        current = current.__cause__
    return messages


# ----------------------------------------------------------------------------
# Command execution utilities

_processes: set[subprocess.Popen] = set()
_processes_lock = threading.Lock()


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    cwd: Pathlike | None = None,
    env: dict[str, str] | None = None,
    input: str | None = None,
    stream: bool = False,
) -> str:
    """Run a command and return its output.

    This is the single process-invocation point of the package. Commands
    run with shell=False, and every spawned process is tracked so that
    :func:`terminate_processes` can kill them all if appbundler itself is
    interrupted.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        cwd: Working directory for the command
        env: Complete environment for the command (default: inherited)
        input: Text written to the command's standard input
        stream: If True, output goes straight to the terminal and an empty
            string is returned

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    command = [str(part) for part in command]
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    capture = None if stream else subprocess.PIPE
    try:
        process = subprocess.Popen(
            command,
            shell=False,
            cwd=cwd,
            env=env,
            text=True,
            stdin=subprocess.PIPE if input is not None else None,
            stdout=capture,
            stderr=capture,
        )
    except OSError as e:
        raise CommandError(cmd_str, 127, str(e)) from e

    with _processes_lock:
        _processes.add(process)
    try:
        stdout, stderr = process.communicate(input)
    finally:
        with _processes_lock:
            _processes.discard(process)

    if process.returncode != 0:
        raise CommandError(cmd_str, process.returncode, stderr or stdout)
    return stdout or ""


def terminate_processes() -> int:
    """Kill every process spawned by run_command that is still running.

    Returns:
        The number of processes that were killed
    """
    with _processes_lock:
        processes = list(_processes)
    killed = 0
    for process in processes:
        if process.poll() is None:
            process.kill()
            killed += 1
    return killed


def command_environment(**overrides: str) -> dict[str, str]:
    """Return a copy of the current environment with overrides applied."""
    env = dict(os.environ)
    env.update(overrides)
    return env


# ----------------------------------------------------------------------------
# File helpers


def copy_path(source: Path, destination: Path) -> None:
    """Copy a file or directory, preserving symlinks inside directories.

    Raises:
        FileError: If the copy fails
    """
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, destination, symlinks=True)
        else:
            shutil.copy2(source, destination)
    except OSError as e:
        raise FileError(
            f"Failed to copy '{source}' to '{destination}'"
        ) from e


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
    except OSError as e:
        raise FileError(f"Failed to remove '{path}'") from e


# ----------------------------------------------------------------------------
# User defaults file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load user defaults from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .appbundler.toml in current directory
    3. appbundler.toml in current directory

    Note: pyproject.toml is intentionally NOT searched because the defaults
    name codesigning identities and provisioning profiles that are personal
    to one developer machine.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        BundlerError: If an explicit config_path cannot be parsed

    Example .appbundler.toml:
        [bundle]
        identity = "Apple Development"
        entitlements = "App.entitlements"
        bundler = "darwinApp"
    """
    if config_path is not None:
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".appbundler.toml",
            cwd / "appbundler.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError) as e:
                if config_path is not None:
                    raise BundlerError(
                        f"Failed to read user defaults '{path}'"
                    ) from e
                logging.getLogger(__name__).warning(
                    "Ignoring unreadable defaults file '%s': %s", path, e
                )
                continue

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "bundle")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default
