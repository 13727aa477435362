"""The run command: bundle an app, then launch it on the resolved device."""

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from .context import BundlerContext, BundlerOutputStructure
from .devices import Device, resolve_device
from .errors import CommandError, RunError
from .orchestrator import BundleCommand, BundleOptions, ConfigurationCache
from .swiftpm import HOT_RELOADING_VARIABLE
from .utils import command_environment, run_command

SERVER_VARIABLE = "APPBUNDLER_SERVER"
SIMCTL_CHILD_PREFIX = "SIMCTL_CHILD_"
ENV_FILE_NAME = ".env"


def parse_server_address(address: str) -> tuple[str, int]:
    """Split a 'HOST:PORT' hot reloading server address.

    Raises:
        RunError: If the address is malformed
    """
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
        raise RunError(
            f"Invalid hot reloading server '{address}' (expected HOST:PORT)"
        )
    return host, int(port)


def load_environment_file(path: Path) -> dict[str, str]:
    """Read KEY=VALUE pairs for the launched app from a dotenv file.

    Raises:
        RunError: If the file can't be read
    """
    try:
        values = dotenv_values(path)
    except OSError as e:
        raise RunError(f"Failed to read environment file '{path}'") from e
    return {key: value for key, value in values.items() if value is not None}


@dataclass
class RunOptions:
    """Options of the run command on top of the bundle options."""

    bundle: BundleOptions
    arguments: tuple[str, ...] = ()
    env_file: Path | None = None
    environment: dict[str, str] = field(default_factory=dict)
    hot_reloading_server: str | None = None


class RunCommand:
    """Bundles an app and launches the result.

    The target device is resolved before bundling, so a missing or ambiguous
    device fails without building. With '--skip-build' the bundle command
    runs in dry-run mode, so only the location of the previously produced
    bundle is computed.

    Args:
        options: The parsed run options
        cache: Configuration cache handed to the bundle command
    """

    def __init__(
        self, options: RunOptions, cache: ConfigurationCache | None = None
    ) -> None:
        self.options = options
        self.cache = cache if cache is not None else ConfigurationCache()
        self.log = logging.getLogger(self.__class__.__name__)

    def bundle_options(self) -> BundleOptions:
        options = self.options.bundle
        return dataclasses.replace(
            options,
            dry_run=options.skip_build,
            hot_reloading=self.options.hot_reloading_server is not None,
        )

    def app_environment(self, package_directory: Path) -> dict[str, str]:
        """Variables set for the launched app."""
        env: dict[str, str] = {}
        env_file = self.options.env_file
        if env_file is None and (package_directory / ENV_FILE_NAME).exists():
            env_file = package_directory / ENV_FILE_NAME
        if env_file is not None:
            self.log.debug("Loading environment from '%s'", env_file)
            env.update(load_environment_file(env_file))
        env.update(self.options.environment)
        server = self.options.hot_reloading_server
        if server is not None:
            host, port = parse_server_address(server)
            env[HOT_RELOADING_VARIABLE] = "1"
            env[SERVER_VARIABLE] = f"{host}:{port}"
        return env

    def run(self) -> None:
        """Bundle, then launch.

        Raises:
            DeviceResolutionError: If no single device can be chosen
            BundlerError: If bundling fails
            RunError: If the output can't be run or the app fails
        """
        server = self.options.hot_reloading_server
        if server is not None:
            if self.options.bundle.skip_build:
                raise RunError(
                    "'--skip-build' is incompatible with "
                    "'--hot-reloading-server'"
                )
            parse_server_address(server)
        bundle = self.options.bundle
        device = resolve_device(
            bundle.platform, bundle.device, bundle.simulator
        )
        command = BundleCommand(
            self.bundle_options(),
            self.cache,
            require_runnable=True,
            target=(device.platform, device),
        )
        output = command.run()
        context = command.context
        if context is None:
            raise RunError("Bundling did not produce a context")
        env = self.app_environment(context.package_directory)
        self.launch(output, context, env)

    # --- launching ----------------------------------------------------------

    def launch(
        self,
        output: BundlerOutputStructure,
        context: BundlerContext,
        env: dict[str, str],
    ) -> None:
        device = context.device
        if device is None:
            raise RunError(
                f"'{context.platform}' apps can't be launched from this host"
            )
        if not output.bundle.exists():
            raise RunError(
                f"'{output.bundle}' doesn't exist. Run without "
                "'--skip-build' to create it"
            )
        if device.kind in ("host", "macCatalyst"):
            self.launch_on_host(output, context, env)
        elif device.kind == "simulator":
            self.launch_on_simulator(output, context, device, env)
        else:
            self.launch_on_device(output, context, device, env)

    def launch_on_host(
        self,
        output: BundlerOutputStructure,
        context: BundlerContext,
        env: dict[str, str],
    ) -> None:
        executable = output.executable
        if executable is None:
            raise RunError(f"'{output.bundle.name}' has no executable")
        self.log.info("Running '%s'", context.app_name)
        try:
            run_command(
                [str(executable), *self.options.arguments],
                log=self.log,
                env=command_environment(**env),
                stream=True,
            )
        except CommandError as e:
            raise RunError(
                f"'{context.app_name}' exited with status {e.returncode}"
            ) from e

    def launch_on_simulator(
        self,
        output: BundlerOutputStructure,
        context: BundlerContext,
        device: Device,
        env: dict[str, str],
    ) -> None:
        identifier = context.app_configuration.identifier
        child_env = {
            SIMCTL_CHILD_PREFIX + key: value for key, value in env.items()
        }
        try:
            if not device.is_ready:
                self.log.info("Booting '%s'", device.name)
                run_command(
                    ["xcrun", "simctl", "boot", device.id], log=self.log
                )
            self.log.info(
                "Installing '%s' on '%s'", output.bundle.name, device.name
            )
            run_command(
                ["xcrun", "simctl", "install", device.id, str(output.bundle)],
                log=self.log,
            )
            self.log.info("Launching '%s'", identifier)
            run_command(
                [
                    "xcrun",
                    "simctl",
                    "launch",
                    "--console-pty",
                    device.id,
                    identifier,
                    *self.options.arguments,
                ],
                log=self.log,
                env=command_environment(**child_env),
                stream=True,
            )
        except CommandError as e:
            raise RunError(
                f"Failed to run '{context.app_name}' on '{device.name}'"
            ) from e

    def launch_on_device(
        self,
        output: BundlerOutputStructure,
        context: BundlerContext,
        device: Device,
        env: dict[str, str],
    ) -> None:
        identifier = context.app_configuration.identifier
        try:
            self.log.info(
                "Installing '%s' on '%s'", output.bundle.name, device.name
            )
            run_command(
                [
                    "xcrun",
                    "devicectl",
                    "device",
                    "install",
                    "app",
                    "--device",
                    device.id,
                    str(output.bundle),
                ],
                log=self.log,
            )
            self.log.info("Launching '%s'", identifier)
            run_command(
                [
                    "xcrun",
                    "devicectl",
                    "device",
                    "process",
                    "launch",
                    "--console",
                    "--environment-variables",
                    json.dumps(env),
                    "--device",
                    device.id,
                    identifier,
                    *self.options.arguments,
                ],
                log=self.log,
                stream=True,
            )
        except CommandError as e:
            raise RunError(
                f"Failed to run '{context.app_name}' on '{device.name}'"
            ) from e


def run(options: RunOptions, cache: ConfigurationCache | None = None) -> None:
    """Run the run command with options."""
    RunCommand(options, cache).run()
