"""Command-line interface for appbundler."""

import argparse
import logging
import signal
import sys
from pathlib import Path

from . import __version__
from .codesign import list_identities
from .devices import boot_simulator, list_connected_devices, list_simulators
from .errors import BundlerError
from .migration import migrate_configuration
from .orchestrator import BundleOptions, bundle, describe_output
from .platforms import Architecture, BuildConfiguration, BundlerChoice, Platform
from .runner import RunOptions, run
from .utils import (
    error_chain,
    get_config_value,
    load_config,
    setup_logging,
    terminate_processes,
)

log = logging.getLogger("appbundler")


def _enum_type(parse):
    """Adapt an enum's parse() for argparse."""

    def convert(value: str):
        try:
            return parse(value)
        except ValueError as e:
            raise argparse.ArgumentTypeError(str(e)) from e

    return convert


def _key_value(value: str) -> tuple[str, str]:
    key, sep, rest = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(
            f"Invalid variable '{value}' (expected KEY=VALUE)"
        )
    return key, rest


def _path(value: str | None) -> Path | None:
    return Path(value) if value is not None else None


# ----------------------------------------------------------------------------
# Options shared between subcommands


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _add_package_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--package-path",
        default=".",
        metavar="DIR",
        help="root directory of the package (default: .)",
    )
    parser.add_argument(
        "--config-file",
        metavar="FILE",
        help="configuration file (default: <package>/Bundler.toml)",
    )


def _add_bundle_options(parser: argparse.ArgumentParser) -> None:
    """Add the options that 'bundle' and 'run' share."""
    parser.add_argument(
        "app_name",
        nargs="?",
        help="app to bundle (optional if the package has one app)",
    )
    _add_package_options(parser)
    parser.add_argument(
        "--scratch-path",
        metavar="DIR",
        help="build scratch directory (default: <package>/.build)",
    )
    parser.add_argument(
        "--products-directory",
        metavar="DIR",
        help="directory holding already built products (with --skip-build)",
    )
    parser.add_argument(
        "-c",
        "--configuration",
        type=_enum_type(BuildConfiguration),
        default=BuildConfiguration.DEBUG,
        metavar="debug|release",
        help="build configuration (default: debug)",
    )
    parser.add_argument(
        "--arch",
        action="append",
        type=_enum_type(Architecture),
        dest="architectures",
        metavar="ARCH",
        help="architecture to build for (repeatable: arm64, x86_64)",
    )
    parser.add_argument(
        "-u",
        "--universal",
        action="store_true",
        help="build a universal binary (macOS and Mac Catalyst)",
    )
    parser.add_argument(
        "--platform",
        type=_enum_type(Platform.parse),
        metavar="PLATFORM",
        help="platform to bundle for (default: the host platform)",
    )
    parser.add_argument(
        "--device",
        metavar="ID_OR_NAME",
        help="device to target ('host', an id or a name search term)",
    )
    parser.add_argument(
        "--simulator",
        metavar="ID_OR_NAME",
        help="simulator to target (an id or a name search term)",
    )
    parser.add_argument(
        "--bundler",
        type=_enum_type(BundlerChoice.parse),
        metavar="BUNDLER",
        help="packaging backend (default: depends on the platform)",
    )
    parser.add_argument(
        "--codesign",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="codesign the bundle (default: when an identity is given)",
    )
    parser.add_argument(
        "--identity",
        metavar="ID_OR_NAME",
        help="codesigning identity (short name or id)",
    )
    parser.add_argument(
        "--entitlements",
        metavar="FILE",
        help="entitlements file to sign with",
    )
    parser.add_argument(
        "--provisioning-profile",
        metavar="FILE",
        help="provisioning profile to embed (iOS, tvOS, visionOS)",
    )
    parser.add_argument(
        "--strip",
        action="store_true",
        help="strip symbols from the bundled executable",
    )
    parser.add_argument(
        "--xcodebuild",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="build with xcodebuild instead of SwiftPM",
    )
    parser.add_argument(
        "--skip-build",
        action="store_true",
        help="bundle products built by an earlier run",
    )
    parser.add_argument(
        "--built-with-xcode",
        action="store_true",
        help="the products were built by Xcode (with --skip-build)",
    )
    parser.add_argument(
        "--Xbuild",
        action="append",
        default=[],
        dest="additional_arguments",
        metavar="ARG",
        help="pass an argument to the build tool (repeatable)",
    )
    _add_common_options(parser)


def _bundle_options(args: argparse.Namespace) -> BundleOptions:
    """Build BundleOptions from arguments and user defaults."""
    config = load_config()

    def default(value, key: str):
        if value is not None:
            return value
        return get_config_value(config, "bundle", key)

    platform = args.platform
    if platform is None:
        configured = get_config_value(config, "bundle", "platform")
        if configured is not None:
            platform = Platform.parse(configured)
    bundler = args.bundler
    if bundler is None:
        configured = get_config_value(config, "bundle", "bundler")
        if configured is not None:
            bundler = BundlerChoice.parse(configured)

    return BundleOptions(
        app_name=args.app_name,
        package_directory=Path(args.package_path),
        output_directory=_path(getattr(args, "output", None)),
        scratch_directory=_path(args.scratch_path),
        products_directory=_path(args.products_directory),
        configuration=args.configuration,
        architectures=tuple(args.architectures or ()),
        universal=args.universal,
        platform=platform,
        device=args.device,
        simulator=args.simulator,
        bundler=bundler,
        codesign=args.codesign,
        identity=default(args.identity, "identity"),
        entitlements=_path(default(args.entitlements, "entitlements")),
        provisioning_profile=_path(
            default(args.provisioning_profile, "provisioning_profile")
        ),
        strip=args.strip,
        xcodebuild=args.xcodebuild,
        skip_build=args.skip_build,
        built_with_xcode=args.built_with_xcode,
        config_file=_path(args.config_file),
        additional_arguments=tuple(args.additional_arguments),
        dry_run=getattr(args, "dry_run", False),
    )


# ----------------------------------------------------------------------------
# Subcommands


def _cmd_bundle(args: argparse.Namespace) -> None:
    """Handle 'bundle' subcommand."""
    try:
        options = _bundle_options(args)
    except ValueError as e:
        raise BundlerError(f"Invalid user defaults: {e}") from e
    output = bundle(options)
    if options.dry_run:
        print(describe_output(output))


def _cmd_run(args: argparse.Namespace) -> None:
    """Handle 'run' subcommand."""
    try:
        options = _bundle_options(args)
    except ValueError as e:
        raise BundlerError(f"Invalid user defaults: {e}") from e
    arguments = list(args.arguments)
    if arguments and arguments[0] == "--":
        arguments = arguments[1:]
    run(
        RunOptions(
            bundle=options,
            arguments=tuple(arguments),
            env_file=_path(args.env),
            environment=dict(args.env_vars or ()),
            hot_reloading_server=args.hot_reloading_server,
        )
    )


def _cmd_migrate(args: argparse.Namespace) -> None:
    """Handle 'migrate' subcommand."""
    migrate_configuration(Path(args.package_path), _path(args.config_file))


def _cmd_simulators_list(args: argparse.Namespace) -> None:
    """Handle 'simulators list' subcommand."""
    simulators = list_simulators(args.filter)
    if not simulators:
        log.info("No simulators found")
        return
    for simulator in sorted(
        simulators, key=lambda s: (s.platform.value, s.name)
    ):
        state = "booted" if simulator.is_booted else "shutdown"
        print(
            f"{simulator.name} ({simulator.platform.display_name}, "
            f"{state}): {simulator.id}"
        )


def _cmd_simulators_boot(args: argparse.Namespace) -> None:
    """Handle 'simulators boot' subcommand."""
    simulator = boot_simulator(args.simulator)
    log.info("Booted: %s (%s)", simulator.name, simulator.id)


def _cmd_devices_list(args: argparse.Namespace) -> None:
    """Handle 'devices list' subcommand."""
    devices = list_connected_devices()
    if not devices:
        log.info("No connected devices found")
        return
    for device in devices:
        suffix = "" if device.is_ready else " (unavailable)"
        print(f"{device.description}{suffix}")


def _cmd_identities(args: argparse.Namespace) -> None:
    """Handle 'identities' subcommand."""
    for identity in list_identities():
        print(f"{identity.id}: {identity.name}")


# ----------------------------------------------------------------------------
# Parser


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with every subcommand."""
    parser = argparse.ArgumentParser(
        prog="appbundler",
        description="Bundle Swift packages into apps for every platform.",
        epilog=(
            "Examples:\n"
            "  appbundler bundle\n"
            "  appbundler bundle MyApp --platform iOS --device 'iPhone'\n"
            "  appbundler run --simulator 'iPhone 15'\n"
            "  appbundler migrate\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        required=True,
    )

    # --- bundle subcommand ---
    bundle_parser = subparsers.add_parser(
        "bundle",
        help="build and bundle an app",
        description="Build an app of the package and bundle it.",
        epilog=(
            "Examples:\n"
            "  appbundler bundle\n"
            "  appbundler bundle MyApp -c release -o dist/\n"
            "  appbundler bundle --platform linux --bundler linuxAppImage\n"
            "  appbundler bundle --platform iOS --device 'iPhone' \\\n"
            "      --identity 'Apple Development'\n"
            "  appbundler bundle --dry-run\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_bundle_options(bundle_parser)
    bundle_parser.add_argument(
        "-o",
        "--output",
        metavar="DIR",
        help="copy the bundle into this directory",
    )
    bundle_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="print where the bundle would be created without building",
    )
    bundle_parser.set_defaults(func=_cmd_bundle)

    # --- run subcommand ---
    run_parser = subparsers.add_parser(
        "run",
        help="bundle an app and run it",
        description="Bundle an app and run it on the host or a device.",
        epilog=(
            "Examples:\n"
            "  appbundler run\n"
            "  appbundler run MyApp -- --some-app-flag\n"
            "  appbundler run --simulator 'iPhone 15' --env dev.env\n"
            "  appbundler run --skip-build\n"
            "  appbundler run --hot-reloading-server 127.0.0.1:7331\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_bundle_options(run_parser)
    run_parser.add_argument(
        "--env",
        metavar="FILE",
        help="dotenv file of variables for the app (default: <package>/.env)",
    )
    run_parser.add_argument(
        "--env-var",
        action="append",
        type=_key_value,
        dest="env_vars",
        metavar="KEY=VALUE",
        help="set a variable for the app (repeatable)",
    )
    run_parser.add_argument(
        "--hot-reloading-server",
        metavar="HOST:PORT",
        help="enable hot reloading against a running server",
    )
    run_parser.add_argument(
        "arguments",
        nargs=argparse.REMAINDER,
        help="arguments passed to the app (after '--')",
    )
    run_parser.set_defaults(func=_cmd_run)

    # --- migrate subcommand ---
    migrate_parser = subparsers.add_parser(
        "migrate",
        help="migrate the configuration file to the latest format",
        description=(
            "Rewrite an outdated Bundle.json or Bundler.toml in the latest "
            "format, keeping the original with a '.orig' suffix."
        ),
        epilog=(
            "Examples:\n"
            "  appbundler migrate\n"
            "  appbundler migrate --package-path ../MyPackage\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_package_options(migrate_parser)
    _add_common_options(migrate_parser)
    migrate_parser.set_defaults(func=_cmd_migrate)

    # --- simulators subcommand ---
    simulators_parser = subparsers.add_parser(
        "simulators",
        help="list and boot simulators",
        description="List and boot Apple simulators.",
        epilog=(
            "Examples:\n"
            "  appbundler simulators list\n"
            "  appbundler simulators list iPhone\n"
            "  appbundler simulators boot 'iPhone 15'\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    simulators_subparsers = simulators_parser.add_subparsers(
        title="commands", dest="simulators_command", required=True
    )
    simulators_list_parser = simulators_subparsers.add_parser(
        "list", help="list simulators"
    )
    simulators_list_parser.add_argument(
        "filter", nargs="?", help="only list simulators matching this term"
    )
    _add_common_options(simulators_list_parser)
    simulators_list_parser.set_defaults(func=_cmd_simulators_list)
    simulators_boot_parser = simulators_subparsers.add_parser(
        "boot", help="boot a simulator"
    )
    simulators_boot_parser.add_argument(
        "simulator", help="id or name search term of the simulator"
    )
    _add_common_options(simulators_boot_parser)
    simulators_boot_parser.set_defaults(func=_cmd_simulators_boot)

    # --- devices subcommand ---
    devices_parser = subparsers.add_parser(
        "devices",
        help="list connected devices",
        description="List connected Apple devices.",
        epilog="Examples:\n  appbundler devices list\n",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    devices_subparsers = devices_parser.add_subparsers(
        title="commands", dest="devices_command", required=True
    )
    devices_list_parser = devices_subparsers.add_parser(
        "list", help="list connected devices"
    )
    _add_common_options(devices_list_parser)
    devices_list_parser.set_defaults(func=_cmd_devices_list)

    # --- identities subcommand ---
    identities_parser = subparsers.add_parser(
        "identities",
        help="list codesigning identities",
        description="List the valid codesigning identities in the keychain.",
        epilog="Examples:\n  appbundler identities\n",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_common_options(identities_parser)
    identities_parser.set_defaults(func=_cmd_identities)

    return parser


def _handle_sigterm(signum, frame) -> None:
    terminate_processes()
    sys.exit(128 + signum)


def main(argv: list[str] | None = None) -> None:
    """Command line interface for appbundler."""
    verbose = False
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        verbose = args.verbose
        setup_logging(args.verbose, not args.no_color)
        signal.signal(signal.SIGTERM, _handle_sigterm)
        args.func(args)

    except BundlerError as e:
        if verbose:
            for message in error_chain(e):
                log.error(message)
        else:
            log.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        killed = terminate_processes()
        log.info("Interrupted by user")
        if killed:
            log.debug("Terminated %d running processes", killed)
        sys.exit(130)
    except Exception as e:
        log.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
