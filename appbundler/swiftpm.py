"""Building the root package with SwiftPM or xcodebuild.

The compilers themselves are external; this module only decides how to
invoke them, where their products land, and how built executables are
post-processed (debug info and stripping).
"""

import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import BuildError, CommandError, ValidationError
from .platforms import Architecture, BuildConfiguration, HostPlatform, Platform
from .utils import command_environment, run_command

log = logging.getLogger(__name__)

_TRIPLE_OS = {
    Platform.MACOS: ("macosx", ""),
    Platform.MAC_CATALYST: ("ios", "-macabi"),
    Platform.IOS: ("ios", ""),
    Platform.IOS_SIMULATOR: ("ios", "-simulator"),
    Platform.VISIONOS: ("xros", ""),
    Platform.VISIONOS_SIMULATOR: ("xros", "-simulator"),
    Platform.TVOS: ("tvos", ""),
    Platform.TVOS_SIMULATOR: ("tvos", "-simulator"),
}

_XCODEBUILD_DESTINATIONS = {
    Platform.MACOS: "platform=macOS",
    Platform.MAC_CATALYST: "platform=macOS,variant=Mac Catalyst",
    Platform.IOS: "generic/platform=iOS",
    Platform.IOS_SIMULATOR: "generic/platform=iOS Simulator",
    Platform.VISIONOS: "generic/platform=visionOS",
    Platform.VISIONOS_SIMULATOR: "generic/platform=visionOS Simulator",
    Platform.TVOS: "generic/platform=tvOS",
    Platform.TVOS_SIMULATOR: "generic/platform=tvOS Simulator",
}

HOT_RELOADING_VARIABLE = "APPBUNDLER_HOT_RELOADING"


# ----------------------------------------------------------------------------
# Package manifest


@dataclass(frozen=True)
class PackageManifest:
    """The parts of a SwiftPM manifest the pipeline needs."""

    name: str
    products: dict[str, str] = field(default_factory=dict)
    platform_versions: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "PackageManifest":
        """Decode the output of 'swift package dump-package'."""
        products = {}
        for product in data.get("products", []):
            kind = product.get("type", {})
            products[product["name"]] = next(iter(kind), "unknown")
        versions = {
            entry["platformName"]: entry["version"]
            for entry in data.get("platforms") or []
        }
        return cls(
            name=data["name"], products=products, platform_versions=versions
        )

    def platform_version(self, platform: Platform) -> str | None:
        """The minimum OS version declared for platform, or its default."""
        name = platform.manifest_name
        if name is not None and name in self.platform_versions:
            return self.platform_versions[name]
        return platform.default_minimum_version


def load_package_manifest(package_directory: Path) -> PackageManifest:
    """Load the package manifest with 'swift package dump-package'.

    Raises:
        BuildError: If the manifest cannot be loaded or parsed
    """
    try:
        output = run_command(
            [
                "swift",
                "package",
                "dump-package",
                "--package-path",
                str(package_directory),
            ],
            log=log,
        )
        return PackageManifest.from_json(json.loads(output))
    except CommandError as e:
        raise BuildError(
            f"Failed to load the package manifest in '{package_directory}'"
        ) from e
    except (ValueError, KeyError, TypeError, StopIteration) as e:
        raise BuildError("Failed to parse the package manifest") from e


# ----------------------------------------------------------------------------
# Build tool selection


def is_using_xcodebuild(platform: Platform, xcodebuild: bool | None) -> bool:
    """Decide between SwiftPM and xcodebuild.

    xcodebuild is used for Apple platforms other than macOS unless
    '--no-xcodebuild' was given, and for macOS only with '--xcodebuild'.
    """
    if HostPlatform.current() is not HostPlatform.MACOS:
        return False
    if xcodebuild is not None:
        return xcodebuild
    return platform.is_apple and platform is not Platform.MACOS


def find_xcode_project(package_directory: Path) -> Path | None:
    """Return a checked-in .xcodeproj or .xcworkspace, if any."""
    for path in sorted(package_directory.iterdir()):
        if path.suffix in (".xcodeproj", ".xcworkspace"):
            return path
    return None


def check_no_xcode_project(package_directory: Path) -> None:
    """Refuse to run xcodebuild next to a hand-made Xcode project.

    Raises:
        ValidationError: If the package root contains an Xcode project
    """
    project = find_xcode_project(package_directory)
    if project is not None:
        raise ValidationError(
            f"An Xcode project was found at '{project.name}'. xcodebuild "
            "would build it instead of the package; remove it or use "
            "'--no-xcodebuild'"
        )


# ----------------------------------------------------------------------------
# Building


@dataclass(frozen=True)
class BuildParameters:
    """How to build one product of the root package."""

    product: str
    package_directory: Path
    scratch_directory: Path
    configuration: BuildConfiguration
    architectures: tuple[Architecture, ...]
    platform: Platform
    platform_version: str | None = None
    using_xcodebuild: bool = False
    build_as_dylib: bool = False
    additional_arguments: tuple[str, ...] = ()
    hot_reloading: bool = False

    @property
    def triple(self) -> str | None:
        """The target triple passed to SwiftPM, if the host default won't do."""
        arch = self.architectures[0]
        if self.platform is Platform.ANDROID:
            return f"{arch.linux_name}-unknown-linux-android{self.platform_version}"
        if self.platform in _TRIPLE_OS and self.platform is not Platform.MACOS:
            os_name, suffix = _TRIPLE_OS[self.platform]
            return f"{arch}-apple-{os_name}{self.platform_version}{suffix}"
        return None

    @property
    def products_directory(self) -> Path:
        """Where the build tool places the built products."""
        if self.using_xcodebuild:
            suffix = ""
            if self.platform is Platform.MAC_CATALYST:
                suffix = "-maccatalyst"
            elif self.platform is not Platform.MACOS:
                suffix = f"-{self.platform.sdk_name}"
            return (
                self.scratch_directory
                / "xcodebuild"
                / "Build"
                / "Products"
                / f"{self.configuration.xcode_name}{suffix}"
            )
        if self.platform is Platform.MACOS and len(self.architectures) > 1:
            return (
                self.scratch_directory
                / "apple"
                / "Products"
                / self.configuration.xcode_name
            )
        triple = self.triple
        if triple is not None:
            return self.scratch_directory / triple / self.configuration.value
        return self.scratch_directory / self.configuration.value

    def swiftpm_command(self, sdk_path: str | None = None) -> list[str]:
        command = [
            "swift",
            "build",
            "--product",
            self.product,
            "--configuration",
            self.configuration.value,
            "--package-path",
            str(self.package_directory),
            "--scratch-path",
            str(self.scratch_directory),
        ]
        if self.platform is Platform.MACOS:
            for arch in self.architectures:
                command += ["--arch", arch.value]
        elif self.platform is Platform.ANDROID:
            command += ["--swift-sdk", self.triple]
        elif self.platform.is_apple:
            command += ["--triple", self.triple]
            if sdk_path is not None:
                command += ["--sdk", sdk_path]
        if self.build_as_dylib:
            command += ["-Xswiftc", "-emit-library"]
        return command + list(self.additional_arguments)

    def xcodebuild_command(self) -> list[str]:
        command = [
            "xcodebuild",
            "build",
            "-scheme",
            self.product,
            "-configuration",
            self.configuration.xcode_name,
            "-destination",
            _XCODEBUILD_DESTINATIONS[self.platform],
            "-derivedDataPath",
            str(self.scratch_directory / "xcodebuild"),
            "-skipPackagePluginValidation",
        ]
        if self.platform is Platform.MACOS and len(self.architectures) > 1:
            archs = " ".join(arch.value for arch in self.architectures)
            command += [f"ARCHS={archs}", "ONLY_ACTIVE_ARCH=NO"]
        return command + list(self.additional_arguments)


def _sdk_path(platform: Platform) -> str:
    output = run_command(
        ["xcrun", "--sdk", platform.sdk_name, "--show-sdk-path"], log=log
    )
    return output.strip()


def build_product(parameters: BuildParameters) -> None:
    """Build a product of the root package.

    Raises:
        BuildError: If the build tool fails
    """
    tool = "xcodebuild" if parameters.using_xcodebuild else "SwiftPM"
    log.info(
        "Building '%s' (%s, %s) with %s",
        parameters.product,
        parameters.platform.display_name,
        parameters.configuration,
        tool,
    )
    env = None
    if parameters.hot_reloading:
        env = command_environment(**{HOT_RELOADING_VARIABLE: "1"})
    try:
        if parameters.using_xcodebuild:
            command = parameters.xcodebuild_command()
        else:
            sdk_path = None
            if (
                parameters.platform.is_apple
                and parameters.platform is not Platform.MACOS
            ):
                sdk_path = _sdk_path(parameters.platform)
            command = parameters.swiftpm_command(sdk_path)
        run_command(
            command,
            log=log,
            cwd=parameters.package_directory,
            env=env,
            stream=True,
        )
    except CommandError as e:
        raise BuildError(f"Failed to build '{parameters.product}'") from e


# ----------------------------------------------------------------------------
# Post-processing


def extract_debug_info(executable: Path) -> Path:
    """Move DWARF info into '<executable>.debug' and link it back.

    Raises:
        BuildError: If objcopy fails
    """
    debug_file = executable.with_name(executable.name + ".debug")
    log.info("Extracting debug info to '%s'", debug_file.name)
    try:
        run_command(
            ["objcopy", "--only-keep-debug", str(executable), str(debug_file)],
            log=log,
        )
        run_command(
            [
                "objcopy",
                f"--add-gnu-debuglink={debug_file}",
                str(executable),
            ],
            log=log,
        )
    except CommandError as e:
        raise BuildError(
            f"Failed to extract debug info from '{executable}'"
        ) from e
    return debug_file


def strip_executable(executable: Path, destination: Path) -> None:
    """Write a stripped copy of executable to destination.

    Raises:
        BuildError: If the copy or strip fails
    """
    log.info("Stripping '%s'", executable.name)
    try:
        shutil.copy2(executable, destination)
        run_command(["strip", "-x", str(destination)], log=log)
    except (OSError, CommandError) as e:
        raise BuildError(f"Failed to strip '{executable}'") from e
