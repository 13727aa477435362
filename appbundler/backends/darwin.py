"""App bundles for macOS, Mac Catalyst, iOS, tvOS and visionOS."""

import logging
from dataclasses import dataclass
from pathlib import Path

from ..codesign import Codesigner
from ..context import BundlerContext, BundlerOutputStructure
from ..errors import CommandError, PackagingError
from ..metadata import create_info_plist, write_info_plist
from ..platforms import BundlerChoice, Platform
from ..swiftpm import is_using_xcodebuild
from ..utils import run_command
from .base import Bundler

# Install names starting with these are provided by the OS
SYSTEM_LIBRARY_PREFIXES = ("/usr/lib/", "/System/")


@dataclass(frozen=True)
class DarwinBundleStructure:
    """The file layout of an app bundle for one Apple platform.

    macOS and Mac Catalyst bundles nest everything under ``Contents``;
    the other platforms use a flat bundle.
    """

    bundle: Path
    platform: Platform
    app_name: str

    @property
    def contents(self) -> Path:
        if self.platform in (Platform.MACOS, Platform.MAC_CATALYST):
            return self.bundle / "Contents"
        return self.bundle

    @property
    def executable_directory(self) -> Path:
        if self.contents == self.bundle:
            return self.bundle
        return self.contents / "MacOS"

    @property
    def resources(self) -> Path:
        if self.contents == self.bundle:
            return self.bundle
        return self.contents / "Resources"

    @property
    def libraries(self) -> Path:
        return self.contents / "Libraries"

    @property
    def helpers(self) -> Path:
        if self.contents == self.bundle:
            return self.bundle
        return self.contents / "Helpers"

    @property
    def info_plist(self) -> Path:
        return self.contents / "Info.plist"

    @property
    def pkg_info(self) -> Path:
        return self.contents / "PkgInfo"

    @property
    def provisioning_profile(self) -> Path:
        return self.contents / "embedded.mobileprovision"

    @property
    def app_icon(self) -> Path:
        return self.resources / "AppIcon.icns"

    @property
    def main_executable(self) -> Path:
        return self.executable_directory / self.app_name

    @property
    def directories(self) -> list[Path]:
        return [
            self.contents,
            self.executable_directory,
            self.resources,
            self.libraries,
            self.helpers,
        ]

    def create_directories(self) -> None:
        try:
            for directory in self.directories:
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PackagingError(
                f"Failed to create the structure of '{self.bundle}'"
            ) from e


@dataclass(frozen=True)
class DarwinContext:
    platform: Platform
    platform_version: str
    universal: bool = False
    using_xcodebuild: bool = False


class DylibRelinker:
    """Copy an executable's non-system dylibs into the bundle and relink.

    Only libraries found in the build's products directory (including the
    dependency libraries copied there before the build) are bundled;
    everything else is assumed to come from the OS.

    Args:
        executable: The bundled executable to fix
        libraries_directory: The bundle's library directory
        products_directory: Where the build placed its products
    """

    def __init__(
        self,
        executable: Path,
        libraries_directory: Path,
        products_directory: Path,
    ) -> None:
        self.executable = executable
        self.libraries_directory = libraries_directory
        self.products_directory = products_directory
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def inside_lib_path(self) -> str:
        relative = Path(
            *[".."] * len(
                self.executable.parent.relative_to(
                    self.libraries_directory.parent
                ).parts
            ),
            self.libraries_directory.name,
        )
        return f"@executable_path/{relative.as_posix()}/"

    def dependency_names(self, binary: Path) -> list[str]:
        """Parse the LC_LOAD_DYLIB install names out of 'otool -l'."""
        output = run_command(["otool", "-l", str(binary)], log=self.log)
        names = []
        searching = False
        for line in output.splitlines():
            if "cmd LC_LOAD_DYLIB" in line or "cmd LC_REEXPORT_DYLIB" in line:
                searching = True
            elif searching:
                found = line.find("name ")
                if found != -1:
                    names.append(line[found + 5 :].split(" (offset")[0].strip())
                    searching = False
        return names

    def bundled_library(self, install_name: str) -> Path | None:
        """Return the products-directory file for an install name, if any."""
        if install_name.startswith(SYSTEM_LIBRARY_PREFIXES):
            return None
        candidate = self.products_directory / Path(install_name).name
        if candidate.is_file():
            return candidate
        return None

    def process(self) -> list[Path]:
        """Copy and relink every bundleable library.

        Returns:
            The copied libraries
        """
        copied = []
        pending = [self.executable]
        seen: set[str] = set()
        try:
            while pending:
                binary = pending.pop()
                for install_name in self.dependency_names(binary):
                    library = self.bundled_library(install_name)
                    if library is None:
                        continue
                    destination = self.libraries_directory / library.name
                    if library.name not in seen:
                        seen.add(library.name)
                        self.log.info("Copying '%s'", library.name)
                        self.libraries_directory.mkdir(
                            parents=True, exist_ok=True
                        )
                        destination.write_bytes(library.read_bytes())
                        run_command(
                            [
                                "install_name_tool",
                                "-id",
                                f"@rpath/{library.name}",
                                str(destination),
                            ],
                            log=self.log,
                        )
                        copied.append(destination)
                        pending.append(destination)
                    run_command(
                        [
                            "install_name_tool",
                            "-change",
                            install_name,
                            self.inside_lib_path + library.name,
                            str(binary),
                        ],
                        log=self.log,
                    )
        except (CommandError, OSError) as e:
            raise PackagingError(
                f"Failed to bundle the libraries of '{self.executable.name}'"
            ) from e
        return copied


class DarwinBundler(Bundler):
    """Creates ``<App>.app`` bundles, signed when a signing context exists."""

    choice = BundlerChoice.DARWIN_APP

    def compute_context(
        self, context: BundlerContext, options, manifest
    ) -> DarwinContext:
        if not context.platform.is_apple:
            raise PackagingError(
                f"'{self.choice}' cannot bundle for '{context.platform}'"
            )
        platform_version = context.platform_version
        if platform_version is None:
            platform_version = manifest.platform_version(context.platform)
        if platform_version is None:
            raise PackagingError(
                f"No deployment target known for '{context.platform}'"
            )
        return DarwinContext(
            platform=context.platform,
            platform_version=platform_version,
            universal=options.universal or len(context.architectures) > 1,
            using_xcodebuild=options.built_with_xcode
            or is_using_xcodebuild(context.platform, options.xcodebuild),
        )

    def structure(
        self, context: BundlerContext, additional: DarwinContext
    ) -> DarwinBundleStructure:
        return DarwinBundleStructure(
            bundle=context.output_directory / f"{context.app_name}.app",
            platform=additional.platform,
            app_name=context.app_name,
        )

    def intended_output(
        self, context: BundlerContext, additional: DarwinContext
    ) -> BundlerOutputStructure:
        structure = self.structure(context, additional)
        return BundlerOutputStructure(
            bundle=structure.bundle, executable=structure.main_executable
        )

    def bundle(
        self, context: BundlerContext, additional: DarwinContext
    ) -> BundlerOutputStructure:
        structure = self.structure(context, additional)
        self.log.info("Bundling '%s'", structure.bundle.name)
        structure.create_directories()

        self.log.info("Copying executable")
        self.copy(
            context.executable_to_bundle, structure.main_executable, "executable"
        )
        self.create_metadata_files(structure, context, additional)
        self.copy_icon(structure, context)
        self.copy_resource_bundles(
            context.products_directory, structure.resources
        )
        self.copy_dependencies(structure, context)

        codesigning = context.codesigning
        if codesigning is not None and codesigning.provisioning_profile:
            self.log.info("Embedding provisioning profile")
            self.copy(
                codesigning.provisioning_profile,
                structure.provisioning_profile,
                "provisioning profile",
            )
        self.sign(structure, context)
        return self.intended_output(context, additional)

    def create_metadata_files(
        self,
        structure: DarwinBundleStructure,
        context: BundlerContext,
        additional: DarwinContext,
    ) -> None:
        self.log.info("Creating 'PkgInfo'")
        try:
            structure.pkg_info.write_text("APPL????", encoding="utf-8")
        except OSError as e:
            raise PackagingError("Failed to create 'PkgInfo'") from e
        self.log.info("Creating 'Info.plist'")
        entries = create_info_plist(
            context.app_name,
            context.app_configuration,
            additional.platform,
            additional.platform_version,
        )
        entries["CFBundleExecutable"] = context.app_name
        write_info_plist(structure.info_plist, entries)

    def copy_icon(
        self, structure: DarwinBundleStructure, context: BundlerContext
    ) -> None:
        """Copy an .icns icon, or convert a PNG icon with sips."""
        icon = context.app_configuration.icon
        if icon is None:
            return
        source = context.package_directory / icon
        if source.suffix == ".icns":
            self.log.info("Copying '%s'", source.name)
            self.copy(source, structure.app_icon, "app icon")
            return
        self.log.info("Converting '%s' to 'AppIcon.icns'", source.name)
        try:
            run_command(
                [
                    "sips",
                    "-s",
                    "format",
                    "icns",
                    str(source),
                    "--out",
                    str(structure.app_icon),
                ],
                log=self.log,
            )
        except CommandError as e:
            raise PackagingError(f"Failed to convert icon '{icon}'") from e

    def copy_dependencies(
        self, structure: DarwinBundleStructure, context: BundlerContext
    ) -> None:
        for artifact in self.executable_dependencies(context):
            self.log.info("Copying helper '%s'", artifact.name)
            self.copy(
                artifact, structure.helpers / artifact.name, "helper executable"
            )
        DylibRelinker(
            structure.main_executable,
            structure.libraries,
            context.products_directory,
        ).process()

    def sign(
        self, structure: DarwinBundleStructure, context: BundlerContext
    ) -> None:
        """Sign with the resolved identity, or ad-hoc off macOS."""
        codesigning = context.codesigning
        if codesigning is not None:
            Codesigner(
                structure.bundle,
                identity=codesigning.identity,
                entitlements=codesigning.entitlements,
            ).process()
        elif context.platform is not Platform.MACOS:
            Codesigner(
                structure.bundle, hardened_runtime=False, verify=False
            ).process()
