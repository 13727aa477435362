"""Linux backends: a generic FHS-style bundle, AppImages and RPMs.

The AppImage and RPM backends run the generic backend first and repackage
its output.
"""

import os
import re
import shlex
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from ..context import BundlerContext, BundlerOutputStructure
from ..errors import CommandError, PackagingError
from ..platforms import BundlerChoice
from ..utils import command_environment, remove_path, run_command
from .base import Bundler

# Runtime libraries that are safe to ship with an app. Anything else that
# 'ldd' reports (libc, Gtk, ...) is left to the target system.
LIBRARY_ALLOW_LIST = frozenset(
    {
        "libswiftCore",
        "libswiftGlibc",
        "libswiftDispatch",
        "libswiftDistributed",
        "libswiftObservation",
        "libswiftRegexBuilder",
        "libswiftRemoteMirror",
        "libswiftSynchronization",
        "libswiftSwiftOnoneSupport",
        "libBlocksRuntime",
        "libdispatch",
        "libswift_Concurrency",
        "libswift_RegexParser",
        "libswift_StringProcessing",
        "libswift_Backtracing",
        "libswift_Differentiation",
        "lib_FoundationICU",
        "libFoundation",
        "libFoundationXML",
        "libFoundationEssentials",
        "libFoundationNetworking",
        "libFoundationInternationalization",
        "libicuuc",
        "libicudata",
        "libicuucswift",
        "libicui18nswift",
        "libicudataswift",
    }
)

# '\tlibfoo.so.1 => /usr/lib/libfoo.so.1 (0x00007f...)'
LDD_LINE_PATTERN = re.compile(r"^\s*\S+ => (\S.*?) \(0x[0-9a-fA-F]+\)\s*$")

RPM_INSTALLATION_PREFIX = PurePosixPath("/opt")


def encode_ini_section(title: str, properties: list[tuple[str, str]]) -> str:
    lines = [f"[{title}]"]
    lines.extend(f"{key}={value}" for key, value in properties)
    return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class LinuxBundleStructure:
    """The layout of a generic Linux bundle, rooted like a filesystem."""

    root: Path
    app_name: str
    identifier: str

    @property
    def bin(self) -> Path:
        return self.root / "usr" / "bin"

    @property
    def lib(self) -> Path:
        return self.root / "usr" / "lib"

    @property
    def resources(self) -> Path:
        return self.bin

    @property
    def main_executable(self) -> Path:
        return self.bin / self.app_name

    @property
    def desktop_file(self) -> Path:
        return (
            self.root
            / "usr"
            / "share"
            / "applications"
            / f"{self.identifier}.desktop"
        )

    @property
    def dbus_service_file(self) -> Path:
        return (
            self.root
            / "usr"
            / "share"
            / "dbus-1"
            / "services"
            / f"{self.identifier}.service"
        )

    @property
    def icon(self) -> Path:
        return (
            self.root
            / "usr"
            / "share"
            / "icons"
            / "hicolor"
            / "1024x1024"
            / "apps"
            / f"{self.identifier}.png"
        )

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def create_directories(self) -> None:
        try:
            for directory in (
                self.bin,
                self.lib,
                self.desktop_file.parent,
                self.icon.parent,
            ):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PackagingError(
                f"Failed to create the structure of '{self.root}'"
            ) from e

    def as_output_structure(self) -> BundlerOutputStructure:
        return BundlerOutputStructure(
            bundle=self.root, executable=self.main_executable
        )


@dataclass(frozen=True)
class LinuxGenericContext:
    """Options other Linux backends pass to the generic one.

    Args:
        cosmetic_bundle_name: Name used in log messages instead of
            '<App>.generic'
        installation_root: Where the bundle's tree ends up once installed;
            used for the Exec lines of the desktop and D-Bus files
    """

    cosmetic_bundle_name: str | None = None
    installation_root: PurePosixPath = PurePosixPath("/")


class LinuxGenericBundler(Bundler):
    """Arranges the app into ``<App>.generic/usr/{bin,lib,share}``."""

    choice = BundlerChoice.LINUX_GENERIC

    def compute_context(
        self, context: BundlerContext, options, manifest
    ) -> LinuxGenericContext:
        return LinuxGenericContext()

    def structure(self, context: BundlerContext) -> LinuxBundleStructure:
        return LinuxBundleStructure(
            root=context.output_directory / f"{context.app_name}.generic",
            app_name=context.app_name,
            identifier=context.app_configuration.identifier,
        )

    def intended_output(
        self, context: BundlerContext, additional: LinuxGenericContext
    ) -> BundlerOutputStructure:
        return self.structure(context).as_output_structure()

    def bundle(
        self, context: BundlerContext, additional: LinuxGenericContext
    ) -> BundlerOutputStructure:
        return self.create(context, additional).as_output_structure()

    def create(
        self, context: BundlerContext, additional: LinuxGenericContext
    ) -> LinuxBundleStructure:
        """Create the generic bundle and return its structure."""
        structure = self.structure(context)
        self.log.info(
            "Bundling '%s'",
            additional.cosmetic_bundle_name or structure.root.name,
        )
        structure.create_directories()

        self.log.info("Copying executable")
        self.copy(
            context.executable_to_bundle, structure.main_executable, "executable"
        )
        self.create_metadata_files(structure, context, additional)
        for artifact in self.executable_dependencies(context):
            self.copy(
                artifact, structure.bin / artifact.name, "executable dependency"
            )
        self.copy_libraries(structure, context)
        self.copy_resource_bundles(
            context.products_directory, structure.resources
        )
        if context.app_configuration.icon is not None:
            self.copy(
                context.package_directory / context.app_configuration.icon,
                structure.icon,
                "app icon",
            )
        return structure

    def create_metadata_files(
        self,
        structure: LinuxBundleStructure,
        context: BundlerContext,
        additional: LinuxGenericContext,
    ) -> None:
        """Write the desktop file, and the D-Bus service file if needed."""
        app = context.app_configuration
        executable = additional.installation_root / structure.relative(
            structure.main_executable
        )
        escaped_executable = str(executable).replace(" ", "\\ ")
        self.log.info("Creating '%s'", structure.desktop_file.name)
        properties = [
            ("Type", "Application"),
            # Version of the desktop entry spec, not of the app
            ("Version", "1.0"),
            ("Name", context.app_name),
            ("Comment", ""),
            ("Exec", f"{escaped_executable} %U"),
            ("Icon", structure.icon.stem),
            ("Terminal", "false"),
            ("Categories", ""),
        ]
        if app.dbus_activatable:
            properties.append(("DBusActivatable", "true"))
        if app.url_schemes:
            properties.append(
                (
                    "MimeType",
                    ";".join(
                        f"x-scheme-handler/{scheme}"
                        for scheme in app.url_schemes
                    ),
                )
            )
        self.write_text(
            structure.desktop_file,
            encode_ini_section("Desktop Entry", properties),
        )
        if app.dbus_activatable:
            self.write_text(
                structure.dbus_service_file,
                encode_ini_section(
                    "D-BUS Service",
                    [("Name", app.identifier), ("Exec", f'"{executable}"')],
                ),
            )

    def runtime_libraries(
        self, executable: Path, products_directory: Path
    ) -> list[Path]:
        """Ask ldd for the libraries that should travel with the app."""
        products = products_directory.resolve()
        try:
            output = run_command(
                ["ldd", str(executable)],
                log=self.log,
                env=command_environment(LD_LIBRARY_PATH=str(products)),
            )
        except CommandError as e:
            raise PackagingError(
                f"Failed to enumerate the libraries of '{executable.name}'"
            ) from e
        libraries = []
        for line in output.splitlines():
            match = LDD_LINE_PATTERN.match(line)
            if match is None:
                continue
            library = Path(match.group(1))
            name = library.name.split(".")[0]
            resolved = library.resolve()
            if name in LIBRARY_ALLOW_LIST or resolved.is_relative_to(products):
                libraries.append(library)
        return libraries

    def copy_libraries(
        self, structure: LinuxBundleStructure, context: BundlerContext
    ) -> None:
        """Copy dynamic libraries into usr/lib and point runpaths there."""
        self.log.info("Copying dynamic libraries (and Swift runtime)")
        libraries = self.library_dependencies(context)
        libraries += self.runtime_libraries(
            structure.main_executable, context.products_directory
        )
        copied = set()
        for library in libraries:
            if library.name in copied:
                continue
            copied.add(library.name)
            destination = structure.lib / library.name
            self.copy(library.resolve(), destination, f"'{library.name}'")
            self.set_runpath(destination, "$ORIGIN")
        relative = os.path.relpath(structure.lib, structure.bin)
        self.set_runpath(structure.main_executable, f"$ORIGIN/{relative}")

    def set_runpath(self, binary: Path, runpath: str) -> None:
        try:
            run_command(
                ["patchelf", "--set-rpath", runpath, str(binary)],
                log=self.log,
            )
        except CommandError as e:
            raise PackagingError(
                f"Failed to update the runpath of '{binary.name}'"
            ) from e


class LinuxAppImageBundler(Bundler):
    """Turns the generic bundle into an AppDir and runs appimagetool."""

    choice = BundlerChoice.LINUX_APPIMAGE

    def __init__(self) -> None:
        super().__init__()
        self.generic = LinuxGenericBundler()

    def desktop_file_location(self, context: BundlerContext) -> Path:
        return context.output_directory / f"{context.app_name}.desktop"

    def app_dir(self, context: BundlerContext) -> Path:
        return context.output_directory / f"{context.app_name}.AppDir"

    def intended_output(
        self, context: BundlerContext, additional
    ) -> BundlerOutputStructure:
        bundle = context.output_directory / f"{context.app_name}.AppImage"
        return BundlerOutputStructure(
            bundle=bundle,
            executable=bundle,
            additional_outputs=(self.desktop_file_location(context),),
        )

    def bundle(
        self, context: BundlerContext, additional
    ) -> BundlerOutputStructure:
        output = self.intended_output(context, additional)
        structure = self.generic.create(
            context, LinuxGenericContext(cosmetic_bundle_name=output.bundle.name)
        )
        self.create_symlinks(structure)
        self.copy(
            structure.desktop_file,
            self.desktop_file_location(context),
            "desktop file",
        )
        app_dir = self.app_dir(context)
        try:
            remove_path(app_dir)
            structure.root.rename(app_dir)
        except OSError as e:
            raise PackagingError(
                f"Failed to rename '{structure.root.name}' to '{app_dir.name}'"
            ) from e
        self.log.info("Converting '%s' to '%s'", app_dir.name, output.bundle.name)
        try:
            run_command(
                ["appimagetool", str(app_dir), str(output.bundle)],
                log=self.log,
                env=command_environment(ARCH=context.architectures[0].linux_name),
                stream=True,
            )
        except CommandError as e:
            raise PackagingError("Failed to run appimagetool") from e
        return output

    def create_symlinks(self, structure: LinuxBundleStructure) -> None:
        """Add the AppRun, icon and desktop file links an AppDir needs."""
        links = [
            (
                structure.root / "AppRun",
                structure.relative(structure.main_executable),
            ),
            (
                structure.root / structure.desktop_file.name,
                structure.relative(structure.desktop_file),
            ),
        ]
        if structure.icon.exists():
            links.append(
                (
                    structure.root / structure.icon.name,
                    structure.relative(structure.icon),
                )
            )
            links.append((structure.root / ".DirIcon", structure.icon.name))
        try:
            for link, target in links:
                link.symlink_to(target)
        except OSError as e:
            raise PackagingError("Failed to create AppDir symlinks") from e


@dataclass(frozen=True)
class RPMBuildDirectory:
    """The tree rpmbuild expects under its '_topdir'."""

    root: Path
    escaped_app_name: str
    version: str

    @property
    def rpms(self) -> Path:
        return self.root / "RPMS"

    @property
    def sources(self) -> Path:
        return self.root / "SOURCES"

    @property
    def specs(self) -> Path:
        return self.root / "SPECS"

    @property
    def source_archive(self) -> Path:
        return self.sources / f"{self.escaped_app_name}-{self.version}.tar.gz"

    @property
    def spec_file(self) -> Path:
        return self.specs / f"{self.escaped_app_name}.spec"

    @property
    def directories(self) -> list[Path]:
        names = ("BUILD", "BUILDROOT", "RPMS", "SOURCES", "SPECS", "SRPMS")
        return [self.root / name for name in names]

    def create_directories(self) -> None:
        try:
            for directory in self.directories:
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PackagingError(
                f"Failed to create the rpmbuild tree at '{self.root}'"
            ) from e


def rpm_escaped_file_path(path: str) -> str:
    value = path.replace("\\", "\\\\").replace("%", "%%").replace('"', '\\"')
    return f'"{value}"'


def generate_rpm_spec(
    escaped_app_name: str,
    version: str,
    summary: str,
    structure: LinuxBundleStructure,
    source_archive_name: str,
    installation_root: PurePosixPath,
    requirements: tuple[str, ...],
) -> str:
    """Render the spec file for repackaging an already-built bundle."""

    def copy_to_build_root(relative_path: str) -> str:
        quoted = shlex.quote(relative_path)
        return "\n".join(
            [
                f"FILE_SRC=$INSTALL_ROOT/{quoted}",
                f"FILE_DEST=$RPM_BUILD_ROOT/{quoted}",
                'mkdir -p $(dirname "$FILE_DEST")',
                'cp "$FILE_SRC" "$FILE_DEST"',
            ]
        )

    extra_files = [structure.desktop_file]
    if structure.dbus_service_file.exists():
        extra_files.append(structure.dbus_service_file)
    if structure.icon.exists():
        extra_files.append(structure.icon)
    relative_files = [structure.relative(path) for path in extra_files]

    lines = [
        f"Name:           {escaped_app_name}",
        f"Version:        {version}",
        "Release:        1%{?dist}",
        f"Summary:        {summary}",
        "",
        "License:        Proprietary",
        f"Source0:        {source_archive_name}",
        "",
    ]
    lines += [f"Requires:       {requirement}" for requirement in requirements]
    lines += [
        "",
        "%global debug_package %{nil}",
        "",
        "# Keep rpmbuild from rewriting the ELF files, which would drop the",
        "# metadata appended to the executable",
        "%global _enable_debug_package 0",
        "%global __os_install_post /usr/lib/rpm/brp-compress %{nil}",
        "",
        "%description",
        summary,
        "",
        "%prep",
        "%setup",
        "",
        "%build",
        "",
        "%install",
        f"INSTALL_ROOT=$RPM_BUILD_ROOT{shlex.quote(str(installation_root))}",
        "",
        'rm -rf "$RPM_BUILD_ROOT"',
        'mkdir -p "$INSTALL_ROOT"',
        'cp -R * "$INSTALL_ROOT"',
        "",
    ]
    lines += [copy_to_build_root(path) for path in relative_files]
    lines += [
        "",
        "%post",
        "xdg-desktop-menu forceupdate",
        "xdg-icon-resource forceupdate",
        "",
        "%clean",
        'rm -rf "$RPM_BUILD_ROOT"',
        "",
        "%files",
        rpm_escaped_file_path(str(installation_root)),
    ]
    lines += [rpm_escaped_file_path("/" + path) for path in relative_files]
    return "\n".join(lines) + "\n"


class LinuxRPMBundler(Bundler):
    """Repackages the generic bundle as an RPM installing to /opt/<app>."""

    choice = BundlerChoice.LINUX_RPM
    output_is_runnable = False

    def __init__(self) -> None:
        super().__init__()
        self.generic = LinuxGenericBundler()

    def intended_output(
        self, context: BundlerContext, additional
    ) -> BundlerOutputStructure:
        return BundlerOutputStructure(
            bundle=context.output_directory / f"{context.app_name}.rpm"
        )

    def bundle(
        self, context: BundlerContext, additional
    ) -> BundlerOutputStructure:
        output = self.intended_output(context, additional)
        app = context.app_configuration
        escaped_name = context.app_name.replace(" ", "-").lower()
        build_directory = RPMBuildDirectory(
            context.output_directory / "rpmbuild", escaped_name, app.version
        )
        installation_root = RPM_INSTALLATION_PREFIX / escaped_name
        structure = self.generic.create(
            context,
            LinuxGenericContext(
                cosmetic_bundle_name=output.bundle.name,
                installation_root=installation_root,
            ),
        )
        build_directory.create_directories()

        # The archive's top-level directory must be named '<name>-<version>'
        self.log.info("Archiving bundle")
        try:
            with tarfile.open(build_directory.source_archive, "w:gz") as archive:
                archive.add(
                    structure.root, arcname=f"{escaped_name}-{app.version}"
                )
        except OSError as e:
            raise PackagingError("Failed to archive the generic bundle") from e

        self.log.info("Creating RPM spec file")
        self.write_text(
            build_directory.spec_file,
            generate_rpm_spec(
                escaped_app_name=escaped_name,
                version=app.version,
                summary=context.app_name,
                structure=structure,
                source_archive_name=build_directory.source_archive.name,
                installation_root=installation_root,
                requirements=app.rpm_requirements,
            ),
        )

        self.log.info("Running rpmbuild")
        try:
            run_command(
                [
                    "rpmbuild",
                    "--define",
                    f"_topdir {build_directory.root}",
                    "-v",
                    "-bb",
                    str(build_directory.spec_file),
                ],
                log=self.log,
                stream=True,
            )
        except CommandError as e:
            raise PackagingError("Failed to run rpmbuild") from e

        produced = sorted(build_directory.rpms.rglob("*.rpm"))
        if not produced:
            raise PackagingError(
                f"rpmbuild did not produce an RPM in '{build_directory.rpms}'"
            )
        self.copy(produced[0], output.bundle, "RPM to the output directory")
        return output
