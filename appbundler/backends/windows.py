"""Windows backends: a generic directory bundle and MSI installers."""

import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path

from ..context import BundlerContext, BundlerOutputStructure
from ..errors import CommandError, PackagingError
from ..platforms import BundlerChoice
from ..utils import run_command
from .base import Bundler

WIX_NAMESPACE = "http://wixtoolset.org/schemas/v4/wxs"

APP_MANIFEST_TEMPLATE = """\
<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<assembly xmlns="urn:schemas-microsoft-com:asm.v1" manifestVersion="1.0">
  <assemblyIdentity type="win32" name="{identifier}" version="{version}"/>
  <application xmlns="urn:schemas-microsoft-com:asm.v3">
    <windowsSettings>
      <dpiAware xmlns="http://schemas.microsoft.com/SMI/2005/WindowsSettings">true</dpiAware>
    </windowsSettings>
  </application>
</assembly>
"""


def manifest_version(version: str) -> str:
    """Pad a version to the four numeric parts assembly manifests require."""
    parts = []
    for part in version.split(".")[:4]:
        digits = "".join(c for c in part if c.isdigit())
        parts.append(digits or "0")
    parts += ["0"] * (4 - len(parts))
    return ".".join(parts)


@dataclass(frozen=True)
class WindowsBundleStructure:
    """A flat directory holding the executable and the DLLs it loads."""

    root: Path
    app_name: str

    @property
    def modules(self) -> Path:
        return self.root

    @property
    def resources(self) -> Path:
        return self.root

    @property
    def main_executable(self) -> Path:
        return self.root / f"{self.app_name}.exe"

    @property
    def app_manifest(self) -> Path:
        return self.root / f"{self.app_name}.exe.manifest"

    def create_directories(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PackagingError(
                f"Failed to create the structure of '{self.root}'"
            ) from e

    def as_output_structure(self) -> BundlerOutputStructure:
        return BundlerOutputStructure(
            bundle=self.root, executable=self.main_executable
        )


class WindowsGenericBundler(Bundler):
    """Arranges the app into ``<App>.generic`` next to its DLLs."""

    choice = BundlerChoice.WINDOWS_GENERIC

    def structure(self, context: BundlerContext) -> WindowsBundleStructure:
        return WindowsBundleStructure(
            root=context.output_directory / f"{context.app_name}.generic",
            app_name=context.app_name,
        )

    def intended_output(
        self, context: BundlerContext, additional
    ) -> BundlerOutputStructure:
        return self.structure(context).as_output_structure()

    def bundle(
        self, context: BundlerContext, additional
    ) -> BundlerOutputStructure:
        return self.create(context).as_output_structure()

    def create(self, context: BundlerContext) -> WindowsBundleStructure:
        """Create the generic bundle and return its structure."""
        structure = self.structure(context)
        self.log.info("Bundling '%s'", structure.root.name)
        structure.create_directories()

        self.log.info("Copying executable")
        self.copy(
            context.executable_to_bundle, structure.main_executable, "executable"
        )
        self.write_text(
            structure.app_manifest,
            APP_MANIFEST_TEMPLATE.format(
                identifier=context.app_configuration.identifier,
                version=manifest_version(context.app_configuration.version),
            ),
        )
        for artifact in self.executable_dependencies(context):
            self.copy(
                artifact,
                structure.modules / artifact.name,
                "executable dependency",
            )
        self.copy_dlls(structure, context)
        self.copy_resource_bundles(
            context.products_directory, structure.resources
        )
        return structure

    def copy_dlls(
        self, structure: WindowsBundleStructure, context: BundlerContext
    ) -> None:
        """Copy built DLLs, with their PDBs when present."""
        self.log.info("Copying dynamic libraries")
        dlls = list(self.library_dependencies(context))
        if context.products_directory.is_dir():
            dlls += sorted(context.products_directory.glob("*.dll"))
        for dll in dlls:
            destination = structure.modules / dll.name
            if destination.exists():
                continue
            self.log.debug("Copying '%s'", dll)
            self.copy(dll, destination, f"'{dll.name}'")
            pdb = dll.with_suffix(".pdb")
            if pdb.exists():
                self.copy(pdb, destination.with_suffix(".pdb"), f"'{pdb.name}'")


def upgrade_code(identifier: str) -> str:
    """A GUID that stays the same for every version of an app."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, identifier)).upper()


def generate_wxs(
    structure: WindowsBundleStructure,
    app_name: str,
    identifier: str,
    version: str,
) -> ET.ElementTree:
    """Describe an MSI installing the generic bundle to Program Files."""
    manufacturer = ".".join(identifier.split(".")[:-1]) or identifier
    wix = ET.Element("Wix", xmlns=WIX_NAMESPACE)
    package = ET.SubElement(
        wix,
        "Package",
        Language="1033",
        Manufacturer=manufacturer,
        Name=app_name,
        UpgradeCode=upgrade_code(identifier),
        Version=manifest_version(version),
    )
    ET.SubElement(
        package,
        "MajorUpgrade",
        DowngradeErrorMessage=(
            "A later version of [ProductName] is already installed. "
            "Setup will now exit"
        ),
    )
    ET.SubElement(package, "MediaTemplate", EmbedCab="yes")

    program_files = ET.SubElement(
        package, "StandardDirectory", Id="ProgramFiles6432Folder"
    )
    ET.SubElement(program_files, "Directory", Id="InstallFolder", Name=app_name)
    program_menu = ET.SubElement(
        package, "StandardDirectory", Id="ProgramMenuFolder"
    )
    ET.SubElement(
        program_menu, "Directory", Id="AppShortcutFolder", Name=app_name
    )

    group = ET.SubElement(
        package, "ComponentGroup", Id="Components", Directory="InstallFolder"
    )
    component = ET.SubElement(group, "Component", Id="MainExecutable")
    ET.SubElement(
        component,
        "File",
        Id="MainExecutable",
        Source=structure.main_executable.name,
    )
    for index, path in enumerate(sorted(structure.root.rglob("*"))):
        if not path.is_file() or path == structure.main_executable:
            continue
        file_component = ET.SubElement(group, "Component", Id=f"File{index}")
        if path.parent != structure.root:
            file_component.set(
                "Subdirectory",
                path.parent.relative_to(structure.root).as_posix(),
            )
        ET.SubElement(
            file_component,
            "File",
            Source=path.relative_to(structure.root).as_posix(),
        )

    shortcuts = ET.SubElement(group, "Component", Id="ShortcutComponent")
    ET.SubElement(
        shortcuts,
        "Shortcut",
        Id="ApplicationStartMenuShortcut",
        Directory="AppShortcutFolder",
        Advertise="no",
        Name=app_name,
        Description=f"Launch {app_name}",
        Target="[#MainExecutable]",
        WorkingDirectory="InstallFolder",
    )
    ET.SubElement(
        shortcuts,
        "RemoveFolder",
        Id="AppShortcutFolder",
        Directory="AppShortcutFolder",
        On="uninstall",
    )
    ET.SubElement(
        shortcuts,
        "RegistryValue",
        Root="HKCU",
        Key=f"Software\\{manufacturer}\\{app_name}",
        Name="installed",
        Type="integer",
        Value="1",
        KeyPath="yes",
    )
    ET.SubElement(package, "ComponentGroupRef", Id="Components")
    tree = ET.ElementTree(wix)
    ET.indent(tree)
    return tree


class WindowsMSIBundler(Bundler):
    """Builds ``<App>.msi`` from the generic bundle with WiX."""

    choice = BundlerChoice.WINDOWS_MSI
    output_is_runnable = False

    def __init__(self) -> None:
        super().__init__()
        self.generic = WindowsGenericBundler()

    def intended_output(
        self, context: BundlerContext, additional
    ) -> BundlerOutputStructure:
        return BundlerOutputStructure(
            bundle=context.output_directory / f"{context.app_name}.msi"
        )

    def bundle(
        self, context: BundlerContext, additional
    ) -> BundlerOutputStructure:
        output = self.intended_output(context, additional)
        structure = self.generic.create(context)
        wxs_file = context.output_directory / "project.wxs"
        tree = generate_wxs(
            structure,
            context.app_name,
            context.app_configuration.identifier,
            context.app_configuration.version,
        )
        try:
            tree.write(wxs_file, encoding="utf-8", xml_declaration=True)
        except OSError as e:
            raise PackagingError(f"Failed to write '{wxs_file}'") from e

        self.log.info("Running WiX MSI builder")
        try:
            run_command(
                [
                    "wix",
                    "build",
                    "-b",
                    str(structure.root),
                    "-o",
                    str(output.bundle),
                    str(wxs_file),
                ],
                log=self.log,
                stream=True,
            )
        except CommandError as e:
            raise PackagingError("Failed to run WiX") from e
        return output
