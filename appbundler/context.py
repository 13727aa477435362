"""Records passed between the orchestrator, dependency builder and backends."""

from dataclasses import dataclass, field
from pathlib import Path

from .codesign import CodesigningContext
from .config import FlatAppConfiguration, ProjectProduct
from .devices import Device
from .platforms import Architecture, BuildConfiguration, Platform


@dataclass(frozen=True)
class BuiltDependency:
    """The artifacts produced for one dependency product."""

    product: ProjectProduct
    artifacts: tuple[Path, ...]


@dataclass(frozen=True)
class BundlerOutputStructure:
    """What a backend produces (or would produce).

    Args:
        bundle: The root of the produced bundle or package file
        executable: The file to launch when running the app, if runnable
        additional_outputs: Other files produced next to the bundle
    """

    bundle: Path
    executable: Path | None = None
    additional_outputs: tuple[Path, ...] = ()


@dataclass
class BundlerContext:
    """Facts accumulated during one bundling run.

    Stages only add to a context: dependencies and the post-processed
    executable are recorded once and never replaced, so values read by
    earlier stages stay valid for later ones. 'executable_artifact' always
    names the file the build produced.
    """

    app_name: str
    package_name: str
    app_configuration: FlatAppConfiguration
    package_directory: Path
    scratch_directory: Path
    products_directory: Path
    output_directory: Path
    platform: Platform
    build_configuration: BuildConfiguration
    architectures: tuple[Architecture, ...]
    executable_artifact: Path
    platform_version: str | None = None
    device: Device | None = None
    codesigning: CodesigningContext | None = None
    built_dependencies: dict[str, BuiltDependency] = field(
        default_factory=dict
    )
    bundled_executable: Path | None = None

    @property
    def executable_to_bundle(self) -> Path:
        """The post-processed executable, or the built one before that."""
        if self.bundled_executable is not None:
            return self.bundled_executable
        return self.executable_artifact

    def set_bundled_executable(self, path: Path) -> None:
        """Record the executable backends copy into the bundle."""
        if self.bundled_executable is not None:
            raise ValueError(
                "Bundled executable already recorded: "
                f"{self.bundled_executable}"
            )
        self.bundled_executable = path

    def add_built_dependencies(
        self, dependencies: dict[str, BuiltDependency]
    ) -> None:
        """Record built dependencies, refusing to replace existing ones."""
        duplicates = sorted(set(dependencies) & set(self.built_dependencies))
        if duplicates:
            raise ValueError(
                f"Dependencies already recorded: {', '.join(duplicates)}"
            )
        self.built_dependencies.update(dependencies)
