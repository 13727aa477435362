"""Building the products an app depends on before the app itself.

Dependencies on the root package (``"helper"``) are built with the same
build tool as the app and must be executables. Dependencies on projects
(``"engine.engine"``) are built by the project's builder script.

A builder script is a Python file inside the project's sources. It is run
with the interpreter running appbundler, from the sources directory, and
receives a JSON object on standard input::

    {
        "sourcesDirectory": "...",
        "buildDirectory": "...",
        "platform": "linux",
        "configuration": "debug",
        "architectures": ["x86_64"],
        "products": ["engine"]
    }

It must leave each requested product in ``buildDirectory`` under the file
name for its type (``libengine.so``, ``engine.exe``, ...).
"""

import dataclasses
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from .config import (
    ROOT_PROJECT_NAME,
    Dependency,
    FlatProjectConfiguration,
    ProductType,
    ProjectProduct,
)
from .context import BuiltDependency
from .errors import BuildError, CommandError, FileError, ProjectBuildError
from .swiftpm import BuildParameters, PackageManifest, build_product
from .utils import copy_path, remove_path, run_command


@dataclass(frozen=True)
class ProjectDirectories:
    """Scratch layout for one project: sources, build and products."""

    root: Path

    @property
    def sources(self) -> Path:
        return self.root / "sources"

    @property
    def build(self) -> Path:
        return self.root / "build"

    @property
    def products(self) -> Path:
        return self.root / "products"


class ProjectBuilder:
    """Builds an app's dependencies, each project at most once.

    Args:
        projects: Flattened projects of the package
        manifest: The root package's manifest
        root_parameters: Build parameters of the app's main product; root
            package dependencies are built with the same parameters
        output_directory: Directory holding the per-project scratch areas
    """

    def __init__(
        self,
        projects: dict[str, FlatProjectConfiguration],
        manifest: PackageManifest,
        root_parameters: BuildParameters,
        output_directory: Path,
    ) -> None:
        self.projects = projects
        self.manifest = manifest
        self.root_parameters = root_parameters
        self.output_directory = output_directory
        self.built_projects: set[str] = set()
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def platform(self):
        return self.root_parameters.platform

    def directories(self, project_name: str) -> ProjectDirectories:
        return ProjectDirectories(self.output_directory / project_name)

    def build_dependencies(
        self, dependencies: tuple[Dependency, ...]
    ) -> dict[str, BuiltDependency]:
        """Build every dependency and return artifacts keyed by identifier.

        Raises:
            ProjectBuildError: If a dependency is unknown or fails to build
        """
        built: dict[str, BuiltDependency] = {}
        for dependency in dependencies:
            if dependency.identifier in built:
                continue
            if dependency.project == ROOT_PROJECT_NAME:
                built[dependency.identifier] = self.build_root_product(
                    dependency.product
                )
                continue

            project = self.projects.get(dependency.project)
            if project is None:
                raise ProjectBuildError(
                    f"Dependency '{dependency}' refers to a missing project "
                    f"'{dependency.project}'"
                )
            product = project.products.get(dependency.product)
            if product is None:
                raise ProjectBuildError(
                    f"Project '{dependency.project}' has no product named "
                    f"'{dependency.product}'"
                )
            if dependency.project not in self.built_projects:
                wanted = [
                    d.product
                    for d in dependencies
                    if d.project == dependency.project
                ]
                self.build_project(dependency.project, project, wanted)
                self.built_projects.add(dependency.project)
            built[dependency.identifier] = self.collect_artifact(
                dependency.project, product
            )
        return built

    def build_root_product(self, name: str) -> BuiltDependency:
        """Build an executable product of the root package."""
        kind = self.manifest.products.get(name)
        if kind is None:
            raise ProjectBuildError(
                f"The root package has no product named '{name}'"
            )
        if kind != "executable":
            raise ProjectBuildError(
                f"Dependencies on the root package must be executables, but "
                f"'{name}' is a {kind} product"
            )
        parameters = dataclasses.replace(self.root_parameters, product=name)
        try:
            build_product(parameters)
        except BuildError as e:
            raise ProjectBuildError(
                f"Failed to build root package product '{name}'"
            ) from e
        artifact = parameters.products_directory / (
            name + self.platform.executable_extension
        )
        if not artifact.exists():
            raise ProjectBuildError(
                f"Building '{name}' did not produce '{artifact}'"
            )
        return BuiltDependency(
            ProjectProduct(name, ProductType.EXECUTABLE), (artifact,)
        )

    def prepare_sources(
        self, name: str, project: FlatProjectConfiguration
    ) -> Path:
        """Fetch or locate a project's sources and return their directory."""
        if project.source.kind == "local":
            sources = (
                self.root_parameters.package_directory / project.source.location
            )
            if not sources.is_dir():
                raise ProjectBuildError(
                    f"Sources of project '{name}' not found at '{sources}'"
                )
            return sources

        sources = self.directories(name).sources
        try:
            if not sources.exists():
                self.log.info("Cloning '%s'", project.source.location)
                run_command(
                    ["git", "clone", project.source.location, str(sources)],
                    log=self.log,
                )
            else:
                run_command(
                    ["git", "-C", str(sources), "fetch", "--all"],
                    log=self.log,
                )
            run_command(
                ["git", "-C", str(sources), "checkout", project.revision],
                log=self.log,
            )
        except CommandError as e:
            raise ProjectBuildError(
                f"Failed to fetch sources of project '{name}'"
            ) from e
        return sources

    def build_project(
        self,
        name: str,
        project: FlatProjectConfiguration,
        products: list[str],
    ) -> None:
        """Run a project's builder script."""
        self.log.info("Building project '%s'", name)
        directories = self.directories(name)
        sources = self.prepare_sources(name, project)
        builder = sources / project.builder
        if not builder.is_file():
            raise ProjectBuildError(
                f"Builder '{project.builder}' of project '{name}' not found"
            )
        directories.build.mkdir(parents=True, exist_ok=True)
        request = {
            "sourcesDirectory": str(sources),
            "buildDirectory": str(directories.build),
            "platform": self.platform.value,
            "configuration": self.root_parameters.configuration.value,
            "architectures": [
                arch.value for arch in self.root_parameters.architectures
            ],
            "products": sorted(set(products)),
        }
        try:
            run_command(
                [sys.executable, str(builder)],
                log=self.log,
                cwd=sources,
                input=json.dumps(request),
            )
        except CommandError as e:
            raise ProjectBuildError(
                f"Builder of project '{name}' failed: {e.output or e}"
            ) from e

    def collect_artifact(
        self, name: str, product: ProjectProduct
    ) -> BuiltDependency:
        """Copy a built product into the project's products directory."""
        directories = self.directories(name)
        file_name = product.type.artifact_name(product.name, self.platform)
        source = directories.build / file_name
        if not source.exists():
            raise ProjectBuildError(
                f"Project '{name}' did not produce '{file_name}' for product "
                f"'{product.name}'"
            )
        destination = directories.products / file_name
        try:
            remove_path(destination)
            copy_path(source, destination)
        except FileError as e:
            raise ProjectBuildError(
                f"Failed to collect product '{product.name}' of '{name}'"
            ) from e
        return BuiltDependency(product, (destination,))
