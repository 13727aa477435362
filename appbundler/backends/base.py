"""The interface every packaging backend implements."""

import logging
from pathlib import Path
from typing import Any

from ..config import ProductType
from ..context import BundlerContext, BundlerOutputStructure
from ..errors import FileError, PackagingError
from ..platforms import BundlerChoice, HostPlatform, Platform
from ..utils import copy_path


class Bundler:
    """Base class for packaging backends.

    A backend turns the built executable described by a
    :class:`BundlerContext` into one distributable. The orchestrator calls
    :meth:`compute_context` once, then either :meth:`intended_output` (dry
    runs) or :meth:`bundle`. Both must describe the same structure.
    """

    choice: BundlerChoice
    output_is_runnable: bool = True
    requires_build_as_dylib: bool = False

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def supported_host_platforms(self) -> tuple[HostPlatform, ...]:
        return self.choice.supported_host_platforms

    @property
    def supported_target_platforms(self) -> tuple[Platform, ...]:
        return self.choice.supported_target_platforms

    def compute_context(
        self, context: BundlerContext, options: Any, manifest: Any
    ) -> Any:
        """Derive backend-specific inputs. Must not touch the disk."""
        return None

    def intended_output(
        self, context: BundlerContext, additional: Any
    ) -> BundlerOutputStructure:
        """Describe what :meth:`bundle` would produce."""
        raise NotImplementedError

    def bundle(
        self, context: BundlerContext, additional: Any
    ) -> BundlerOutputStructure:
        """Produce the distributable and describe it."""
        raise NotImplementedError

    # ------------------------------------------------------------------------
    # Helpers shared by backends

    def copy(self, source: Path, destination: Path, what: str) -> None:
        """Copy a file or directory, reporting failures as PackagingError."""
        try:
            copy_path(source, destination)
        except FileError as e:
            raise PackagingError(f"Failed to copy {what}") from e

    def write_text(self, path: Path, contents: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(contents, encoding="utf-8")
        except OSError as e:
            raise PackagingError(f"Failed to write '{path}'") from e

    def copy_resource_bundles(
        self, products_directory: Path, destination: Path
    ) -> None:
        """Copy SwiftPM resource bundles, renaming '.resources' to '.bundle'."""
        if not products_directory.is_dir():
            return
        for path in sorted(products_directory.iterdir()):
            if path.suffix not in (".resources", ".bundle") or not path.is_dir():
                continue
            self.log.info("Copying resource bundle '%s'", path.name)
            self.copy(
                path,
                destination / (path.stem + ".bundle"),
                f"resource bundle '{path.name}'",
            )

    def executable_dependencies(self, context: BundlerContext) -> list[Path]:
        """Artifacts of built dependencies that are executables."""
        artifacts = []
        for dependency in context.built_dependencies.values():
            if dependency.product.type is ProductType.EXECUTABLE:
                artifacts.extend(dependency.artifacts)
        return artifacts

    def library_dependencies(self, context: BundlerContext) -> list[Path]:
        """Artifacts of built dependencies that are dynamic libraries."""
        artifacts = []
        for dependency in context.built_dependencies.values():
            if dependency.product.type is ProductType.DYNAMIC_LIBRARY:
                artifacts.extend(dependency.artifacts)
        return artifacts
