"""Exception hierarchy for appbundler.

Every failure raised by the package derives from :class:`BundlerError` so
the command-line entry point has a single type to catch. Lower layers wrap
foreign exceptions with ``raise ... from e`` to keep the causal chain that
``--verbose`` prints.
"""

from pathlib import Path


class BundlerError(Exception):
    """Base exception class for appbundler errors."""


class CommandError(BundlerError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class FileError(BundlerError):
    """Exception raised when a file operation fails."""


# ----------------------------------------------------------------------------
# Configuration


class ConfigurationError(BundlerError):
    """Exception raised when configuration is invalid."""


class NoSuchAppError(ConfigurationError):
    """Exception raised when the requested app is not configured."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"There is no app called '{name}'")


class MultipleAppsError(ConfigurationError):
    """Exception raised when an app name is needed to disambiguate."""

    def __init__(self, names: list[str]):
        self.names = names
        super().__init__(
            "This package contains multiple apps "
            f"({', '.join(sorted(names))}), please specify one"
        )


class UnsupportedFormatVersionError(ConfigurationError):
    """Exception raised for configuration files from an unknown generation."""

    def __init__(self, path: Path, version: object, current: int):
        self.path = path
        self.version = version
        self.current = current
        super().__init__(
            f"'{path}' has format_version {version!r} but only "
            f"version {current} is supported"
        )


class VariableError(ConfigurationError):
    """Exception raised when a '$(VARIABLE)' cannot be evaluated."""


class MigrationError(ConfigurationError):
    """Exception raised when a legacy configuration cannot be migrated."""


# ----------------------------------------------------------------------------
# Flattening


class FlatteningError(ConfigurationError):
    """Exception raised when overlays cannot be resolved."""


class ExclusivePropertyError(FlatteningError):
    """Exception raised when an overlay sets condition-exclusive fields."""

    def __init__(self, condition: object, properties: list[str]):
        self.condition = condition
        self.properties = properties
        quoted = [f"'{name}'" for name in properties]
        if len(quoted) == 1:
            subject = f"{quoted[0]} is"
        else:
            subject = f"{', '.join(quoted[:-1])} and {quoted[-1]} are"
        super().__init__(
            f"{subject} only available in overlays meeting the condition "
            f"'{condition}'"
        )


class ReservedProjectNameError(FlatteningError):
    """Exception raised when a project reuses the root package sentinel."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"The project name '{name}' is reserved")


class InvalidBuilderScriptError(FlatteningError):
    """Exception raised when a project's builder is not a Python script."""

    def __init__(self, project: str, builder: str):
        self.project = project
        self.builder = builder
        super().__init__(
            f"The builder of project '{project}' must be a Python script "
            f"ending in '.py', got '{builder}'"
        )


class InvalidRequirementError(FlatteningError):
    """Exception raised when a requirement string has illegal characters."""

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(
            f"Invalid value {value!r} for '{field}': only letters, digits, "
            "spaces and the characters ._+-<>=:/~ are allowed"
        )


class InvalidProjectSourceError(FlatteningError):
    """Exception raised when a project's source and revision disagree."""


# ----------------------------------------------------------------------------
# Resolution


class DeviceResolutionError(BundlerError):
    """Exception raised when no single target device can be chosen."""


class CodesigningResolutionError(BundlerError):
    """Exception raised when codesigning inputs are inconsistent."""


class CodesignError(BundlerError):
    """Exception raised when codesigning fails."""


class ValidationError(BundlerError):
    """Exception raised when command-line arguments are incompatible."""


# ----------------------------------------------------------------------------
# Pipeline stages


class ProjectBuildError(BundlerError):
    """Exception raised when a dependency cannot be built."""


class BuildError(BundlerError):
    """Exception raised when the main build or post-processing fails."""


class MetadataError(BundlerError):
    """Exception raised when metadata cannot be generated or embedded."""


class PackagingError(BundlerError):
    """Exception raised when a bundler backend fails."""


class RunError(BundlerError):
    """Exception raised when a bundled app cannot be launched."""
