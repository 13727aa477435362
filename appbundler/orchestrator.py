"""The bundle command: one strictly ordered pipeline per invocation.

Stages run in this order, and the first failure aborts the rest:

1. resolve the target platform and device
2. flatten the app's configuration for (platform, backend)
3. validate argument combinations
4. resolve codesigning
5. load the package manifest
6. compute directories
7. (dry run: return the backend's intended output here)
8. build dependencies
9. copy dependency libraries into the products directory
10. build the app's product
11. extract debug info and strip
12. embed metadata
13. remove stale outputs
14. run the backend
15. copy the bundle out
"""

import dataclasses
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .backends import Bundler, get_bundler
from .codesign import CodesigningContext, resolve_codesigning_context
from .config import FlatAppConfiguration, FlatProjectConfiguration, ProductType
from .context import BundlerContext, BundlerOutputStructure, BuiltDependency
from .devices import Device, resolve_platform
from .errors import FileError, MetadataError, RunError, ValidationError
from .flatten import ResolutionContext, flatten_package
from .metadata import embed_metadata
from .migration import load_package_configuration
from .platforms import (
    Architecture,
    BuildConfiguration,
    BundlerChoice,
    HostPlatform,
    Platform,
)
from .projects import ProjectBuilder
from .swiftpm import (
    BuildParameters,
    PackageManifest,
    build_product,
    check_no_xcode_project,
    extract_debug_info,
    is_using_xcodebuild,
    load_package_manifest,
    strip_executable,
)
from .utils import copy_path, remove_path
from .variables import evaluate_variables

# Output subdirectories that survive between runs
PROTECTED_OUTPUTS = ("projects", "metadata")


@dataclass
class BundleOptions:
    """Everything the bundle command accepts on the command line."""

    app_name: str | None = None
    package_directory: Path = field(default_factory=Path.cwd)
    output_directory: Path | None = None
    scratch_directory: Path | None = None
    products_directory: Path | None = None
    configuration: BuildConfiguration = BuildConfiguration.DEBUG
    architectures: tuple[Architecture, ...] = ()
    universal: bool = False
    platform: Platform | None = None
    device: str | None = None
    simulator: str | None = None
    bundler: BundlerChoice | None = None
    codesign: bool | None = None
    identity: str | None = None
    entitlements: Path | None = None
    provisioning_profile: Path | None = None
    strip: bool = False
    xcodebuild: bool | None = None
    skip_build: bool = False
    built_with_xcode: bool = False
    config_file: Path | None = None
    additional_arguments: tuple[str, ...] = ()
    hot_reloading: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class ResolvedApp:
    """An app flattened for one resolution context."""

    name: str
    app: FlatAppConfiguration
    projects: dict[str, FlatProjectConfiguration]
    context: ResolutionContext


class ConfigurationCache:
    """Holds the first app resolved in a process.

    A command that drives another (``run`` driving ``bundle``) passes the
    same cache so the configuration is resolved once. The cache is
    write-once; a process only ever targets one (platform, backend) pair.
    """

    def __init__(self) -> None:
        self._resolved: ResolvedApp | None = None

    @property
    def resolved(self) -> ResolvedApp | None:
        return self._resolved

    def store(self, resolved: ResolvedApp) -> None:
        if self._resolved is not None:
            raise ValueError("The configuration cache is already populated")
        self._resolved = resolved


# ----------------------------------------------------------------------------
# Argument checks


def get_architectures(
    options: BundleOptions, platform: Platform
) -> tuple[Architecture, ...]:
    """The architectures to build for on a platform."""
    if platform in (Platform.MACOS, Platform.MAC_CATALYST) and options.universal:
        return (Architecture.ARM64, Architecture.X86_64)
    if platform.requires_provisioning_profiles:
        return (Architecture.ARM64,)
    if options.architectures:
        return tuple(options.architectures)
    return (Architecture.current(),)


def validate_arguments(
    options: BundleOptions,
    platform: Platform,
    bundler: BundlerChoice,
) -> None:
    """Reject argument combinations that can't work for a platform.

    Raises:
        ValidationError: Describing the first incompatible combination
    """
    host = HostPlatform.current()
    if not options.skip_build:
        if options.products_directory is not None:
            raise ValidationError(
                "'--products-directory' requires '--skip-build'"
            )
        if options.built_with_xcode:
            raise ValidationError("'--built-with-xcode' requires '--skip-build'")

    if (
        host is not HostPlatform.MACOS
        and platform is not host.platform
        and platform is not Platform.ANDROID
    ):
        raise ValidationError(
            f"'--platform {platform}' is not supported on {host}. Only "
            f"'{host.platform}' and '{Platform.ANDROID}' can be targeted"
        )

    if options.strip and host is HostPlatform.WINDOWS:
        raise ValidationError("'--strip' is not supported on Windows")

    if not bundler.is_supported_on_host_platform:
        raise ValidationError(
            f"'--bundler {bundler}' is not supported on {host}. Supported "
            f"values: {BundlerChoice.supported_host_values_description()}"
        )
    if platform not in bundler.supported_target_platforms:
        supported = ", ".join(
            f"'{choice}'"
            for choice in BundlerChoice
            if platform in choice.supported_target_platforms
            and choice.is_supported_on_host_platform
        )
        raise ValidationError(
            f"'--bundler {bundler}' cannot bundle for '{platform}'. "
            f"Alternatives: {supported or 'none on this host'}"
        )

    if platform.is_apple and platform not in (
        Platform.MACOS,
        Platform.MAC_CATALYST,
    ):
        if options.universal or options.architectures:
            raise ValidationError(
                f"'--universal' and '--arch' are not compatible with "
                f"'--platform {platform}'"
            )

    if (
        options.provisioning_profile is not None
        and not platform.requires_provisioning_profiles
    ):
        raise ValidationError(
            "'--provisioning-profile' is only available when targeting "
            "iOS, tvOS or visionOS devices"
        )


# ----------------------------------------------------------------------------
# The pipeline


class BundleCommand:
    """Runs the bundle pipeline for one set of options.

    Each stage is a method so tests can replace any one of them.

    Args:
        options: The parsed command-line options
        cache: Configuration cache shared with a driving command
        require_runnable: Reject backends whose output can't be launched
        target: Platform and device already resolved by a driving command
    """

    def __init__(
        self,
        options: BundleOptions,
        cache: ConfigurationCache | None = None,
        require_runnable: bool = False,
        target: tuple[Platform, Device | None] | None = None,
    ) -> None:
        self.options = options
        self.cache = cache if cache is not None else ConfigurationCache()
        self.require_runnable = require_runnable
        self.target = target
        self.context: BundlerContext | None = None
        self.bundler: Bundler | None = None
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def package_directory(self) -> Path:
        return self.options.package_directory.resolve()

    # --- resolution ---------------------------------------------------------

    def resolve_target(self) -> tuple[Platform, Device | None]:
        if self.target is not None:
            return self.target
        return resolve_platform(
            self.options.platform, self.options.device, self.options.simulator
        )

    def resolve_bundler_choice(self, platform: Platform) -> BundlerChoice:
        if self.options.bundler is not None:
            return self.options.bundler
        return BundlerChoice.default_for_target_platform(platform)

    def resolve_app(self, context: ResolutionContext) -> ResolvedApp:
        """Flatten the configuration, reusing a cached result."""
        cached = self.cache.resolved
        if cached is not None:
            self.log.debug("Using cached configuration for '%s'", cached.name)
            return cached
        configuration = load_package_configuration(
            self.package_directory, self.options.config_file
        )
        name, _ = configuration.get_app(self.options.app_name)
        flat = flatten_package(configuration, context)
        resolved = ResolvedApp(
            name=name,
            app=evaluate_variables(flat.apps[name], self.package_directory),
            projects=flat.projects,
            context=context,
        )
        self.cache.store(resolved)
        return resolved

    def validate(self, platform: Platform, bundler: BundlerChoice) -> None:
        validate_arguments(self.options, platform, bundler)

    def resolve_codesigning(
        self, platform: Platform
    ) -> CodesigningContext | None:
        return resolve_codesigning_context(
            platform,
            codesign=self.options.codesign,
            identity=self.options.identity,
            entitlements=self.options.entitlements,
            provisioning_profile=self.options.provisioning_profile,
        )

    def load_manifest(self) -> PackageManifest:
        return load_package_manifest(self.package_directory)

    def build_parameters(
        self,
        resolved: ResolvedApp,
        platform: Platform,
        manifest: PackageManifest,
        bundler: Bundler,
    ) -> BuildParameters:
        scratch = self.options.scratch_directory
        if scratch is None:
            scratch = self.package_directory / ".build"
        using_xcodebuild = self.options.built_with_xcode or is_using_xcodebuild(
            platform, self.options.xcodebuild
        )
        return BuildParameters(
            product=resolved.app.product,
            package_directory=self.package_directory,
            scratch_directory=scratch.resolve(),
            configuration=self.options.configuration,
            architectures=get_architectures(self.options, platform),
            platform=platform,
            platform_version=manifest.platform_version(platform),
            using_xcodebuild=using_xcodebuild,
            build_as_dylib=bundler.requires_build_as_dylib,
            additional_arguments=tuple(self.options.additional_arguments),
            hot_reloading=self.options.hot_reloading,
        )

    def create_context(
        self,
        resolved: ResolvedApp,
        parameters: BuildParameters,
        device: Device | None,
        codesigning: CodesigningContext | None,
        package_name: str,
    ) -> BundlerContext:
        products = self.options.products_directory
        if products is None:
            products = parameters.products_directory
        executable = products / (
            resolved.app.product + parameters.platform.executable_extension
        )
        return BundlerContext(
            app_name=resolved.name,
            package_name=package_name,
            app_configuration=resolved.app,
            package_directory=self.package_directory,
            scratch_directory=parameters.scratch_directory,
            products_directory=products,
            output_directory=parameters.scratch_directory / "bundler",
            platform=parameters.platform,
            build_configuration=parameters.configuration,
            architectures=parameters.architectures,
            executable_artifact=executable,
            platform_version=parameters.platform_version,
            device=device,
            codesigning=codesigning,
        )

    # --- side effects -------------------------------------------------------

    def build_dependencies(
        self,
        context: BundlerContext,
        resolved: ResolvedApp,
        manifest: PackageManifest,
        parameters: BuildParameters,
    ) -> dict[str, BuiltDependency]:
        builder = ProjectBuilder(
            resolved.projects,
            manifest,
            parameters,
            context.output_directory / "projects",
        )
        return builder.build_dependencies(resolved.app.dependencies)

    def copy_dependency_libraries(self, context: BundlerContext) -> None:
        """Put built dynamic libraries where the main build can link them."""
        for dependency in context.built_dependencies.values():
            if dependency.product.type is not ProductType.DYNAMIC_LIBRARY:
                continue
            for artifact in dependency.artifacts:
                destination = context.products_directory / artifact.name
                self.log.info("Copying '%s'", artifact.name)
                remove_path(destination)
                copy_path(artifact, destination)

    def build(self, parameters: BuildParameters) -> None:
        if parameters.using_xcodebuild:
            check_no_xcode_project(parameters.package_directory)
        build_product(parameters)

    def post_process(self, context: BundlerContext) -> Path:
        """Extract debug info and strip; return the executable to bundle."""
        executable = context.executable_artifact
        if context.platform is Platform.LINUX:
            extract_debug_info(executable)
        if self.options.strip:
            stripped = executable.with_name(executable.name + ".stripped")
            strip_executable(executable, stripped)
            return stripped
        return executable

    def embed_metadata(self, context: BundlerContext) -> None:
        """Embed metadata in the executable and keep a copy next to outputs."""
        payload = embed_metadata(
            context.executable_to_bundle, context.app_configuration
        )
        metadata_directory = context.output_directory / "metadata"
        try:
            metadata_directory.mkdir(parents=True, exist_ok=True)
            (metadata_directory / "metadata.json").write_bytes(payload)
        except OSError as e:
            raise MetadataError("Failed to write 'metadata.json'") from e

    def remove_stale_outputs(self, output_directory: Path) -> None:
        if not output_directory.exists():
            return
        for path in output_directory.iterdir():
            if path.name in PROTECTED_OUTPUTS:
                continue
            self.log.debug("Removing '%s'", path)
            remove_path(path)

    def dispatch(
        self, bundler: Bundler, context: BundlerContext, additional: Any
    ) -> BundlerOutputStructure:
        return bundler.bundle(context, additional)

    def copy_out(self, output: BundlerOutputStructure) -> Path:
        """Copy the bundle into '--output'; return its final location."""
        destination_directory = self.options.output_directory
        if destination_directory is None:
            return output.bundle
        destination = destination_directory / output.bundle.name
        self.log.info("Copying '%s' to '%s'", output.bundle.name, destination)
        try:
            remove_path(destination)
            copy_path(output.bundle, destination)
        except FileError as e:
            raise FileError(
                f"Failed to copy the bundle to '{destination_directory}'"
            ) from e
        return destination

    # --- driver -------------------------------------------------------------

    def run(self) -> BundlerOutputStructure:
        """Run the pipeline.

        Returns:
            The produced output structure, or in dry-run mode the structure
            the backend would produce

        Raises:
            BundlerError: From whichever stage failed first
        """
        started = time.perf_counter()
        platform, device = self.resolve_target()
        choice = self.resolve_bundler_choice(platform)
        resolved = self.resolve_app(ResolutionContext(platform, choice))
        self.validate(platform, choice)
        codesigning = self.resolve_codesigning(platform)
        manifest = self.load_manifest()

        bundler = get_bundler(choice)
        if self.require_runnable and not bundler.output_is_runnable:
            raise RunError(
                f"'--bundler {choice}' produces output that can't be run. "
                "Use 'appbundler bundle' instead"
            )
        self.bundler = bundler
        parameters = self.build_parameters(resolved, platform, manifest, bundler)
        context = self.create_context(
            resolved, parameters, device, codesigning, manifest.name
        )
        self.context = context
        additional = bundler.compute_context(context, self.options, manifest)

        if self.options.dry_run:
            return bundler.intended_output(context, additional)

        if not self.options.skip_build:
            built = self.build_dependencies(
                context, resolved, manifest, parameters
            )
            context.add_built_dependencies(built)
            self.copy_dependency_libraries(context)
            self.build(parameters)
        context.set_bundled_executable(self.post_process(context))
        self.embed_metadata(context)
        self.remove_stale_outputs(context.output_directory)
        output = self.dispatch(bundler, context, additional)
        location = self.copy_out(output)

        elapsed = time.perf_counter() - started
        self.log.info(
            "Done in %.2fs. App bundle located at '%s'", elapsed, location
        )
        return output


def describe_output(output: BundlerOutputStructure) -> str:
    """Render an output structure as JSON for '--dry-run' style listings."""
    data = {
        key: (
            [str(item) for item in value]
            if isinstance(value, tuple)
            else (str(value) if value is not None else None)
        )
        for key, value in dataclasses.asdict(output).items()
    }
    return json.dumps(data, indent=2)


def bundle(
    options: BundleOptions, cache: ConfigurationCache | None = None
) -> BundlerOutputStructure:
    """Run the bundle command with options."""
    return BundleCommand(options, cache).run()
