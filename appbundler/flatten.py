"""Overlay resolution.

Flattening turns the configuration the user wrote into the only shape the
rest of the pipeline consumes: overlays matching the target platform or
bundler are merged in declaration order, optional collections get their
empty defaults, and field validators run on the merged values.
"""

import copy
import dataclasses
import re
from dataclasses import dataclass, field
from typing import Sequence, TypeVar

from .config import (
    APP_OVERLAY_FIELDS,
    BUILDER_SCRIPT_SUFFIX,
    PROJECT_OVERLAY_FIELDS,
    ROOT_PROJECT_NAME,
    AppConfiguration,
    AppOverlay,
    FlatAppConfiguration,
    FlatProjectConfiguration,
    OverlayCondition,
    OverlayField,
    PackageConfiguration,
    ProjectConfiguration,
    ProjectOverlay,
    exclusive_properties,
)
from .errors import (
    ExclusivePropertyError,
    InvalidBuilderScriptError,
    InvalidProjectSourceError,
    InvalidRequirementError,
    ReservedProjectNameError,
)
from .platforms import BundlerChoice, Platform

# Requirement strings end up in generated spec files and git commands
REQUIREMENT_PATTERN = re.compile(r"^[A-Za-z0-9 ._+\-<>=:/~]+$")

Overlay = AppOverlay | ProjectOverlay
ConfigurationT = TypeVar(
    "ConfigurationT", AppConfiguration, ProjectConfiguration
)


@dataclass(frozen=True)
class ResolutionContext:
    """The values overlay conditions are tested against."""

    platform: Platform
    bundler: BundlerChoice


@dataclass(frozen=True)
class FlatPackageConfiguration:
    apps: dict[str, FlatAppConfiguration]
    projects: dict[str, FlatProjectConfiguration] = field(default_factory=dict)


def condition_matches(
    condition: OverlayCondition, context: ResolutionContext
) -> bool:
    """Return True if the condition's single axis equals the context's."""
    if condition.kind == "platform":
        return condition.value == context.platform.value
    return condition.value == context.bundler.value


def validate_exclusive_properties(
    overlays: Sequence[Overlay], fields: tuple[OverlayField, ...]
) -> None:
    """Reject overlays that set fields reserved for another condition.

    Every overlay is checked, whether or not it matches the current
    context, so the same file fails the same way for every target.

    Raises:
        ExclusivePropertyError: Naming all offending fields of the first
            overlay and rule that violate exclusivity
    """
    rules = exclusive_properties(fields)
    for overlay in overlays:
        for condition, rule_fields in rules.items():
            if condition == overlay.condition:
                continue
            present = [
                rule_field.name
                for rule_field in rule_fields
                if rule_field.get(overlay) is not None
            ]
            if present:
                raise ExclusivePropertyError(condition, present)


def merge_overlays(
    overlays: Sequence[Overlay],
    base: ConfigurationT,
    fields: tuple[OverlayField, ...],
    context: ResolutionContext,
) -> ConfigurationT:
    """Apply matching overlays to base in declaration order.

    Each field set by a matching overlay replaces the accumulated value;
    fields an overlay leaves as None are untouched, so later overlays win.
    """
    validate_exclusive_properties(overlays, fields)
    result = base
    for overlay in overlays:
        if not condition_matches(overlay.condition, context):
            continue
        updates = {
            overlay_field.attribute: overlay_field.get(overlay)
            for overlay_field in fields
            if overlay_field.get(overlay) is not None
        }
        result = dataclasses.replace(result, **updates)
    return result


def validate_requirement(field_name: str, value: str) -> None:
    """Raise InvalidRequirementError if value has disallowed characters."""
    if not REQUIREMENT_PATTERN.match(value):
        raise InvalidRequirementError(field_name, value)


def flatten_app(
    app: AppConfiguration, context: ResolutionContext
) -> FlatAppConfiguration:
    """Resolve an app's overlays for the given context.

    Raises:
        ExclusivePropertyError: If an overlay sets an exclusive field
        InvalidRequirementError: If a merged RPM requirement is invalid
    """
    merged = merge_overlays(
        app.overlays or [], app, APP_OVERLAY_FIELDS, context
    )
    flat = FlatAppConfiguration(
        identifier=merged.identifier,
        product=merged.product,
        version=merged.version,
        category=merged.category,
        icon=merged.icon,
        url_schemes=tuple(merged.url_schemes or ()),
        plist=copy.deepcopy(merged.plist or {}),
        metadata=copy.deepcopy(merged.metadata or {}),
        dependencies=tuple(merged.dependencies or ()),
        dbus_activatable=merged.dbus_activatable,
        catalyst_interface_idiom=merged.catalyst_interface_idiom or "ipad",
        rpm_requirements=tuple(merged.rpm_requirements or ()),
    )
    for requirement in flat.rpm_requirements:
        validate_requirement("rpm_requirements", requirement)
    return flat


def flatten_project(
    name: str, project: ProjectConfiguration, context: ResolutionContext
) -> FlatProjectConfiguration:
    """Resolve a project's overlays and validate the merged result.

    Raises:
        ReservedProjectNameError: If name is the root package sentinel
        InvalidBuilderScriptError: If the builder is not a Python script
        InvalidProjectSourceError: If the revision doesn't fit the source
        InvalidRequirementError: If the revision has disallowed characters
    """
    if name == ROOT_PROJECT_NAME:
        raise ReservedProjectNameError(name)
    merged = merge_overlays(
        project.overlays or [], project, PROJECT_OVERLAY_FIELDS, context
    )
    if not merged.builder.endswith(BUILDER_SCRIPT_SUFFIX):
        raise InvalidBuilderScriptError(name, merged.builder)
    if merged.source.kind == "local" and merged.revision is not None:
        raise InvalidProjectSourceError(
            f"'revision' field is redundant for project '{name}' because it "
            f"uses a local source ('{merged.source}')"
        )
    if merged.source.kind == "git":
        if merged.revision is None:
            raise InvalidProjectSourceError(
                f"Project '{name}' is sourced from git and must specify a "
                "'revision'"
            )
        validate_requirement(f"projects.{name}.revision", merged.revision)
    return FlatProjectConfiguration(
        source=merged.source,
        builder=merged.builder,
        products=dict(merged.products),
        revision=merged.revision,
    )


def flatten_package(
    configuration: PackageConfiguration, context: ResolutionContext
) -> FlatPackageConfiguration:
    """Flatten every app and project of a package."""
    return FlatPackageConfiguration(
        apps={
            name: flatten_app(app, context)
            for name, app in configuration.apps.items()
        },
        projects={
            name: flatten_project(name, project, context)
            for name, project in configuration.projects.items()
        },
    )
