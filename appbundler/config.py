"""Configuration model for Bundler.toml.

The model keeps what the user wrote, including the ordered overlay lists,
so that :mod:`appbundler.flatten` can resolve them later against a target
platform and bundler. Overlay fields use ``None`` for "not set"; an overlay
therefore cannot clear a field, only replace it.

Example Bundler.toml:

    format_version = 2

    [apps.HelloWorld]
    identifier = "com.example.HelloWorld"
    product = "HelloWorld"
    version = "0.1.0"
    dependencies = ["engine.engine", "helper"]

    [[apps.HelloWorld.overlays]]
    condition = "platform(linux)"
    dbus_activatable = true

    [projects.engine]
    source = "git(https://example.com/engine.git)"
    revision = "v1.2.0"
    builder = "build_engine.py"
    products.engine = { type = "dynamicLibrary" }
"""

import base64
import dataclasses
import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ConfigurationError, NoSuchAppError, MultipleAppsError
from .platforms import BundlerChoice, Platform

# ----------------------------------------------------------------------------
# Constants

CONFIG_FILE_NAME = "Bundler.toml"
CURRENT_FORMAT_VERSION = 2

# Dependencies written as a bare product name refer to this project
ROOT_PROJECT_NAME = "root"

BUILDER_SCRIPT_SUFFIX = ".py"

CATALYST_INTERFACE_IDIOMS = ("ipad", "mac")

# ----------------------------------------------------------------------------
# Overlay conditions


@dataclass(frozen=True)
class OverlayCondition:
    """Equality test against one axis of the resolution context.

    ``kind`` is either ``"platform"`` or ``"bundler"``; ``value`` is the
    platform or bundler identifier it must equal.
    """

    kind: str
    value: str

    KINDS = ("platform", "bundler")

    @classmethod
    def platform(cls, platform: Platform) -> "OverlayCondition":
        return cls("platform", platform.value)

    @classmethod
    def bundler(cls, bundler: BundlerChoice) -> "OverlayCondition":
        return cls("bundler", bundler.value)

    @classmethod
    def parse(cls, text: str) -> "OverlayCondition":
        """Parse 'platform(<platform>)' or 'bundler(<bundler>)'.

        Raises:
            ValueError: If the text is not a valid condition
        """
        kind, sep, rest = text.partition("(")
        if not sep or not rest.endswith(")") or kind not in cls.KINDS:
            raise ValueError(
                f"Invalid overlay condition '{text}' (expected "
                "'platform(<platform>)' or 'bundler(<bundler>)')"
            )
        value = rest[:-1]
        if kind == "platform":
            Platform.parse(value)
        else:
            BundlerChoice.parse(value)
        return cls(kind, value)

    def __str__(self) -> str:
        return f"{self.kind}({self.value})"


# ----------------------------------------------------------------------------
# Dependencies and products


@dataclass(frozen=True)
class Dependency:
    """A reference to a product that must be built before the app."""

    project: str
    product: str

    @classmethod
    def parse(cls, text: str) -> "Dependency":
        """Parse 'project.product', or a bare 'product' of the root package."""
        if not text:
            raise ValueError("Dependency must not be empty")
        project, sep, product = text.partition(".")
        if not sep:
            return cls(ROOT_PROJECT_NAME, text)
        if not project or not product:
            raise ValueError(f"Invalid dependency '{text}'")
        return cls(project, product)

    @property
    def identifier(self) -> str:
        return f"{self.project}.{self.product}"

    def __str__(self) -> str:
        if self.project == ROOT_PROJECT_NAME:
            return self.product
        return self.identifier


class ProductType(Enum):
    """The kind of artifact a project product builds to."""

    EXECUTABLE = "executable"
    DYNAMIC_LIBRARY = "dynamicLibrary"
    STATIC_LIBRARY = "staticLibrary"

    def artifact_name(self, product: str, platform: Platform) -> str:
        """Return the file name the product is built to on a platform."""
        if self is ProductType.EXECUTABLE:
            return product + platform.executable_extension
        if self is ProductType.DYNAMIC_LIBRARY:
            if platform.is_apple:
                return f"lib{product}.dylib"
            if platform is Platform.WINDOWS:
                return f"{product}.dll"
            return f"lib{product}.so"
        if platform is Platform.WINDOWS:
            return f"{product}.lib"
        return f"lib{product}.a"


@dataclass(frozen=True)
class ProjectProduct:
    """A product built by a project's builder script."""

    name: str
    type: ProductType


@dataclass(frozen=True)
class ProjectSource:
    """Where a project's sources come from: a git URL or a local path."""

    kind: str
    location: str

    KINDS = ("git", "local")

    @classmethod
    def parse(cls, text: str) -> "ProjectSource":
        kind, sep, rest = text.partition("(")
        if not sep or not rest.endswith(")") or kind not in cls.KINDS:
            raise ValueError(
                f"Invalid project source '{text}' (expected "
                "'git(<url>)' or 'local(<path>)')"
            )
        location = rest[:-1]
        if not location:
            raise ValueError(f"Invalid project source '{text}'")
        return cls(kind, location)

    def __str__(self) -> str:
        return f"{self.kind}({self.location})"


# ----------------------------------------------------------------------------
# Plist and metadata values

PLIST_TYPES = ("data", "date", "real")


def decode_plist_value(value: Any, path: str) -> Any:
    """Convert a TOML value into the value written to a property list.

    Native TOML strings, integers, floats, booleans, datetimes, arrays and
    tables map directly. Tables of the form ``{type = "...", value = ...}``
    select types TOML cannot express: ``data`` (base64), ``date`` (ISO 8601)
    and ``real`` (a float given as an integer).
    """
    if isinstance(value, dict):
        if set(value) == {"type", "value"} and value["type"] in PLIST_TYPES:
            return _decode_typed_plist_value(value["type"], value["value"], path)
        return {
            key: decode_plist_value(item, f"{path}.{key}")
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [
            decode_plist_value(item, f"{path}[{index}]")
            for index, item in enumerate(value)
        ]
    if isinstance(value, datetime.time):
        raise ConfigurationError(f"'{path}': plist values cannot be times")
    if isinstance(value, datetime.date) and not isinstance(
        value, datetime.datetime
    ):
        return datetime.datetime(value.year, value.month, value.day)
    return value


def _decode_typed_plist_value(kind: str, raw: Any, path: str) -> Any:
    try:
        if kind == "data":
            return base64.b64decode(raw, validate=True)
        if kind == "date":
            if isinstance(raw, datetime.datetime):
                return raw
            return datetime.datetime.fromisoformat(raw)
        if isinstance(raw, bool):
            raise TypeError("booleans are not reals")
        return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"'{path}': invalid {kind} value {raw!r}"
        ) from e


def encode_plist_value(value: Any) -> Any:
    """Inverse of :func:`decode_plist_value` for writing TOML."""
    if isinstance(value, bytes):
        return {"type": "data", "value": base64.b64encode(value).decode()}
    if isinstance(value, dict):
        return {key: encode_plist_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [encode_plist_value(item) for item in value]
    return value


def decode_metadata_value(value: Any, path: str) -> Any:
    """Check that a value can be embedded in the app's metadata blob."""
    if isinstance(value, (str, bool, int, float, datetime.datetime)):
        return value
    if isinstance(value, list):
        return [
            decode_metadata_value(item, f"{path}[{index}]")
            for index, item in enumerate(value)
        ]
    if isinstance(value, dict):
        return {
            key: decode_metadata_value(item, f"{path}.{key}")
            for key, item in value.items()
        }
    raise ConfigurationError(
        f"'{path}': unsupported metadata value {value!r}"
    )


# ----------------------------------------------------------------------------
# Declarative overlay field tables


@dataclass(frozen=True)
class OverlayField:
    """One overridable field: its TOML key, attribute and exclusivity."""

    name: str
    attribute: str
    exclusive_to: OverlayCondition | None = None

    def get(self, obj: object) -> Any:
        return getattr(obj, self.attribute)


APP_OVERLAY_FIELDS: tuple[OverlayField, ...] = (
    OverlayField("identifier", "identifier"),
    OverlayField("product", "product"),
    OverlayField("version", "version"),
    OverlayField("category", "category"),
    OverlayField("icon", "icon"),
    OverlayField("url_schemes", "url_schemes"),
    OverlayField("plist", "plist"),
    OverlayField("metadata", "metadata"),
    OverlayField("dependencies", "dependencies"),
    OverlayField(
        "dbus_activatable",
        "dbus_activatable",
        OverlayCondition.platform(Platform.LINUX),
    ),
    OverlayField(
        "catalyst_interface_idiom",
        "catalyst_interface_idiom",
        OverlayCondition.platform(Platform.MAC_CATALYST),
    ),
    OverlayField(
        "rpm_requirements",
        "rpm_requirements",
        OverlayCondition.bundler(BundlerChoice.LINUX_RPM),
    ),
)

PROJECT_OVERLAY_FIELDS: tuple[OverlayField, ...] = (
    OverlayField("source", "source"),
    OverlayField("revision", "revision"),
    OverlayField("builder", "builder"),
    OverlayField("products", "products"),
)


def exclusive_properties(
    fields: tuple[OverlayField, ...],
) -> dict[OverlayCondition, tuple[OverlayField, ...]]:
    """Group a field table's exclusive fields by their condition."""
    rules: dict[OverlayCondition, list[OverlayField]] = {}
    for overlay_field in fields:
        if overlay_field.exclusive_to is not None:
            rules.setdefault(overlay_field.exclusive_to, []).append(
                overlay_field
            )
    return {condition: tuple(group) for condition, group in rules.items()}


# ----------------------------------------------------------------------------
# Apps


@dataclass(frozen=True)
class AppOverlay:
    """Conditional overrides for an app. Unset fields are None."""

    condition: OverlayCondition
    identifier: str | None = None
    product: str | None = None
    version: str | None = None
    category: str | None = None
    icon: str | None = None
    url_schemes: list[str] | None = None
    plist: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    dependencies: list[Dependency] | None = None
    dbus_activatable: bool | None = None
    catalyst_interface_idiom: str | None = None
    rpm_requirements: list[str] | None = None


@dataclass(frozen=True)
class AppConfiguration:
    """An app as written in Bundler.toml."""

    identifier: str
    product: str
    version: str
    category: str | None = None
    icon: str | None = None
    url_schemes: list[str] | None = None
    plist: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    dependencies: list[Dependency] | None = None
    overlays: list[AppOverlay] | None = None
    # Only settable from overlays
    dbus_activatable: bool = False
    catalyst_interface_idiom: str | None = None
    rpm_requirements: list[str] | None = None


@dataclass(frozen=True)
class FlatAppConfiguration:
    """An app with its overlays resolved for one platform and bundler."""

    identifier: str
    product: str
    version: str
    category: str | None = None
    icon: str | None = None
    url_schemes: tuple[str, ...] = ()
    plist: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    dependencies: tuple[Dependency, ...] = ()
    dbus_activatable: bool = False
    catalyst_interface_idiom: str = "ipad"
    rpm_requirements: tuple[str, ...] = ()


# ----------------------------------------------------------------------------
# Projects


@dataclass(frozen=True)
class ProjectOverlay:
    """Conditional overrides for a project. Unset fields are None."""

    condition: OverlayCondition
    source: ProjectSource | None = None
    revision: str | None = None
    builder: str | None = None
    products: dict[str, ProjectProduct] | None = None


@dataclass(frozen=True)
class ProjectConfiguration:
    """A foreign-build-system project providing products to apps."""

    source: ProjectSource
    builder: str
    products: dict[str, ProjectProduct]
    revision: str | None = None
    overlays: list[ProjectOverlay] | None = None


@dataclass(frozen=True)
class FlatProjectConfiguration:
    source: ProjectSource
    builder: str
    products: dict[str, ProjectProduct]
    revision: str | None = None


# ----------------------------------------------------------------------------
# Packages


@dataclass(frozen=True)
class PackageConfiguration:
    """The whole contents of Bundler.toml."""

    apps: dict[str, AppConfiguration]
    projects: dict[str, ProjectConfiguration] = field(default_factory=dict)
    format_version: int = CURRENT_FORMAT_VERSION

    def get_app(self, name: str | None) -> tuple[str, AppConfiguration]:
        """Return the named app, or the only app if no name is given.

        Raises:
            NoSuchAppError: If no app has the given name
            MultipleAppsError: If no name was given and several apps exist
        """
        if name is not None:
            if name not in self.apps:
                raise NoSuchAppError(name)
            return name, self.apps[name]
        if len(self.apps) == 1:
            return next(iter(self.apps.items()))
        if not self.apps:
            raise ConfigurationError("The configuration file has no apps")
        raise MultipleAppsError(list(self.apps))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PackageConfiguration":
        """Decode a parsed Bundler.toml of the current format.

        Raises:
            ConfigurationError: If any value has the wrong shape
        """
        _check_keys(data, ("format_version", "apps", "projects"), "")
        version = data.get("format_version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise ConfigurationError("'format_version' must be an integer")
        apps = {
            name: _decode_app(table, f"apps.{name}")
            for name, table in _table(data, "apps", "", required=True).items()
        }
        projects = {
            name: _decode_project(table, f"projects.{name}")
            for name, table in _table(data, "projects", "").items()
        }
        return cls(apps=apps, projects=projects, format_version=version)

    def to_dict(self) -> dict[str, Any]:
        """Encode for writing with tomli_w. None values are omitted."""
        data: dict[str, Any] = {"format_version": self.format_version}
        data["apps"] = {
            name: _encode_app(app) for name, app in self.apps.items()
        }
        if self.projects:
            data["projects"] = {
                name: _encode_project(project)
                for name, project in self.projects.items()
            }
        return data


# ----------------------------------------------------------------------------
# Decoding helpers

_APP_KEYS = (
    "identifier",
    "product",
    "version",
    "category",
    "icon",
    "url_schemes",
    "plist",
    "metadata",
    "dependencies",
    "overlays",
)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _check_keys(table: dict[str, Any], allowed: tuple[str, ...], path: str):
    unknown = sorted(set(table) - set(allowed))
    if unknown:
        names = ", ".join(f"'{_join(path, key)}'" for key in unknown)
        raise ConfigurationError(f"Unknown configuration key(s): {names}")


def _table(
    data: dict[str, Any], key: str, path: str, required: bool = False
) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        if required:
            raise ConfigurationError(f"Missing '{_join(path, key)}'")
        return {}
    if not isinstance(value, dict) or not all(
        isinstance(item, dict) for item in value.values()
    ):
        raise ConfigurationError(f"'{_join(path, key)}' must be a table")
    return value


def _string(
    data: dict[str, Any], key: str, path: str, required: bool = False
) -> str | None:
    value = data.get(key)
    if value is None:
        if required:
            raise ConfigurationError(f"Missing '{_join(path, key)}'")
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"'{_join(path, key)}' must be a string")
    return value


def _string_list(data: dict[str, Any], key: str, path: str) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(
        isinstance(item, str) for item in value
    ):
        raise ConfigurationError(
            f"'{_join(path, key)}' must be a list of strings"
        )
    return list(value)


def _boolean(data: dict[str, Any], key: str, path: str) -> bool | None:
    value = data.get(key)
    if value is not None and not isinstance(value, bool):
        raise ConfigurationError(f"'{_join(path, key)}' must be a boolean")
    return value


def _app_fields(data: dict[str, Any], path: str) -> dict[str, Any]:
    """Decode the fields shared by apps and app overlays."""
    values: dict[str, Any] = {
        key: _string(data, key, path)
        for key in ("identifier", "product", "version", "category", "icon")
    }
    values["url_schemes"] = _string_list(data, "url_schemes", path)
    plist = data.get("plist")
    if plist is not None:
        if not isinstance(plist, dict):
            raise ConfigurationError(f"'{_join(path, 'plist')}' must be a table")
        values["plist"] = decode_plist_value(plist, _join(path, "plist"))
    metadata = data.get("metadata")
    if metadata is not None:
        if not isinstance(metadata, dict):
            raise ConfigurationError(
                f"'{_join(path, 'metadata')}' must be a table"
            )
        values["metadata"] = decode_metadata_value(
            metadata, _join(path, "metadata")
        )
    dependencies = _string_list(data, "dependencies", path)
    if dependencies is not None:
        try:
            values["dependencies"] = [
                Dependency.parse(item) for item in dependencies
            ]
        except ValueError as e:
            raise ConfigurationError(
                f"'{_join(path, 'dependencies')}': {e}"
            ) from e
    return {key: value for key, value in values.items() if value is not None}


def _decode_app(data: dict[str, Any], path: str) -> AppConfiguration:
    _check_keys(data, _APP_KEYS, path)
    for key in ("identifier", "product", "version"):
        _string(data, key, path, required=True)
    values = _app_fields(data, path)
    overlays = data.get("overlays")
    if overlays is not None:
        if not isinstance(overlays, list) or not all(
            isinstance(item, dict) for item in overlays
        ):
            raise ConfigurationError(
                f"'{_join(path, 'overlays')}' must be an array of tables"
            )
        values["overlays"] = [
            _decode_app_overlay(item, f"{path}.overlays[{index}]")
            for index, item in enumerate(overlays)
        ]
    return AppConfiguration(**values)


def _condition(data: dict[str, Any], path: str) -> OverlayCondition:
    text = _string(data, "condition", path, required=True)
    try:
        return OverlayCondition.parse(text)
    except ValueError as e:
        raise ConfigurationError(f"'{_join(path, 'condition')}': {e}") from e


def _decode_app_overlay(data: dict[str, Any], path: str) -> AppOverlay:
    allowed = ("condition",) + tuple(f.name for f in APP_OVERLAY_FIELDS)
    _check_keys(data, allowed, path)
    values = _app_fields(data, path)
    dbus_activatable = _boolean(data, "dbus_activatable", path)
    if dbus_activatable is not None:
        values["dbus_activatable"] = dbus_activatable
    idiom = _string(data, "catalyst_interface_idiom", path)
    if idiom is not None:
        if idiom not in CATALYST_INTERFACE_IDIOMS:
            raise ConfigurationError(
                f"'{_join(path, 'catalyst_interface_idiom')}' must be one of "
                f"{', '.join(CATALYST_INTERFACE_IDIOMS)}"
            )
        values["catalyst_interface_idiom"] = idiom
    requirements = _string_list(data, "rpm_requirements", path)
    if requirements is not None:
        values["rpm_requirements"] = requirements
    return AppOverlay(condition=_condition(data, path), **values)


def _products(
    data: dict[str, Any], path: str
) -> dict[str, ProjectProduct] | None:
    if data.get("products") is None:
        return None
    products = {}
    for name, table in _table(data, "products", path).items():
        product_path = f"{path}.products.{name}"
        _check_keys(table, ("type",), product_path)
        kind = _string(table, "type", product_path, required=True)
        try:
            product_type = ProductType(kind)
        except ValueError as e:
            raise ConfigurationError(
                f"'{product_path}.type': unknown product type '{kind}'"
            ) from e
        products[name] = ProjectProduct(name, product_type)
    return products


def _source(data: dict[str, Any], path: str) -> ProjectSource | None:
    text = _string(data, "source", path)
    if text is None:
        return None
    try:
        return ProjectSource.parse(text)
    except ValueError as e:
        raise ConfigurationError(f"'{_join(path, 'source')}': {e}") from e


def _decode_project(data: dict[str, Any], path: str) -> ProjectConfiguration:
    _check_keys(
        data, ("source", "revision", "builder", "products", "overlays"), path
    )
    source = _source(data, path)
    if source is None:
        raise ConfigurationError(f"Missing '{path}.source'")
    builder = _string(data, "builder", path, required=True)
    products = _products(data, path) or {}
    overlays = None
    if data.get("overlays") is not None:
        raw = data["overlays"]
        if not isinstance(raw, list) or not all(
            isinstance(item, dict) for item in raw
        ):
            raise ConfigurationError(
                f"'{path}.overlays' must be an array of tables"
            )
        overlays = [
            _decode_project_overlay(item, f"{path}.overlays[{index}]")
            for index, item in enumerate(raw)
        ]
    return ProjectConfiguration(
        source=source,
        builder=builder,
        products=products,
        revision=_string(data, "revision", path),
        overlays=overlays,
    )


def _decode_project_overlay(data: dict[str, Any], path: str) -> ProjectOverlay:
    allowed = ("condition",) + tuple(f.name for f in PROJECT_OVERLAY_FIELDS)
    _check_keys(data, allowed, path)
    return ProjectOverlay(
        condition=_condition(data, path),
        source=_source(data, path),
        revision=_string(data, "revision", path),
        builder=_string(data, "builder", path),
        products=_products(data, path),
    )


# ----------------------------------------------------------------------------
# Encoding helpers


def _encode_fields(obj: object, skip: tuple[str, ...] = ()) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for item in dataclasses.fields(obj):
        if item.name in skip:
            continue
        value = getattr(obj, item.name)
        if value is None:
            continue
        if item.name == "condition":
            value = str(value)
        elif item.name == "dependencies":
            value = [str(dependency) for dependency in value]
        elif item.name == "plist":
            value = encode_plist_value(value)
        elif item.name in ("source",):
            value = str(value)
        elif item.name == "products":
            value = {
                name: {"type": product.type.value}
                for name, product in value.items()
            }
        data[item.name] = value
    return data


def _encode_app(app: AppConfiguration) -> dict[str, Any]:
    data = _encode_fields(
        app,
        skip=(
            "overlays",
            "dbus_activatable",
            "catalyst_interface_idiom",
            "rpm_requirements",
        ),
    )
    if app.overlays:
        data["overlays"] = [_encode_fields(overlay) for overlay in app.overlays]
    return data


def _encode_project(project: ProjectConfiguration) -> dict[str, Any]:
    data = _encode_fields(project, skip=("overlays",))
    if project.overlays:
        data["overlays"] = [
            _encode_fields(overlay) for overlay in project.overlays
        ]
    return data
