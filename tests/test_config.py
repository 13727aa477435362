"""Tests for the Bundler.toml configuration model."""

import base64
import datetime

import pytest

from appbundler.config import (
    ROOT_PROJECT_NAME,
    Dependency,
    OverlayCondition,
    PackageConfiguration,
    ProductType,
    ProjectSource,
    decode_plist_value,
)
from appbundler.errors import (
    ConfigurationError,
    MultipleAppsError,
    NoSuchAppError,
)
from appbundler.platforms import BundlerChoice, Platform


def minimal_app(**extra):
    app = {
        "identifier": "com.example.HelloWorld",
        "product": "HelloWorld",
        "version": "0.1.0",
    }
    app.update(extra)
    return app


class TestOverlayCondition:
    """Tests for parsing overlay conditions."""

    def test_parse_platform(self):
        """Test parsing a platform condition."""
        condition = OverlayCondition.parse("platform(linux)")
        assert condition == OverlayCondition.platform(Platform.LINUX)
        assert str(condition) == "platform(linux)"

    def test_parse_bundler(self):
        """Test parsing a bundler condition."""
        condition = OverlayCondition.parse("bundler(linuxRPM)")
        assert condition == OverlayCondition.bundler(BundlerChoice.LINUX_RPM)

    @pytest.mark.parametrize(
        "text",
        [
            "platform(beos)",
            "bundler(zip)",
            "os(linux)",
            "platform(linux",
            "platform",
            "",
        ],
    )
    def test_parse_invalid(self, text):
        """Test that malformed conditions are rejected."""
        with pytest.raises(ValueError):
            OverlayCondition.parse(text)


class TestDependency:
    """Tests for dependency references."""

    def test_project_product(self):
        """Test that 'project.product' splits at the first dot."""
        dependency = Dependency.parse("engine.core.lib")
        assert dependency.project == "engine"
        assert dependency.product == "core.lib"
        assert dependency.identifier == "engine.core.lib"

    def test_bare_product_targets_root(self):
        """Test that a bare product name refers to the root package."""
        dependency = Dependency.parse("helper")
        assert dependency.project == ROOT_PROJECT_NAME
        assert dependency.product == "helper"
        assert str(dependency) == "helper"

    @pytest.mark.parametrize("text", ["", ".product", "project."])
    def test_invalid(self, text):
        """Test that empty components are rejected."""
        with pytest.raises(ValueError):
            Dependency.parse(text)


class TestProjectSource:
    """Tests for project sources."""

    def test_git(self):
        """Test parsing a git source."""
        source = ProjectSource.parse("git(https://example.com/engine.git)")
        assert source.kind == "git"
        assert source.location == "https://example.com/engine.git"

    def test_local(self):
        """Test parsing a local source."""
        source = ProjectSource.parse("local(vendor/engine)")
        assert source.kind == "local"
        assert str(source) == "local(vendor/engine)"

    @pytest.mark.parametrize("text", ["svn(x)", "git()", "local"])
    def test_invalid(self, text):
        """Test that unknown or empty sources are rejected."""
        with pytest.raises(ValueError):
            ProjectSource.parse(text)


class TestProductType:
    """Tests for artifact naming."""

    def test_artifact_names(self):
        """Test artifact file names per platform."""
        assert (
            ProductType.DYNAMIC_LIBRARY.artifact_name("engine", Platform.LINUX)
            == "libengine.so"
        )
        assert (
            ProductType.DYNAMIC_LIBRARY.artifact_name("engine", Platform.MACOS)
            == "libengine.dylib"
        )
        assert (
            ProductType.DYNAMIC_LIBRARY.artifact_name(
                "engine", Platform.WINDOWS
            )
            == "engine.dll"
        )
        assert (
            ProductType.EXECUTABLE.artifact_name("tool", Platform.WINDOWS)
            == "tool.exe"
        )
        assert (
            ProductType.STATIC_LIBRARY.artifact_name("engine", Platform.LINUX)
            == "libengine.a"
        )


class TestPlistValues:
    """Tests for plist value decoding."""

    def test_typed_data(self):
        """Test that data values are base64 decoded."""
        encoded = base64.b64encode(b"\x00\x01").decode()
        value = decode_plist_value({"type": "data", "value": encoded}, "p")
        assert value == b"\x00\x01"

    def test_typed_real(self):
        """Test that integer reals become floats."""
        assert decode_plist_value({"type": "real", "value": 1}, "p") == 1.0

    def test_typed_date(self):
        """Test that ISO dates become datetimes."""
        value = decode_plist_value(
            {"type": "date", "value": "2024-01-02T03:04:05"}, "p"
        )
        assert value == datetime.datetime(2024, 1, 2, 3, 4, 5)

    def test_invalid_typed_value(self):
        """Test that invalid typed values are reported with their path."""
        with pytest.raises(ConfigurationError, match="plist.Key"):
            decode_plist_value(
                {"type": "data", "value": "not base64!"}, "plist.Key"
            )

    def test_nested_tables(self):
        """Test that ordinary tables are kept as dictionaries."""
        value = decode_plist_value({"a": {"b": [1, "x"]}}, "p")
        assert value == {"a": {"b": [1, "x"]}}


class TestPackageConfiguration:
    """Tests for decoding whole configurations."""

    def test_minimal(self):
        """Test decoding a minimal configuration."""
        configuration = PackageConfiguration.from_dict(
            {"format_version": 2, "apps": {"HelloWorld": minimal_app()}}
        )
        app = configuration.apps["HelloWorld"]
        assert app.identifier == "com.example.HelloWorld"
        assert app.overlays is None
        assert configuration.projects == {}

    def test_overlays_and_dependencies(self):
        """Test decoding overlays, exclusive fields and dependencies."""
        configuration = PackageConfiguration.from_dict(
            {
                "format_version": 2,
                "apps": {
                    "HelloWorld": minimal_app(
                        dependencies=["engine.engine", "helper"],
                        overlays=[
                            {
                                "condition": "platform(linux)",
                                "dbus_activatable": True,
                                "version": "0.2.0",
                            }
                        ],
                    )
                },
            }
        )
        app = configuration.apps["HelloWorld"]
        assert [str(d) for d in app.dependencies] == ["engine.engine", "helper"]
        overlay = app.overlays[0]
        assert overlay.condition == OverlayCondition.platform(Platform.LINUX)
        assert overlay.dbus_activatable is True
        assert overlay.version == "0.2.0"
        assert overlay.identifier is None

    def test_exclusive_field_outside_overlay(self):
        """Test that exclusive fields can't be set on the app itself."""
        with pytest.raises(ConfigurationError, match="dbus_activatable"):
            PackageConfiguration.from_dict(
                {
                    "format_version": 2,
                    "apps": {"App": minimal_app(dbus_activatable=True)},
                }
            )

    def test_unknown_key(self):
        """Test that unknown keys are rejected."""
        with pytest.raises(ConfigurationError, match="apps.App.colour"):
            PackageConfiguration.from_dict(
                {"format_version": 2, "apps": {"App": minimal_app(colour=1)}}
            )

    def test_missing_required_field(self):
        """Test that required app fields are enforced."""
        app = minimal_app()
        del app["version"]
        with pytest.raises(ConfigurationError, match="apps.App.version"):
            PackageConfiguration.from_dict(
                {"format_version": 2, "apps": {"App": app}}
            )

    def test_invalid_condition(self):
        """Test that unparseable overlay conditions are decode errors."""
        with pytest.raises(ConfigurationError, match="condition"):
            PackageConfiguration.from_dict(
                {
                    "format_version": 2,
                    "apps": {
                        "App": minimal_app(
                            overlays=[{"condition": "platform(amiga)"}]
                        )
                    },
                }
            )

    def test_invalid_catalyst_idiom(self):
        """Test that only known interface idioms are accepted."""
        with pytest.raises(ConfigurationError, match="catalyst_interface"):
            PackageConfiguration.from_dict(
                {
                    "format_version": 2,
                    "apps": {
                        "App": minimal_app(
                            overlays=[
                                {
                                    "condition": "platform(macCatalyst)",
                                    "catalyst_interface_idiom": "watch",
                                }
                            ]
                        )
                    },
                }
            )

    def test_projects(self):
        """Test decoding a project with products."""
        configuration = PackageConfiguration.from_dict(
            {
                "format_version": 2,
                "apps": {"App": minimal_app()},
                "projects": {
                    "engine": {
                        "source": "git(https://example.com/engine.git)",
                        "revision": "v1.0",
                        "builder": "build.py",
                        "products": {"engine": {"type": "dynamicLibrary"}},
                    }
                },
            }
        )
        project = configuration.projects["engine"]
        assert project.revision == "v1.0"
        assert project.products["engine"].type is ProductType.DYNAMIC_LIBRARY

    def test_unknown_product_type(self):
        """Test that unknown product types are rejected."""
        with pytest.raises(ConfigurationError, match="unknown product type"):
            PackageConfiguration.from_dict(
                {
                    "format_version": 2,
                    "apps": {"App": minimal_app()},
                    "projects": {
                        "engine": {
                            "source": "local(engine)",
                            "builder": "build.py",
                            "products": {"engine": {"type": "framework"}},
                        }
                    },
                }
            )

    def test_to_dict_keeps_overlays(self):
        """Test that encoding keeps overlays and omits unset fields."""
        data = {
            "format_version": 2,
            "apps": {
                "App": minimal_app(
                    overlays=[
                        {
                            "condition": "bundler(linuxRPM)",
                            "rpm_requirements": ["gtk4"],
                        }
                    ]
                )
            },
        }
        encoded = PackageConfiguration.from_dict(data).to_dict()
        assert encoded == data


class TestGetApp:
    """Tests for selecting an app by name."""

    def configuration(self, *names):
        return PackageConfiguration.from_dict(
            {
                "format_version": 2,
                "apps": {name: minimal_app() for name in names},
            }
        )

    def test_single_app_without_name(self):
        """Test that the only app is chosen when no name is given."""
        name, _ = self.configuration("One").get_app(None)
        assert name == "One"

    def test_named_app(self):
        """Test selecting an app by name."""
        name, app = self.configuration("One", "Two").get_app("Two")
        assert name == "Two"
        assert app.product == "HelloWorld"

    def test_missing_app(self):
        """Test that unknown app names raise NoSuchAppError."""
        with pytest.raises(NoSuchAppError, match="Three"):
            self.configuration("One", "Two").get_app("Three")

    def test_ambiguous(self):
        """Test that several apps require a name."""
        with pytest.raises(MultipleAppsError, match="One, Two"):
            self.configuration("Two", "One").get_app(None)
