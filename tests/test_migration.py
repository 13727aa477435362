"""Tests for loading and migrating configuration files."""

import json
import logging
import tempfile
import tomllib
from pathlib import Path

import pytest

from appbundler import migration
from appbundler.errors import (
    ConfigurationError,
    MigrationError,
    UnsupportedFormatVersionError,
)
from appbundler.migration import (
    load_package_configuration,
    migrate_configuration,
)

CURRENT = """\
format_version = 2

[apps.App]
identifier = "com.example.App"
product = "App"
version = "1.0.0"
"""

SECOND_GENERATION = """\
[apps.App]
bundle_identifier = "com.example.App"
product = "App"
version = "0.1.0"
minimum_macos_version = "13"
extra_plist_entries = { CFBundleVersion = "{VERSION}", Other = "plain" }
"""

FIRST_GENERATION = {
    "target": "App",
    "bundleIdentifier": "com.example.App",
    "versionString": "0.1.0",
    "buildNumber": 3,
    "category": "public.app-category.games",
    "minOSVersion": "13",
    "extraInfoPlistEntries": {
        "Key": "value",
        "Nested": {"Flag": True},
        "Broken": None,
    },
}


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def reset_warnings():
    """Forget which files were reported as outdated."""
    migration._warned_outdated.clear()
    yield
    migration._warned_outdated.clear()


class TestLoad:
    """Tests for load_package_configuration."""

    def test_current_format(self, temp_dir):
        """Test loading a current configuration."""
        (temp_dir / "Bundler.toml").write_text(CURRENT)
        configuration = load_package_configuration(temp_dir)
        assert configuration.apps["App"].version == "1.0.0"

    def test_custom_file(self, temp_dir):
        """Test loading a configuration from a custom path."""
        custom = temp_dir / "Other.toml"
        custom.write_text(CURRENT)
        configuration = load_package_configuration(temp_dir, custom)
        assert "App" in configuration.apps

    def test_missing_file(self, temp_dir):
        """Test that a missing configuration is reported."""
        with pytest.raises(ConfigurationError, match="Could not find"):
            load_package_configuration(temp_dir)

    def test_invalid_toml(self, temp_dir):
        """Test that unparseable TOML is a configuration error."""
        (temp_dir / "Bundler.toml").write_text("[apps\n")
        with pytest.raises(ConfigurationError, match="Failed to read"):
            load_package_configuration(temp_dir)

    def test_unsupported_version(self, temp_dir):
        """Test that future format versions are rejected."""
        (temp_dir / "Bundler.toml").write_text(
            CURRENT.replace("format_version = 2", "format_version = 3")
        )
        with pytest.raises(UnsupportedFormatVersionError) as info:
            load_package_configuration(temp_dir)
        assert info.value.version == 3

    def test_second_generation_in_memory(self, temp_dir, caplog):
        """Test that unversioned files are migrated in memory only."""
        path = temp_dir / "Bundler.toml"
        path.write_text(SECOND_GENERATION)
        with caplog.at_level(logging.WARNING):
            configuration = load_package_configuration(temp_dir)
        app = configuration.apps["App"]
        assert app.identifier == "com.example.App"
        assert app.plist == {"CFBundleVersion": "$(VERSION)", "Other": "plain"}
        assert path.read_text() == SECOND_GENERATION
        assert "appbundler migrate" in caplog.text
        assert "minimum_macos_version" in caplog.text

    def test_outdated_warning_once(self, temp_dir, caplog):
        """Test that the outdated warning is shown once per file."""
        (temp_dir / "Bundler.toml").write_text(SECOND_GENERATION)
        with caplog.at_level(logging.WARNING):
            load_package_configuration(temp_dir)
            load_package_configuration(temp_dir)
        assert caplog.text.count("is outdated") == 1

    def test_first_generation(self, temp_dir, caplog):
        """Test migrating a Bundle.json file."""
        (temp_dir / "Bundle.json").write_text(json.dumps(FIRST_GENERATION))
        with caplog.at_level(logging.WARNING):
            configuration = load_package_configuration(temp_dir)
        app = configuration.apps["App"]
        assert app.product == "App"
        assert app.category == "public.app-category.games"
        assert app.plist == {"Key": "value", "Nested": {"Flag": True}}
        assert "1 entry" in caplog.text
        assert "buildNumber" in caplog.text
        assert "minOSVersion" in caplog.text

    def test_toml_preferred_over_json(self, temp_dir):
        """Test that Bundle.json is ignored once Bundler.toml exists."""
        (temp_dir / "Bundle.json").write_text("not json")
        (temp_dir / "Bundler.toml").write_text(CURRENT)
        assert "App" in load_package_configuration(temp_dir).apps

    def test_invalid_first_generation(self, temp_dir):
        """Test that incomplete Bundle.json files are rejected."""
        (temp_dir / "Bundle.json").write_text(json.dumps({"target": "App"}))
        with pytest.raises(MigrationError, match="bundleIdentifier"):
            load_package_configuration(temp_dir)

    def test_invalid_second_generation(self, temp_dir):
        """Test that unknown keys in unversioned files are rejected."""
        (temp_dir / "Bundler.toml").write_text(
            SECOND_GENERATION + 'colour = "blue"\n'
        )
        with pytest.raises(MigrationError, match="colour"):
            load_package_configuration(temp_dir)


class TestMigrate:
    """Tests for migrate_configuration."""

    def test_up_to_date(self, temp_dir, caplog):
        """Test that current files are left untouched."""
        path = temp_dir / "Bundler.toml"
        path.write_text(CURRENT)
        with caplog.at_level(logging.INFO):
            assert migrate_configuration(temp_dir) is False
        assert "already up to date" in caplog.text
        assert path.read_text() == CURRENT
        assert not (temp_dir / "Bundler.toml.orig").exists()

    def test_second_generation(self, temp_dir):
        """Test rewriting an unversioned Bundler.toml."""
        path = temp_dir / "Bundler.toml"
        path.write_text(SECOND_GENERATION)
        assert migrate_configuration(temp_dir) is True

        backup = temp_dir / "Bundler.toml.orig"
        assert backup.read_text() == SECOND_GENERATION
        data = tomllib.loads(path.read_text())
        assert data["format_version"] == 2
        assert data["apps"]["App"]["identifier"] == "com.example.App"
        assert data["apps"]["App"]["plist"]["CFBundleVersion"] == "$(VERSION)"

    def test_first_generation(self, temp_dir):
        """Test rewriting a Bundle.json as Bundler.toml."""
        (temp_dir / "Bundle.json").write_text(json.dumps(FIRST_GENERATION))
        assert migrate_configuration(temp_dir) is True
        assert not (temp_dir / "Bundle.json").exists()
        assert (temp_dir / "Bundle.json.orig").exists()
        migrated = load_package_configuration(temp_dir)
        assert migrated.apps["App"].version == "0.1.0"

    def test_migration_is_idempotent(self, temp_dir):
        """Test that a migrated file needs no further migration."""
        (temp_dir / "Bundler.toml").write_text(SECOND_GENERATION)
        assert migrate_configuration(temp_dir) is True
        assert migrate_configuration(temp_dir) is False
