"""Loading Bundler.toml and migrating older configuration generations.

Three on-disk generations exist:

1. ``Bundle.json``: a single flat JSON object describing one app.
2. ``Bundler.toml`` without ``format_version``: apps with
   ``bundle_identifier``/``extra_plist_entries`` fields and no overlays.
3. ``Bundler.toml`` with ``format_version = 2``: the current schema.

Older generations are converted in memory whenever they are loaded. Only
:func:`migrate_configuration` rewrites files on disk.
"""

import json
import logging
import re
import shutil
import tomllib
from pathlib import Path
from typing import Any

import tomli_w

from .config import (
    CONFIG_FILE_NAME,
    CURRENT_FORMAT_VERSION,
    AppConfiguration,
    PackageConfiguration,
)
from .errors import (
    ConfigurationError,
    FileError,
    MigrationError,
    UnsupportedFormatVersionError,
)

LEGACY_JSON_FILE_NAME = "Bundle.json"
BACKUP_SUFFIX = ".orig"

_V2_APP_KEYS = (
    "bundle_identifier",
    "product",
    "version",
    "category",
    "minimum_macos_version",
    "minimum_ios_version",
    "icon",
    "extra_plist_entries",
)

# '{VERSION}' in the second generation is '$(VERSION)' today
_V2_VARIABLE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_:]*)\}")

log = logging.getLogger(__name__)

# Files already reported as outdated by this process
_warned_outdated: set[Path] = set()


def configuration_file(
    package_directory: Path, custom_file: Path | None = None
) -> Path:
    """Return the configuration file used for a package."""
    if custom_file is not None:
        return custom_file
    return package_directory / CONFIG_FILE_NAME


def load_package_configuration(
    package_directory: Path, custom_file: Path | None = None
) -> PackageConfiguration:
    """Load a package's configuration, migrating it in memory if needed.

    Outdated files are left untouched; a warning asks the user to run
    'appbundler migrate' (once per file per process).

    Args:
        package_directory: Root directory of the package
        custom_file: Configuration file to use instead of Bundler.toml

    Returns:
        The configuration in the current schema

    Raises:
        ConfigurationError: If the file is missing, unreadable, invalid, or
            from an unsupported format version
    """
    configuration, outdated = _load(package_directory, custom_file)
    if outdated is not None and outdated not in _warned_outdated:
        _warned_outdated.add(outdated)
        log.warning("'%s' is outdated.", outdated)
        log.warning(
            "Run 'appbundler migrate' to migrate it to the latest config "
            "format."
        )
    return configuration


def migrate_configuration(
    package_directory: Path, custom_file: Path | None = None
) -> bool:
    """Rewrite an outdated configuration in the current schema.

    The original file is kept next to the new one with a '.orig' suffix.

    Returns:
        True if the configuration was migrated, False if it was already
        up to date (in which case nothing is written)

    Raises:
        ConfigurationError: If the configuration cannot be loaded
        FileError: If the migrated configuration cannot be written
    """
    configuration, outdated = _load(package_directory, custom_file)
    if outdated is None:
        log.info("Configuration file is already up to date")
        return False

    target = configuration_file(package_directory, custom_file)
    backup = outdated.with_name(outdated.name + BACKUP_SUFFIX)
    try:
        if outdated == target:
            shutil.copy2(outdated, backup)
        else:
            outdated.rename(backup)
        write_package_configuration(configuration, target)
    except OSError as e:
        raise FileError(f"Failed to migrate '{outdated}'") from e

    log.info("Backed up '%s' to '%s'", outdated.name, backup.name)
    log.info("Successfully migrated configuration to the latest format.")
    return True


def write_package_configuration(
    configuration: PackageConfiguration, path: Path
) -> None:
    """Serialize a configuration to TOML at path."""
    with open(path, "wb") as f:
        tomli_w.dump(configuration.to_dict(), f)


def _load(
    package_directory: Path, custom_file: Path | None
) -> tuple[PackageConfiguration, Path | None]:
    """Return the configuration and the outdated file it came from, if any."""
    config_file = configuration_file(package_directory, custom_file)
    legacy_file = package_directory / LEGACY_JSON_FILE_NAME
    if (
        custom_file is None
        and legacy_file.exists()
        and not config_file.exists()
    ):
        log.debug("Migrating '%s' from JSON", legacy_file)
        return migrate_v1(legacy_file), legacy_file

    if not config_file.exists():
        raise ConfigurationError(
            f"Could not find '{config_file.name}' in "
            f"'{config_file.parent}'. Create one to configure your apps."
        )
    try:
        with open(config_file, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Failed to read '{config_file}'") from e

    if "format_version" not in data:
        log.debug("Migrating '%s' from the unversioned format", config_file)
        return migrate_v2(data, config_file), config_file

    version = data["format_version"]
    if version != CURRENT_FORMAT_VERSION:
        raise UnsupportedFormatVersionError(
            config_file, version, CURRENT_FORMAT_VERSION
        )
    try:
        return PackageConfiguration.from_dict(data), None
    except ConfigurationError as e:
        raise ConfigurationError(f"Invalid '{config_file}': {e}") from e


# ----------------------------------------------------------------------------
# First generation: Bundle.json


def migrate_v1(path: Path) -> PackageConfiguration:
    """Convert a Bundle.json file into the current schema.

    Raises:
        MigrationError: If the file is not a valid first-generation config
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise MigrationError(f"Failed to read '{path}'") from e
    if not isinstance(data, dict):
        raise MigrationError(f"'{path}' must contain a JSON object")

    for key in ("target", "bundleIdentifier", "versionString"):
        if not isinstance(data.get(key), str):
            raise MigrationError(f"'{path}' is missing string field '{key}'")
    category = data.get("category")
    if category is not None and not isinstance(category, str):
        raise MigrationError(f"'{path}': 'category' must be a string")

    entries = data.get("extraInfoPlistEntries") or {}
    if not isinstance(entries, dict):
        raise MigrationError(
            f"'{path}': 'extraInfoPlistEntries' must be an object"
        )
    plist = {
        key: value for key, value in entries.items() if _plist_compatible(value)
    }
    dropped = len(entries) - len(plist)
    if dropped:
        log.warning(
            "%d %s in 'extraInfoPlistEntries' could not be converted to the "
            "new format and will have to be converted manually",
            dropped,
            "entry" if dropped == 1 else "entries",
        )
    if "buildNumber" in data:
        log.warning(
            "Discarding 'buildNumber' because the latest config format has "
            "no build number field"
        )
    if "minOSVersion" in data:
        log.warning(
            "Discarding 'minOSVersion'; minimum versions are now read from "
            "the package manifest"
        )

    target = data["target"]
    app = AppConfiguration(
        identifier=data["bundleIdentifier"],
        product=target,
        version=data["versionString"],
        category=category,
        plist=plist or None,
    )
    return PackageConfiguration(apps={target: app})


def _plist_compatible(value: Any) -> bool:
    if isinstance(value, (str, bool, int, float)):
        return True
    if isinstance(value, list):
        return all(_plist_compatible(item) for item in value)
    if isinstance(value, dict):
        return all(_plist_compatible(item) for item in value.values())
    return False


# ----------------------------------------------------------------------------
# Second generation: unversioned Bundler.toml


def migrate_v2(data: dict[str, Any], path: Path) -> PackageConfiguration:
    """Convert an unversioned Bundler.toml table into the current schema.

    Raises:
        MigrationError: If the table is not a valid second-generation config
    """
    unknown = sorted(set(data) - {"apps"})
    if unknown:
        raise MigrationError(
            f"'{path}' has no 'format_version' and unexpected keys: "
            f"{', '.join(unknown)}"
        )
    apps_table = data.get("apps", {})
    if not isinstance(apps_table, dict):
        raise MigrationError(f"'{path}': 'apps' must be a table")

    apps = {}
    for name, table in apps_table.items():
        if not isinstance(table, dict):
            raise MigrationError(f"'{path}': 'apps.{name}' must be a table")
        apps[name] = _migrate_v2_app(name, table, path)
    return PackageConfiguration(apps=apps)


def _migrate_v2_app(
    name: str, table: dict[str, Any], path: Path
) -> AppConfiguration:
    unknown = sorted(set(table) - set(_V2_APP_KEYS))
    if unknown:
        raise MigrationError(
            f"'{path}': unexpected keys in 'apps.{name}': {', '.join(unknown)}"
        )
    for key in ("bundle_identifier", "product", "version"):
        if not isinstance(table.get(key), str):
            raise MigrationError(
                f"'{path}': 'apps.{name}.{key}' must be a string"
            )
    for key in ("category", "icon"):
        if key in table and not isinstance(table[key], str):
            raise MigrationError(
                f"'{path}': 'apps.{name}.{key}' must be a string"
            )

    entries = table.get("extra_plist_entries", {})
    if not isinstance(entries, dict) or not all(
        isinstance(value, str) for value in entries.values()
    ):
        raise MigrationError(
            f"'{path}': 'apps.{name}.extra_plist_entries' must map strings "
            "to strings"
        )
    plist = {
        key: _V2_VARIABLE.sub(r"$(\1)", value)
        for key, value in entries.items()
    }

    for key in ("minimum_macos_version", "minimum_ios_version"):
        if key in table:
            log.warning(
                "Discarding 'apps.%s.%s'; minimum versions are now read from "
                "the package manifest",
                name,
                key,
            )

    return AppConfiguration(
        identifier=table["bundle_identifier"],
        product=table["product"],
        version=table["version"],
        category=table.get("category"),
        icon=table.get("icon"),
        plist=plist or None,
    )
