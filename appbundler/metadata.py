"""Platform metadata manifests and the metadata blob embedded in binaries.

Info.plist files are generated with :mod:`plistlib` from the flattened app
configuration. User-supplied ``plist`` entries are merged in, except for
the keys appbundler derives itself.

Embedded metadata is a compact JSON document appended to the executable,
followed by its length (8 bytes, little-endian) and the magic bytes
``APPBMETA`` so a running app can find it by reading its own tail.
"""

import datetime
import json
import logging
import plistlib
import struct
from pathlib import Path
from typing import Any, BinaryIO

from .config import FlatAppConfiguration
from .errors import MetadataError
from .platforms import Platform

METADATA_MAGIC = b"APPBMETA"
_LENGTH = struct.Struct("<Q")

# Keys derived from the app configuration; 'plist' entries can't replace them
PROTECTED_PLIST_KEYS = frozenset(
    {
        "CFBundleExecutable",
        "CFBundleIdentifier",
        "CFBundleInfoDictionaryVersion",
        "CFBundleName",
        "CFBundlePackageType",
        "CFBundleShortVersionString",
        "CFBundleVersion",
        "CFBundleSupportedPlatforms",
    }
)

_SUPPORTED_PLATFORMS = {
    Platform.MACOS: "MacOSX",
    Platform.MAC_CATALYST: "MacOSX",
    Platform.IOS: "iPhoneOS",
    Platform.IOS_SIMULATOR: "iPhoneSimulator",
    Platform.TVOS: "AppleTVOS",
    Platform.TVOS_SIMULATOR: "AppleTVSimulator",
    Platform.VISIONOS: "XROS",
    Platform.VISIONOS_SIMULATOR: "XRSimulator",
}

log = logging.getLogger(__name__)


# ----------------------------------------------------------------------------
# Info.plist


def create_info_plist(
    app_name: str,
    app: FlatAppConfiguration,
    platform: Platform,
    platform_version: str | None,
) -> dict[str, Any]:
    """Build the Info.plist entries for an app bundle."""
    entries: dict[str, Any] = {
        "CFBundleDevelopmentRegion": "en",
        "CFBundleExecutable": app.product,
        "CFBundleIdentifier": app.identifier,
        "CFBundleInfoDictionaryVersion": "6.0",
        "CFBundleName": app_name,
        "CFBundlePackageType": "APPL",
        "CFBundleShortVersionString": app.version,
        "CFBundleVersion": app.version,
    }
    if app.icon is not None:
        entries["CFBundleIconFile"] = "AppIcon"
        entries["CFBundleIconName"] = "AppIcon"
    if app.category is not None:
        entries["LSApplicationCategoryType"] = app.category

    if platform in _SUPPORTED_PLATFORMS:
        entries["CFBundleSupportedPlatforms"] = [_SUPPORTED_PLATFORMS[platform]]
    if platform in (Platform.MACOS, Platform.MAC_CATALYST):
        if platform_version is not None:
            entries["LSMinimumSystemVersion"] = platform_version
        if platform is Platform.MAC_CATALYST:
            idiom = app.catalyst_interface_idiom
            entries["UIDeviceFamily"] = [6] if idiom == "mac" else [2]
    elif platform.is_apple:
        if platform_version is not None:
            entries["MinimumOSVersion"] = platform_version
        if platform in (Platform.IOS, Platform.IOS_SIMULATOR):
            entries["UILaunchScreen"] = {}
        elif platform in (Platform.VISIONOS, Platform.VISIONOS_SIMULATOR):
            entries["UIApplicationSceneManifest"] = {
                "UIApplicationSupportsMultipleScenes": True,
                "UISceneConfigurations": {},
            }
            entries["UINativeSizeClass"] = 1
            entries["UIDeviceFamily"] = [7]

    if app.url_schemes:
        entries["CFBundleURLTypes"] = [
            {
                "CFBundleTypeRole": "Viewer",
                "CFBundleURLSchemes": list(app.url_schemes),
            }
        ]

    ignored = sorted(PROTECTED_PLIST_KEYS & set(app.plist))
    if ignored:
        log.warning(
            "Ignoring 'plist' entries managed by appbundler: %s",
            ", ".join(ignored),
        )
    for key, value in app.plist.items():
        if key not in PROTECTED_PLIST_KEYS:
            entries[key] = value
    return entries


def write_info_plist(path: Path, entries: dict[str, Any]) -> None:
    """Serialize Info.plist entries as an XML property list.

    Raises:
        MetadataError: If an entry can't be serialized or written
    """
    try:
        with open(path, "wb") as f:
            plistlib.dump(entries, f, fmt=plistlib.FMT_XML)
    except (OSError, TypeError, OverflowError) as e:
        raise MetadataError(f"Failed to write '{path}'") from e


# ----------------------------------------------------------------------------
# Embedded metadata


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def encode_metadata(app: FlatAppConfiguration) -> bytes:
    """Encode the metadata a running app can read about itself."""
    document = {
        "appIdentifier": app.identifier,
        "appVersion": app.version,
        "additionalMetadata": app.metadata,
    }
    try:
        text = json.dumps(
            document,
            separators=(",", ":"),
            sort_keys=True,
            default=_json_default,
        )
    except (TypeError, ValueError) as e:
        raise MetadataError("Failed to encode app metadata") from e
    return text.encode("utf-8")


def _embedded_size(f: BinaryIO, size: int) -> int:
    """Size of the metadata blob and trailer at the end of f, or 0."""
    trailer_size = _LENGTH.size + len(METADATA_MAGIC)
    if size < trailer_size:
        return 0
    f.seek(size - trailer_size)
    trailer = f.read(trailer_size)
    if trailer[_LENGTH.size :] != METADATA_MAGIC:
        return 0
    (length,) = _LENGTH.unpack(trailer[: _LENGTH.size])
    if length > size - trailer_size:
        return 0
    return length + trailer_size


def embed_metadata(executable: Path, app: FlatAppConfiguration) -> bytes:
    """Append the app's metadata blob to a built executable.

    A blob embedded by an earlier run is replaced rather than stacked.

    Returns:
        The encoded metadata payload

    Raises:
        MetadataError: If the executable cannot be written
    """
    payload = encode_metadata(app)
    try:
        with open(executable, "r+b") as f:
            size = f.seek(0, 2)
            f.truncate(size - _embedded_size(f, size))
            f.seek(0, 2)
            f.write(payload)
            f.write(_LENGTH.pack(len(payload)))
            f.write(METADATA_MAGIC)
    except OSError as e:
        raise MetadataError(
            f"Failed to embed metadata into '{executable}'"
        ) from e
    log.debug("Embedded %d bytes of metadata", len(payload))
    return payload


def read_embedded_metadata(executable: Path) -> dict[str, Any] | None:
    """Read the metadata blob from the end of an executable.

    Returns:
        The decoded metadata, or None if the file has none
    """
    trailer_size = _LENGTH.size + len(METADATA_MAGIC)
    with open(executable, "rb") as f:
        size = f.seek(0, 2)
        embedded = _embedded_size(f, size)
        if embedded == 0:
            return None
        f.seek(size - embedded)
        payload = f.read(embedded - trailer_size)
    return json.loads(payload.decode("utf-8"))
