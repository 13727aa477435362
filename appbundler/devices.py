"""Turning platform, device and simulator selectors into one target.

Devices are enumerated with Xcode's command-line tools: simulators with
``xcrun simctl`` and physical devices with ``xcrun devicectl``. Both are
only consulted when a selector requires a search.
"""

import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .errors import DeviceResolutionError
from .platforms import HostPlatform, Platform
from .utils import run_command

log = logging.getLogger(__name__)

# Last component of simctl runtime identifiers, e.g. 'iOS-17-0'
_SIMULATOR_RUNTIMES = {
    "iOS": Platform.IOS_SIMULATOR,
    "tvOS": Platform.TVOS_SIMULATOR,
    "xrOS": Platform.VISIONOS_SIMULATOR,
    "visionOS": Platform.VISIONOS_SIMULATOR,
}

_DEVICE_PLATFORMS = {
    "iOS": Platform.IOS,
    "tvOS": Platform.TVOS,
    "xrOS": Platform.VISIONOS,
    "visionOS": Platform.VISIONOS,
}

LIST_SIMULATORS_HINT = (
    "List available simulators with 'appbundler simulators list'"
)
BOOT_SIMULATOR_HINT = (
    "Boot a simulator with 'appbundler simulators boot <id-or-name>'"
)
LIST_DEVICES_HINT = "List available devices with 'appbundler devices list'"


@dataclass(frozen=True)
class Simulator:
    """A simulator known to simctl."""

    id: str
    name: str
    platform: Platform
    is_booted: bool
    is_available: bool = True


@dataclass(frozen=True)
class Device:
    """One concrete execution target, always for exactly one platform.

    ``kind`` is ``"host"``, ``"macCatalyst"``, ``"simulator"`` or
    ``"connected"`` (a physical device).
    """

    kind: str
    platform: Platform
    id: str | None = None
    name: str | None = None
    is_ready: bool = True

    @classmethod
    def host(cls, host_platform: HostPlatform) -> "Device":
        return cls("host", host_platform.platform, name="host")

    @classmethod
    def mac_catalyst(cls) -> "Device":
        return cls("macCatalyst", Platform.MAC_CATALYST, name="host")

    @classmethod
    def from_simulator(cls, simulator: Simulator) -> "Device":
        return cls(
            "simulator",
            simulator.platform,
            id=simulator.id,
            name=simulator.name,
            is_ready=simulator.is_booted,
        )

    @property
    def description(self) -> str:
        if self.kind == "host":
            return f"host ({self.platform.display_name})"
        if self.kind == "macCatalyst":
            return "host (Mac Catalyst)"
        return f"{self.name} ({self.platform.display_name}, {self.id})"


# ----------------------------------------------------------------------------
# Enumeration


def list_simulators(search_term: str | None = None) -> list[Simulator]:
    """List simulators, optionally only those matching a search term.

    A simulator matches if the term equals its id or appears in its name
    (case-insensitively).

    Raises:
        CommandError: If simctl cannot be run
        DeviceResolutionError: If simctl output cannot be parsed
    """
    output = run_command(
        ["xcrun", "simctl", "list", "devices", "--json"], log=log
    )
    try:
        runtimes = json.loads(output)["devices"]
    except (ValueError, KeyError, TypeError) as e:
        raise DeviceResolutionError("Failed to parse simulator list") from e

    simulators = []
    for runtime, entries in runtimes.items():
        os_name = runtime.rsplit(".", 1)[-1].split("-", 1)[0]
        platform = _SIMULATOR_RUNTIMES.get(os_name)
        if platform is None:
            continue
        for entry in entries:
            simulators.append(
                Simulator(
                    id=entry["udid"],
                    name=entry["name"],
                    platform=platform,
                    is_booted=entry.get("state") == "Booted",
                    is_available=entry.get("isAvailable", True),
                )
            )

    if search_term is not None:
        term = search_term.lower()
        simulators = [
            simulator
            for simulator in simulators
            if simulator.id == search_term or term in simulator.name.lower()
        ]
    return simulators


def list_connected_devices() -> list[Device]:
    """List physical Apple devices known to devicectl.

    Returns an empty list on hosts other than macOS.
    """
    if HostPlatform.current() is not HostPlatform.MACOS:
        return []
    with tempfile.TemporaryDirectory() as tmpdir:
        output_file = Path(tmpdir) / "devices.json"
        run_command(
            [
                "xcrun",
                "devicectl",
                "list",
                "devices",
                "--quiet",
                "--json-output",
                str(output_file),
            ],
            log=log,
        )
        try:
            entries = json.loads(output_file.read_text())["result"]["devices"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise DeviceResolutionError("Failed to parse device list") from e

    devices = []
    for entry in entries:
        hardware = entry.get("hardwareProperties", {})
        platform = _DEVICE_PLATFORMS.get(hardware.get("platform", ""))
        if platform is None:
            continue
        tunnel_state = entry.get("connectionProperties", {}).get("tunnelState")
        devices.append(
            Device(
                "connected",
                platform,
                id=hardware.get("udid") or entry.get("identifier"),
                name=entry.get("deviceProperties", {}).get("name", "unknown"),
                is_ready=tunnel_state == "connected",
            )
        )
    return devices


def boot_simulator(id_or_name: str) -> Simulator:
    """Boot the best simulator matching an id or name search term.

    Raises:
        DeviceResolutionError: If no simulator matches
        CommandError: If simctl fails to boot it
    """
    simulator = find_simulator(id_or_name)
    if simulator.is_booted:
        log.info("'%s' is already booted", simulator.name)
        return simulator
    log.info("Booting '%s' (%s)", simulator.name, simulator.id)
    run_command(["xcrun", "simctl", "boot", simulator.id], log=log)
    run_command(["open", "-a", "Simulator"], log=log)
    return simulator


# ----------------------------------------------------------------------------
# Resolution


def _simulator_sort_key(simulator: Simulator) -> tuple[bool, int]:
    # Booted first, then shortest name: 'iPhone 15' beats 'iPhone 15 Pro'
    return (not simulator.is_booted, len(simulator.name))


def find_simulator(
    search_term: str, platform: Platform | None = None
) -> Simulator:
    """Pick the best available simulator matching a search term.

    Raises:
        DeviceResolutionError: If no available simulator matches
    """
    simulators = [
        simulator
        for simulator in list_simulators(search_term)
        if simulator.is_available
        and (platform is None or simulator.platform is platform)
    ]
    if not simulators:
        raise DeviceResolutionError(
            f"Could not find a simulator matching '{search_term}'. "
            f"{LIST_SIMULATORS_HINT}"
        )
    simulators.sort(key=_simulator_sort_key)
    chosen = simulators[0]
    if len(simulators) > 1:
        log.info(
            "Found %d simulators matching '%s', using '%s' (%s)",
            len(simulators),
            search_term,
            chosen.name,
            chosen.id,
        )
    return chosen


def find_device(selector: str, platform: Platform | None = None) -> Device:
    """Resolve a '--device' selector against every known device.

    The selector 'host' always means the host machine. Otherwise an exact
    id match wins, then name matches ordered ready-first and
    shortest-name-first.

    Raises:
        DeviceResolutionError: If no device matches
    """
    host = HostPlatform.current()
    if selector == "host":
        if platform is Platform.MAC_CATALYST:
            return Device.mac_catalyst()
        if platform is not None and platform is not host.platform:
            raise DeviceResolutionError(
                f"The host device cannot run apps for "
                f"'{platform.display_name}'"
            )
        return Device.host(host)

    devices = [Device.host(host)] + list_connected_devices()
    if host is HostPlatform.MACOS:
        devices += [
            Device.from_simulator(simulator)
            for simulator in list_simulators()
            if simulator.is_available
        ]
    if platform is not None:
        devices = [device for device in devices if device.platform is platform]

    for device in devices:
        if device.id == selector:
            return device

    term = selector.lower()
    matches = [
        device for device in devices if term in (device.name or "").lower()
    ]
    if not matches:
        raise DeviceResolutionError(
            f"Could not find a device matching '{selector}'. "
            f"{LIST_DEVICES_HINT}"
        )
    matches.sort(key=lambda d: (not d.is_ready, len(d.name or "")))
    chosen = matches[0]
    if len(matches) > 1:
        log.warning(
            "Multiple devices matched '%s', using %s",
            selector,
            chosen.description,
        )
    return chosen


def resolve_device(
    platform: Platform | None = None,
    device: str | None = None,
    simulator: str | None = None,
) -> Device:
    """Return exactly one device for the given selectors.

    Args:
        platform: Explicitly requested platform, if any
        device: '--device' selector (id, name search term or 'host')
        simulator: '--simulator' search term

    Raises:
        DeviceResolutionError: If the selectors conflict or no single
            device can be chosen
    """
    if device is not None and simulator is not None:
        raise DeviceResolutionError(
            "'--device' and '--simulator' cannot be used at the same time"
        )
    if device is not None:
        return find_device(device, platform)
    if simulator is not None:
        if platform is not None and not platform.is_simulator:
            raise DeviceResolutionError(
                f"'--simulator' is incompatible with '--platform {platform}'"
            )
        return Device.from_simulator(find_simulator(simulator, platform))

    host = HostPlatform.current()
    if platform is None or platform is host.platform:
        return Device.host(host)
    if platform is Platform.MAC_CATALYST:
        return Device.mac_catalyst()
    if platform.is_simulator:
        booted = [
            candidate
            for candidate in list_simulators()
            if candidate.is_booted
            and candidate.is_available
            and candidate.platform is platform
        ]
        if not booted:
            raise DeviceResolutionError(
                f"No booted {platform.display_name} simulators found. "
                f"{LIST_SIMULATORS_HINT}. {BOOT_SIMULATOR_HINT}."
            )
        if len(booted) > 1:
            names = ", ".join(f"'{s.name}'" for s in booted)
            raise DeviceResolutionError(
                f"Multiple {platform.display_name} simulators are booted "
                f"({names}). Choose one with '--simulator <id-or-search-term>'"
            )
        return Device.from_simulator(booted[0])
    raise DeviceResolutionError(
        f"'--platform {platform}' requires '--device <id-or-search-term>'"
    )


def resolve_platform(
    platform: Platform | None = None,
    device: str | None = None,
    simulator: str | None = None,
) -> tuple[Platform, Device | None]:
    """Resolve the target platform for bundling.

    An explicit platform without selectors needs no search: it resolves to
    the host device when the host can run it, the Mac Catalyst device for
    'macCatalyst', and no device otherwise.
    """
    if platform is not None and device is None and simulator is None:
        host = HostPlatform.current()
        if platform is Platform.MAC_CATALYST:
            return platform, Device.mac_catalyst()
        if platform is host.platform:
            return platform, Device.host(host)
        return platform, None
    resolved = resolve_device(platform, device, simulator)
    return resolved.platform, resolved
