"""Packaging backends, one per :class:`~appbundler.platforms.BundlerChoice`."""

from ..platforms import BundlerChoice
from .android import AndroidAPKBundler
from .base import Bundler
from .darwin import DarwinBundler
from .linux import LinuxAppImageBundler, LinuxGenericBundler, LinuxRPMBundler
from .windows import WindowsGenericBundler, WindowsMSIBundler

BACKENDS: dict[BundlerChoice, type[Bundler]] = {
    BundlerChoice.DARWIN_APP: DarwinBundler,
    BundlerChoice.LINUX_GENERIC: LinuxGenericBundler,
    BundlerChoice.LINUX_APPIMAGE: LinuxAppImageBundler,
    BundlerChoice.LINUX_RPM: LinuxRPMBundler,
    BundlerChoice.WINDOWS_GENERIC: WindowsGenericBundler,
    BundlerChoice.WINDOWS_MSI: WindowsMSIBundler,
    BundlerChoice.ANDROID_APK: AndroidAPKBundler,
}


def get_bundler(choice: BundlerChoice) -> Bundler:
    """Instantiate the backend for a bundler choice."""
    return BACKENDS[choice]()


__all__ = [
    "BACKENDS",
    "AndroidAPKBundler",
    "Bundler",
    "DarwinBundler",
    "LinuxAppImageBundler",
    "LinuxGenericBundler",
    "LinuxRPMBundler",
    "WindowsGenericBundler",
    "WindowsMSIBundler",
    "get_bundler",
]
