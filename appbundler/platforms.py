"""Target platforms, host platforms, architectures and backend choices."""

import platform as _platform
import sys
from enum import Enum


class Platform(Enum):
    """A platform that apps can be bundled for."""

    MACOS = "macOS"
    MAC_CATALYST = "macCatalyst"
    IOS = "iOS"
    IOS_SIMULATOR = "iOSSimulator"
    VISIONOS = "visionOS"
    VISIONOS_SIMULATOR = "visionOSSimulator"
    TVOS = "tvOS"
    TVOS_SIMULATOR = "tvOSSimulator"
    LINUX = "linux"
    WINDOWS = "windows"
    ANDROID = "android"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Look a platform up by its identifier, e.g. 'iOSSimulator'."""
        for member in cls:
            if member.value == value:
                return member
        choices = "|".join(member.value for member in cls)
        raise ValueError(f"Unknown platform '{value}' (expected {choices})")

    @property
    def is_apple(self) -> bool:
        return self in _APPLE_PLATFORMS

    @property
    def is_simulator(self) -> bool:
        return self in (
            Platform.IOS_SIMULATOR,
            Platform.VISIONOS_SIMULATOR,
            Platform.TVOS_SIMULATOR,
        )

    @property
    def requires_provisioning_profiles(self) -> bool:
        """Physical mobile devices only run signed, provisioned apps."""
        return self in (Platform.IOS, Platform.VISIONOS, Platform.TVOS)

    @property
    def executable_extension(self) -> str:
        return ".exe" if self is Platform.WINDOWS else ""

    @property
    def sdk_name(self) -> str | None:
        """The Apple SDK name passed to xcrun and xcodebuild."""
        return _SDK_NAMES.get(self)

    @property
    def manifest_name(self) -> str | None:
        """The key used for this platform in a package manifest."""
        return _MANIFEST_NAMES.get(self)

    @property
    def default_minimum_version(self) -> str | None:
        return _DEFAULT_MINIMUM_VERSIONS.get(self)

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES.get(self, self.value)


_APPLE_PLATFORMS = frozenset(
    {
        Platform.MACOS,
        Platform.MAC_CATALYST,
        Platform.IOS,
        Platform.IOS_SIMULATOR,
        Platform.VISIONOS,
        Platform.VISIONOS_SIMULATOR,
        Platform.TVOS,
        Platform.TVOS_SIMULATOR,
    }
)

_SDK_NAMES = {
    Platform.MACOS: "macosx",
    Platform.MAC_CATALYST: "macosx",
    Platform.IOS: "iphoneos",
    Platform.IOS_SIMULATOR: "iphonesimulator",
    Platform.VISIONOS: "xros",
    Platform.VISIONOS_SIMULATOR: "xrsimulator",
    Platform.TVOS: "appletvos",
    Platform.TVOS_SIMULATOR: "appletvsimulator",
}

_MANIFEST_NAMES = {
    Platform.MACOS: "macos",
    Platform.MAC_CATALYST: "maccatalyst",
    Platform.IOS: "ios",
    Platform.IOS_SIMULATOR: "ios",
    Platform.VISIONOS: "visionos",
    Platform.VISIONOS_SIMULATOR: "visionos",
    Platform.TVOS: "tvos",
    Platform.TVOS_SIMULATOR: "tvos",
}

_DEFAULT_MINIMUM_VERSIONS = {
    Platform.MACOS: "10.13",
    Platform.MAC_CATALYST: "13.1",
    Platform.IOS: "12.0",
    Platform.IOS_SIMULATOR: "12.0",
    Platform.VISIONOS: "1.0",
    Platform.VISIONOS_SIMULATOR: "1.0",
    Platform.TVOS: "12.0",
    Platform.TVOS_SIMULATOR: "12.0",
    Platform.ANDROID: "28",
}

_DISPLAY_NAMES = {
    Platform.MAC_CATALYST: "Mac Catalyst",
    Platform.IOS_SIMULATOR: "iOS Simulator",
    Platform.VISIONOS_SIMULATOR: "visionOS Simulator",
    Platform.TVOS_SIMULATOR: "tvOS Simulator",
    Platform.LINUX: "Linux",
    Platform.WINDOWS: "Windows",
    Platform.ANDROID: "Android",
}


class HostPlatform(Enum):
    """A platform appbundler itself can run on."""

    MACOS = "macOS"
    LINUX = "linux"
    WINDOWS = "windows"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def current(cls) -> "HostPlatform":
        if sys.platform == "darwin":
            return cls.MACOS
        if sys.platform in ("win32", "cygwin"):
            return cls.WINDOWS
        return cls.LINUX

    @property
    def platform(self) -> Platform:
        return Platform(self.value)


class Architecture(Enum):
    """A CPU architecture to build for."""

    ARM64 = "arm64"
    X86_64 = "x86_64"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def current(cls) -> "Architecture":
        machine = _platform.machine().lower()
        if machine in ("arm64", "aarch64"):
            return cls.ARM64
        return cls.X86_64

    @property
    def linux_name(self) -> str:
        """The architecture's name in non-Apple target triples."""
        return "aarch64" if self is Architecture.ARM64 else "x86_64"

    @property
    def android_abi(self) -> str:
        return "arm64-v8a" if self is Architecture.ARM64 else "x86_64"


class BuildConfiguration(Enum):
    """The build configuration passed to the compiler."""

    DEBUG = "debug"
    RELEASE = "release"

    def __str__(self) -> str:
        return self.value

    @property
    def xcode_name(self) -> str:
        return self.value.capitalize()


# ----------------------------------------------------------------------------
# Backend choices and their capability facts


class BundlerChoice(Enum):
    """A packaging backend that can be selected with '--bundler'."""

    DARWIN_APP = "darwinApp"
    LINUX_GENERIC = "linuxGeneric"
    LINUX_APPIMAGE = "linuxAppImage"
    LINUX_RPM = "linuxRPM"
    WINDOWS_GENERIC = "windowsGeneric"
    WINDOWS_MSI = "windowsMSI"
    ANDROID_APK = "androidAPK"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> "BundlerChoice":
        for member in cls:
            if member.value == value:
                return member
        choices = "|".join(member.value for member in cls)
        raise ValueError(f"Unknown bundler '{value}' (expected {choices})")

    @property
    def supported_target_platforms(self) -> tuple[Platform, ...]:
        if self is BundlerChoice.DARWIN_APP:
            return tuple(p for p in Platform if p.is_apple)
        if self in _LINUX_CHOICES:
            return (Platform.LINUX,)
        if self in _WINDOWS_CHOICES:
            return (Platform.WINDOWS,)
        return (Platform.ANDROID,)

    @property
    def supported_host_platforms(self) -> tuple[HostPlatform, ...]:
        if self is BundlerChoice.DARWIN_APP:
            return (HostPlatform.MACOS,)
        if self in _LINUX_CHOICES:
            return (HostPlatform.LINUX,)
        if self in _WINDOWS_CHOICES:
            return (HostPlatform.WINDOWS,)
        return tuple(HostPlatform)

    @property
    def is_supported_on_host_platform(self) -> bool:
        return HostPlatform.current() in self.supported_host_platforms

    @classmethod
    def default_for_host_platform(cls) -> "BundlerChoice":
        return {
            HostPlatform.MACOS: cls.DARWIN_APP,
            HostPlatform.LINUX: cls.LINUX_GENERIC,
            HostPlatform.WINDOWS: cls.WINDOWS_GENERIC,
        }[HostPlatform.current()]

    @classmethod
    def default_for_target_platform(
        cls, platform: Platform
    ) -> "BundlerChoice":
        if platform.is_apple:
            return cls.DARWIN_APP
        return {
            Platform.LINUX: cls.LINUX_GENERIC,
            Platform.WINDOWS: cls.WINDOWS_GENERIC,
            Platform.ANDROID: cls.ANDROID_APK,
        }[platform]

    @classmethod
    def supported_host_values_description(cls) -> str:
        supported = [c.value for c in cls if c.is_supported_on_host_platform]
        return f"({'|'.join(supported)})"


_LINUX_CHOICES = (
    BundlerChoice.LINUX_GENERIC,
    BundlerChoice.LINUX_APPIMAGE,
    BundlerChoice.LINUX_RPM,
)
_WINDOWS_CHOICES = (BundlerChoice.WINDOWS_GENERIC, BundlerChoice.WINDOWS_MSI)
