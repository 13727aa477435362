"""appbundler - build Swift packages into distributable apps.

This package provides tools for:
1. Describing apps in a Bundler.toml with per-platform overlays
2. Resolving target devices and codesigning identities
3. Building apps and their dependencies with SwiftPM or xcodebuild
4. Packaging the result with one of several platform backends

Usage (CLI):
    appbundler bundle MyApp --platform linux --bundler linuxAppImage
    appbundler run --simulator 'iPhone 15'

Usage (API):
    from appbundler import BundleOptions, bundle

    output = bundle(BundleOptions(app_name="MyApp", dry_run=True))
    print(output.bundle)
"""

__version__ = "0.1.0"

from .errors import BundlerError
from .orchestrator import (
    BundleCommand,
    BundleOptions,
    ConfigurationCache,
    bundle,
)
from .runner import RunCommand, RunOptions, run

__all__ = [
    "BundleCommand",
    "BundleOptions",
    "BundlerError",
    "ConfigurationCache",
    "RunCommand",
    "RunOptions",
    "__version__",
    "bundle",
    "run",
]
