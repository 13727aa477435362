"""Codesigning decisions and the signing tool driver.

:func:`resolve_codesigning_context` decides whether a bundle gets signed
and with what. :class:`Codesigner` then drives Apple's ``codesign`` tool
over a finished bundle, innermost code first.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from .errors import (
    CodesignError,
    CodesigningResolutionError,
    CommandError,
)
from .platforms import Platform
from .utils import Pathlike, run_command

# File extensions for code signing
SIGNABLE_FILE_EXTENSIONS = [".so", ".dylib"]
SIGNABLE_FOLDER_EXTENSIONS = [".framework", ".app", ".bundle", ".appex"]

# `security find-identity` lines look like:
#   1) 0123456789ABCDEF0123456789ABCDEF01234567 "Apple Development: Jo (TEAM)"
IDENTITY_PATTERN = re.compile(r'^\s*\d+\)\s+([0-9A-F]{40})\s+"(.+)"\s*$')

NO_IDENTITIES_MESSAGE = (
    "No codesigning identities found. Please sign into Xcode and try again."
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """A codesigning identity installed in the keychain."""

    id: str
    name: str


@dataclass(frozen=True)
class CodesigningContext:
    """Everything needed to sign one bundle."""

    identity: Identity
    entitlements: Path | None = None
    provisioning_profile: Path | None = None


# ----------------------------------------------------------------------------
# Identities


def list_identities() -> list[Identity]:
    """Enumerate the valid codesigning identities in the keychain.

    Raises:
        CodesigningResolutionError: If the identities cannot be listed
    """
    try:
        output = run_command(
            ["security", "find-identity", "-pcodesigning", "-v"], log=log
        )
    except CommandError as e:
        raise CodesigningResolutionError(
            "Failed to list codesigning identities"
        ) from e
    identities = []
    for line in output.splitlines():
        match = IDENTITY_PATTERN.match(line)
        if match:
            identities.append(Identity(id=match.group(1), name=match.group(2)))
    return identities


def find_identity(short_name: str) -> Identity:
    """Find an identity by exact id or by a substring of its name.

    Raises:
        CodesigningResolutionError: If no identity matches
    """
    for identity in list_identities():
        if identity.id == short_name or short_name in identity.name:
            return identity
    raise CodesigningResolutionError(
        f"Identity '{short_name}' not found. List the available identities "
        "with 'appbundler identities'"
    )


# ----------------------------------------------------------------------------
# Resolution


def _quoted_options(options: list[str]) -> str:
    quoted = [f"'{option}'" for option in options]
    if len(quoted) == 1:
        return quoted[0]
    return f"{', '.join(quoted[:-1])} and {quoted[-1]}"


def resolve_codesigning_context(
    platform: Platform,
    codesign: bool | None = None,
    identity: str | None = None,
    entitlements: Pathlike | None = None,
    provisioning_profile: Pathlike | None = None,
) -> CodesigningContext | None:
    """Decide whether and how to sign for a target platform.

    Args:
        platform: The resolved target platform
        codesign: True/False if '--codesign'/'--no-codesign' was given,
            None if neither was
        identity: Short name or id of the identity to sign with
        entitlements: Entitlements file to sign with
        provisioning_profile: Provisioning profile to embed

    Returns:
        The signing inputs, or None if the bundle isn't signed

    Raises:
        CodesigningResolutionError: If the inputs are inconsistent with
            each other or with the platform, or no identity is available
    """
    options = []
    if codesign:
        options.append("--codesign")
    if identity is not None:
        options.append("--identity")
    if entitlements is not None:
        options.append("--entitlements")
    if provisioning_profile is not None:
        options.append("--provisioning-profile")

    if not platform.is_apple:
        if options:
            verb = "isn't" if len(options) == 1 else "aren't"
            raise CodesigningResolutionError(
                f"{_quoted_options(options)} {verb} supported when "
                f"targeting '{platform}'"
            )
        return None

    if platform.requires_provisioning_profiles:
        if codesign is False:
            raise CodesigningResolutionError(
                f"'--platform {platform}' is incompatible with "
                "'--no-codesign' because it requires provisioning profiles"
            )
        if codesign is None:
            log.info(
                "'--platform %s' requires codesigning, so '--codesign' has "
                "been inferred",
                platform,
            )
            codesign = True

    if not codesign:
        misused = [option for option in options if option != "--codesign"]
        if misused:
            raise CodesigningResolutionError(
                f"{_quoted_options(misused)} "
                f"{'is' if len(misused) == 1 else 'are'} invalid when not "
                "codesigning"
            )
        return None

    for option, path in (
        ("--entitlements", entitlements),
        ("--provisioning-profile", provisioning_profile),
    ):
        if path is not None and not Path(path).exists():
            raise CodesigningResolutionError(
                f"The file passed to '{option}' does not exist: {path}"
            )

    if identity is not None:
        resolved = find_identity(identity)
    else:
        identities = list_identities()
        if not identities:
            raise CodesigningResolutionError(NO_IDENTITIES_MESSAGE)
        resolved = identities[0]
        if len(identities) > 1:
            log.info(
                "Multiple codesigning identities found, using '%s' "
                "(select another with '--identity <name-or-id>')",
                resolved.name,
            )

    return CodesigningContext(
        identity=resolved,
        entitlements=Path(entitlements) if entitlements is not None else None,
        provisioning_profile=(
            Path(provisioning_profile)
            if provisioning_profile is not None
            else None
        ),
    )


# ----------------------------------------------------------------------------
# Signing


class Codesigner:
    """Recursively codesign an app bundle.

    This class handles the proper ordering of codesigning operations:
    1. Sign internal binaries (.so, .dylib, helper bundles) first
    2. Sign nested .app bundles
    3. Sign frameworks
    4. Sign the main bundle with entitlements

    Args:
        path: Path to the bundle to sign
        identity: Identity to sign with (None for ad-hoc signing)
        entitlements: Path to entitlements.plist file
        hardened_runtime: If True, sign with '--options runtime'
        dry_run: If True, only log what would be signed
        verify: If True, verify signatures after signing

    Example:
        signer = Codesigner("MyApp.app", identity=identity,
                            entitlements="App.entitlements")
        signer.process()
    """

    FILE_EXTENSIONS: list[str] = SIGNABLE_FILE_EXTENSIONS
    FOLDER_EXTENSIONS: list[str] = SIGNABLE_FOLDER_EXTENSIONS

    def __init__(
        self,
        path: Pathlike,
        identity: Identity | None = None,
        entitlements: Pathlike | None = None,
        hardened_runtime: bool = True,
        dry_run: bool = False,
        verify: bool = True,
    ) -> None:
        self.path = Path(path)
        self.identity = identity
        self.hardened_runtime = hardened_runtime
        self.dry_run = dry_run
        self.verify_after = verify
        self.log = logging.getLogger(self.__class__.__name__)

        self.entitlements: Path | None
        if entitlements:
            self.entitlements = Path(entitlements)
            if not self.entitlements.exists():
                raise CodesignError(
                    f"Entitlements file not found: {self.entitlements}"
                )
        else:
            self.entitlements = None

        # Target collections
        self.targets_internals: set[Path] = set()
        self.targets_apps: set[Path] = set()
        self.targets_frameworks: set[Path] = set()

        self._cmd_codesign_base = [
            "codesign",
            "--sign",
            identity.id if identity else "-",
            "--force",
        ]
        if identity:
            self._cmd_codesign_base.append("--timestamp")

    def run_command(self, command: list[str]) -> str:
        """Run a command through the shared command runner."""
        return run_command(command, dry_run=self.dry_run, log=self.log)

    def collect(self) -> None:
        """Walk the bundle and categorize all signable targets."""
        for root, folders, files in os.walk(self.path):
            root_path = Path(root)

            for fname in files:
                fpath = root_path / fname
                if fpath.is_symlink():
                    continue
                if fpath.suffix in self.FILE_EXTENSIONS:
                    self.log.debug("added binary: %s", fpath)
                    self.targets_internals.add(fpath)

            for folder in folders:
                fpath = root_path / folder
                if fpath.is_symlink():
                    continue
                if fpath.suffix in self.FOLDER_EXTENSIONS:
                    self.log.debug("added bundle: %s", fpath)
                    if fpath.suffix == ".framework":
                        self.targets_frameworks.add(fpath)
                    elif fpath.suffix == ".app":
                        self.targets_apps.add(fpath)
                    else:
                        self.targets_internals.add(fpath)

        helpers = self.path / "Contents" / "Helpers"
        if helpers.is_dir():
            for helper in helpers.iterdir():
                if helper.is_file() and not helper.is_symlink():
                    self.targets_internals.add(helper)

    def sign_internal_binary(self, path: Path) -> None:
        """Sign nested code without entitlements."""
        self.log.info("signing internal: %s", path)
        self.run_command(self._cmd_codesign_base + [str(path)])

    def sign_runtime(self, path: Path | None = None) -> None:
        """Sign a bundle with optional runtime hardening and entitlements.

        Args:
            path: Path to sign (defaults to main bundle path)
        """
        if path is None:
            path = self.path

        cmd_parts = list(self._cmd_codesign_base)
        if self.hardened_runtime:
            cmd_parts.extend(["--options", "runtime"])
        if self.entitlements:
            cmd_parts.extend(["--entitlements", str(self.entitlements)])
        cmd_parts.append(str(path))

        self.log.info("signing runtime: %s", path)
        self.run_command(cmd_parts)

    def verify_signature(self, path: Path) -> bool:
        """Verify codesigning of a path.

        Returns:
            True if verification succeeds
        """
        try:
            self.run_command(["codesign", "--verify", "--verbose", str(path)])
            self.log.info("verified: %s", path)
            return True
        except CommandError as e:
            self.log.error("verification failed for %s: %s", path, e)
            return False

    def process(self) -> None:
        """Execute the full signing workflow.

        Raises:
            CodesignError: If signing or verification fails
        """
        if not self.targets_internals:
            self.collect()

        try:
            for path in sorted(self.targets_internals):
                self.sign_internal_binary(path)

            for path in sorted(self.targets_apps):
                macos_path = path / "Contents" / "MacOS"
                if macos_path.exists():
                    for exe in sorted(macos_path.iterdir()):
                        if exe.is_file() and not exe.is_symlink():
                            self.sign_internal_binary(exe)
                self.sign_runtime(path)

            for path in sorted(self.targets_frameworks):
                self.sign_internal_binary(path)

            self.sign_runtime()
        except CommandError as e:
            raise CodesignError(f"Failed to codesign '{self.path}'") from e

        if self.verify_after and not self.dry_run:
            if not self.verify_signature(self.path):
                raise CodesignError(
                    f"Signature verification failed: {self.path}"
                )
