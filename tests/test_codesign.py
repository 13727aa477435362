"""Tests for codesigning resolution and the Codesigner class."""

import logging
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from appbundler.codesign import (
    NO_IDENTITIES_MESSAGE,
    Codesigner,
    Identity,
    list_identities,
    resolve_codesigning_context,
)
from appbundler.errors import (
    CodesignError,
    CodesigningResolutionError,
    CommandError,
)
from appbundler.platforms import Platform

DEV_ID = "0123456789ABCDEF0123456789ABCDEF01234567"
DIST_ID = "89ABCDEF0123456789ABCDEF0123456789ABCDEF"

FIND_IDENTITY_OUTPUT = f"""\
  1) {DEV_ID} "Apple Development: Jo Example (TEAM123)"
  2) {DIST_ID} "Apple Distribution: Example Ltd (TEAM123)"
     2 valid identities found
"""


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def identities():
    """Patch the keychain query with two identities."""
    with patch(
        "appbundler.codesign.run_command", return_value=FIND_IDENTITY_OUTPUT
    ) as mock_run:
        yield mock_run


class TestIdentities:
    """Tests for listing identities."""

    def test_parse(self, identities):
        """Test parsing 'security find-identity' output."""
        assert list_identities() == [
            Identity(DEV_ID, "Apple Development: Jo Example (TEAM123)"),
            Identity(DIST_ID, "Apple Distribution: Example Ltd (TEAM123)"),
        ]

    def test_command_failure(self):
        """Test that a failing security tool is a resolution error."""
        with patch(
            "appbundler.codesign.run_command",
            side_effect=CommandError("security find-identity", 1),
        ):
            with pytest.raises(CodesigningResolutionError, match="list"):
                list_identities()


class TestResolveCodesigningContext:
    """Tests for resolve_codesigning_context."""

    def test_non_apple_without_options(self):
        """Test that non-Apple platforms aren't signed."""
        assert resolve_codesigning_context(Platform.LINUX) is None

    def test_non_apple_with_options(self):
        """Test that signing options are rejected for non-Apple platforms."""
        with pytest.raises(CodesigningResolutionError) as info:
            resolve_codesigning_context(
                Platform.LINUX, codesign=True, identity="Jo"
            )
        assert str(info.value) == (
            "'--codesign' and '--identity' aren't supported when targeting "
            "'linux'"
        )

    def test_macos_unsigned_by_default(self):
        """Test that macOS bundles aren't signed unless requested."""
        assert resolve_codesigning_context(Platform.MACOS) is None

    def test_options_without_codesign(self, temp_dir):
        """Test that identities and entitlements need '--codesign'."""
        entitlements = temp_dir / "App.entitlements"
        entitlements.write_text("<plist/>")
        with pytest.raises(
            CodesigningResolutionError, match="invalid when not codesigning"
        ):
            resolve_codesigning_context(
                Platform.MACOS, identity="Jo", entitlements=entitlements
            )

    def test_provisioning_platform_infers_codesign(self, identities, caplog):
        """Test that iOS implies '--codesign'."""
        with caplog.at_level(logging.INFO):
            context = resolve_codesigning_context(Platform.IOS)
        assert context.identity.id == DEV_ID
        assert "inferred" in caplog.text

    def test_provisioning_platform_rejects_no_codesign(self):
        """Test that iOS can't be built with '--no-codesign'."""
        with pytest.raises(
            CodesigningResolutionError, match="requires provisioning"
        ):
            resolve_codesigning_context(Platform.IOS, codesign=False)

    def test_identity_by_name(self, identities):
        """Test selecting an identity by a substring of its name."""
        context = resolve_codesigning_context(
            Platform.MACOS, codesign=True, identity="Distribution"
        )
        assert context.identity.id == DIST_ID

    def test_identity_by_id(self, identities):
        """Test selecting an identity by its id."""
        context = resolve_codesigning_context(
            Platform.MACOS, codesign=True, identity=DIST_ID
        )
        assert context.identity.name.startswith("Apple Distribution")

    def test_unknown_identity(self, identities):
        """Test that unknown identities are reported."""
        with pytest.raises(CodesigningResolutionError, match="not found"):
            resolve_codesigning_context(
                Platform.MACOS, codesign=True, identity="Nobody"
            )

    def test_no_identities(self):
        """Test the error when the keychain has no identities."""
        with patch("appbundler.codesign.run_command", return_value=""):
            with pytest.raises(CodesigningResolutionError) as info:
                resolve_codesigning_context(Platform.MACOS, codesign=True)
        assert str(info.value) == NO_IDENTITIES_MESSAGE

    def test_missing_entitlements(self, identities, temp_dir):
        """Test that entitlements files must exist."""
        with pytest.raises(CodesigningResolutionError, match="--entitlements"):
            resolve_codesigning_context(
                Platform.MACOS,
                codesign=True,
                entitlements=temp_dir / "missing.entitlements",
            )

    def test_files_are_carried(self, identities, temp_dir):
        """Test that entitlements and profiles end up in the context."""
        entitlements = temp_dir / "App.entitlements"
        profile = temp_dir / "App.mobileprovision"
        entitlements.write_text("<plist/>")
        profile.write_bytes(b"profile")
        context = resolve_codesigning_context(
            Platform.IOS,
            entitlements=str(entitlements),
            provisioning_profile=profile,
        )
        assert context.entitlements == entitlements
        assert context.provisioning_profile == profile


class TestCodesigner:
    """Tests for the Codesigner class."""

    def make_bundle(self, root):
        app = root / "App.app"
        (app / "Contents" / "MacOS").mkdir(parents=True)
        (app / "Contents" / "MacOS" / "App").write_bytes(b"exe")
        (app / "Contents" / "Frameworks" / "Engine.framework").mkdir(
            parents=True
        )
        (app / "Contents" / "Frameworks" / "libengine.dylib").write_bytes(b"")
        (app / "Contents" / "Resources").mkdir()
        (app / "Contents" / "Resources" / "readme.txt").write_text("hi")
        return app

    def test_collect(self, temp_dir):
        """Test that signable targets are categorized."""
        app = self.make_bundle(temp_dir)
        signer = Codesigner(app)
        signer.collect()
        assert signer.targets_internals == {
            app / "Contents" / "Frameworks" / "libengine.dylib"
        }
        assert signer.targets_frameworks == {
            app / "Contents" / "Frameworks" / "Engine.framework"
        }
        assert signer.targets_apps == set()

    def test_signing_order(self, temp_dir):
        """Test that nested code is signed before the main bundle."""
        app = self.make_bundle(temp_dir)
        identity = Identity(DEV_ID, "Apple Development: Jo")
        with patch("appbundler.codesign.run_command") as mock_run:
            Codesigner(app, identity=identity, verify=False).process()
        signed = [call.args[0][-1] for call in mock_run.call_args_list]
        assert signed == [
            str(app / "Contents" / "Frameworks" / "libengine.dylib"),
            str(app / "Contents" / "Frameworks" / "Engine.framework"),
            str(app),
        ]
        main_command = mock_run.call_args_list[-1].args[0]
        assert main_command[:3] == ["codesign", "--sign", DEV_ID]
        assert "--timestamp" in main_command
        assert "runtime" in main_command

    def test_adhoc_signing(self, temp_dir):
        """Test that no identity means ad-hoc signing."""
        app = self.make_bundle(temp_dir)
        with patch("appbundler.codesign.run_command") as mock_run:
            Codesigner(app, hardened_runtime=False, verify=False).process()
        command = mock_run.call_args_list[-1].args[0]
        assert command[:3] == ["codesign", "--sign", "-"]
        assert "--timestamp" not in command
        assert "runtime" not in command

    def test_entitlements(self, temp_dir):
        """Test that entitlements only apply to the main bundle."""
        app = self.make_bundle(temp_dir)
        entitlements = temp_dir / "App.entitlements"
        entitlements.write_text("<plist/>")
        with patch("appbundler.codesign.run_command") as mock_run:
            Codesigner(app, entitlements=entitlements, verify=False).process()
        commands = [call.args[0] for call in mock_run.call_args_list]
        assert "--entitlements" in commands[-1]
        assert all("--entitlements" not in c for c in commands[:-1])

    def test_missing_entitlements(self, temp_dir):
        """Test that a missing entitlements file is an error."""
        with pytest.raises(CodesignError, match="not found"):
            Codesigner(temp_dir, entitlements=temp_dir / "missing")

    def test_verification_failure(self, temp_dir):
        """Test that a failed verification raises CodesignError."""
        app = self.make_bundle(temp_dir)

        def fake_run(command, **kwargs):
            if "--verify" in command:
                raise CommandError("codesign --verify", 1)
            return ""

        with patch("appbundler.codesign.run_command", side_effect=fake_run):
            with pytest.raises(CodesignError, match="verification"):
                Codesigner(app).process()

    def test_signing_failure(self, temp_dir):
        """Test that codesign failures are wrapped."""
        app = self.make_bundle(temp_dir)
        with patch(
            "appbundler.codesign.run_command",
            side_effect=CommandError("codesign", 1),
        ):
            with pytest.raises(CodesignError, match="Failed to codesign"):
                Codesigner(app).process()
