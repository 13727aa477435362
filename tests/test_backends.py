"""Tests for the packaging backends."""

import plistlib
import tarfile
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from appbundler.backends import BACKENDS, get_bundler
from appbundler.backends.android import AndroidAPKBundler
from appbundler.backends.darwin import DarwinBundler, DylibRelinker
from appbundler.backends.linux import (
    LinuxAppImageBundler,
    LinuxBundleStructure,
    LinuxGenericBundler,
    LinuxRPMBundler,
    generate_rpm_spec,
)
from appbundler.backends.windows import (
    WindowsGenericBundler,
    generate_wxs,
    manifest_version,
    upgrade_code,
)
from appbundler.config import FlatAppConfiguration, ProductType, ProjectProduct
from appbundler.context import BuiltDependency, BundlerContext
from appbundler.errors import PackagingError
from appbundler.platforms import (
    Architecture,
    BuildConfiguration,
    BundlerChoice,
    Platform,
)
from appbundler.swiftpm import PackageManifest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_context(root, platform=Platform.LINUX, **app_fields):
    products = root / "products"
    products.mkdir(parents=True, exist_ok=True)
    executable = products / "App"
    executable.write_bytes(b"executable")
    values = {
        "identifier": "com.example.App",
        "product": "App",
        "version": "1.2.3",
    }
    values.update(app_fields)
    return BundlerContext(
        app_name="Hello",
        package_name="App",
        app_configuration=FlatAppConfiguration(**values),
        package_directory=root,
        scratch_directory=root / ".build",
        products_directory=products,
        output_directory=root / "out",
        platform=platform,
        build_configuration=BuildConfiguration.DEBUG,
        architectures=(Architecture.X86_64,),
        executable_artifact=executable,
    )


def add_library(context, name="engine"):
    library = context.products_directory / f"lib{name}.so"
    library.write_bytes(b"library")
    context.add_built_dependencies(
        {
            f"{name}.{name}": BuiltDependency(
                ProjectProduct(name, ProductType.DYNAMIC_LIBRARY), (library,)
            )
        }
    )
    return library


DARWIN_OPTIONS = SimpleNamespace(
    universal=False, built_with_xcode=False, xcodebuild=None
)


class TestRegistry:
    """Tests for the backend dispatch table."""

    def test_every_choice_has_a_backend(self):
        """Test that each bundler choice maps to its backend."""
        assert set(BACKENDS) == set(BundlerChoice)
        for choice, backend in BACKENDS.items():
            assert backend.choice is choice
            assert isinstance(get_bundler(choice), backend)

    def test_runnable_outputs(self):
        """Test which backends produce runnable outputs."""
        runnable = {
            choice
            for choice, backend in BACKENDS.items()
            if backend.output_is_runnable
        }
        assert runnable == {
            BundlerChoice.DARWIN_APP,
            BundlerChoice.LINUX_GENERIC,
            BundlerChoice.LINUX_APPIMAGE,
            BundlerChoice.WINDOWS_GENERIC,
        }
        assert AndroidAPKBundler.requires_build_as_dylib


class TestLinuxGeneric:
    """Tests for the generic Linux backend."""

    def test_bundle(self, temp_dir):
        """Test the generic bundle layout and desktop file."""
        context = make_context(temp_dir, url_schemes=("hello",))
        library = add_library(context)
        bundler = LinuxGenericBundler()
        with patch(
            "appbundler.backends.linux.run_command", return_value=""
        ) as mock_run:
            output = bundler.bundle(
                context, bundler.compute_context(context, None, None)
            )

        root = temp_dir / "out" / "Hello.generic"
        assert output.bundle == root
        assert output.executable == root / "usr" / "bin" / "Hello"
        assert output.executable.read_bytes() == b"executable"
        assert (root / "usr" / "lib" / library.name).exists()

        desktop = (
            root / "usr" / "share" / "applications" / "com.example.App.desktop"
        ).read_text()
        assert desktop.startswith("[Desktop Entry]\n")
        assert "Exec=/usr/bin/Hello %U" in desktop
        assert "MimeType=x-scheme-handler/hello" in desktop
        assert "DBusActivatable" not in desktop

        patchelf = [
            call.args[0]
            for call in mock_run.call_args_list
            if call.args[0][0] == "patchelf"
        ]
        main_runpath = [
            "patchelf",
            "--set-rpath",
            "$ORIGIN/../lib",
            str(output.executable),
        ]
        assert main_runpath in patchelf

    def test_dbus_service(self, temp_dir):
        """Test that D-Bus activatable apps get a service file."""
        context = make_context(temp_dir, dbus_activatable=True)
        bundler = LinuxGenericBundler()
        with patch("appbundler.backends.linux.run_command", return_value=""):
            bundler.bundle(context, bundler.compute_context(context, None, None))
        root = temp_dir / "out" / "Hello.generic" / "usr" / "share"
        service = root / "dbus-1" / "services" / "com.example.App.service"
        assert service.read_text() == (
            "[D-BUS Service]\n"
            "Name=com.example.App\n"
            'Exec="/usr/bin/Hello"\n'
        )
        desktop = root / "applications" / "com.example.App.desktop"
        assert "DBusActivatable=true" in desktop.read_text()

    def test_runtime_libraries(self, temp_dir):
        """Test that only allow-listed or locally built libraries travel."""
        context = make_context(temp_dir)
        local = context.products_directory / "libhelper.so"
        local.write_bytes(b"")
        ldd_output = (
            "\tlinux-vdso.so.1 (0x00007ffc)\n"
            "\tlibswiftCore.so => /usr/lib/swift/libswiftCore.so (0x00007f01)\n"
            "\tlibc.so.6 => /lib/x86_64-linux-gnu/libc.so.6 (0x00007f02)\n"
            f"\tlibhelper.so => {local} (0x00007f03)\n"
        )
        with patch(
            "appbundler.backends.linux.run_command", return_value=ldd_output
        ):
            libraries = LinuxGenericBundler().runtime_libraries(
                context.executable_artifact, context.products_directory
            )
        assert [library.name for library in libraries] == [
            "libswiftCore.so",
            "libhelper.so",
        ]

    def test_dry_run_matches_bundle(self, temp_dir):
        """Test that intended_output describes what bundle produces."""
        context = make_context(temp_dir)
        bundler = LinuxGenericBundler()
        additional = bundler.compute_context(context, None, None)
        intended = bundler.intended_output(context, additional)
        assert not intended.bundle.exists()
        with patch("appbundler.backends.linux.run_command", return_value=""):
            assert bundler.bundle(context, additional) == intended


class TestLinuxAppImage:
    """Tests for the AppImage backend."""

    def test_bundle(self, temp_dir):
        """Test the AppDir links and appimagetool invocation."""
        context = make_context(temp_dir)
        bundler = LinuxAppImageBundler()

        def fake_run(command, **kwargs):
            if command[0] == "appimagetool":
                Path(command[2]).write_bytes(b"appimage")
            return ""

        with patch(
            "appbundler.backends.linux.run_command", side_effect=fake_run
        ) as mock_run:
            output = bundler.bundle(context, None)

        app_dir = temp_dir / "out" / "Hello.AppDir"
        assert output.bundle == temp_dir / "out" / "Hello.AppImage"
        assert output.executable == output.bundle
        assert output.additional_outputs == (temp_dir / "out" / "Hello.desktop",)
        assert (app_dir / "AppRun").is_symlink()
        assert str((app_dir / "AppRun").readlink()) == "usr/bin/Hello"
        assert not (temp_dir / "out" / "Hello.generic").exists()
        command = mock_run.call_args_list[-1]
        assert command.args[0][0] == "appimagetool"
        assert command.kwargs["env"]["ARCH"] == "x86_64"
        assert bundler.intended_output(context, None) == output


class TestLinuxRPM:
    """Tests for the RPM backend."""

    def test_spec(self, temp_dir):
        """Test the generated spec file."""
        structure = LinuxBundleStructure(temp_dir, "Hello", "com.example.App")
        spec = generate_rpm_spec(
            escaped_app_name="hello-world",
            version="1.2.3",
            summary="Hello World",
            structure=structure,
            source_archive_name="hello-world-1.2.3.tar.gz",
            installation_root=PurePosixPath("/opt/hello-world"),
            requirements=("gtk4 >= 4.0", "libadwaita"),
        )
        assert "Name:           hello-world\n" in spec
        assert "Version:        1.2.3\n" in spec
        assert "Source0:        hello-world-1.2.3.tar.gz\n" in spec
        assert "Requires:       gtk4 >= 4.0\n" in spec
        assert "Requires:       libadwaita\n" in spec
        assert "INSTALL_ROOT=$RPM_BUILD_ROOT/opt/hello-world\n" in spec
        assert (
            "FILE_SRC=$INSTALL_ROOT/usr/share/applications/"
            "com.example.App.desktop" in spec
        )
        assert spec.endswith(
            '%files\n"/opt/hello-world"\n'
            '"/usr/share/applications/com.example.App.desktop"\n'
        )

    def test_bundle(self, temp_dir):
        """Test archiving the bundle and running rpmbuild."""
        context = make_context(
            temp_dir, rpm_requirements=("gtk4",), dbus_activatable=True
        )
        bundler = LinuxRPMBundler()

        def fake_run(command, **kwargs):
            if command[0] == "rpmbuild":
                rpms = temp_dir / "out" / "rpmbuild" / "RPMS" / "x86_64"
                rpms.mkdir(parents=True)
                (rpms / "hello-1.2.3-1.x86_64.rpm").write_bytes(b"rpm")
            return ""

        with patch(
            "appbundler.backends.linux.run_command", side_effect=fake_run
        ):
            output = bundler.bundle(context, None)

        assert output.bundle == temp_dir / "out" / "Hello.rpm"
        assert output.bundle.read_bytes() == b"rpm"
        assert output.executable is None

        build = temp_dir / "out" / "rpmbuild"
        spec = (build / "SPECS" / "hello.spec").read_text()
        assert "Requires:       gtk4\n" in spec
        assert "dbus-1/services/com.example.App.service" in spec
        with tarfile.open(build / "SOURCES" / "hello-1.2.3.tar.gz") as archive:
            names = archive.getnames()
        assert "hello-1.2.3/usr/bin/Hello" in names
        desktop = (
            temp_dir / "out" / "Hello.generic" / "usr" / "share"
            / "applications" / "com.example.App.desktop"
        ).read_text()
        assert "Exec=/opt/hello/usr/bin/Hello %U" in desktop


class TestWindows:
    """Tests for the Windows backends."""

    def test_manifest_version(self):
        """Test padding versions to four numeric parts."""
        assert manifest_version("1.2") == "1.2.0.0"
        assert manifest_version("1.2.3-beta") == "1.2.3.0"
        assert manifest_version("1.2.3.4.5") == "1.2.3.4"

    def test_upgrade_code_is_stable(self):
        """Test that upgrade codes only depend on the identifier."""
        assert upgrade_code("com.example.App") == upgrade_code(
            "com.example.App"
        )
        assert upgrade_code("com.example.App") != upgrade_code(
            "com.example.Other"
        )

    def test_generic_bundle(self, temp_dir):
        """Test the generic Windows layout."""
        context = make_context(temp_dir, platform=Platform.WINDOWS)
        dll = context.products_directory / "Engine.dll"
        dll.write_bytes(b"dll")
        dll.with_suffix(".pdb").write_bytes(b"pdb")
        bundler = WindowsGenericBundler()
        output = bundler.bundle(context, None)

        root = temp_dir / "out" / "Hello.generic"
        assert output.bundle == root
        assert output.executable == root / "Hello.exe"
        assert (root / "Engine.dll").exists()
        assert (root / "Engine.pdb").exists()
        manifest = (root / "Hello.exe.manifest").read_text()
        assert 'version="1.2.3.0"' in manifest
        assert bundler.intended_output(context, None) == output

    def test_wxs(self, temp_dir):
        """Test the WiX source generated for the generic bundle."""
        context = make_context(temp_dir, platform=Platform.WINDOWS)
        (context.products_directory / "Engine.dll").write_bytes(b"dll")
        structure = WindowsGenericBundler().create(context)
        tree = generate_wxs(structure, "Hello", "com.example.App", "1.2.3")

        root = tree.getroot()
        assert root.get("xmlns") == "http://wixtoolset.org/schemas/v4/wxs"
        package = root.find("Package")
        assert package.get("Name") == "Hello"
        assert package.get("Manufacturer") == "com.example"
        assert package.get("Version") == "1.2.3.0"
        assert package.get("UpgradeCode") == upgrade_code("com.example.App")
        sources = [element.get("Source") for element in root.iter("File")]
        assert sources[0] == "Hello.exe"
        assert "Engine.dll" in sources
        assert "Hello.exe.manifest" in sources


class TestAndroid:
    """Tests for the APK backend."""

    def test_bundle(self, temp_dir):
        """Test the APK contents."""
        context = make_context(temp_dir, platform=Platform.ANDROID)
        library = add_library(context)
        bundler = AndroidAPKBundler()
        additional = bundler.compute_context(context, None, None)
        output = bundler.bundle(context, additional)

        assert output.bundle == temp_dir / "out" / "Hello.apk"
        with zipfile.ZipFile(output.bundle) as apk:
            names = set(apk.namelist())
            manifest = apk.read("AndroidManifest.xml").decode()
        assert names == {
            "AndroidManifest.xml",
            "lib/x86_64/libApp.so",
            f"lib/x86_64/{library.name}",
        }
        assert 'package="com.example.App"' in manifest
        assert 'android:versionName="1.2.3"' in manifest
        assert 'android:value="App"' in manifest


class TestDarwin:
    """Tests for the Apple app bundle backend."""

    def test_macos_bundle(self, temp_dir):
        """Test the macOS bundle layout and Info.plist."""
        context = make_context(temp_dir, platform=Platform.MACOS)
        manifest = PackageManifest("App", platform_versions={"macos": "13.0"})
        bundler = DarwinBundler()
        additional = bundler.compute_context(context, DARWIN_OPTIONS, manifest)
        assert additional.platform_version == "13.0"

        with patch(
            "appbundler.backends.darwin.run_command", return_value=""
        ), patch("appbundler.backends.darwin.Codesigner") as mock_signer:
            output = bundler.bundle(context, additional)

        contents = temp_dir / "out" / "Hello.app" / "Contents"
        assert output.executable == contents / "MacOS" / "Hello"
        assert (contents / "PkgInfo").read_text() == "APPL????"
        with open(contents / "Info.plist", "rb") as f:
            info = plistlib.load(f)
        assert info["CFBundleExecutable"] == "Hello"
        assert info["LSMinimumSystemVersion"] == "13.0"
        mock_signer.assert_not_called()
        assert bundler.intended_output(context, additional) == output

    def test_ios_bundle_is_flat_and_adhoc_signed(self, temp_dir):
        """Test the flat iOS layout and ad-hoc signing off macOS."""
        context = make_context(temp_dir, platform=Platform.IOS_SIMULATOR)
        bundler = DarwinBundler()
        additional = bundler.compute_context(
            context, DARWIN_OPTIONS, PackageManifest("App")
        )
        with patch(
            "appbundler.backends.darwin.run_command", return_value=""
        ), patch("appbundler.backends.darwin.Codesigner") as mock_signer:
            output = bundler.bundle(context, additional)

        assert output.executable == temp_dir / "out" / "Hello.app" / "Hello"
        assert (temp_dir / "out" / "Hello.app" / "Info.plist").exists()
        assert mock_signer.call_args.kwargs["hardened_runtime"] is False

    def test_rejects_other_platforms(self, temp_dir):
        """Test that the Darwin backend only bundles Apple platforms."""
        context = make_context(temp_dir, platform=Platform.LINUX)
        with pytest.raises(PackagingError, match="cannot bundle"):
            DarwinBundler().compute_context(
                context, DARWIN_OPTIONS, PackageManifest("App")
            )

    def test_relinker(self, temp_dir):
        """Test copying and relinking a non-system dylib."""
        products = temp_dir / "products"
        products.mkdir()
        (products / "libengine.dylib").write_bytes(b"dylib")
        bundle = temp_dir / "Hello.app" / "Contents"
        executable = bundle / "MacOS" / "Hello"
        executable.parent.mkdir(parents=True)
        executable.write_bytes(b"exe")
        otool = (
            "Load command 12\n"
            "          cmd LC_LOAD_DYLIB\n"
            "      cmdsize 56\n"
            "         name @rpath/libengine.dylib (offset 24)\n"
            "Load command 13\n"
            "          cmd LC_LOAD_DYLIB\n"
            "         name /usr/lib/libSystem.B.dylib (offset 24)\n"
        )

        def fake_run(command, **kwargs):
            if command[0] == "otool" and command[-1] == str(executable):
                return otool
            return ""

        with patch(
            "appbundler.backends.darwin.run_command", side_effect=fake_run
        ) as mock_run:
            copied = DylibRelinker(
                executable, bundle / "Libraries", products
            ).process()

        assert copied == [bundle / "Libraries" / "libengine.dylib"]
        commands = [call.args[0] for call in mock_run.call_args_list]
        assert [
            "install_name_tool",
            "-change",
            "@rpath/libengine.dylib",
            "@executable_path/../Libraries/libengine.dylib",
            str(executable),
        ] in commands
