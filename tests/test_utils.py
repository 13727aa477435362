"""Tests for the shared utilities."""

import logging
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from appbundler.errors import BundlerError, CommandError, FileError
from appbundler.utils import (
    CustomFormatter,
    command_environment,
    copy_path,
    error_chain,
    get_config_value,
    load_config,
    remove_path,
    run_command,
    setup_logging,
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestRunCommand:
    """Tests for run_command."""

    def test_output(self):
        """Test that stdout is returned."""
        output = run_command([sys.executable, "-c", "print('hi')"])
        assert output.strip() == "hi"

    def test_failure(self):
        """Test that a nonzero exit raises CommandError."""
        with pytest.raises(CommandError) as info:
            run_command(
                [
                    sys.executable,
                    "-c",
                    "import sys; sys.stderr.write('bad'); sys.exit(3)",
                ]
            )
        assert info.value.returncode == 3
        assert info.value.output == "bad"

    def test_missing_program(self):
        """Test that commands which can't start raise CommandError."""
        with pytest.raises(CommandError) as info:
            run_command(["appbundler-no-such-program"])
        assert info.value.returncode == 127

    def test_dry_run(self, caplog):
        """Test that dry runs log the command without running it."""
        log = logging.getLogger("test")
        with patch("appbundler.utils.subprocess.Popen") as mock_popen:
            with caplog.at_level(logging.INFO):
                output = run_command(["rm", "-rf", "/"], dry_run=True, log=log)
        assert output == ""
        mock_popen.assert_not_called()
        assert "[DRY RUN] rm -rf /" in caplog.text

    def test_input_and_env(self, temp_dir):
        """Test passing stdin, environment and working directory."""
        script = (
            "import os, sys; "
            "print(sys.stdin.read() + os.environ['GREETING'] + os.getcwd())"
        )
        output = run_command(
            [sys.executable, "-c", script],
            cwd=temp_dir,
            env=command_environment(GREETING="-hello-"),
            input="stdin",
        )
        assert output.startswith("stdin-hello-")
        assert Path(output.strip()[len("stdin-hello-"):]).samefile(temp_dir)


class TestCommandEnvironment:
    """Tests for command_environment."""

    def test_overrides(self):
        """Test that overrides apply on top of the current environment."""
        with patch.dict(os.environ, {"KEEP": "1", "CHANGE": "old"}):
            env = command_environment(CHANGE="new", ADDED="yes")
            assert os.environ["CHANGE"] == "old"
        assert env["KEEP"] == "1"
        assert env["CHANGE"] == "new"
        assert env["ADDED"] == "yes"


class TestErrorChain:
    """Tests for error_chain."""

    def test_chain(self):
        """Test listing an error and its causes."""
        try:
            try:
                raise OSError("disk full")
            except OSError as e:
                raise FileError("Failed to write") from e
        except FileError as e:
            chain = error_chain(e)
        assert chain == ["FileError: Failed to write", "OSError: disk full"]


class TestFileHelpers:
    """Tests for copy_path and remove_path."""

    def test_copy_directory_with_symlinks(self, temp_dir):
        """Test that directory copies keep symlinks."""
        source = temp_dir / "src"
        source.mkdir()
        (source / "lib.so.1").write_text("lib")
        (source / "lib.so").symlink_to("lib.so.1")
        copy_path(source, temp_dir / "out" / "dst")
        copied = temp_dir / "out" / "dst" / "lib.so"
        assert copied.is_symlink()
        assert copied.read_text() == "lib"

    def test_copy_missing(self, temp_dir):
        """Test that copy failures raise FileError."""
        with pytest.raises(FileError, match="Failed to copy"):
            copy_path(temp_dir / "missing", temp_dir / "dst")

    def test_remove(self, temp_dir):
        """Test removing files, directories and missing paths."""
        (temp_dir / "file").write_text("x")
        (temp_dir / "dir" / "nested").mkdir(parents=True)
        remove_path(temp_dir / "file")
        remove_path(temp_dir / "dir")
        remove_path(temp_dir / "missing")
        assert list(temp_dir.iterdir()) == []


class TestUserDefaults:
    """Tests for load_config and get_config_value."""

    def test_search_order(self, temp_dir, monkeypatch):
        """Test that .appbundler.toml wins over appbundler.toml."""
        (temp_dir / ".appbundler.toml").write_text(
            '[bundle]\nidentity = "Hidden"\n'
        )
        (temp_dir / "appbundler.toml").write_text(
            '[bundle]\nidentity = "Visible"\n'
        )
        monkeypatch.chdir(temp_dir)
        config = load_config()
        assert get_config_value(config, "bundle", "identity") == "Hidden"

    def test_no_file(self, temp_dir, monkeypatch):
        """Test that missing defaults give an empty config."""
        monkeypatch.chdir(temp_dir)
        assert load_config() == {}

    def test_invalid_explicit_file(self, temp_dir):
        """Test that an unreadable explicit file is an error."""
        path = temp_dir / "defaults.toml"
        path.write_text("not = [valid")
        with pytest.raises(BundlerError, match="user defaults"):
            load_config(path)

    def test_invalid_found_file(self, temp_dir, monkeypatch, caplog):
        """Test that an unreadable discovered file is skipped."""
        (temp_dir / ".appbundler.toml").write_text("not = [valid")
        (temp_dir / "appbundler.toml").write_text('[bundle]\nbundler = "x"\n')
        monkeypatch.chdir(temp_dir)
        config = load_config()
        assert get_config_value(config, "bundle", "bundler") == "x"
        assert "Ignoring unreadable defaults" in caplog.text

    def test_get_config_value(self):
        """Test defaults for missing sections, keys and non-strings."""
        config = {"bundle": {"identity": "Me", "strip": True}, "other": 1}
        assert get_config_value(config, "bundle", "identity") == "Me"
        assert get_config_value(config, "bundle", "strip", "d") == "d"
        assert get_config_value(config, "bundle", "missing") is None
        assert get_config_value(config, "other", "key", "d") == "d"
        assert get_config_value(config, "absent", "key") is None


class TestLogging:
    """Tests for the logging configuration."""

    def make_record(self, level):
        return logging.LogRecord(
            "appbundler", level, __file__, 1, "message %s", ("text",), None
        )

    def test_plain_format(self):
        """Test the format without colors."""
        formatted = CustomFormatter(use_color=False).format(
            self.make_record(logging.WARNING)
        )
        assert "WARNING - appbundler" in formatted
        assert formatted.endswith("message text")
        assert "\x1b[" not in formatted

    def test_color_format(self):
        """Test that levels are colored."""
        formatted = CustomFormatter().format(self.make_record(logging.ERROR))
        assert CustomFormatter.color.red in formatted

    def test_setup_logging(self):
        """Test the level chosen by setup_logging."""
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        try:
            setup_logging(debug=True, use_color=False)
            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, CustomFormatter)
            setup_logging()
            assert root.level == logging.INFO
        finally:
            root.handlers[:] = handlers
            root.setLevel(level)
