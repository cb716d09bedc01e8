"""Tests for executor CLI functions."""

import pytest
from meta_ralph_mcp.executor.cli import check_meta_ralph_available, find_meta_ralph


class TestFindMetaRalph:
    """Tests for find_meta_ralph() function."""

    def test_configured_path(self, clean_env, script_path):
        """A configured script path that exists is used first."""
        assert find_meta_ralph(script_path) == str(script_path.resolve())

    def test_env_var(self, clean_env, script_path, tmp_path):
        """META_RALPH_PATH is used when nothing is configured."""
        clean_env.setenv("META_RALPH_PATH", str(script_path))
        clean_env.chdir(tmp_path.parent)

        assert find_meta_ralph() == str(script_path.resolve())

    def test_current_directory(self, clean_env, script_path):
        """./meta-ralph.sh is found."""
        clean_env.chdir(script_path.parent)

        assert find_meta_ralph() == str(script_path.resolve())

    def test_parent_directory(self, clean_env, script_path):
        """../meta-ralph.sh is found."""
        child = script_path.parent / "ui"
        child.mkdir()
        clean_env.chdir(child)

        assert find_meta_ralph() == str(script_path.resolve())

    def test_missing_configured_path_falls_through(self, clean_env, script_path):
        """A configured path that does not exist does not stop the search."""
        clean_env.chdir(script_path.parent)

        assert find_meta_ralph(script_path.parent / "nope.sh") == str(script_path.resolve())

    def test_not_found(self, clean_env, tmp_path):
        """None when the script is nowhere to be found."""
        empty = tmp_path / "a" / "b"
        empty.mkdir(parents=True)
        clean_env.chdir(empty)

        assert find_meta_ralph() is None


class TestCheckMetaRalphAvailable:
    """Tests for check_meta_ralph_available() function."""

    def test_available(self, clean_env, script_path):
        """A found script is reported with its path."""
        available, message = check_meta_ralph_available(script_path)

        assert available is True
        assert str(script_path.resolve()) in message

    def test_unavailable(self, clean_env, tmp_path):
        """A missing script is reported with a hint."""
        empty = tmp_path / "a" / "b"
        empty.mkdir(parents=True)
        clean_env.chdir(empty)

        available, message = check_meta_ralph_available()

        assert available is False
        assert "meta-ralph.sh not found" in message
        assert "META_RALPH_PATH" in message
