"""Tests for patchline.core.utils module."""

import json
from unittest.mock import patch

from patchline.core.utils import (
    atomic_write_json,
    clamp_percent,
    current_arch,
    current_os,
    format_size,
    normalize_branch,
)


class TestPlatform:
    """Test platform detection."""

    def test_current_os_linux(self):
        """Test Linux detection."""
        with patch("patchline.core.utils.sys.platform", "linux"):
            assert current_os() == "linux"

    def test_current_os_windows(self):
        """Test Windows detection."""
        with patch("patchline.core.utils.sys.platform", "win32"):
            assert current_os() == "windows"

    def test_current_os_darwin(self):
        """Test macOS detection."""
        with patch("patchline.core.utils.sys.platform", "darwin"):
            assert current_os() == "darwin"

    def test_current_arch(self):
        """Test architecture mapping."""
        with patch("patchline.core.utils.platform.machine", return_value="aarch64"):
            assert current_arch() == "arm64"
        with patch("patchline.core.utils.platform.machine", return_value="x86_64"):
            assert current_arch() == "amd64"


class TestNormalizeBranch:
    """Test branch normalisation."""

    def test_aliases(self):
        """Test known aliases collapse onto canonical names."""
        assert normalize_branch("prerelease") == "pre-release"
        assert normalize_branch("Pre_Release") == "pre-release"
        assert normalize_branch(" RELEASE ") == "release"

    def test_unknown_branch(self):
        """Test unknown branches are lower-cased only."""
        assert normalize_branch("Nightly") == "nightly"


class TestFormatting:
    """Test formatting helpers."""

    def test_format_size(self):
        """Test human-readable sizes."""
        assert format_size(0) == "0 B"
        assert format_size(512) == "512 B"
        assert format_size(1536) == "1.5 KB"
        assert format_size(5 * 1024 * 1024) == "5.0 MB"
        assert format_size(-1) == "0 B"

    def test_clamp_percent(self):
        """Test percent clamping."""
        assert clamp_percent(-5) == 0
        assert clamp_percent(42.9) == 42
        assert clamp_percent(250) == 100


class TestAtomicWrite:
    """Test atomic JSON writes."""

    def test_writes_and_replaces(self, tmp_path):
        """Test the file is created and later replaced."""
        path = tmp_path / "nested" / "state.json"
        atomic_write_json(path, {"a": 1})
        atomic_write_json(path, {"a": 2})

        assert json.loads(path.read_text()) == {"a": 2}
        assert not path.with_suffix(".json.tmp").exists()
