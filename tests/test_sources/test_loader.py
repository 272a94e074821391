"""Tests for patchline.sources.loader module."""

import json
from pathlib import Path

from patchline.sources.descriptor import MirrorDescriptor
from patchline.sources.loader import (
    delete_descriptor,
    list_descriptors,
    load_descriptors,
    save_descriptor,
)


def _write(directory: Path, name: str, data: dict) -> Path:
    path = directory / name
    path.write_text(json.dumps(data))
    return path


class TestLoadDescriptors:
    """Test descriptor discovery."""

    def test_missing_directory(self, tmp_path: Path):
        """Test a missing directory yields no mirrors."""
        assert load_descriptors(tmp_path / "none") == []
        assert list_descriptors(tmp_path / "none") == []

    def test_skips_invalid_disabled_and_duplicates(self, tmp_path: Path, pattern_descriptor_data, index_descriptor_data):
        """Test only valid, enabled, first-seen descriptors load."""
        _write(tmp_path, "a.mirror.json", pattern_descriptor_data)
        _write(tmp_path, "b.mirror.json", {**pattern_descriptor_data, "priority": 300})
        _write(tmp_path, "c.mirror.json", {**index_descriptor_data, "enabled": False})
        _write(tmp_path, "d.mirror.json", {"schemaVersion": 7, "id": "future"})
        (tmp_path / "e.mirror.json").write_text("not json")
        _write(tmp_path, "ignored.json", index_descriptor_data)

        loaded = load_descriptors(tmp_path)

        assert [d.id for d in loaded] == ["community-cdn"]
        assert loaded[0].priority == 110

        listed = list_descriptors(tmp_path)
        assert [p.name for p, _, _ in listed] == [
            "a.mirror.json",
            "b.mirror.json",
            "c.mirror.json",
            "d.mirror.json",
            "e.mirror.json",
        ]
        assert listed[3][1] is None
        assert listed[3][2] is not None


class TestSaveDelete:
    """Test descriptor persistence."""

    def test_save_and_delete(self, tmp_path: Path, index_descriptor_data):
        """Test a saved descriptor loads back and can be removed."""
        descriptor = MirrorDescriptor.from_dict(index_descriptor_data)

        path = save_descriptor(tmp_path / "mirrors", descriptor)

        assert path.name == "index-mirror.mirror.json"
        assert MirrorDescriptor.from_file(path) == descriptor
        assert delete_descriptor(tmp_path / "mirrors", "index-mirror") is True
        assert not path.exists()
        assert delete_descriptor(tmp_path / "mirrors", "index-mirror") is False
