"""Mirror descriptor discovery and persistence."""

from __future__ import annotations

from pathlib import Path

import structlog

from patchline.core.errors import DescriptorError
from patchline.core.utils import atomic_write_json
from patchline.sources.descriptor import DESCRIPTOR_SUFFIX, MirrorDescriptor

logger = structlog.get_logger()


def list_descriptors(mirrors_dir: Path) -> list[tuple[Path, MirrorDescriptor | None, str | None]]:
    """Read every descriptor file, valid or not.

    Args:
        mirrors_dir: Directory holding ``*.mirror.json`` files

    Returns:
        (path, descriptor or None, error or None) per file, sorted by name
    """
    if not mirrors_dir.is_dir():
        return []

    results: list[tuple[Path, MirrorDescriptor | None, str | None]] = []
    for path in sorted(mirrors_dir.glob(f"*{DESCRIPTOR_SUFFIX}")):
        try:
            results.append((path, MirrorDescriptor.from_file(path), None))
        except DescriptorError as e:
            results.append((path, None, str(e)))
    return results


def load_descriptors(mirrors_dir: Path) -> list[MirrorDescriptor]:
    """Load enabled, valid mirror descriptors.

    Malformed files, unknown schema versions, disabled mirrors and
    duplicate ids are logged and skipped; the first file (by name) with a
    given id wins.

    Args:
        mirrors_dir: Directory holding ``*.mirror.json`` files

    Returns:
        Descriptors in file name order
    """
    loaded: list[MirrorDescriptor] = []
    seen: set[str] = set()

    for path, descriptor, error in list_descriptors(mirrors_dir):
        if descriptor is None:
            logger.warning("mirror_descriptor_invalid", path=str(path), error=error)
            continue
        if not descriptor.enabled:
            logger.info("mirror_disabled", source_id=descriptor.id, path=str(path))
            continue
        if descriptor.id in seen:
            logger.warning("mirror_duplicate_id", source_id=descriptor.id, path=str(path))
            continue

        seen.add(descriptor.id)
        loaded.append(descriptor)
        logger.debug(
            "mirror_loaded",
            source_id=descriptor.id,
            layout=descriptor.source_type.value,
            priority=descriptor.priority,
        )

    logger.info("mirrors_discovered", count=len(loaded), path=str(mirrors_dir))
    return loaded


def save_descriptor(mirrors_dir: Path, descriptor: MirrorDescriptor) -> Path:
    """Write a descriptor as ``<id>.mirror.json``.

    Returns:
        Path of the written file
    """
    path = mirrors_dir / descriptor.file_name
    atomic_write_json(path, descriptor.to_dict())
    logger.info("mirror_saved", source_id=descriptor.id, path=str(path))
    return path


def delete_descriptor(mirrors_dir: Path, source_id: str) -> bool:
    """Delete every descriptor file declaring ``source_id``.

    Returns:
        True if at least one file was removed
    """
    removed = False
    for path, descriptor, _ in list_descriptors(mirrors_dir):
        if descriptor is not None and descriptor.id == source_id:
            path.unlink()
            removed = True
            logger.info("mirror_deleted", source_id=source_id, path=str(path))
    return removed
