"""Infer what a file on the command line is from its extension."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from runqemu.exceptions import UnclassifiableFileError
from runqemu.models import RootfsFormat

_ROOTFS_EXTENSIONS = {
    fmt.extension: fmt
    for fmt in (
        RootfsFormat.EXT2,
        RootfsFormat.EXT3,
        RootfsFormat.EXT4,
        RootfsFormat.JFFS2,
        RootfsFormat.BTRFS,
    )
}


class FileKind(str, Enum):
    KERNEL = "kernel"
    ROOTFS = "rootfs"
    DISK_IMAGE = "disk-image"


@dataclass(frozen=True, slots=True)
class SniffResult:
    kind: FileKind
    format: RootfsFormat | None = None


def _extension(path: Path | str) -> str:
    # Last dot-separated component only: "core-image.rootfs.ext4" -> "ext4"
    name = Path(path).name
    return name.rsplit(".", 1)[-1] if "." in name else ""


def sniff(path: Path | str) -> SniffResult:
    """Classify a file as kernel, rootfs image or disk image.

    Raises:
        UnclassifiableFileError: Extension is none of bin, ext2/3/4, jffs2,
            btrfs or vmdk.
    """
    ext = _extension(path)
    if ext == "bin":
        return SniffResult(FileKind.KERNEL)
    if ext in _ROOTFS_EXTENSIONS:
        return SniffResult(FileKind.ROOTFS, _ROOTFS_EXTENSIONS[ext])
    if ext == RootfsFormat.VMDK.extension:
        return SniffResult(FileKind.DISK_IMAGE, RootfsFormat.VMDK)
    raise UnclassifiableFileError(
        f"unknown file arg '{path}'",
        context={"path": str(path), "extension": ext},
        hint="Kernels end in .bin, images in .ext2/.ext3/.ext4/.jffs2/.btrfs, disk images in .vmdk",
    )


def sniff_rootfs_format(path: Path | str) -> RootfsFormat | None:
    """Relaxed variant used to backfill the format of an already chosen rootfs."""
    return _ROOTFS_EXTENSIONS.get(_extension(path))
