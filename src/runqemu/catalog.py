"""Compiled-in table of supported machines and their defaults."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from runqemu.models import RootfsFormat, Target


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    target: Target
    default_kernel: str
    """Kernel filename inside the deploy directory."""
    default_format: RootfsFormat
    default_memory_mb: int
    max_memory_mb: int | None = None
    """Hard cap; larger requests are clamped with a warning."""
    dtb: str | None = None
    """Device tree blob inside the deploy directory, for boards that need one."""


_ENTRIES: Final[tuple[CatalogEntry, ...]] = (
    CatalogEntry(Target.QEMUARM, "zImage-qemuarm.bin", RootfsFormat.EXT4, 128, max_memory_mb=256),
    CatalogEntry(Target.QEMUARMV6, "zImage-qemuarmv6.bin", RootfsFormat.EXT4, 128, max_memory_mb=256),
    CatalogEntry(Target.QEMUARMV7, "zImage-qemuarmv7.bin", RootfsFormat.EXT4, 128, max_memory_mb=256),
    CatalogEntry(Target.QEMUARM64, "Image-qemuarm64.bin", RootfsFormat.EXT4, 512),
    CatalogEntry(Target.QEMUX86, "bzImage-qemux86.bin", RootfsFormat.EXT4, 256),
    CatalogEntry(Target.QEMUX86_64, "bzImage-qemux86-64.bin", RootfsFormat.EXT4, 256),
    CatalogEntry(Target.QEMUMIPS, "vmlinux-qemumips.bin", RootfsFormat.EXT4, 256),
    CatalogEntry(Target.QEMUMIPSEL, "vmlinux-qemumipsel.bin", RootfsFormat.EXT4, 256),
    CatalogEntry(Target.QEMUMIPS64, "vmlinux-qemumips64.bin", RootfsFormat.EXT4, 256),
    CatalogEntry(Target.QEMUPPC, "vmlinux-qemuppc.bin", RootfsFormat.EXT4, 256),
    CatalogEntry(Target.QEMUSH4, "vmlinux-qemush4.bin", RootfsFormat.EXT4, 1024),
    CatalogEntry(Target.QEMUMICROBLAZE, "linux.bin.ub", RootfsFormat.CPIO_GZ, 64),
    CatalogEntry(Target.QEMUZYNQ, "uImage", RootfsFormat.CPIO_GZ, 1024, dtb="uImage-qemuzynq.dtb"),
    CatalogEntry(Target.VEXPRESSA9, "zImage-vexpressa9.bin", RootfsFormat.EXT4, 256, dtb="zImage-vexpress-v2p-ca9.dtb"),
    CatalogEntry(Target.AKITA, "zImage-akita.bin", RootfsFormat.JFFS2, 64),
    CatalogEntry(Target.SPITZ, "zImage-spitz.bin", RootfsFormat.EXT3, 64),
)

CATALOG: Final[dict[Target, CatalogEntry]] = {entry.target: entry for entry in _ENTRIES}

# Longest identifier first so "qemux86-64" wins over "qemux86" and
# "qemumipsel" over "qemumips" when matching inside a filename.
_BY_LENGTH: Final[tuple[Target, ...]] = tuple(sorted(CATALOG, key=lambda t: (-len(t.value), t.value)))


def _normalize(name: str) -> str:
    return name.lower().replace("_", "-")


def entry_for(target: Target) -> CatalogEntry:
    return CATALOG[target]


def lookup(name: str) -> Target | None:
    """Exact, case-insensitive match of a machine identifier.

    Underscores count as hyphens, so ``QEMUX86_64`` finds ``qemux86-64``.
    """
    normalized = _normalize(name)
    for target in CATALOG:
        if target.value == normalized:
            return target
    return None


def target_from_filename(filename: str) -> Target | None:
    """Find the machine identifier embedded in a kernel or disk image name.

    ``bzImage-qemux86-64.bin`` -> qemux86-64. Returns None when the name
    contains no identifier.
    """
    normalized = _normalize(filename)
    for target in _BY_LENGTH:
        if target.value in normalized:
            return target
    return None
