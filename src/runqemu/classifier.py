"""Map one command-line token onto the run configuration.

Rules are tried in a fixed order and the first match wins:

1. machine identifier (``qemuarm``)
2. filesystem keyword (``ext4``, ``nfs``)
3. ``qemuparams=``, ``bootparams=``, ``biosdir=``, ``biosfilename=``
4. boolean keyword (``nographic``, ``kvm``, ``slirp``, ...)
5. anything named ``*-image*``: image file, NFS directory or image recipe name
6. any other existing file, classified by extension
7. any other existing directory, exported over NFS
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from runqemu import catalog, constants
from runqemu._logging import get_logger
from runqemu.exceptions import InvalidMemoryError, UnrecognizedArgumentError
from runqemu.models import BootFlag, NetworkMode, RootfsFormat, RunConfiguration
from runqemu.sniffer import FileKind, sniff

logger = get_logger(__name__)

FILESYSTEM_KEYWORDS: dict[str, RootfsFormat] = {
    "ext2": RootfsFormat.EXT2,
    "ext3": RootfsFormat.EXT3,
    "ext4": RootfsFormat.EXT4,
    "jffs2": RootfsFormat.JFFS2,
    "btrfs": RootfsFormat.BTRFS,
    "nfs": RootfsFormat.NFS,
}

KEY_VALUE_KEYS = ("qemuparams", "bootparams", "biosdir", "biosfilename")

BOOLEAN_KEYWORDS = (
    "nographic",
    "serial",
    "kvm",
    "kvm-vhost",
    "slirp",
    "publicvnc",
    "audio",
    "ramfs",
    "iso",
)

# Options that have a dedicated keyword and should not be smuggled in via qemuparams=
_KEYWORD_ONLY_OPTIONS = {"-serial": "serial", "-enable-kvm": "kvm"}

_MEMORY_RE = re.compile(constants.MEMORY_OPTION_PATTERN)
_MEMORY_STRIP_RE = re.compile(r"\s*" + constants.MEMORY_OPTION_PATTERN)
_MEMORY_FLAG_RE = re.compile(constants.MEMORY_FLAG_PATTERN)


@dataclass(frozen=True, slots=True)
class FieldUpdate:
    """What a token changed, for logging and tests."""

    field: str
    value: object


def classify(token: str, config: RunConfiguration) -> FieldUpdate:
    """Apply ``token`` to ``config``.

    Raises:
        ConflictingArgumentError: Token sets a once-only field to a new value.
        InvalidMemoryError: qemuparams= carries a -m size that cannot be read.
        UnclassifiableFileError: Token is a file with an unknown extension.
        UnrecognizedArgumentError: Token matches no rule.
    """
    target = catalog.lookup(token)
    if target is not None:
        config.assign_target(target)
        return FieldUpdate("target", target)

    if token in FILESYSTEM_KEYWORDS:
        fmt = FILESYSTEM_KEYWORDS[token]
        config.assign_format(fmt)
        return FieldUpdate("rootfs_format", fmt)

    key, sep, value = token.partition("=")
    if sep and key in KEY_VALUE_KEYS:
        return _apply_key_value(key, value, config)

    if token in BOOLEAN_KEYWORDS:
        return _apply_keyword(token, config)

    path = Path(token)
    if "-image" in path.name:
        if path.is_file():
            return _apply_file(path, config)
        if path.is_dir():
            logger.info("Assuming %s is an nfs rootfs", token)
            return _apply_nfs_dir(token, config)
        config.assign_rootfs(token, lazy=True)
        return FieldUpdate("rootfs", token)

    if path.is_file():
        return _apply_file(path, config)
    if path.is_dir():
        return _apply_nfs_dir(token, config)

    raise UnrecognizedArgumentError(token)


def _megabytes(amount: str, suffix: str) -> int:
    return int(amount) * 1024 if suffix.upper() == "G" else int(amount)


def _take_memory(value: str, config: RunConfiguration) -> str:
    """Move the ``-m`` options of a qemuparams value into ``memory_mb``.

    The profile builder emits the only ``-m`` QEMU sees, so the size the
    resolver clamps is the size the guest gets.
    """
    for match in _MEMORY_RE.finditer(value):
        config.assign_memory(_megabytes(*match.groups()))
    rest = _MEMORY_STRIP_RE.sub("", value).strip()
    if _MEMORY_FLAG_RE.search(rest):
        raise InvalidMemoryError(
            f"cannot read the memory size in qemuparams '{value}'",
            context={"qemuparams": value},
            hint="Use a plain size such as '-m 256', '-m 256M' or '-m 1G'",
        )
    return rest


def _apply_key_value(key: str, value: str, config: RunConfiguration) -> FieldUpdate:
    if key == "qemuparams":
        for option, keyword in _KEYWORD_ONLY_OPTIONS.items():
            if option in value:
                logger.warning("qemuparams contains %s, please use the '%s' keyword instead", option, keyword)
        value = _take_memory(value, config)
        config.extra_qemu_args = f"{config.extra_qemu_args} {value}".strip()
        return FieldUpdate("extra_qemu_args", config.extra_qemu_args)
    if key == "bootparams":
        config.extra_kernel_args = f"{config.extra_kernel_args} {value}".strip()
        return FieldUpdate("extra_kernel_args", config.extra_kernel_args)
    if key == "biosdir":
        config.bios_dir = value
        return FieldUpdate("bios_dir", value)
    config.bios_filename = value
    return FieldUpdate("bios_filename", value)


def _apply_keyword(keyword: str, config: RunConfiguration) -> FieldUpdate:
    if keyword == "slirp":
        config.network_mode = NetworkMode.SLIRP
        return FieldUpdate("network_mode", NetworkMode.SLIRP)
    if keyword == "ramfs":
        config.assign_format(RootfsFormat.CPIO_GZ)
    elif keyword == "iso":
        config.assign_format(RootfsFormat.ISO)
    elif keyword == "kvm-vhost":
        config.flags.add(BootFlag.KVM)
    flag = BootFlag(keyword)
    config.flags.add(flag)
    return FieldUpdate("flags", flag)


def _apply_file(path: Path, config: RunConfiguration) -> FieldUpdate:
    result = sniff(path)
    if result.kind is FileKind.KERNEL:
        config.assign_kernel(path)
        return FieldUpdate("kernel", path)
    if result.kind is FileKind.DISK_IMAGE:
        config.assign_vm(path)
        return FieldUpdate("vm", path)
    config.assign_rootfs(str(path))
    if result.format is not None:
        config.assign_format(result.format)
    return FieldUpdate("rootfs", str(path))


def _apply_nfs_dir(token: str, config: RunConfiguration) -> FieldUpdate:
    config.assign_rootfs(token)
    config.assign_format(RootfsFormat.NFS)
    return FieldUpdate("rootfs", token)
