"""Constants for runqemu host paths, networking and helper tools."""

from typing import Final

# ============================================================================
# Host Device Nodes and Probe Files
# ============================================================================

TUN_DEVICE: Final[str] = "/dev/net/tun"
"""TUN/TAP control device. Must be a writable character device for tap mode."""

KVM_DEVICE: Final[str] = "/dev/kvm"
"""KVM device node. Needs read and write access for -enable-kvm."""

VHOST_NET_DEVICE: Final[str] = "/dev/vhost-net"
"""vhost-net device node used by the kvm-vhost keyword."""

CPUINFO_PATH: Final[str] = "/proc/cpuinfo"
"""Scanned for the vmx (Intel VT-x) or svm (AMD-V) CPU flags."""

KVM_CPU_FLAGS: Final[tuple[str, ...]] = ("vmx", "svm")
"""CPU flags that indicate hardware virtualization support."""

# ============================================================================
# Tap Device Leases
# ============================================================================

TAP_LOCK_DIR: Final[str] = "/tmp/qemu-tap-locks"  # noqa: S108
"""Shared directory holding one <tap>.lock file per tap device."""

TAP_SKIP_SUFFIX: Final[str] = ".skip"
"""A <tap>.skip file next to the lock file excludes that tap from selection."""

TAP_LOCK_SUFFIX: Final[str] = ".lock"

TAP_PREFIX: Final[str] = "tap"
"""Host interfaces whose names start with this prefix are lease candidates."""

NOSUDO_FLAG: Final[str] = "/etc/runqemu-nosudo"
"""When present, tap devices are never created with sudo."""

IFUP_HELPER: Final[str] = "runqemu-ifup"
IFDOWN_HELPER: Final[str] = "runqemu-ifdown"

# ============================================================================
# Guest Networking
# ============================================================================

TAP_SUBNET: Final[str] = "192.168.7"
"""Tap n gets host 192.168.7.(2n+1) and guest 192.168.7.(2n+2)."""

TAP_NETMASK: Final[str] = "255.255.255.0"

DEFAULT_NFS_SERVER_TAP: Final[str] = "192.168.7.1"
"""Host address as seen from the guest over tap0."""

DEFAULT_NFS_SERVER_SLIRP: Final[str] = "10.0.2.2"
"""Host address as seen from the guest under QEMU user-mode networking."""

# ============================================================================
# NFS Export
# ============================================================================

EXPORT_HELPER: Final[str] = "runqemu-export-rootfs"

NFS_MOUNTD_RPC_BASE: Final[int] = 21111
NFS_NFSD_RPC_BASE: Final[int] = 11111
NFS_NFSD_PORT_BASE: Final[int] = 3049
NFS_MOUNTD_PORT_BASE: Final[int] = 3048
"""Instance n uses RPC programs base+n and ports base+2n, so sessions never collide."""

PSEUDO_STATE_DIR: Final[str] = "~/.runqemu-sdk/pseudo"
"""Pseudo local state dir handed to the export helper."""

# ============================================================================
# Image Conversion Helpers
# ============================================================================

ADDPTABLE_HELPER: Final[str] = "runqemu-addptable2image"
"""Adds a partition table to a raw ext3 image (spitz)."""

RAW2FLASH_HELPER: Final[str] = "raw2flash.akita"
"""Converts a raw jffs2 image into an akita NAND flash image."""

QEMUDISK_SUFFIX: Final[str] = ".qemudisk"
QEMUFLASH_SUFFIX: Final[str] = ".qemuflash"

# ============================================================================
# Build Environment
# ============================================================================

BUILD_TOOL: Final[str] = "bitbake"

VARIABLE_ASSIGNMENT_PATTERN: Final[str] = r'^(?P<key>[A-Za-z_][A-Za-z0-9_]*)="(?P<value>.*)"$'
"""One line of `bitbake -e` output that assigns a plain variable."""

# ============================================================================
# Emulator
# ============================================================================

MEMORY_OPTION_PATTERN: Final[str] = r"(?<!\S)-m\s*(\d+)([MmGg]?)(?!\S)"
"""A ``-m <size>[M|G]`` option inside qemuparams=. No suffix means megabytes."""

MEMORY_FLAG_PATTERN: Final[str] = r"(?<!\S)-m(?=\s|\d|$)"
"""Any ``-m`` option, including forms MEMORY_OPTION_PATTERN cannot read."""

VGA_OPTION_PATTERN: Final[str] = r"(?<!\S)-vga(?!\S)"

SERIAL_INTERRUPT_CHAR: Final[str] = "\x1d"
"""^] becomes the tty interrupt character while QEMU owns stdio."""

# ============================================================================
# Documentation Links
# ============================================================================

YOCTO_KVM_URL: Final[str] = "https://wiki.yoctoproject.org/wiki/How_to_enable_KVM_for_Poky_qemu"
