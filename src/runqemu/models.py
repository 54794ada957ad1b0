"""Data models for runqemu."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from runqemu import constants
from runqemu.exceptions import ConflictingArgumentError


class Target(str, Enum):
    """Supported emulated machines."""

    QEMUARM = "qemuarm"
    QEMUARMV6 = "qemuarmv6"
    QEMUARMV7 = "qemuarmv7"
    QEMUARM64 = "qemuarm64"
    QEMUX86 = "qemux86"
    QEMUX86_64 = "qemux86-64"
    QEMUMIPS = "qemumips"
    QEMUMIPSEL = "qemumipsel"
    QEMUMIPS64 = "qemumips64"
    QEMUPPC = "qemuppc"
    QEMUSH4 = "qemush4"
    QEMUMICROBLAZE = "qemumicroblaze"
    QEMUZYNQ = "qemuzynq"
    VEXPRESSA9 = "vexpressa9"
    AKITA = "akita"
    SPITZ = "spitz"

    @property
    def is_x86(self) -> bool:
        return self in (Target.QEMUX86, Target.QEMUX86_64)


class RootfsFormat(str, Enum):
    """Root filesystem image types. The value is the on-disk extension."""

    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"
    JFFS2 = "jffs2"
    BTRFS = "btrfs"
    NFS = "nfs"
    CPIO_GZ = "cpio.gz"
    ISO = "iso"
    VMDK = "vmdk"
    TAR_BZ2 = "tar.bz2"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def is_block_image(self) -> bool:
        """ext2/3/4 and btrfs images attach as a disk."""
        return self in (RootfsFormat.EXT2, RootfsFormat.EXT3, RootfsFormat.EXT4, RootfsFormat.BTRFS)


class NetworkMode(str, Enum):
    TAP = "tap"
    SLIRP = "slirp"


class BootFlag(str, Enum):
    """Boolean keywords accepted on the command line."""

    NOGRAPHIC = "nographic"
    SERIAL = "serial"
    KVM = "kvm"
    KVM_VHOST = "kvm-vhost"
    PUBLICVNC = "publicvnc"
    AUDIO = "audio"
    RAMFS = "ramfs"
    ISO = "iso"


class RunConfiguration(BaseModel):
    """Everything one invocation knows about what to boot.

    Built incrementally by the classifier and the resolver. Fields that may
    only be given once go through the ``assign_*`` methods, which accept a
    repeat of the same value and reject a different one.
    """

    target: Target | None = None
    kernel: Path | None = None
    rootfs: str | None = Field(default=None, description="Image path, lazy image name or NFS [host:]dir")
    rootfs_format: RootfsFormat | None = None
    vm: Path | None = None
    memory_mb: int | None = None
    network_mode: NetworkMode = NetworkMode.TAP
    flags: set[BootFlag] = Field(default_factory=set)
    extra_qemu_args: str = ""
    extra_kernel_args: str = ""
    bios_dir: str | None = None
    bios_filename: str | None = None

    lazy_rootfs: bool = False
    """rootfs names an image recipe (core-image-minimal) rather than a file."""

    # Filled by the resolver
    deploy_dir: Path | None = None
    native_sysroot: Path | None = None
    nfs_server: str | None = None
    serial_logfile: Path | None = None

    def has(self, flag: BootFlag) -> bool:
        return flag in self.flags

    @property
    def kvm(self) -> bool:
        return BootFlag.KVM in self.flags or BootFlag.KVM_VHOST in self.flags

    @property
    def is_disk_image(self) -> bool:
        return self.vm is not None

    def assign_target(self, target: Target) -> None:
        if self.target is not None and self.target != target:
            raise ConflictingArgumentError("MACHINE", self.target.value, target.value)
        self.target = target

    def assign_kernel(self, kernel: Path) -> None:
        if self.vm is not None:
            raise ConflictingArgumentError("VM/KERNEL", self.vm, kernel)
        if self.kernel is not None and self.kernel != kernel:
            raise ConflictingArgumentError("KERNEL", self.kernel, kernel)
        self.kernel = kernel

    def assign_rootfs(self, rootfs: str, *, lazy: bool = False) -> None:
        if self.vm is not None:
            raise ConflictingArgumentError("VM/ROOTFS", self.vm, rootfs)
        if self.rootfs is not None and self.rootfs != rootfs:
            raise ConflictingArgumentError("ROOTFS", self.rootfs, rootfs)
        self.rootfs = rootfs
        self.lazy_rootfs = lazy

    def assign_format(self, fmt: RootfsFormat) -> None:
        if self.rootfs_format is not None and self.rootfs_format != fmt:
            raise ConflictingArgumentError("FSTYPE", self.rootfs_format.value, fmt.value)
        self.rootfs_format = fmt

    def assign_memory(self, memory_mb: int) -> None:
        if self.memory_mb is not None and self.memory_mb != memory_mb:
            raise ConflictingArgumentError("MEMORY", f"{self.memory_mb}M", f"{memory_mb}M")
        self.memory_mb = memory_mb

    def assign_vm(self, vm: Path) -> None:
        if self.kernel is not None:
            raise ConflictingArgumentError("KERNEL/VM", self.kernel, vm)
        if self.rootfs is not None:
            raise ConflictingArgumentError("ROOTFS/VM", self.rootfs, vm)
        if self.vm is not None and self.vm != vm:
            raise ConflictingArgumentError("VM", self.vm, vm)
        self.vm = vm
        self.assign_format(RootfsFormat.VMDK)


@dataclass(frozen=True, slots=True)
class NetworkBinding:
    """Network resource held by a session.

    ``instance`` is the numeric suffix of the tap device (tap3 -> 3) and
    keys both the guest address pair and the NFS port range.
    """

    mode: NetworkMode
    tap: str | None = None
    instance: int = 0

    @classmethod
    def for_tap(cls, tap: str) -> NetworkBinding:
        suffix = tap.removeprefix(constants.TAP_PREFIX)
        return cls(NetworkMode.TAP, tap, int(suffix) if suffix.isdigit() else 0)

    @classmethod
    def slirp(cls) -> NetworkBinding:
        return cls(NetworkMode.SLIRP)

    @property
    def host_ip(self) -> str:
        return f"{constants.TAP_SUBNET}.{2 * self.instance + 1}"

    @property
    def guest_ip(self) -> str:
        return f"{constants.TAP_SUBNET}.{2 * self.instance + 2}"

    @property
    def kernel_ip_arg(self) -> str:
        if self.mode is NetworkMode.SLIRP:
            return "ip=dhcp"
        return f"ip={self.guest_ip}::{self.host_ip}:{constants.TAP_NETMASK}"


@dataclass(frozen=True, slots=True)
class NfsPorts:
    """Port set of one user-space NFS server instance."""

    mountd_rpc: int
    nfsd_rpc: int
    nfsd: int
    mountd: int

    @classmethod
    def for_instance(cls, instance: int) -> NfsPorts:
        return cls(
            mountd_rpc=constants.NFS_MOUNTD_RPC_BASE + instance,
            nfsd_rpc=constants.NFS_NFSD_RPC_BASE + instance,
            nfsd=constants.NFS_NFSD_PORT_BASE + 2 * instance,
            mountd=constants.NFS_MOUNTD_PORT_BASE + 2 * instance,
        )

    @property
    def mount_options(self) -> str:
        return f"nfsvers=3,port={self.nfsd},udp,mountport={self.mountd}"


class NfsExportSpec(BaseModel):
    """Directory to export over user-space NFS before boot."""

    model_config = ConfigDict(frozen=True)

    rootfs: str = Field(description="Export argument as given, possibly host:dir")
    directory: str
    server: str
    instance: int


class ImageConversion(BaseModel):
    """Pre-launch conversion of a raw image into a machine-specific image.

    Skipped when ``output`` already exists. With ``pipe`` the helper reads
    the source on stdin and writes the result to stdout.
    """

    model_config = ConfigDict(frozen=True)

    helper: str
    source: Path
    output: Path
    pipe: bool = False


class TargetProfile(BaseModel):
    """Emulator invocation derived from a resolved RunConfiguration."""

    model_config = ConfigDict(frozen=True)

    emulator: str
    machine_args: tuple[str, ...] = ()
    cpu_args: tuple[str, ...] = ()
    network_args: tuple[str, ...] = ()
    disk_args: tuple[str, ...] = ()
    ui_args: tuple[str, ...] = ()
    script_args: tuple[str, ...] = ()
    kernel_cmdline: str | None = None
    argv: tuple[str, ...]
    env: dict[str, str] = Field(default_factory=dict)
    memory_mb: int
    serial_stdio: bool = False
    conversion: ImageConversion | None = None
    nfs_export: NfsExportSpec | None = None
