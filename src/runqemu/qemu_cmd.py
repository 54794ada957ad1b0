"""QEMU command line assembly.

``build_profile`` is a pure function of a resolved RunConfiguration and the
network binding the session holds: the same inputs always give the same
argv. Machine-specific flags live in one builder per machine family,
selected through ``_BUILDERS``, which covers every Target.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from runqemu import catalog, constants
from runqemu.exceptions import UnsupportedCombinationError
from runqemu.models import (
    BootFlag,
    ImageConversion,
    NetworkBinding,
    NetworkMode,
    NfsExportSpec,
    NfsPorts,
    RootfsFormat,
    RunConfiguration,
    Target,
    TargetProfile,
)

_BASE_UI: tuple[str, ...] = ("-show-cursor", "-usb", "-device", "usb-tablet")

_VGA_RE = re.compile(constants.VGA_OPTION_PATTERN)
_SERIAL_CONSOLE_RE = re.compile(r"console=ttyS(?=\d|\b)")


class _Mode(Enum):
    BLOCK = "block"  # ext2/3/4, btrfs attached as a disk
    INITRD = "initrd"  # cpio.gz loaded as initramfs
    NFS = "nfs"
    FLASH = "flash"  # jffs2 NAND image
    VM = "vm"  # prebuilt disk image, no -kernel
    OVERRIDE = "override"  # ramfs / iso replace the rootfs options


@dataclass(frozen=True, slots=True)
class _Context:
    config: RunConfiguration
    target: Target
    fmt: RootfsFormat
    mode: _Mode
    binding: NetworkBinding
    rootfs: str
    nfs_root: str

    @property
    def kvm(self) -> bool:
        return self.config.kvm

    @property
    def slirp(self) -> bool:
        return self.binding.mode is NetworkMode.SLIRP

    @property
    def mem(self) -> str:
        return f"mem={self.config.memory_mb}M"

    @property
    def ip(self) -> str:
        return self.binding.kernel_ip_arg

    @property
    def deploy_dir(self) -> Path:
        if self.config.deploy_dir is not None:
            return self.config.deploy_dir
        if self.config.kernel is not None:
            return self.config.kernel.parent
        return Path(self.rootfs).parent


@dataclass(slots=True)
class _Options:
    emulator: str
    machine: tuple[str, ...] = ()
    cpu: tuple[str, ...] = ()
    network: tuple[str, ...] = ()
    disk: tuple[str, ...] = ()
    ui: tuple[str, ...] = _BASE_UI
    kernel_cmdline: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    serial_stdio: bool = False
    conversion: ImageConversion | None = None
    ttyps_console: bool = False
    """Board names its UARTs ttyPS*, so console=ttyS* is rewritten."""


def _unsupported(ctx: _Context) -> UnsupportedCombinationError:
    return UnsupportedCombinationError(
        f"{ctx.target.value} does not support booting a {ctx.fmt.value} rootfs",
        context={"target": ctx.target.value, "fstype": ctx.fmt.value},
        hint=f"Use the default fstype for {ctx.target.value}: {catalog.entry_for(ctx.target).default_format.value}",
    )


def _require(ctx: _Context, *modes: _Mode) -> None:
    if ctx.mode is not _Mode.OVERRIDE and ctx.mode not in modes:
        raise _unsupported(ctx)


# =============================================================================
# Shared network and disk fragments
# =============================================================================


def _nic_network(ctx: _Context, model: str | None = None) -> tuple[str, ...]:
    """Legacy -net nic/-net backend pair."""
    if ctx.kvm:
        model = "virtio"
    nic = f"nic,model={model}" if model else "nic"
    if ctx.slirp:
        return ("-net", nic, "-net", "user")
    backend = f"tap,ifname={ctx.binding.tap},script=no,downscript=no"
    if ctx.config.has(BootFlag.KVM_VHOST):
        backend += ",vhost=on"
    return ("-net", nic, "-net", backend)


def _virtio_mmio_network(ctx: _Context) -> tuple[str, ...]:
    """-netdev/-device syntax for boards without a PCI bus."""
    if ctx.slirp:
        backend = "user,id=net0"
    else:
        backend = f"tap,id=net0,ifname={ctx.binding.tap},script=no,downscript=no"
    return ("-netdev", backend, "-device", "virtio-net-device,netdev=net0")


def _block_disk(
    ctx: _Context, *, fallback_if: str | None = None, fallback_root: str = "/dev/hda"
) -> tuple[tuple[str, ...], str]:
    """Disk option and guest root device for a raw filesystem image."""
    if ctx.kvm or ctx.slirp:
        return ("-drive", f"file={ctx.rootfs},if=virtio,format=raw"), "/dev/vda"
    interface = f",if={fallback_if}" if fallback_if else ""
    return ("-drive", f"file={ctx.rootfs}{interface},format=raw"), fallback_root


# =============================================================================
# Machine families
# =============================================================================


def _arm(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.NFS)
    opts = _Options(
        emulator="qemu-system-arm",
        machine=("-M", "versatilepb"),
        network=_nic_network(ctx),
        env={"QEMU_AUDIO_DRV": "none"},
    )
    if ctx.target is Target.QEMUARMV6:
        opts.cpu = ("-cpu", "arm1136")
    elif ctx.target is Target.QEMUARMV7:
        opts.cpu = ("-cpu", "cortex-a8")
    if ctx.mode is _Mode.BLOCK:
        opts.disk, droot = _block_disk(ctx, fallback_if="scsi", fallback_root="/dev/sda")
        opts.kernel_cmdline = f"root={droot} rw console=ttyAMA0,115200 console=tty {ctx.ip} {ctx.mem} highres=off"
    elif ctx.mode is _Mode.NFS:
        opts.kernel_cmdline = f"{ctx.nfs_root} console=ttyAMA0,115200 {ctx.ip} {ctx.mem}"
    return opts


def _arm64(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.NFS)
    opts = _Options(
        emulator="qemu-system-aarch64",
        machine=("-machine", "virt"),
        cpu=("-cpu", "cortex-a57"),
        network=_virtio_mmio_network(ctx),
        ui=() if ctx.config.has(BootFlag.SERIAL) else ("-nographic",),
        env={"QEMU_AUDIO_DRV": "none"},
    )
    if ctx.mode is _Mode.BLOCK:
        opts.disk = (
            "-drive",
            f"id=disk0,file={ctx.rootfs},if=none,format=raw",
            "-device",
            "virtio-blk-device,drive=disk0",
        )
        opts.kernel_cmdline = f"root=/dev/vda rw console=ttyAMA0,38400 {ctx.mem} highres=off {ctx.ip}"
    elif ctx.mode is _Mode.NFS:
        opts.kernel_cmdline = f"{ctx.nfs_root} console=ttyAMA0,38400 {ctx.mem} highres=off {ctx.ip}"
    return opts


def _x86(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.INITRD, _Mode.NFS, _Mode.VM)
    if ctx.target is Target.QEMUX86:
        emulator, cpu = "qemu-system-i386", ("kvm32" if ctx.kvm else "qemu32")
    else:
        emulator, cpu = "qemu-system-x86_64", ("kvm64" if ctx.kvm else "core2duo")
    ui = _BASE_UI if _VGA_RE.search(ctx.config.extra_qemu_args) else (*_BASE_UI, "-vga", "vmware")
    opts = _Options(emulator=emulator, cpu=("-cpu", cpu), network=_nic_network(ctx), ui=ui)
    vga = "vga=0 uvesafb.mode_option=640x480-32"
    if ctx.mode is _Mode.BLOCK:
        opts.disk, droot = _block_disk(ctx)
        opts.kernel_cmdline = f"{vga} root={droot} rw {ctx.mem} {ctx.ip}"
    elif ctx.mode is _Mode.INITRD:
        opts.disk = ("-initrd", ctx.rootfs)
        opts.kernel_cmdline = f"{vga} root=/dev/ram0 rw {ctx.mem} {ctx.ip}"
    elif ctx.mode is _Mode.NFS:
        opts.kernel_cmdline = f"{ctx.nfs_root} {ctx.ip} {ctx.mem}"
    if opts.kernel_cmdline is not None:
        # oprofile's event based interrupt mode does not work under qemu
        opts.kernel_cmdline += " oprofile.timer=1"
    return opts


def _mips(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.NFS)
    emulators = {
        Target.QEMUMIPS: "qemu-system-mips",
        Target.QEMUMIPSEL: "qemu-system-mipsel",
        Target.QEMUMIPS64: "qemu-system-mips64",
    }
    opts = _Options(
        emulator=emulators[ctx.target],
        machine=("-M", "malta"),
        network=_nic_network(ctx),
        ui=("-vga", "cirrus", *_BASE_UI),
    )
    if ctx.mode is _Mode.BLOCK:
        opts.disk, droot = _block_disk(ctx)
        opts.kernel_cmdline = f"root={droot} rw console=ttyS0 console=tty {ctx.ip} {ctx.mem}"
    elif ctx.mode is _Mode.NFS:
        opts.kernel_cmdline = f"{ctx.nfs_root} console=ttyS0 console=tty {ctx.ip} {ctx.mem}"
    return opts


def _ppc(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.NFS)
    opts = _Options(
        emulator="qemu-system-ppc",
        machine=("-M", "mac99"),
        cpu=("-cpu", "G4"),
        network=_nic_network(ctx, model="pcnet"),
    )
    if ctx.mode is _Mode.BLOCK:
        opts.disk, droot = _block_disk(ctx)
        opts.kernel_cmdline = f"root={droot} rw console=ttyS0 console=tty {ctx.ip} {ctx.mem}"
    elif ctx.mode is _Mode.NFS:
        opts.kernel_cmdline = f"{ctx.nfs_root} console=ttyS0 console=tty {ctx.ip} {ctx.mem}"
    return opts


def _sh4(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.NFS)
    opts = _Options(
        emulator="qemu-system-sh4",
        machine=("-M", "r2d"),
        network=_nic_network(ctx),
        ui=(*_BASE_UI, "-monitor", "null", "-serial", "vc", "-serial", "stdio"),
        serial_stdio=True,
    )
    console = "console=ttySC1 noiotrap earlyprintk=sh-sci.1 console=tty1"
    if ctx.mode is _Mode.BLOCK:
        opts.disk = ("-hda", ctx.rootfs)
        opts.kernel_cmdline = f"root=/dev/hda rw {console} {ctx.ip} {ctx.mem}"
    elif ctx.mode is _Mode.NFS:
        opts.kernel_cmdline = f"{ctx.nfs_root} {console} {ctx.ip} {ctx.mem}"
    return opts


def _microblaze(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.INITRD)
    opts = _Options(
        emulator="qemu-system-microblazeel",
        machine=("-M", "petalogix-ml605", "-serial", "mon:stdio"),
        ui=(),
        serial_stdio=True,
    )
    if ctx.mode in (_Mode.BLOCK, _Mode.INITRD):
        opts.disk = ("-initrd", ctx.rootfs)
        opts.kernel_cmdline = "earlyprintk root=/dev/ram rw"
    return opts


def _zynq(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.INITRD, _Mode.NFS)
    dtb = catalog.entry_for(ctx.target).dtb
    opts = _Options(
        emulator="qemu-system-arm",
        machine=(
            "-M",
            "xilinx-zynq-a9",
            "-serial",
            "null",
            "-serial",
            "mon:stdio",
            "-dtb",
            str(ctx.deploy_dir / str(dtb)),
        ),
        ui=(),
        serial_stdio=True,
        ttyps_console=True,
    )
    if ctx.mode in (_Mode.BLOCK, _Mode.INITRD):
        opts.disk = ("-initrd", ctx.rootfs)
        opts.kernel_cmdline = "earlyprintk root=/dev/ram rw"
    elif ctx.mode is _Mode.NFS:
        opts.network = _nic_network(ctx)
        opts.kernel_cmdline = f"earlyprintk {ctx.nfs_root} {ctx.ip}"
    return opts


def _vexpress(ctx: _Context) -> _Options:
    _require(ctx, _Mode.BLOCK, _Mode.NFS)
    dtb = catalog.entry_for(ctx.target).dtb
    opts = _Options(
        emulator="qemu-system-arm",
        machine=("-M", "vexpress-a9", "-dtb", str(ctx.deploy_dir / str(dtb))),
        cpu=("-cpu", "cortex-a9"),
        network=_nic_network(ctx, model="lan9118"),
        env={"QEMU_AUDIO_DRV": "none"},
    )
    console = "console=ttyAMA0,115200 console=tty"
    if ctx.mode is _Mode.BLOCK:
        opts.disk = ("-sd", ctx.rootfs)
        opts.kernel_cmdline = f"root=/dev/mmcblk0 rw {console} {ctx.ip} {ctx.mem}"
    elif ctx.mode is _Mode.NFS:
        opts.kernel_cmdline = f"{ctx.nfs_root} {console} {ctx.ip} {ctx.mem}"
    return opts


def _akita(ctx: _Context) -> _Options:
    _require(ctx, _Mode.FLASH)
    opts = _Options(emulator="qemu-system-arm", machine=("-M", "akita"), ui=(*_BASE_UI, "-portrait"))
    if ctx.mode is _Mode.FLASH:
        flash = Path(ctx.rootfs + constants.QEMUFLASH_SUFFIX)
        opts.conversion = ImageConversion(
            helper=constants.RAW2FLASH_HELPER, source=Path(ctx.rootfs), output=flash, pipe=True
        )
        opts.disk = ("-mtdblock", str(flash))
        opts.kernel_cmdline = f"console=ttyS0,115200 console=tty1 {ctx.mem}"
    return opts


def _spitz(ctx: _Context) -> _Options:
    if ctx.mode is not _Mode.OVERRIDE and ctx.fmt is not RootfsFormat.EXT3:
        raise _unsupported(ctx)
    opts = _Options(emulator="qemu-system-arm", machine=("-M", "spitz"), ui=(*_BASE_UI, "-portrait"))
    if ctx.mode is _Mode.BLOCK:
        disk = Path(ctx.rootfs + constants.QEMUDISK_SUFFIX)
        opts.conversion = ImageConversion(helper=constants.ADDPTABLE_HELPER, source=Path(ctx.rootfs), output=disk)
        opts.disk = ("-hda", str(disk))
        opts.kernel_cmdline = f"root=/dev/hda2 rw console=ttyS0,115200 console=tty1 {ctx.mem}"
    return opts


_BUILDERS: dict[Target, Callable[[_Context], _Options]] = {
    Target.QEMUARM: _arm,
    Target.QEMUARMV6: _arm,
    Target.QEMUARMV7: _arm,
    Target.QEMUARM64: _arm64,
    Target.QEMUX86: _x86,
    Target.QEMUX86_64: _x86,
    Target.QEMUMIPS: _mips,
    Target.QEMUMIPSEL: _mips,
    Target.QEMUMIPS64: _mips,
    Target.QEMUPPC: _ppc,
    Target.QEMUSH4: _sh4,
    Target.QEMUMICROBLAZE: _microblaze,
    Target.QEMUZYNQ: _zynq,
    Target.VEXPRESSA9: _vexpress,
    Target.AKITA: _akita,
    Target.SPITZ: _spitz,
}


# =============================================================================
# Assembly
# =============================================================================


def _mode_for(config: RunConfiguration, fmt: RootfsFormat) -> _Mode | None:
    if fmt is RootfsFormat.VMDK:
        return _Mode.VM
    if config.has(BootFlag.RAMFS) or config.has(BootFlag.ISO) or fmt is RootfsFormat.ISO:
        return _Mode.OVERRIDE
    if fmt is RootfsFormat.NFS:
        return _Mode.NFS
    if fmt.is_block_image:
        return _Mode.BLOCK
    if fmt is RootfsFormat.CPIO_GZ:
        return _Mode.INITRD
    if fmt is RootfsFormat.JFFS2:
        return _Mode.FLASH
    return None


def _nfs_export(rootfs: str, config: RunConfiguration, binding: NetworkBinding) -> NfsExportSpec:
    directory = rootfs.split(":", 1)[1] if ":" in rootfs else rootfs
    server = config.nfs_server or constants.DEFAULT_NFS_SERVER_TAP
    return NfsExportSpec(rootfs=rootfs, directory=directory, server=server, instance=binding.instance)


def _script_args(
    config: RunConfiguration, target: Target, opts: _Options
) -> tuple[tuple[str, ...], list[str], dict[str, str]]:
    """Launcher-level options from keywords, plus their kernel args and env."""
    args: list[str] = []
    kernel: list[str] = []
    env: dict[str, str] = {}
    if config.has(BootFlag.NOGRAPHIC):
        args.append("-nographic")
    if config.has(BootFlag.SERIAL) and not opts.serial_stdio:
        args.extend(("-serial", "stdio"))
    if config.has(BootFlag.NOGRAPHIC) or config.has(BootFlag.SERIAL):
        kernel.append("console=ttyS0")
    if config.bios_filename:
        args.extend(("-bios", config.bios_filename))
    if config.bios_dir:
        args.extend(("-L", config.bios_dir))
    if config.kvm:
        args.append("-enable-kvm")
    if config.has(BootFlag.PUBLICVNC):
        args.extend(("-vnc", ":0"))
    if config.has(BootFlag.AUDIO) and target.is_x86:
        args.extend(("-soundhw", "ac97,es1370"))
        env["QEMU_AUDIO_DRV"] = "alsa"
    args.extend(("-m", str(config.memory_mb)))
    return tuple(args), kernel, env


def build_profile(config: RunConfiguration, binding: NetworkBinding) -> TargetProfile:
    """Assemble the emulator invocation for a resolved configuration.

    Raises:
        UnsupportedCombinationError: The machine cannot boot the chosen fstype.
    """
    if config.target is None or config.rootfs_format is None or config.memory_mb is None:
        raise ValueError("configuration is not resolved")
    target = config.target
    fmt = config.rootfs_format
    mode = _mode_for(config, fmt)

    rootfs = str(config.vm) if config.vm is not None else (config.rootfs or "")
    nfs_export = _nfs_export(rootfs, config, binding) if mode is _Mode.NFS else None
    nfs_root = ""
    if nfs_export is not None:
        ports = NfsPorts.for_instance(nfs_export.instance)
        nfs_root = f"root=/dev/nfs nfsroot={nfs_export.server}:{nfs_export.directory},{ports.mount_options} rw"

    ctx = _Context(
        config=config,
        target=target,
        fmt=fmt,
        mode=mode or _Mode.BLOCK,
        binding=binding,
        rootfs=rootfs,
        nfs_root=nfs_root,
    )
    if mode is None:
        raise _unsupported(ctx)

    opts = _BUILDERS[target](ctx)

    uses_kernel = True
    if mode is _Mode.VM:
        uses_kernel = False
        opts.kernel_cmdline = None
    elif mode is _Mode.OVERRIDE:
        if fmt is RootfsFormat.ISO or config.has(BootFlag.ISO):
            uses_kernel = False
            opts.disk = ("-cdrom", rootfs)
            opts.kernel_cmdline = None
        else:
            opts.disk = ("-initrd", rootfs)
            opts.ui = ("-nographic",)
            opts.kernel_cmdline = "root=/dev/ram0 debugshell"

    script_args, script_kernel, script_env = _script_args(config, target, opts)
    env = {**opts.env, **script_env}

    user_kernel = " ".join(filter(None, (*script_kernel, config.extra_kernel_args)))
    if opts.ttyps_console:
        user_kernel = _SERIAL_CONSOLE_RE.sub("console=ttyPS", user_kernel)
    cmdline = None
    if uses_kernel:
        cmdline = " ".join(filter(None, (opts.kernel_cmdline, user_kernel)))

    serial_log: tuple[str, ...] = ()
    if config.serial_logfile is not None:
        serial_log = ("-serial", f"file:{config.serial_logfile}")

    options = (*opts.machine, *opts.cpu, *opts.network, *opts.disk, *opts.ui)
    tail = (*serial_log, "-no-reboot", *script_args, *shlex.split(config.extra_qemu_args))
    if mode is _Mode.VM:
        argv = (opts.emulator, rootfs, *options, *tail)
    elif cmdline is None:
        argv = (opts.emulator, *options, *tail)
    elif config.kernel is None:
        raise ValueError("configuration has no kernel")
    else:
        argv = (opts.emulator, "-kernel", str(config.kernel), *options, *tail, "--append", cmdline)

    return TargetProfile(
        emulator=opts.emulator,
        machine_args=opts.machine,
        cpu_args=opts.cpu,
        network_args=opts.network,
        disk_args=opts.disk,
        ui_args=opts.ui,
        script_args=script_args,
        kernel_cmdline=cmdline,
        argv=argv,
        env=env,
        memory_mb=config.memory_mb,
        serial_stdio=opts.serial_stdio or config.has(BootFlag.SERIAL),
        conversion=opts.conversion,
        nfs_export=nfs_export,
    )
