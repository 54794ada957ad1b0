"""Turn command-line tokens into a complete, consistent RunConfiguration.

Resolution order:

1. Environment overrides (MACHINE, KERNEL, ROOTFS, VM) seed the draft.
2. Every token is classified; the first conflict aborts.
3. The machine is taken from the kernel or VM filename if not given.
4. Host preconditions are checked: TUN device unless slirp, KVM if asked.
5. Memory is resolved and capped per machine.
6. Missing kernel, fstype and rootfs come from catalog defaults and the
   deploy directory, which is only looked up when needed.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

from runqemu import catalog, constants
from runqemu._logging import get_logger
from runqemu.build_env import BuildEnvironment
from runqemu.classifier import classify
from runqemu.exceptions import (
    AmbiguousTargetError,
    BiosDirNotFoundError,
    InsufficientInputError,
    KvmUnavailableError,
    NfsPathRequiredError,
    NoMatchingImageError,
    UnrecognizedArgumentError,
)
from runqemu.models import BootFlag, NetworkMode, RootfsFormat, RunConfiguration, Target
from runqemu.settings import Settings
from runqemu.sniffer import sniff_rootfs_format
from runqemu.system_probes import HostChecks

logger = get_logger(__name__)


def find_latest_image(deploy_dir: Path, target: Target, fmt: RootfsFormat) -> Path | None:
    """Newest ``*-image*<target>.<ext>`` in ``deploy_dir``.

    Ties on modification time go to the lexically smallest name, so the
    choice never depends on directory listing order.
    """
    candidates = [p for p in deploy_dir.glob(f"*-image*{target.value}.{fmt.extension}") if p.is_file()]
    if not candidates:
        return None
    return min(candidates, key=lambda p: (-p.stat().st_mtime_ns, p.name))


class Resolver:
    """Configuration resolver for one invocation."""

    def __init__(
        self,
        settings: Settings,
        *,
        build_env: BuildEnvironment | None = None,
        host: HostChecks | None = None,
    ) -> None:
        self._settings = settings
        self._build_env = build_env or BuildEnvironment(settings)
        self._host = host or HostChecks(settings)

    @property
    def build_env(self) -> BuildEnvironment:
        return self._build_env

    def resolve(self, tokens: Iterable[str]) -> RunConfiguration:
        """Resolve ``tokens`` (plus the environment) into a bootable configuration.

        Raises:
            InputError: Conflicting, unrecognized or insufficient arguments.
            EnvironmentPreconditionError: Host or build tree not usable.
        """
        config = RunConfiguration()
        self._seed_from_environment(config)
        for token in tokens:
            update = classify(token, config)
            logger.debug("%r -> %s=%s", token, update.field, update.value)

        if config.target is not None:
            target = config.target
        elif config.vm is not None:
            target = self._derive_target(config.vm, "vmdk")
        elif config.kernel is not None:
            target = self._derive_target(config.kernel, "kernel")
        else:
            raise InsufficientInputError(
                "you must specify at least a MACHINE, VM, or KERNEL argument",
                hint="e.g. 'runqemu qemux86' or 'runqemu path/to/bzImage-qemux86.bin'",
            )
        config.target = target

        if config.rootfs_format is RootfsFormat.NFS and config.rootfs is None:
            raise NfsPathRequiredError(
                "NFS boot requires the path of the directory to export",
                hint="Pass the rootfs directory, or set ROOTFS=<host>:<dir>",
            )

        if config.network_mode is NetworkMode.TAP:
            self._host.require_tun()
        if config.kvm:
            self._check_kvm(config, target)

        self._resolve_memory(config, target)
        self._backfill_format(config)

        if not config.is_disk_image:
            self._resolve_boot_files(config, target)

        self._resolve_bios_dir(config, target)

        config.nfs_server = self._settings.nfs_server or (
            constants.DEFAULT_NFS_SERVER_SLIRP
            if config.network_mode is NetworkMode.SLIRP
            else constants.DEFAULT_NFS_SERVER_TAP
        )
        config.serial_logfile = self._settings.serial_logfile
        if catalog.entry_for(target).dtb is not None and config.deploy_dir is None:
            config.deploy_dir = self._build_env.deploy_dir(target.value)
        if config.native_sysroot is None:
            config.native_sysroot = self._build_env.known_native_sysroot()
        return config

    def _seed_from_environment(self, config: RunConfiguration) -> None:
        if self._settings.machine:
            target = catalog.lookup(self._settings.machine)
            if target is None:
                raise UnrecognizedArgumentError(self._settings.machine)
            config.assign_target(target)
        if self._settings.vm:
            config.assign_vm(Path(self._settings.vm))
        if self._settings.kernel:
            config.assign_kernel(Path(self._settings.kernel))
        if self._settings.rootfs:
            config.assign_rootfs(self._settings.rootfs)

    @staticmethod
    def _derive_target(source: Path, kind: str) -> Target:
        target = catalog.target_from_filename(source.name)
        if target is None:
            raise AmbiguousTargetError(
                f"unable to set MACHINE from {kind} filename '{source.name}'",
                context={"filename": source.name},
                hint="Add the machine name to the command line, e.g. 'qemux86'",
            )
        logger.info("Assuming MACHINE=%s from %s filename", target.value, kind)
        return target

    def _check_kvm(self, config: RunConfiguration, target: Target) -> None:
        if not target.is_x86:
            raise KvmUnavailableError(
                f"KVM is only supported for qemux86 and qemux86-64, not {target.value}",
                hint="Remove 'kvm' from the command line",
            )
        self._host.require_kvm()
        if config.has(BootFlag.KVM_VHOST):
            self._host.require_vhost()

    @staticmethod
    def _resolve_memory(config: RunConfiguration, target: Target) -> None:
        entry = catalog.entry_for(target)
        memory = config.memory_mb or entry.default_memory_mb
        if entry.max_memory_mb is not None and memory > entry.max_memory_mb:
            logger.warning(
                "%s does not support more than %dM of RAM, using %dM instead of %dM",
                target.value,
                entry.max_memory_mb,
                entry.max_memory_mb,
                memory,
            )
            memory = entry.max_memory_mb
        config.memory_mb = memory

    @staticmethod
    def _backfill_format(config: RunConfiguration) -> None:
        if config.rootfs_format is not None or config.rootfs is None or config.lazy_rootfs:
            return
        fmt = sniff_rootfs_format(config.rootfs)
        if fmt is None:
            logger.warning("Cannot infer the fstype of %s from its extension", config.rootfs)
            return
        config.rootfs_format = fmt

    def _resolve_boot_files(self, config: RunConfiguration, target: Target) -> None:
        entry = catalog.entry_for(target)

        if config.kernel is None:
            config.deploy_dir = self._build_env.deploy_dir(target.value)
            config.kernel = config.deploy_dir / entry.default_kernel

        if config.rootfs_format is None:
            config.rootfs_format = entry.default_format
        fmt = config.rootfs_format

        if config.lazy_rootfs and config.rootfs is not None:
            deploy_dir = config.deploy_dir or self._build_env.deploy_dir(target.value)
            config.deploy_dir = deploy_dir
            resolved = deploy_dir / f"{config.rootfs}-{target.value}.{fmt.extension}"
            logger.info("Assuming %s really means %s", config.rootfs, resolved)
            config.rootfs = str(resolved)
            config.lazy_rootfs = False

        if config.rootfs is None:
            deploy_dir = config.deploy_dir or self._build_env.deploy_dir(target.value)
            config.deploy_dir = deploy_dir
            image = find_latest_image(deploy_dir, target, fmt)
            if image is None:
                raise NoMatchingImageError(
                    f"couldn't find a {target.value} rootfs image in {deploy_dir}",
                    context={"deploy_dir": str(deploy_dir), "pattern": f"*-image*{target.value}.{fmt.extension}"},
                    hint=f"Build an image first, e.g. 'bitbake core-image-minimal' with MACHINE={target.value}",
                )
            config.rootfs = str(image)

        # host:dir NFS specs point at another machine and are kept verbatim
        if not (fmt is RootfsFormat.NFS and ":" in config.rootfs):
            config.rootfs = os.path.realpath(config.rootfs)

    def _resolve_bios_dir(self, config: RunConfiguration, target: Target) -> None:
        if not config.bios_dir:
            return
        sysroot = self._build_env.native_sysroot(target.value)
        config.native_sysroot = sysroot
        in_sysroot = sysroot / config.bios_dir.lstrip("/")
        if in_sysroot.is_dir():
            config.bios_dir = str(in_sysroot)
        elif not Path(config.bios_dir).is_dir():
            raise BiosDirNotFoundError(
                f"custom BIOS directory not found. Tried {config.bios_dir} and {in_sysroot}",
                context={"bios_dir": config.bios_dir, "sysroot": str(sysroot)},
            )
        logger.info("Assuming biosdir is %s", config.bios_dir)
