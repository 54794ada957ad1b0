"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from runqemu import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    Build-system variables keep their historical unprefixed names
    (MACHINE, KERNEL, OE_TMPDIR, ...). Launcher-only knobs use the
    RUNQEMU_ prefix, e.g. RUNQEMU_LOCK_DIR=/run/qemu-locks.
    """

    model_config = SettingsConfigDict(
        env_prefix="RUNQEMU_",
        extra="ignore",
        populate_by_name=True,
        env_ignore_empty=True,
    )

    # Overrides normally set by the SDK environment setup script
    machine: str | None = Field(default=None, validation_alias=AliasChoices("MACHINE", "machine"))
    kernel: str | None = Field(default=None, validation_alias=AliasChoices("KERNEL", "kernel"))
    rootfs: str | None = Field(default=None, validation_alias=AliasChoices("ROOTFS", "rootfs"))
    vm: str | None = Field(default=None, validation_alias=AliasChoices("VM", "vm"))

    # Build tree locations (skip the bitbake -e query when set)
    oe_tmpdir: Path | None = Field(default=None, validation_alias=AliasChoices("OE_TMPDIR", "oe_tmpdir"))
    deploy_dir_image: Path | None = Field(
        default=None, validation_alias=AliasChoices("DEPLOY_DIR_IMAGE", "deploy_dir_image")
    )
    native_sysroot: Path | None = Field(
        default=None, validation_alias=AliasChoices("OECORE_NATIVE_SYSROOT", "native_sysroot")
    )

    nfs_server: str | None = Field(default=None, validation_alias=AliasChoices("NFS_SERVER", "nfs_server"))
    serial_logfile: Path | None = Field(
        default=None, validation_alias=AliasChoices("SERIAL_LOGFILE", "serial_logfile")
    )

    # Launcher knobs (RUNQEMU_ prefix)
    build_tool: str = constants.BUILD_TOOL
    lock_dir: Path = Path(constants.TAP_LOCK_DIR)
    nosudo_flag: Path = Path(constants.NOSUDO_FLAG)
    tun_device: Path = Path(constants.TUN_DEVICE)
    kvm_device: Path = Path(constants.KVM_DEVICE)
    vhost_device: Path = Path(constants.VHOST_NET_DEVICE)
    cpuinfo: Path = Path(constants.CPUINFO_PATH)
    ifup_helper: str = constants.IFUP_HELPER
    ifdown_helper: str = constants.IFDOWN_HELPER
    export_helper: str = constants.EXPORT_HELPER
    """Helper scripts, looked up in the native sysroot and on PATH."""
