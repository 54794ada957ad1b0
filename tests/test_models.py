"""Tests for runqemu data models."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from runqemu.exceptions import ConflictingArgumentError
from runqemu.models import (
    ImageConversion,
    NetworkBinding,
    NetworkMode,
    NfsPorts,
    RootfsFormat,
    RunConfiguration,
    Target,
    TargetProfile,
)


class TestTarget:
    @pytest.mark.parametrize("target", [Target.QEMUX86, Target.QEMUX86_64])
    def test_x86(self, target: Target) -> None:
        assert target.is_x86

    @pytest.mark.parametrize("target", [Target.QEMUARM, Target.QEMUARM64, Target.QEMUMIPS64, Target.SPITZ])
    def test_not_x86(self, target: Target) -> None:
        assert not target.is_x86


class TestRootfsFormat:
    def test_block_images(self) -> None:
        block = {fmt for fmt in RootfsFormat if fmt.is_block_image}
        assert block == {RootfsFormat.EXT2, RootfsFormat.EXT3, RootfsFormat.EXT4, RootfsFormat.BTRFS}

    def test_extension_is_value(self) -> None:
        assert RootfsFormat.CPIO_GZ.extension == "cpio.gz"


# ============================================================================
# RunConfiguration
# ============================================================================


class TestRunConfiguration:
    """Tests for once-only field assignment."""

    def test_defaults(self) -> None:
        config = RunConfiguration()
        assert config.network_mode is NetworkMode.TAP
        assert config.flags == set()
        assert config.extra_qemu_args == ""
        assert not config.kvm
        assert not config.is_disk_image

    def test_reassigning_same_value_is_allowed(self) -> None:
        config = RunConfiguration()
        config.assign_target(Target.QEMUARM)
        config.assign_target(Target.QEMUARM)
        config.assign_kernel(Path("/k.bin"))
        config.assign_kernel(Path("/k.bin"))
        config.assign_rootfs("/r.ext4")
        config.assign_rootfs("/r.ext4")
        assert config.target is Target.QEMUARM

    def test_target_conflict_message(self) -> None:
        config = RunConfiguration()
        config.assign_target(Target.QEMUARM)
        with pytest.raises(ConflictingArgumentError) as exc_info:
            config.assign_target(Target.QEMUPPC)
        error = exc_info.value
        assert error.field == "MACHINE"
        assert error.message == "conflicting MACHINE arguments: 'qemuarm' vs 'qemuppc'"

    def test_vm_sets_vmdk_format(self) -> None:
        config = RunConfiguration()
        config.assign_vm(Path("/img.vmdk"))
        assert config.rootfs_format is RootfsFormat.VMDK
        assert config.is_disk_image

    def test_vm_after_fstype_conflicts(self) -> None:
        config = RunConfiguration()
        config.assign_format(RootfsFormat.EXT4)
        with pytest.raises(ConflictingArgumentError):
            config.assign_vm(Path("/img.vmdk"))

    def test_rootfs_after_vm_conflicts(self) -> None:
        config = RunConfiguration()
        config.assign_vm(Path("/img.vmdk"))
        with pytest.raises(ConflictingArgumentError) as exc_info:
            config.assign_rootfs("/r.ext4")
        assert exc_info.value.field == "VM/ROOTFS"

    def test_memory_is_set_once(self) -> None:
        config = RunConfiguration()
        config.assign_memory(256)
        config.assign_memory(256)
        with pytest.raises(ConflictingArgumentError) as exc_info:
            config.assign_memory(512)
        assert exc_info.value.message == "conflicting MEMORY arguments: '256M' vs '512M'"
        assert config.memory_mb == 256

    def test_lazy_flag_follows_latest_assignment(self) -> None:
        config = RunConfiguration()
        config.assign_rootfs("core-image-minimal", lazy=True)
        assert config.lazy_rootfs


# ============================================================================
# NetworkBinding and NFS ports
# ============================================================================


class TestNetworkBinding:
    @pytest.mark.parametrize(
        ("tap", "host_ip", "guest_ip"),
        [
            ("tap0", "192.168.7.1", "192.168.7.2"),
            ("tap1", "192.168.7.3", "192.168.7.4"),
            ("tap7", "192.168.7.15", "192.168.7.16"),
        ],
    )
    def test_address_pair_from_instance(self, tap: str, host_ip: str, guest_ip: str) -> None:
        binding = NetworkBinding.for_tap(tap)
        assert binding.host_ip == host_ip
        assert binding.guest_ip == guest_ip

    def test_tap_kernel_ip(self) -> None:
        binding = NetworkBinding.for_tap("tap2")
        assert binding.instance == 2
        assert binding.kernel_ip_arg == "ip=192.168.7.6::192.168.7.5:255.255.255.0"

    def test_slirp_uses_dhcp(self) -> None:
        binding = NetworkBinding.slirp()
        assert binding.tap is None
        assert binding.kernel_ip_arg == "ip=dhcp"

    def test_non_numeric_tap_name(self) -> None:
        assert NetworkBinding.for_tap("mytap").instance == 0


class TestNfsPorts:
    def test_instance_zero(self) -> None:
        ports = NfsPorts.for_instance(0)
        assert (ports.mountd_rpc, ports.nfsd_rpc, ports.nfsd, ports.mountd) == (21111, 11111, 3049, 3048)

    def test_instance_offsets(self) -> None:
        ports = NfsPorts.for_instance(3)
        assert ports.mountd_rpc == 21114
        assert ports.nfsd_rpc == 11114
        assert ports.mount_options == "nfsvers=3,port=3055,udp,mountport=3054"


class TestFrozenModels:
    def test_profile_is_immutable(self) -> None:
        profile = TargetProfile(emulator="qemu-system-arm", argv=("qemu-system-arm",), memory_mb=128)
        with pytest.raises(ValidationError):
            profile.memory_mb = 256  # type: ignore[misc]

    def test_conversion_defaults_to_file_mode(self) -> None:
        conversion = ImageConversion(helper="raw2flash.spitz", source=Path("a"), output=Path("b"))
        assert not conversion.pipe
