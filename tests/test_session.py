"""Tests for the session runner.

QEMU is replaced by shell scripts in the native sysroot. Every test uses
the ``nographic`` keyword so no GL libraries are required on the host.
"""

import signal
from pathlib import Path

import pytest

from runqemu.exceptions import (
    EmulatorNotFoundError,
    ImageConversionError,
    ImageNotFoundError,
    NfsExportError,
    TerminationRequested,
)
from runqemu.models import (
    BootFlag,
    ImageConversion,
    NetworkMode,
    RootfsFormat,
    RunConfiguration,
    Target,
    TargetProfile,
)
from runqemu.session import (
    Session,
    check_boot_files,
    convert_image,
    exit_code_from,
    signal_guard,
    terminal_guard,
)
from runqemu.settings import Settings
from runqemu.tap import try_lock
from tests.conftest import touch, write_script


@pytest.fixture
def boot_files(tmp_path: Path) -> tuple[Path, Path]:
    kernel = touch(tmp_path / "images" / "bzImage-qemux86.bin")
    rootfs = touch(tmp_path / "images" / "core-image-minimal-qemux86.ext4")
    return kernel, rootfs


def x86_config(kernel: Path, rootfs: Path, sysroot: Path, **kwargs: object) -> RunConfiguration:
    values: dict[str, object] = {
        "target": Target.QEMUX86,
        "kernel": kernel,
        "rootfs": str(rootfs),
        "rootfs_format": RootfsFormat.EXT4,
        "memory_mb": 256,
        "flags": {BootFlag.NOGRAPHIC},
        "native_sysroot": sysroot,
        "nfs_server": "192.168.7.1",
    }
    values.update(kwargs)
    return RunConfiguration(**values)


def fake_qemu(sysroot: Path, body: str, name: str = "qemu-system-i386") -> Path:
    return write_script(sysroot / "usr" / "bin" / name, body)


# ============================================================================
# Helpers
# ============================================================================


class TestExitCode:
    @pytest.mark.parametrize(("returncode", "expected"), [(0, 0), (3, 3), (-9, 137), (-15, 143)])
    def test_mapping(self, returncode: int, expected: int) -> None:
        assert exit_code_from(returncode) == expected


class TestSignalGuard:
    def test_raises_and_restores(self) -> None:
        before = signal.getsignal(signal.SIGTERM)
        with pytest.raises(TerminationRequested) as exc_info, signal_guard():
            signal.raise_signal(signal.SIGTERM)
        assert exc_info.value.signum == signal.SIGTERM
        assert signal.getsignal(signal.SIGTERM) == before

    def test_deferred_section_finishes_before_raising(self) -> None:
        steps: list[str] = []
        with pytest.raises(TerminationRequested) as exc_info, signal_guard() as guard, guard.deferred():
            signal.raise_signal(signal.SIGINT)
            steps.append("after signal")
        assert steps == ["after signal"]
        assert exc_info.value.signum == signal.SIGINT

    def test_deferred_signal_raised_at_exit(self) -> None:
        steps: list[str] = []
        with pytest.raises(TerminationRequested) as exc_info, signal_guard() as guard:
            guard.defer()
            signal.raise_signal(signal.SIGTERM)
            signal.raise_signal(signal.SIGINT)
            steps.append("cleanup done")
        assert steps == ["cleanup done"]
        assert exc_info.value.signum == signal.SIGTERM

    def test_deferred_signal_replaces_error(self) -> None:
        with pytest.raises(TerminationRequested) as exc_info, signal_guard() as guard:
            guard.defer()
            signal.raise_signal(signal.SIGTERM)
            raise EmulatorNotFoundError("gone")
        assert isinstance(exc_info.value.__cause__, EmulatorNotFoundError)


class TestTerminalGuard:
    def test_without_tty(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("runqemu.session._stdin_tty_fd", lambda: None)
        with terminal_guard() as state:
            state.set_interrupt_char("\x1d")
        assert state.fd is None


class TestCheckBootFiles:
    def _profile(self, cmdline: str | None = "root=/dev/hda") -> TargetProfile:
        return TargetProfile(emulator="qemu-system-i386", argv=("qemu-system-i386",), memory_mb=256,
                             kernel_cmdline=cmdline)

    def test_missing_kernel(self, tmp_path: Path, boot_files: tuple[Path, Path], sysroot: Path) -> None:
        _, rootfs = boot_files
        config = x86_config(tmp_path / "missing.bin", rootfs, sysroot)
        with pytest.raises(ImageNotFoundError) as exc_info:
            check_boot_files(config, self._profile())
        assert "kernel image file" in exc_info.value.message

    def test_missing_rootfs(self, tmp_path: Path, boot_files: tuple[Path, Path], sysroot: Path) -> None:
        kernel, _ = boot_files
        config = x86_config(kernel, tmp_path / "gone.ext4", sysroot)
        with pytest.raises(ImageNotFoundError):
            check_boot_files(config, self._profile())

    def test_missing_vm(self, tmp_path: Path, sysroot: Path) -> None:
        config = RunConfiguration(target=Target.QEMUX86, vm=tmp_path / "a.vmdk", rootfs_format=RootfsFormat.VMDK)
        with pytest.raises(ImageNotFoundError):
            check_boot_files(config, self._profile(None))


class TestConvertImage:
    def test_file_mode_and_reuse(self, tmp_path: Path, sysroot: Path) -> None:
        source = touch(tmp_path / "rootfs.ext3", content=b"raw")
        output = tmp_path / "rootfs.ext3.qemudisk"
        counter = tmp_path / "runs"
        write_script(sysroot / "usr" / "bin" / "runqemu-addptable2image", f'echo x >> {counter}\ncp "$1" "$2"')
        conversion = ImageConversion(helper="runqemu-addptable2image", source=source, output=output)

        convert_image(conversion, sysroot)
        convert_image(conversion, sysroot)

        assert output.read_bytes() == b"raw"
        assert counter.read_text().count("x") == 1

    def test_pipe_mode(self, tmp_path: Path, sysroot: Path) -> None:
        source = touch(tmp_path / "rootfs.jffs2", content=b"flash")
        output = tmp_path / "rootfs.jffs2.qemuflash"
        write_script(sysroot / "usr" / "bin" / "raw2flash.akita", "tr a-z A-Z")
        convert_image(ImageConversion(helper="raw2flash.akita", source=source, output=output, pipe=True), sysroot)
        assert output.read_bytes() == b"FLASH"

    def test_failure_removes_partial_output(self, tmp_path: Path, sysroot: Path) -> None:
        source = touch(tmp_path / "rootfs.jffs2")
        output = tmp_path / "rootfs.jffs2.qemuflash"
        write_script(sysroot / "usr" / "bin" / "raw2flash.akita", "echo partial\nexit 2")
        conversion = ImageConversion(helper="raw2flash.akita", source=source, output=output, pipe=True)
        with pytest.raises(ImageConversionError):
            convert_image(conversion, sysroot)
        assert not output.exists()

    def test_missing_helper(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PATH", str(tmp_path / "empty"))
        conversion = ImageConversion(helper="raw2flash.akita", source=tmp_path / "a", output=tmp_path / "b")
        with pytest.raises(ImageConversionError):
            convert_image(conversion, None)


# ============================================================================
# Session.run
# ============================================================================


class TestSessionRun:
    def test_exit_status_and_argv(self, settings: Settings, sysroot: Path, boot_files: tuple[Path, Path],
                                  tmp_path: Path) -> None:
        argv_log = tmp_path / "argv"
        fake_qemu(sysroot, f'printf "%s\\n" "$@" > {argv_log}\nexit 3')
        session = Session(x86_config(*boot_files, sysroot), settings, tap_candidates=["tap0"])

        assert session.run() == 3

        args = argv_log.read_text().splitlines()
        assert args[:2] == ["-kernel", str(boot_files[0])]
        assert "tap,ifname=tap0,script=no,downscript=no" in args
        assert session.lease is not None
        assert session.lease.released

    def test_missing_emulator_releases_lease(self, settings: Settings, sysroot: Path,
                                             boot_files: tuple[Path, Path], tmp_path: Path,
                                             monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PATH", str(tmp_path / "empty"))
        session = Session(x86_config(*boot_files, sysroot), settings, tap_candidates=["tap0"])

        with pytest.raises(EmulatorNotFoundError):
            session.run()

        assert session.lease is not None
        assert session.lease.released
        relock = try_lock(settings.lock_dir / "tap0.lock")
        assert relock is not None
        relock.close()

    def test_missing_image_reported_before_launch(self, settings: Settings, sysroot: Path,
                                                  boot_files: tuple[Path, Path], tmp_path: Path) -> None:
        marker = tmp_path / "launched"
        fake_qemu(sysroot, f"touch {marker}")
        config = x86_config(boot_files[0], tmp_path / "gone.ext4", sysroot)
        with pytest.raises(ImageNotFoundError):
            Session(config, settings, tap_candidates=["tap0"]).run()
        assert not marker.exists()

    def test_slirp_takes_no_lease(self, settings: Settings, sysroot: Path, boot_files: tuple[Path, Path]) -> None:
        fake_qemu(sysroot, "exit 0")
        config = x86_config(*boot_files, sysroot, network_mode=NetworkMode.SLIRP)
        session = Session(config, settings)
        assert session.run() == 0
        assert session.lease is None
        assert session.profile is not None
        assert "user" in session.profile.network_args[-1]

    def test_emulator_environment(self, settings: Settings, sysroot: Path, boot_files: tuple[Path, Path],
                                  tmp_path: Path) -> None:
        env_log = tmp_path / "env"
        fake_qemu(sysroot, f'echo "$QEMU_AUDIO_DRV" > {env_log}')
        config = x86_config(*boot_files, sysroot, network_mode=NetworkMode.SLIRP, flags={BootFlag.NOGRAPHIC, BootFlag.AUDIO})
        Session(config, settings).run()
        assert env_log.read_text().strip() == "alsa"

    def test_nfs_export_wraps_the_run(self, settings: Settings, sysroot: Path, boot_files: tuple[Path, Path],
                                      tmp_path: Path) -> None:
        events = tmp_path / "events"
        rootdir = tmp_path / "nfsroot"
        rootdir.mkdir()
        write_script(sysroot / "usr" / "bin" / "runqemu-export-rootfs", f'echo "$1 $NFS_INSTANCE" >> {events}')
        fake_qemu(sysroot, f"echo qemu >> {events}")
        config = x86_config(boot_files[0], rootdir, sysroot, rootfs_format=RootfsFormat.NFS)

        Session(config, settings, tap_candidates=["tap2"]).run()

        assert events.read_text().splitlines() == ["restart 2", "qemu", "stop 2"]

    def test_nfs_export_failure(self, settings: Settings, sysroot: Path, boot_files: tuple[Path, Path],
                                tmp_path: Path) -> None:
        rootdir = tmp_path / "nfsroot"
        rootdir.mkdir()
        write_script(sysroot / "usr" / "bin" / "runqemu-export-rootfs", "exit 1")
        fake_qemu(sysroot, "exit 0")
        config = x86_config(boot_files[0], rootdir, sysroot, rootfs_format=RootfsFormat.NFS)
        session = Session(config, settings, tap_candidates=["tap0"])
        with pytest.raises(NfsExportError):
            session.run()
        assert session.lease is not None
        assert session.lease.released

    def test_termination_signal_releases_everything(self, settings: Settings, sysroot: Path,
                                                    boot_files: tuple[Path, Path]) -> None:
        fake_qemu(sysroot, "sleep 0.5\nkill -TERM $PPID\nexec sleep 30")
        before = signal.getsignal(signal.SIGTERM)
        session = Session(x86_config(*boot_files, sysroot), settings, tap_candidates=["tap0"])

        with pytest.raises(TerminationRequested) as exc_info:
            session.run()

        assert exc_info.value.signum == signal.SIGTERM
        assert session.lease is not None
        assert session.lease.released
        assert signal.getsignal(signal.SIGTERM) == before

    def test_second_signal_does_not_cut_release_short(self, settings: Settings, sysroot: Path,
                                                      boot_files: tuple[Path, Path], tmp_path: Path) -> None:
        events = tmp_path / "events"
        rootdir = tmp_path / "nfsroot"
        rootdir.mkdir()
        write_script(
            sysroot / "usr" / "bin" / "runqemu-export-rootfs",
            f'if [ "$1" = stop ]; then kill -INT $PPID; sleep 0.5; fi\necho "$1 done" >> {events}',
        )
        fake_qemu(sysroot, "kill -TERM $PPID\nexec sleep 30")
        config = x86_config(boot_files[0], rootdir, sysroot, rootfs_format=RootfsFormat.NFS)
        session = Session(config, settings, tap_candidates=["tap0"])

        with pytest.raises(TerminationRequested) as exc_info:
            session.run()

        assert exc_info.value.signum == signal.SIGTERM
        assert events.read_text().splitlines() == ["restart done", "stop done"]
        assert session.lease is not None
        assert session.lease.released

    def test_signal_during_release_after_clean_exit(self, settings: Settings, sysroot: Path,
                                                    boot_files: tuple[Path, Path], tmp_path: Path) -> None:
        events = tmp_path / "events"
        rootdir = tmp_path / "nfsroot"
        rootdir.mkdir()
        write_script(
            sysroot / "usr" / "bin" / "runqemu-export-rootfs",
            f'if [ "$1" = stop ]; then kill -INT $PPID; sleep 0.5; fi\necho "$1 done" >> {events}',
        )
        fake_qemu(sysroot, "exit 0")
        config = x86_config(boot_files[0], rootdir, sysroot, rootfs_format=RootfsFormat.NFS)

        with pytest.raises(TerminationRequested) as exc_info:
            Session(config, settings, tap_candidates=["tap0"]).run()

        assert exc_info.value.signum == signal.SIGINT
        assert events.read_text().splitlines() == ["restart done", "stop done"]
