"""Exception hierarchy for runqemu.

All exceptions inherit from RunQemuError. Nothing in the launcher is
retried: every error below ends the current invocation with exit code 1,
after whatever was already acquired has been released.

Hierarchy:
    RunQemuError (base)
    ├── InputError (caller mistake, raised before any resource is touched)
    │   ├── ConflictingArgumentError   ← same field assigned twice
    │   ├── UnrecognizedArgumentError  ← token matches no rule
    │   ├── UnclassifiableFileError    ← unknown file extension
    │   ├── InsufficientInputError     ← no machine, kernel or image given
    │   ├── AmbiguousTargetError       ← machine not derivable from filename
    │   ├── NfsPathRequiredError       ← "nfs" without an export directory
    │   ├── NoMatchingImageError       ← no rootfs found in deploy dir
    │   ├── UnsupportedCombinationError ← machine cannot boot that fstype
    │   └── InvalidMemoryError         ← unreadable -m in qemuparams=
    ├── EnvironmentPreconditionError (host not ready, needs operator action)
    │   ├── TunDeviceError             ← /dev/net/tun missing or not writable
    │   ├── KvmUnavailableError        ← no VT-x/AMD-V, not x86, no /dev/kvm
    │   ├── BuildToolUnavailableError  ← bitbake not on PATH
    │   ├── BuildEnvironmentUnsetError ← bitbake -e gave nothing usable
    │   ├── BiosDirNotFoundError       ← biosdir= resolves nowhere
    │   ├── ImageNotFoundError         ← kernel/rootfs path does not exist
    │   └── MissingLibraryError        ← libGL/libGLU not installed
    ├── ResourceAcquisitionError (contended host resource)
    │   ├── NoTapDeviceError           ← all taps locked, cannot create one
    │   ├── NfsExportError             ← export helper failed
    │   └── ImageConversionError       ← flash/partition conversion failed
    ├── LaunchError
    │   └── EmulatorNotFoundError      ← qemu-system-* not found
    └── TerminationRequested (BaseException, not a RunQemuError)
"""

from __future__ import annotations

from typing import Any


class RunQemuError(Exception):
    """Base exception for all launcher errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
        hint: Optional remediation shown to the user under "Suggestions"
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.hint = hint


# =============================================================================
# Input Errors
# =============================================================================


class InputError(RunQemuError):
    """Base for errors caused by the command line itself.

    Always raised during resolution, before any tap device, NFS server
    or child process exists.
    """


class ConflictingArgumentError(InputError):
    """A field that may be set only once received a second, different value."""

    def __init__(self, field: str, old: object, new: object):
        super().__init__(
            f"conflicting {field} arguments: '{old}' vs '{new}'",
            context={"field": field, "old": str(old), "new": str(new)},
        )
        self.field = field
        self.old = old
        self.new = new


class UnrecognizedArgumentError(InputError):
    """Token is neither a keyword, key=value, machine, file nor directory."""

    def __init__(self, token: str):
        super().__init__(
            f"unable to classify argument '{token}'",
            context={"token": token},
            hint="Run 'runqemu --help' for the list of accepted tokens",
        )
        self.token = token


class UnclassifiableFileError(InputError):
    """File exists but its extension names neither a kernel nor an image."""


class InsufficientInputError(InputError):
    """Nothing to boot: no machine, kernel or disk image was given."""


class AmbiguousTargetError(InputError):
    """Machine is unset and cannot be derived from the kernel or VM filename."""


class NfsPathRequiredError(InputError):
    """NFS boot requested without naming the exported directory."""


class NoMatchingImageError(InputError):
    """Deploy directory holds no image matching the machine and fstype."""


class UnsupportedCombinationError(InputError):
    """Machine does not support booting the chosen filesystem type."""


class InvalidMemoryError(InputError):
    """qemuparams= carries a -m option whose size cannot be read."""


# =============================================================================
# Environment Precondition Errors
# =============================================================================


class EnvironmentPreconditionError(RunQemuError):
    """Base for host configuration problems.

    Retrying cannot succeed until the operator changes something on the
    host, so every subclass carries a remediation hint.
    """


class TunDeviceError(EnvironmentPreconditionError):
    """TUN control device is missing or not writable."""


class KvmUnavailableError(EnvironmentPreconditionError):
    """KVM was requested but the host, machine or device nodes don't allow it."""


class BuildToolUnavailableError(EnvironmentPreconditionError):
    """Build-environment query tool is not on PATH."""


class BuildEnvironmentUnsetError(EnvironmentPreconditionError):
    """Build-environment query returned no usable directory.

    Attributes:
        output: Raw tool output when the tool itself failed, else empty.
    """

    def __init__(self, message: str, output: str = "", hint: str | None = None):
        super().__init__(message, context={"output": output} if output else None, hint=hint)
        self.output = output


class BiosDirNotFoundError(EnvironmentPreconditionError):
    """biosdir= names a directory found neither in the sysroot nor as given."""


class ImageNotFoundError(EnvironmentPreconditionError):
    """Kernel or rootfs path does not exist on disk."""


class MissingLibraryError(EnvironmentPreconditionError):
    """Shared library the emulator needs is not installed."""


# =============================================================================
# Resource Acquisition Errors
# =============================================================================


class ResourceAcquisitionError(RunQemuError):
    """Base for host resources that could not be claimed for this session."""


class NoTapDeviceError(ResourceAcquisitionError):
    """Every tap device is locked and none may be created."""


class NfsExportError(ResourceAcquisitionError):
    """User-space NFS export helper failed to start."""


class ImageConversionError(ResourceAcquisitionError):
    """Device-specific image conversion helper failed."""


# =============================================================================
# Launch Errors
# =============================================================================


class LaunchError(RunQemuError):
    """Base for failures while starting the emulator."""


class EmulatorNotFoundError(LaunchError):
    """QEMU binary for the machine is not in the sysroot or on PATH."""


# =============================================================================
# Signals
# =============================================================================


class TerminationRequested(BaseException):  # noqa: N818
    """SIGINT/SIGTERM/SIGQUIT received while a session was running.

    Derives from BaseException so ``except Exception`` blocks in cleanup
    code never swallow it. The CLI re-delivers the signal after cleanup.
    """

    def __init__(self, signum: int):
        super().__init__(f"terminated by signal {signum}")
        self.signum = signum
