"""runqemu: boot Yocto/OpenEmbedded images in QEMU.

Resolves a handful of loosely ordered tokens (machine name, kernel or image
file, keywords, key=value pairs) into a complete QEMU invocation, filling
gaps from the build tree, then runs it with a tap device or user-mode
networking.

Quick Start:
    ```python
    from runqemu import Resolver, Session, Settings

    settings = Settings()
    config = Resolver(settings).resolve(["qemux86", "core-image-minimal", "nographic"])
    exit_code = Session(config, settings).run()
    ```

Command line:
    runqemu qemuarm
    runqemu qemux86-64 core-image-sato ext4 kvm
    runqemu path/to/bzImage-qemux86.bin path/to/nfsrootdir serial
"""

from runqemu.exceptions import (
    AmbiguousTargetError,
    BiosDirNotFoundError,
    BuildEnvironmentUnsetError,
    BuildToolUnavailableError,
    ConflictingArgumentError,
    EmulatorNotFoundError,
    EnvironmentPreconditionError,
    ImageConversionError,
    ImageNotFoundError,
    InputError,
    InsufficientInputError,
    KvmUnavailableError,
    LaunchError,
    MissingLibraryError,
    NfsExportError,
    NfsPathRequiredError,
    NoMatchingImageError,
    NoTapDeviceError,
    ResourceAcquisitionError,
    RunQemuError,
    TerminationRequested,
    TunDeviceError,
    UnclassifiableFileError,
    UnrecognizedArgumentError,
    UnsupportedCombinationError,
)
from runqemu.models import (
    BootFlag,
    NetworkBinding,
    NetworkMode,
    RootfsFormat,
    RunConfiguration,
    Target,
    TargetProfile,
)
from runqemu.qemu_cmd import build_profile
from runqemu.resolver import Resolver
from runqemu.session import Session
from runqemu.settings import Settings

__all__ = [
    "AmbiguousTargetError",
    "BiosDirNotFoundError",
    "BootFlag",
    "BuildEnvironmentUnsetError",
    "BuildToolUnavailableError",
    "ConflictingArgumentError",
    "EmulatorNotFoundError",
    "EnvironmentPreconditionError",
    "ImageConversionError",
    "ImageNotFoundError",
    "InputError",
    "InsufficientInputError",
    "KvmUnavailableError",
    "LaunchError",
    "MissingLibraryError",
    "NetworkBinding",
    "NetworkMode",
    "NfsExportError",
    "NfsPathRequiredError",
    "NoMatchingImageError",
    "NoTapDeviceError",
    "Resolver",
    "ResourceAcquisitionError",
    "RootfsFormat",
    "RunConfiguration",
    "RunQemuError",
    "Session",
    "Settings",
    "Target",
    "TargetProfile",
    "TerminationRequested",
    "TunDeviceError",
    "UnclassifiableFileError",
    "UnrecognizedArgumentError",
    "UnsupportedCombinationError",
    "build_profile",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("runqemu")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
