"""Command-line interface for runqemu.

Usage:
    runqemu qemuarm                                   # latest image from the build tree
    runqemu qemux86-64 core-image-sato ext4 kvm       # named image recipe, KVM
    runqemu bzImage-qemux86.bin rootfsdir nographic   # NFS root from a directory
    runqemu qemux86 qemuparams="-m 512" slirp         # extra QEMU options, user networking
"""

from __future__ import annotations

import logging
import os
import re
import signal
import sys
from typing import NoReturn

import click

from runqemu import (
    BuildEnvironmentUnsetError,
    Resolver,
    RunConfiguration,
    RunQemuError,
    Session,
    Settings,
    TerminationRequested,
    __version__,
)
from runqemu._logging import configure_logging

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_RUNQEMU_ERROR = 1


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def error_title(exc: RunQemuError) -> str:
    """'NoTapDeviceError' -> 'No tap device'."""
    name = type(exc).__name__.removesuffix("Error")
    words = re.findall(r"[A-Z][a-z0-9]*", name)
    return " ".join(words).capitalize()


def format_parameters(config: RunConfiguration) -> str:
    """The parameters summary printed before launch."""
    fstype = config.rootfs_format.value if config.rootfs_format is not None else "unknown"
    lines = ["", "Continuing with the following parameters:"]
    if config.vm is None:
        lines.append(f"KERNEL: [{config.kernel}]")
        lines.append(f"ROOTFS: [{config.rootfs}]")
    else:
        lines.append(f"VM:   [{config.vm}]")
    lines.append(f"FSTYPE: [{fstype}]")
    return "\n".join(lines)


def report_error(exc: RunQemuError) -> None:
    message = exc.message
    if isinstance(exc, BuildEnvironmentUnsetError) and exc.output:
        message = f"{message}\n\n  Output:\n" + "\n".join(f"    {line}" for line in exc.output.splitlines())
    click.echo(format_error(error_title(exc), message, [exc.hint] if exc.hint else None), err=True)


def reraise_signal(signum: int) -> NoReturn:
    """Die from ``signum`` with the default action so the parent sees it."""
    signal.signal(signum, signal.SIG_DFL)
    os.kill(os.getpid(), signum)
    sys.exit(128 + signum)


def run(tokens: tuple[str, ...], quiet: bool) -> int:
    """Resolve ``tokens``, boot the guest and return the exit code."""
    settings = Settings()
    try:
        config = Resolver(settings).resolve(tokens)
        if not quiet:
            click.echo(format_parameters(config))
        return Session(config, settings).run()
    except RunQemuError as e:
        report_error(e)
        return EXIT_RUNQEMU_ERROR


@click.command(
    context_settings={
        "help_option_names": ["-h", "--help"],
        "ignore_unknown_options": True,
    }
)
@click.argument("tokens", nargs=-1, type=click.UNPROCESSED)
@click.option("-q", "--quiet", is_flag=True, help="Only report errors")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, "-V", "--version", prog_name="runqemu")
def main(tokens: tuple[str, ...], quiet: bool, verbose: bool) -> NoReturn:
    """Boot an OpenEmbedded image in QEMU.

    TOKENS may be given in any order:

    \b
      MACHINE      qemuarm qemuarmv6 qemuarmv7 qemuarm64 qemux86 qemux86-64
                   qemumips qemumipsel qemumips64 qemuppc qemush4
                   qemumicroblaze qemuzynq vexpressa9 akita spitz
      FSTYPE       ext2 ext3 ext4 jffs2 btrfs nfs
      FILE         kernel (*.bin), rootfs (*.ext4, ...), disk image (*.vmdk)
      DIRECTORY    NFS root filesystem
      IMAGE        image recipe name, e.g. core-image-minimal
      KEYWORDS     nographic serial kvm kvm-vhost slirp publicvnc audio ramfs iso
      KEY=VALUE    qemuparams="..." bootparams="..." biosdir=DIR biosfilename=FILE

    MACHINE, KERNEL, ROOTFS and VM may also come from the environment.
    Missing paths are looked up with 'bitbake -e' unless OE_TMPDIR and
    DEPLOY_DIR_IMAGE are set.

    Examples:

    \b
      runqemu qemuarm
      runqemu qemux86-64 core-image-sato ext4
      runqemu path/to/bzImage-qemux86.bin path/to/nfsrootdir/ serial
      runqemu path/to/core-image-minimal-qemux86.vmdk
      runqemu qemux86 ramfs
      runqemu qemux86 qemuparams="-m 256"
      runqemu qemux86 bootparams="psplash=false"
    """
    if quiet:
        configure_logging(quiet=True)
    elif verbose:
        configure_logging(level=logging.DEBUG)
    else:
        configure_logging()

    try:
        exit_code = run(tokens, quiet)
    except TerminationRequested as e:
        reraise_signal(e.signum)

    sys.exit(exit_code)
