"""Centralized logging for runqemu.

Library logging conventions (Python docs, PEP 282):
- Attach NullHandler to the library root logger
- Only the CLI entry point installs a real handler
- Support RUNQEMU_LOG_LEVEL env var for level control

CLI output format:
    WARNING [2026-02-25 10:02:54] runqemu.resolver - message

The launcher is a short-lived synchronous process that hands the terminal
to the emulator, so records are written straight to stderr from the
calling thread. Anything still buffered when QEMU takes over the tty
would interleave with the guest console.

References:
- https://docs.python.org/3/howto/logging.html#configuring-logging-for-a-library
"""

import logging
import os

import click

LIBRARY_LOGGER_NAME: str = "runqemu"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor RUNQEMU_LOG_LEVEL env var (e.g. "DEBUG", "WARNING", "ERROR")
_env_level = os.environ.get("RUNQEMU_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


class _ClickHandler(logging.Handler):
    """Writes records to stderr via click.echo.

    Warnings and errors keep their colour, everything below is dimmed.
    click.echo() strips ANSI codes when stderr is not a TTY.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if record.levelno >= logging.WARNING:
                styled = click.style(msg, fg="yellow" if record.levelno == logging.WARNING else "red")
            else:
                styled = click.style(msg, dim=True)
            click.echo(styled, err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All runqemu modules use this instead of logging.getLogger()
    directly for a consistent logger hierarchy.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for the CLI entry point.

    Adds a _ClickHandler if none exists (idempotent), then sets the
    log level. Embedding applications that configure their own handlers
    are unaffected.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR (suppress WARNING/INFO).
               Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _ClickHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_ClickHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        # setLevel() raises ValueError on unknown names
        lib_logger.setLevel(level)
    elif lib_logger.level == logging.NOTSET:
        lib_logger.setLevel(logging.INFO)
