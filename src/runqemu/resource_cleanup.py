"""Resource cleanup utilities for the session's release path.

Cleanup operations log errors but never raise: one failing step must
not stop the remaining resources from being released.
"""

from pathlib import Path

import psutil

from runqemu._logging import get_logger

logger = get_logger(__name__)


def cleanup_process(
    proc: psutil.Popen | None,
    name: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop a child process if it is still running (SIGTERM → SIGKILL).

    - Checks returncode first so an exited child is only reaped
    - Always waits after terminate/kill to prevent zombies
    - Handles NoSuchProcess for children that died in between

    Args:
        proc: Process to stop (None safe - returns immediately)
        name: Process name for logging (e.g., "qemu-system-x86_64")
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if issues occurred
    """
    if proc is None:
        return True

    try:
        if proc.poll() is not None:
            logger.debug(f"{name} already terminated", extra={"pid": proc.pid, "returncode": proc.returncode})
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"pid": proc.pid})
        proc.terminate()
        try:
            proc.wait(timeout=term_timeout)
            logger.debug(f"{name} stopped gracefully (SIGTERM)", extra={"returncode": proc.returncode})
            return True
        except psutil.TimeoutExpired:
            logger.warning(f"{name} didn't respond to SIGTERM, force killing", extra={"term_timeout": term_timeout})

        logger.debug(f"Sending SIGKILL to {name}", extra={"pid": proc.pid})
        proc.kill()
        try:
            proc.wait(timeout=kill_timeout)
            logger.warning(f"{name} force killed (SIGKILL)", extra={"returncode": proc.returncode})
            return True
        except psutil.TimeoutExpired:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

    except psutil.NoSuchProcess:
        logger.debug(f"{name} already dead (NoSuchProcess)")
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


def cleanup_file(file_path: Path | None, description: str = "file") -> bool:
    """Delete a file, e.g. a half-written converted image.

    Silently succeeds if the file doesn't exist.

    Returns:
        True if the file is gone, False if it could not be removed
    """
    if file_path is None:
        return True

    try:
        file_path.unlink(missing_ok=True)
        logger.debug(f"{description} deleted", extra={"path": str(file_path)})
        return True
    except OSError as e:
        logger.error(f"{description} could not be deleted", extra={"path": str(file_path), "error": str(e)})
        return False
