"""Shared command utilities for local network probing."""

import logging
import subprocess

from failover.config import settings

logger = logging.getLogger(__name__)


def run_cmd(cmd: list[str], timeout: float | None = None) -> tuple[int, str, str]:
    """Run a command and capture its output.

    Args:
        cmd: Command and arguments as list
        timeout: Seconds before the command is killed

    Returns:
        Tuple of (return_code, stdout, stderr). A missing binary yields 127
        and a timeout yields 124, matching shell conventions.
    """
    if timeout is None:
        timeout = settings.command_timeout
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        return 127, "", f"{cmd[0]}: command not found"
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        return 124, "", f"timed out after {timeout}s"
    return result.returncode, result.stdout, result.stderr


def ip(*args: str) -> tuple[int, str, str]:
    """Run an iproute2 command.

    Args:
        args: Arguments to ip

    Returns:
        Tuple of (return_code, stdout, stderr)
    """
    return run_cmd(["ip", *args])


def ip_link_exists(name: str) -> bool:
    """Check if a network interface exists."""
    code, _, _ = ip("link", "show", name)
    return code == 0
