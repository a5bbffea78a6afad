"""Standardized Azure CLI subprocess execution.

Provides run_az_command(): a thin wrapper around subprocess.run with a
per-call timeout and optional retry with exponential backoff.

Usage:
    from azavset.azure_cli_executor import run_az_command

    result = run_az_command(["az", "vm", "show", ...], timeout=60)

    # Read-only calls may opt into retries
    result = run_az_command(["az", "group", "export", ...], timeout=300, max_attempts=3)
"""

import logging
import subprocess

from azavset.retry_handler import retry_with_exponential_backoff

logger = logging.getLogger(__name__)


def run_az_command(
    cmd: list[str],
    *,
    timeout: int = 30,
    max_attempts: int = 1,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Execute an Azure CLI command.

    Args:
        cmd: Command list starting with "az", e.g. ["az", "vm", "list"]
        timeout: Subprocess timeout in seconds (default: 30)
        max_attempts: Number of attempts (default: 1, no retry)
        check: If True, raise CalledProcessError on non-zero exit (default: True)

    Returns:
        subprocess.CompletedProcess with stdout/stderr

    Raises:
        subprocess.CalledProcessError: After attempts exhausted (when check=True)
        subprocess.TimeoutExpired: After attempts exhausted
    """

    @retry_with_exponential_backoff(max_attempts=max(1, max_attempts))
    def _run() -> subprocess.CompletedProcess[str]:
        logger.debug(f"Running: {' '.join(cmd)}")
        return subprocess.run(cmd, capture_output=True, text=True, check=check, timeout=timeout)

    return _run()


__all__ = ["run_az_command"]
