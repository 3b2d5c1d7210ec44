"""Common utilities and types for host reconciliation."""

import logging
import shlex
import subprocess
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Result returned by a single host-affecting step."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)


def run_command(cmd: list[str], timeout: int = 600) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    Timeouts and launch failures are reported as returncode -1 so callers
    handle them like any other failed command.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def run_ssh(
    host: str,
    command: str,
    user: str = 'root',
    timeout: int = 60,
) -> tuple[int, str, str]:
    """Run command over SSH.

    The same timeout bounds both the connection attempt and the whole
    remote command.
    """
    # Logged command lines must not contain the ERROR marker
    ssh_opts = '-o BatchMode=yes -o LogLevel=error'
    cmd = ['ssh'] + ssh_opts.split() + ['-o', f'ConnectTimeout={min(timeout, 30)}', f'{user}@{host}', command]
    return run_command(cmd, timeout=timeout)


def quote_command(cmd: list[str]) -> str:
    """Join an argv list into a single shell-safe string for SSH."""
    return ' '.join(shlex.quote(part) for part in cmd)
