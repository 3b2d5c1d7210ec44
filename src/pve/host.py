"""Command transport for a PVE node.

Runs host commands locally or, when ssh_host is configured, over SSH. Every
call carries an explicit timeout so a stuck command cannot stall the run.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from common import quote_command, run_command, run_ssh
from config import EngineConfig

logger = logging.getLogger(__name__)


class HostQueryError(Exception):
    """The host could not be queried (command failure, timeout, bad output)."""


@dataclass
class PveHost:
    """A PVE node reachable through pvesh/pct/qm.

    Attributes:
        config: Engine configuration (node name, SSH target, timeouts)
    """
    config: EngineConfig

    @property
    def node(self) -> str:
        return self.config.node

    def run(self, cmd: list[str], timeout: int) -> tuple[int, str, str]:
        """Run a host command and return (returncode, stdout, stderr)."""
        if self.config.is_remote:
            return run_ssh(
                self.config.ssh_host,
                quote_command(cmd),
                user=self.config.ssh_user,
                timeout=timeout,
            )
        return run_command(cmd, timeout=timeout)

    def query(self, path: str) -> Any:
        """Read a pvesh API path and return the decoded JSON.

        Raises:
            HostQueryError: If the command fails, times out, or returns
                something that is not JSON
        """
        cmd = ['pvesh', 'get', path, '--output-format', 'json']
        rc, out, err = self.run(cmd, timeout=self.config.read_timeout)
        if rc != 0:
            raise HostQueryError(f"pvesh get {path} failed (rc={rc}): {err.strip() or out.strip()}")
        try:
            return json.loads(out)
        except json.JSONDecodeError as e:
            raise HostQueryError(f"pvesh get {path} returned invalid JSON: {e}")
