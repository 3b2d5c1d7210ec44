"""Proxmox VE host control interface.

The engine's only path to host truth and host mutation: pvesh for reads,
pct (containers) and qm (virtual machines) for lifecycle changes.
"""

from pve.host import HostQueryError, PveHost
from pve.guests import ContainerCommands, GuestCommands, VmCommands

__all__ = [
    'HostQueryError',
    'PveHost',
    'GuestCommands',
    'ContainerCommands',
    'VmCommands',
]
