"""
Kernel backends for ipset and iptables.
"""

from .base import CommandResult, KernelBackend
from .linux_iptables import LinuxIptables
from .memory import InMemoryKernel
from .transport import CommandTransport, LocalTransport, SSHTransport

__all__ = [
    "KernelBackend",
    "CommandResult",
    "LinuxIptables",
    "InMemoryKernel",
    "CommandTransport",
    "LocalTransport",
    "SSHTransport",
]
