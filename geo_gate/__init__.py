"""
GeoGate - Country-based inbound traffic filtering

A Python engine that compiles declarative per-scope country allow and block
lists into ipset address sets and iptables chains, and keeps them in sync.
"""

__version__ = "0.1.0"

from .core.policy import CapabilityFlags, DeclaredPolicySet, PolicyMode, ScopePolicy
from .datasets.loader import DirectoryDatasetSource, HttpDatasetSource, StaticDatasetSource
from .devices.linux_iptables import LinuxIptables
from .devices.memory import InMemoryKernel
from .enforcement.driver import ActivationDriver
from .enforcement.engine import Reconciler

__all__ = [
    "DeclaredPolicySet",
    "ScopePolicy",
    "PolicyMode",
    "CapabilityFlags",
    "DirectoryDatasetSource",
    "HttpDatasetSource",
    "StaticDatasetSource",
    "LinuxIptables",
    "InMemoryKernel",
    "Reconciler",
    "ActivationDriver",
]
