"""
Enforcement module: set building, chain synthesis and reconciliation.
"""

from .builder import SetBuilder, set_name
from .driver import ActivationDriver
from .engine import (
    ApplyResult,
    Reconciler,
    ScopeError,
    ScopeState,
    TeardownResult,
)
from .synthesizer import ChainSynthesizer, chain_name

__all__ = [
    "SetBuilder",
    "set_name",
    "ChainSynthesizer",
    "chain_name",
    "Reconciler",
    "ApplyResult",
    "TeardownResult",
    "ScopeError",
    "ScopeState",
    "ActivationDriver",
]
