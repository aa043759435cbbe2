"""
Core module for GeoGate.
"""

from .errors import (
    ActivationError,
    ConcurrentReconciliationRejected,
    DatasetUnavailable,
    ErrorKind,
    GeoGateError,
    InvalidPolicy,
    KernelPrimitiveFailure,
)
from .objects import AddressFamily, CIDRBlock, CountryCode
from .policy import (
    CapabilityFlags,
    DeclaredPolicySet,
    PolicyMetadata,
    PolicyMode,
    PolicyValidationResult,
    ResolvedPolicy,
    Scope,
    ScopePolicy,
)
from .rules import ChainProgram, FilterRule

__all__ = [
    "AddressFamily",
    "CIDRBlock",
    "CountryCode",
    "CapabilityFlags",
    "DeclaredPolicySet",
    "PolicyMetadata",
    "PolicyMode",
    "PolicyValidationResult",
    "ResolvedPolicy",
    "Scope",
    "ScopePolicy",
    "ChainProgram",
    "FilterRule",
    "ErrorKind",
    "GeoGateError",
    "DatasetUnavailable",
    "KernelPrimitiveFailure",
    "InvalidPolicy",
    "ConcurrentReconciliationRejected",
    "ActivationError",
]
