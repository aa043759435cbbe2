"""
Error kinds raised and reported by the GeoGate engine.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Classification used in per-scope error reports."""

    DATASET_UNAVAILABLE = "dataset_unavailable"
    KERNEL_PRIMITIVE_FAILURE = "kernel_primitive_failure"
    INVALID_POLICY = "invalid_policy"
    CONCURRENT_RECONCILIATION_REJECTED = "concurrent_reconciliation_rejected"


class GeoGateError(Exception):
    """Base class for all GeoGate errors."""

    kind: Optional[ErrorKind] = None


class DatasetUnavailable(GeoGateError):
    """The CIDR list for one country could not be read."""

    kind = ErrorKind.DATASET_UNAVAILABLE

    def __init__(self, country: str, family: str, reason: str):
        self.country = country
        self.family = family
        self.reason = reason
        super().__init__(f"Dataset for {country}/{family} unavailable: {reason}")


class KernelPrimitiveFailure(GeoGateError):
    """A set or chain primitive failed on the kernel."""

    kind = ErrorKind.KERNEL_PRIMITIVE_FAILURE

    def __init__(self, operation: str, target: str, detail: Optional[str] = None):
        self.operation = operation
        self.target = target
        self.detail = detail
        message = f"{operation} failed for {target}"
        if detail:
            message = f"{message}: {detail.strip()}"
        super().__init__(message)


class InvalidPolicy(GeoGateError):
    """A scope policy has a malformed country code or an unknown mode."""

    kind = ErrorKind.INVALID_POLICY

    def __init__(self, scope: str, reason: str):
        self.scope = scope
        self.reason = reason
        super().__init__(f"Invalid policy for scope '{scope}': {reason}")


class ConcurrentReconciliationRejected(GeoGateError):
    """Another apply or teardown is already in flight."""

    kind = ErrorKind.CONCURRENT_RECONCILIATION_REJECTED

    def __init__(self, message: str = "A reconciliation is already in progress"):
        super().__init__(message)


class ActivationError(GeoGateError):
    """Raised by a strict activation driver when a pass reports scope errors."""

    def __init__(self, result: Any):
        self.result = result
        errors = getattr(result, "scope_errors", [])
        super().__init__(
            f"{getattr(result, 'operation', 'reconciliation')} finished with "
            f"{len(errors)} scope error(s)"
        )
