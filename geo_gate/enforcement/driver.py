"""
Activation driver: maps filter start, stop and refresh events onto the reconciler.
"""

from typing import Optional

from ..core.errors import ActivationError
from ..core.logging_config import get_logger, log_warning
from ..core.policy import CapabilityFlags, DeclaredPolicySet
from .engine import ApplyResult, ReconcileResult, Reconciler, TeardownResult

logger = get_logger(__name__)


class ActivationDriver:
    """
    Thin lifecycle layer over a Reconciler.

    With ``strict`` set, a pass that reports any scope error raises
    ActivationError; otherwise the result is returned for the caller to judge.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        declared: DeclaredPolicySet,
        capabilities: Optional[CapabilityFlags] = None,
        strict: bool = False,
    ):
        self.reconciler = reconciler
        self.declared = declared
        self.capabilities = capabilities or CapabilityFlags.detect()
        self.strict = strict

    async def start(self, wait: bool = True) -> ApplyResult:
        """Apply the declared policy set."""
        logger.info("Starting country filter '%s'", self.declared.metadata.name)
        result = await self.reconciler.apply(self.declared, self.capabilities, wait=wait)
        return self._check(result)

    async def stop(self, wait: bool = True) -> TeardownResult:
        """Remove everything the engine has installed."""
        logger.info("Stopping country filter")
        result = await self.reconciler.teardown(None, self.capabilities, wait=wait)
        return self._check(result)

    async def refresh(self, wait: bool = True) -> ApplyResult:
        """Re-apply after a dataset update; the policy is unchanged."""
        logger.info("Refreshing country datasets")
        result = await self.reconciler.apply(self.declared, self.capabilities, wait=wait)
        return self._check(result)

    async def reload(self, declared: DeclaredPolicySet, wait: bool = True) -> ApplyResult:
        """Switch to a new declared policy set and apply it."""
        self.declared = declared
        logger.info("Reloading country filter '%s'", declared.metadata.name)
        result = await self.reconciler.apply(declared, self.capabilities, wait=wait)
        return self._check(result)

    def _check(self, result: ReconcileResult) -> ReconcileResult:
        if result.is_successful:
            return result
        for error in result.scope_errors:
            log_warning(f"[{error.scope or 'sets'}] {error.message}", logger)
        if self.strict:
            raise ActivationError(result)
        return result
