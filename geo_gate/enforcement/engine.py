"""
Reconciliation engine: brings kernel sets and chains in line with a declared
policy set, and removes them again.
"""

import asyncio
import datetime
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from ..core.errors import (
    ConcurrentReconciliationRejected,
    DatasetUnavailable,
    ErrorKind,
    GeoGateError,
    InvalidPolicy,
    KernelPrimitiveFailure,
)
from ..core.logging_config import get_logger, log_error, log_success, log_warning
from ..core.objects import AddressFamily
from ..core.policy import CapabilityFlags, DeclaredPolicySet, ResolvedPolicy, Scope
from ..core.rules import ChainProgram
from ..datasets.loader import DatasetSource
from ..devices.base import KernelBackend
from .builder import SetBuilder, is_engine_set, set_name
from .synthesizer import ChainSynthesizer, scope_for_chain, splice_rule

logger = get_logger(__name__)


class ScopeState(str, Enum):
    ABSENT = "absent"
    APPLYING = "applying"
    ACTIVE = "active"
    REMOVING = "removing"


class ScopeError(BaseModel):
    """A failure confined to one scope (or, with no scope, to one set)."""

    scope: Optional[str] = None
    kind: ErrorKind
    message: str
    family: Optional[AddressFamily] = None
    target: Optional[str] = None

    @classmethod
    def from_exception(
        cls,
        scope: Optional[str],
        error: GeoGateError,
        family: Optional[AddressFamily] = None,
    ) -> "ScopeError":
        return cls(
            scope=scope,
            kind=error.kind,
            message=str(error),
            family=family,
            target=getattr(error, "target", None),
        )


class DatasetError(BaseModel):
    """A country whose dataset could not be refreshed in this pass."""

    country: str
    family: AddressFamily
    reason: str

    @classmethod
    def from_exception(cls, error: DatasetUnavailable) -> "DatasetError":
        return cls(country=error.country, family=error.family, reason=error.reason)


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation pass."""

    operation: str
    removed_scopes: List[str] = []
    destroyed_sets: List[str] = []
    scope_errors: List[ScopeError] = []
    timestamp: str = Field(
        default_factory=lambda: datetime.datetime.now().isoformat()
    )

    @property
    def is_successful(self) -> bool:
        """True when no scope reported an error."""
        return not self.scope_errors

    def errors_for(self, scope_id: str) -> List[ScopeError]:
        return [error for error in self.scope_errors if error.scope == scope_id]


class ApplyResult(ReconcileResult):
    operation: str = "apply"
    applied_scopes: List[str] = []
    dataset_errors: List[DatasetError] = []
    set_sizes: Dict[str, Optional[int]] = {}

    @property
    def is_degraded(self) -> bool:
        """True when some country was applied with stale or empty data."""
        return bool(self.dataset_errors)


class TeardownResult(ReconcileResult):
    operation: str = "teardown"


@dataclass
class InstalledScope:
    """Chain programs installed on the kernel for one scope."""

    scope: Scope
    programs: Dict[AddressFamily, ChainProgram] = field(default_factory=dict)
    policy: Optional[ResolvedPolicy] = None

    @property
    def referenced_sets(self) -> Set[str]:
        return {
            name for program in self.programs.values() for name in program.referenced_sets
        }


class Reconciler:
    """
    Owns the mapping from declared scope policies to installed kernel objects.

    ``apply`` and ``teardown`` are serialized by one lock. Installed state is
    discovered from the kernel before the first operation, so a new process
    picks up where an earlier one stopped.
    """

    def __init__(
        self,
        backend: KernelBackend,
        dataset: DatasetSource,
        dataset_timeout: float = 30.0,
        synthesizer: Optional[ChainSynthesizer] = None,
        dataset_workers: int = 8,
    ):
        self.backend = backend
        self.builder = SetBuilder(
            backend, dataset, timeout=dataset_timeout, workers=dataset_workers
        )
        self.synthesizer = synthesizer or ChainSynthesizer()

        self._installed: Dict[str, InstalledScope] = {}
        self._states: Dict[str, ScopeState] = {}
        self._owners: Dict[str, Set[str]] = {}
        self._discovered = False
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    # Introspection

    def state(self, scope_id: str) -> ScopeState:
        return self._states.get(scope_id, ScopeState.ABSENT)

    @property
    def installed(self) -> Dict[str, InstalledScope]:
        return dict(self._installed)

    @property
    def owners(self) -> Dict[str, Set[str]]:
        """Set name to the ids of the scopes whose chains reference it."""
        return {name: set(scope_ids) for name, scope_ids in self._owners.items()}

    @property
    def busy(self) -> bool:
        return self._lock is not None and self._lock.locked()

    async def snapshot(self) -> Dict[str, InstalledScope]:
        """Installed scopes, discovering kernel state first if needed."""
        async with self._acquire(wait=True):
            await self._ensure_discovered()
            return self.installed

    def plan(
        self, declared: DeclaredPolicySet, capabilities: CapabilityFlags
    ) -> List[ChainProgram]:
        """Chain programs ``apply`` would install; raises InvalidPolicy."""
        programs = []
        for scope, _ in declared.enabled_scopes():
            resolved = declared.resolve_scope(scope)
            for family in capabilities.families():
                programs.append(self.synthesizer.synthesize(scope, resolved, family))
        return programs

    # Locking and discovery

    def _loop_lock(self) -> asyncio.Lock:
        """The lock for the running event loop, created on first use in that loop."""
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    @asynccontextmanager
    async def _acquire(self, wait: bool):
        lock = self._loop_lock()
        if not wait and lock.locked():
            raise ConcurrentReconciliationRejected()
        async with lock:
            yield

    async def _ensure_discovered(self) -> None:
        if not self._discovered:
            await self.discover()

    async def discover(self) -> None:
        """Rebuild installed state and the owner map from the kernel."""
        installed: Dict[str, InstalledScope] = {}

        for family in AddressFamily:
            try:
                chains = await self.backend.list_chains(family)
            except KernelPrimitiveFailure as e:
                log_warning(f"Cannot list {family} chains: {e}", logger)
                continue

            for chain in chains:
                scope = scope_for_chain(chain)
                if scope is None:
                    continue
                try:
                    rules = await self.backend.list_rules(family, chain)
                except KernelPrimitiveFailure as e:
                    # Still tracked so that teardown removes it
                    log_warning(f"Cannot read chain {chain}: {e}", logger)
                    rules = []
                entry = installed.setdefault(scope.scope_id, InstalledScope(scope=scope))
                entry.programs[family] = ChainProgram(
                    scope=scope,
                    family=family,
                    chain=chain,
                    rules=rules,
                    splice=splice_rule(scope),
                )

        self._installed = installed
        self._states = {scope_id: ScopeState.ACTIVE for scope_id in installed}
        self._owners = {}
        for scope_id, entry in installed.items():
            self._claim_sets(scope_id, entry.referenced_sets)
        self._discovered = True

        if installed:
            logger.info("Discovered installed scopes: %s", ", ".join(sorted(installed)))

    def _claim_sets(self, scope_id: str, names: Iterable[str]) -> None:
        """Make ``names`` exactly the sets owned by ``scope_id``."""
        for owners in self._owners.values():
            owners.discard(scope_id)
        for name in names:
            self._owners.setdefault(name, set()).add(scope_id)

    # Apply

    async def apply(
        self,
        declared: DeclaredPolicySet,
        capabilities: CapabilityFlags,
        wait: bool = True,
    ) -> ApplyResult:
        """
        Install every enabled scope of ``declared`` and remove scopes that are
        no longer declared or enabled. Per-scope failures are reported in the
        result; a failed scope keeps its previous kernel state.
        """
        async with self._acquire(wait):
            await self._ensure_discovered()
            result = ApplyResult()
            families = capabilities.families()

            resolved: Dict[str, ResolvedPolicy] = {}
            scopes: Dict[str, Scope] = {}
            for scope, _ in declared.enabled_scopes():
                # An interface may not take the global scope's id; resolve rejects it
                scopes.setdefault(scope.scope_id, scope)
                try:
                    resolved[scope.scope_id] = declared.resolve_scope(scope)
                except InvalidPolicy as e:
                    log_error(str(e), logger)
                    result.scope_errors.append(ScopeError.from_exception(scope.scope_id, e))

            countries = {c for policy in resolved.values() for c in policy.countries}
            report = await self.builder.build(countries, families)
            result.dataset_errors = [
                DatasetError.from_exception(e) for e in report.dataset_errors
            ]
            for name, outcome in report.outcomes.items():
                self._owners.setdefault(name, set())
                result.set_sizes[name] = outcome.entries

            for scope_id, policy in resolved.items():
                scope = scopes[scope_id]
                broken = [
                    set_name(country, family)
                    for country in policy.countries
                    for family in families
                    if set_name(country, family) in report.failed_sets
                ]
                if broken:
                    error = report.failed_sets[broken[0]]
                    log_error(f"Scope {scope_id} not applied: {error}", logger)
                    result.scope_errors.append(ScopeError.from_exception(scope_id, error))
                    continue

                if await self._install_scope(scope, policy, families, result):
                    result.applied_scopes.append(scope_id)

            for scope_id in self._sorted_installed():
                if scope_id not in scopes:
                    if await self._remove_scope(scope_id, result):
                        result.removed_scopes.append(scope_id)

            await self._collect_sets(result)

            if result.is_successful:
                log_success(
                    f"Applied {len(result.applied_scopes)} scope(s), "
                    f"removed {len(result.removed_scopes)}",
                    logger,
                )
            return result

    async def _install_scope(
        self,
        scope: Scope,
        policy: ResolvedPolicy,
        families: List[AddressFamily],
        result: ApplyResult,
    ) -> bool:
        scope_id = scope.scope_id
        previous = self._installed.get(scope_id)
        self._states[scope_id] = ScopeState.APPLYING

        programs = {
            family: self.synthesizer.synthesize(scope, policy, family) for family in families
        }
        done: List[AddressFamily] = []
        family: Optional[AddressFamily] = None
        try:
            for family, program in programs.items():
                await self.backend.install_chain(program)
                done.append(family)
            if previous is not None:
                for family, old in previous.programs.items():
                    if family not in programs:
                        await self.backend.remove_chain(family, old.chain, old.splice)
        except KernelPrimitiveFailure as e:
            log_error(f"Scope {scope_id} failed on {family}: {e}", logger)
            result.scope_errors.append(ScopeError.from_exception(scope_id, e, family))
            await self._rollback(scope, previous, programs, done, result)
            return False

        self._installed[scope_id] = InstalledScope(scope=scope, programs=programs, policy=policy)
        self._claim_sets(scope_id, self._installed[scope_id].referenced_sets)
        self._states[scope_id] = ScopeState.ACTIVE
        logger.info(
            "Scope %s active: %s %s", scope_id, policy.mode.value, ",".join(policy.country_codes)
        )
        return True

    async def _rollback(
        self,
        scope: Scope,
        previous: Optional[InstalledScope],
        programs: Dict[AddressFamily, ChainProgram],
        done: List[AddressFamily],
        result: ApplyResult,
    ) -> None:
        """Return the families already switched in this pass to their previous program."""
        scope_id = scope.scope_id
        remaining = dict(previous.programs) if previous else {}

        for family in done:
            old = remaining.get(family)
            try:
                if old is not None:
                    await self.backend.install_chain(old)
                else:
                    await self.backend.remove_chain(
                        family, programs[family].chain, programs[family].splice
                    )
            except KernelPrimitiveFailure as e:
                log_error(f"Rollback of scope {scope_id} on {family} failed: {e}", logger)
                result.scope_errors.append(ScopeError.from_exception(scope_id, e, family))
                remaining[family] = programs[family]

        if remaining:
            entry = InstalledScope(
                scope=scope, programs=remaining, policy=previous.policy if previous else None
            )
            self._installed[scope_id] = entry
            self._claim_sets(scope_id, entry.referenced_sets)
            self._states[scope_id] = ScopeState.ACTIVE
        else:
            self._installed.pop(scope_id, None)
            self._claim_sets(scope_id, [])
            self._states[scope_id] = ScopeState.ABSENT

    # Teardown

    async def teardown(
        self,
        declared: Optional[DeclaredPolicySet] = None,
        capabilities: Optional[CapabilityFlags] = None,
        wait: bool = True,
    ) -> TeardownResult:
        """
        Remove the scopes ``declared`` names, or every installed scope when
        ``declared`` is None. Sets are destroyed once no scope owns them; a
        full teardown also destroys leftover ``country_*`` sets.
        """
        async with self._acquire(wait):
            await self._ensure_discovered()
            result = TeardownResult()

            if declared is None:
                targets = self._sorted_installed()
            else:
                named = []
                for scope, policy in declared.scopes():
                    try:
                        scope.check_interface_name()
                    except InvalidPolicy as e:
                        result.scope_errors.append(ScopeError.from_exception(scope.scope_id, e))
                        continue
                    named.append((scope, policy))

                targets = [s.scope_id for s, _ in named if s.scope_id in self._installed]
                families = capabilities.families() if capabilities else list(AddressFamily)
                for scope, policy in named:
                    if policy.enabled and scope.scope_id not in self._installed:
                        await self._remove_untracked(scope, families, result)

            for scope_id in targets:
                if await self._remove_scope(scope_id, result):
                    result.removed_scopes.append(scope_id)

            await self._collect_sets(result)
            if declared is None:
                await self._destroy_leaked_sets(result)

            if result.is_successful:
                log_success(f"Removed {len(result.removed_scopes)} scope(s)", logger)
            return result

    async def _remove_scope(self, scope_id: str, result: ReconcileResult) -> bool:
        entry = self._installed[scope_id]
        self._states[scope_id] = ScopeState.REMOVING

        for family in sorted(entry.programs, key=lambda f: f.version):
            program = entry.programs[family]
            try:
                await self.backend.remove_chain(family, program.chain, program.splice)
            except KernelPrimitiveFailure as e:
                # Left in REMOVING; every step is idempotent so a retry finishes the job
                log_error(f"Failed to remove scope {scope_id} on {family}: {e}", logger)
                result.scope_errors.append(ScopeError.from_exception(scope_id, e, family))
                return False
            del entry.programs[family]

        del self._installed[scope_id]
        self._claim_sets(scope_id, [])
        self._states[scope_id] = ScopeState.ABSENT
        logger.info("Scope %s removed", scope_id)
        return True

    async def _remove_untracked(
        self, scope: Scope, families: List[AddressFamily], result: TeardownResult
    ) -> None:
        """Idempotently remove the chains of a scope this engine has no record of."""
        splice = splice_rule(scope)
        for family in families:
            try:
                await self.backend.remove_chain(family, splice.target, splice)
            except KernelPrimitiveFailure as e:
                result.scope_errors.append(ScopeError.from_exception(scope.scope_id, e, family))

    # Sets

    async def _collect_sets(self, result: ReconcileResult) -> None:
        """Destroy every tracked set that no scope owns any more."""
        for name in sorted(self._owners):
            if self._owners[name]:
                continue
            try:
                await self.backend.destroy_set(name)
            except KernelPrimitiveFailure as e:
                log_error(f"Failed to destroy set {name}: {e}", logger)
                result.scope_errors.append(ScopeError.from_exception(None, e))
                continue
            del self._owners[name]
            result.destroyed_sets.append(name)

    async def _destroy_leaked_sets(self, result: ReconcileResult) -> None:
        try:
            names = await self.backend.list_sets()
        except KernelPrimitiveFailure as e:
            result.scope_errors.append(ScopeError.from_exception(None, e))
            return

        for name in names:
            if not is_engine_set(name) or self._owners.get(name):
                continue
            try:
                await self.backend.destroy_set(name)
            except KernelPrimitiveFailure as e:
                log_error(f"Failed to destroy leaked set {name}: {e}", logger)
                result.scope_errors.append(ScopeError.from_exception(None, e))
                continue
            self._owners.pop(name, None)
            result.destroyed_sets.append(name)

    def _sorted_installed(self) -> List[str]:
        return [
            entry.scope.scope_id
            for entry in sorted(self._installed.values(), key=lambda e: e.scope.sort_key)
        ]
