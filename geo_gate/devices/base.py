"""
Base classes for the kernel filtering capability.

The engine never touches kernel state directly; it issues calls against a
KernelBackend. Each call is atomic on its own and calls from one process are
applied in order.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from pydantic import BaseModel

from ..core.objects import AddressFamily, CIDRBlock
from ..core.rules import PRIMARY_CHAIN, ChainProgram, FilterRule


class CommandResult(BaseModel):
    """Result of executing a command on the host."""

    command: str
    success: bool
    output: str
    error: Optional[str] = None
    exit_code: Optional[int] = None
    execution_time: float


class KernelBackend(ABC):
    """
    Abstract kernel set and chain primitives.

    Destroying, deleting or flushing an absent object is not an error.
    Failures raise KernelPrimitiveFailure.
    """

    # Address sets

    @abstractmethod
    async def create_set(self, name: str, family: AddressFamily) -> None:
        """Create the set if it does not exist yet."""

    @abstractmethod
    async def flush_set(self, name: str) -> None:
        """Remove all members of the set."""

    @abstractmethod
    async def add_to_set(self, name: str, blocks: Sequence[CIDRBlock]) -> None:
        """Add members to an existing set."""

    @abstractmethod
    async def destroy_set(self, name: str) -> None:
        """Destroy the set."""

    @abstractmethod
    async def list_sets(self) -> List[str]:
        """Names of all sets on the host."""

    async def replace_set(
        self, name: str, family: AddressFamily, blocks: Sequence[CIDRBlock]
    ) -> None:
        """Make ``blocks`` the exact membership of the set, creating it if needed."""
        await self.create_set(name, family)
        await self.flush_set(name)
        if blocks:
            await self.add_to_set(name, blocks)

    # Chains

    @abstractmethod
    async def list_chains(self, family: AddressFamily) -> List[str]:
        """Names of user-defined chains in the filter table."""

    @abstractmethod
    async def list_rules(self, family: AddressFamily, chain: str) -> List[FilterRule]:
        """Rules of ``chain`` in order; unrecognized rules are omitted."""

    @abstractmethod
    async def ensure_chain(self, family: AddressFamily, chain: str) -> None:
        """Create the chain if absent, otherwise flush it."""

    @abstractmethod
    async def append_rule(self, family: AddressFamily, rule: FilterRule) -> None:
        """Append a rule at the end of its chain."""

    @abstractmethod
    async def insert_rule(
        self, family: AddressFamily, rule: FilterRule, position: int = 1
    ) -> None:
        """Insert a rule at a 1-based position of its chain."""

    @abstractmethod
    async def delete_rule(self, family: AddressFamily, rule: FilterRule) -> bool:
        """Delete one copy of the rule. Returns False if it was not present."""

    @abstractmethod
    async def flush_chain(self, family: AddressFamily, chain: str) -> None:
        """Remove all rules of the chain."""

    @abstractmethod
    async def delete_chain(self, family: AddressFamily, chain: str) -> None:
        """Delete an empty, unreferenced chain."""

    # Composite operations

    async def install_chain(self, program: ChainProgram) -> None:
        """
        Replace the chain contents with ``program`` and splice it into the
        primary chain exactly once, at ``program.splice_position``.

        Backends that can do this in one kernel transaction override it.
        """
        await self.ensure_chain(program.family, program.chain)
        for rule in program.rules:
            await self.append_rule(program.family, rule)
        await self.unsplice(program.family, program.splice)
        primary = await self.list_rules(program.family, PRIMARY_CHAIN)
        await self.insert_rule(
            program.family, program.splice, program.splice_position(primary)
        )

    async def remove_chain(
        self, family: AddressFamily, chain: str, splice: FilterRule
    ) -> None:
        """Unsplice, flush and delete a chain."""
        await self.unsplice(family, splice)
        if chain in await self.list_chains(family):
            await self.flush_chain(family, chain)
            await self.delete_chain(family, chain)

    async def unsplice(self, family: AddressFamily, splice: FilterRule) -> int:
        """Delete every copy of ``splice`` from the primary chain."""
        removed = 0
        while await self.delete_rule(family, splice):
            removed += 1
        return removed

    async def references_to(self, family: AddressFamily, chain: str) -> List[FilterRule]:
        """Rules of the primary chain that jump to ``chain``."""
        return [
            rule
            for rule in await self.list_rules(family, PRIMARY_CHAIN)
            if rule.target == chain
        ]

    def describe(self) -> str:
        return self.__class__.__name__

    def __str__(self) -> str:
        return self.describe()
