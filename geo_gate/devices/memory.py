"""
In-memory kernel used for simulation, planning and tests.

It mirrors the kernel behaviours the engine relies on: sets referenced by a
rule cannot be destroyed, chains must be empty and unreferenced before they
are deleted, and a rule cannot jump to a missing chain or match a missing set.
"""

from ipaddress import ip_address, ip_network
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..core.errors import KernelPrimitiveFailure
from ..core.logging_config import get_logger
from ..core.objects import AddressFamily, CIDRBlock
from ..core.rules import BUILTIN_TARGETS, PRIMARY_CHAIN, ChainProgram, FilterRule
from .base import KernelBackend

logger = get_logger(__name__)

BUILTIN_CHAINS = ["INPUT", "FORWARD", "OUTPUT"]

# Documentation addresses used when a simulated packet has no destination
_DEFAULT_DESTINATION = {
    AddressFamily.IPV4: "203.0.113.10",
    AddressFamily.IPV6: "2001:db8::10",
}


class MemorySet:
    def __init__(self, family: AddressFamily):
        self.family = family
        self.members: List[CIDRBlock] = []

    def contains(self, address: str) -> bool:
        return any(block.contains(address) for block in self.members)


class InMemoryKernel(KernelBackend):
    """A fake kernel holding sets and filter chains in dictionaries."""

    def __init__(self, fail_on: Iterable[Tuple[str, str]] = ()):
        self.sets: Dict[str, MemorySet] = {}
        self.chains: Dict[AddressFamily, Dict[str, List[FilterRule]]] = {
            family: {name: [] for name in BUILTIN_CHAINS} for family in AddressFamily
        }
        self.operations: List[str] = []
        self.fail_on: Set[Tuple[str, str]] = set(fail_on)

    def fail(self, operation: str, target: str = "*") -> None:
        """Make ``operation`` on ``target`` (or on anything, with ``*``) fail."""
        self.fail_on.add((operation, target))

    def heal(self) -> None:
        self.fail_on.clear()

    def _record(self, operation: str, target: str) -> None:
        if (operation, target) in self.fail_on or (operation, "*") in self.fail_on:
            logger.debug("Injected failure: %s %s", operation, target)
            raise KernelPrimitiveFailure(operation, target, "injected failure")
        self.operations.append(f"{operation} {target}")

    def _set_in_use(self, name: str) -> bool:
        return any(
            rule.match_set == name
            for family_chains in self.chains.values()
            for rules in family_chains.values()
            for rule in rules
        )

    def _check_rule(self, family: AddressFamily, rule: FilterRule) -> None:
        chains = self.chains[family]
        if rule.chain not in chains:
            raise KernelPrimitiveFailure("append_rule", rule.chain, "no such chain")
        if rule.target not in BUILTIN_TARGETS and rule.target not in chains:
            raise KernelPrimitiveFailure("append_rule", rule.target, "no such chain")
        if rule.match_set:
            member_set = self.sets.get(rule.match_set)
            if member_set is None:
                raise KernelPrimitiveFailure("append_rule", rule.match_set, "no such set")
            if member_set.family is not family:
                raise KernelPrimitiveFailure(
                    "append_rule", rule.match_set, "set family does not match"
                )

    # Address sets

    async def create_set(self, name: str, family: AddressFamily) -> None:
        self._record("create_set", name)
        existing = self.sets.get(name)
        if existing is None:
            self.sets[name] = MemorySet(family)
        elif existing.family is not family:
            raise KernelPrimitiveFailure(
                "create_set", name, "set exists with a different family"
            )

    async def flush_set(self, name: str) -> None:
        self._record("flush_set", name)
        if name in self.sets:
            self.sets[name].members = []

    async def add_to_set(self, name: str, blocks: Sequence[CIDRBlock]) -> None:
        self._record("add_to_set", name)
        member_set = self.sets.get(name)
        if member_set is None:
            raise KernelPrimitiveFailure("add_to_set", name, "no such set")
        for block in blocks:
            if block.family is not member_set.family:
                raise KernelPrimitiveFailure("add_to_set", name, f"{block} has wrong family")
            if block not in member_set.members:
                member_set.members.append(block)

    async def replace_set(
        self, name: str, family: AddressFamily, blocks: Sequence[CIDRBlock]
    ) -> None:
        self._record("replace_set", name)
        await self.create_set(name, family)
        members: List[CIDRBlock] = []
        for block in blocks:
            if block.family is not family:
                raise KernelPrimitiveFailure("replace_set", name, f"{block} has wrong family")
            if block not in members:
                members.append(block)
        self.sets[name].members = members

    async def destroy_set(self, name: str) -> None:
        self._record("destroy_set", name)
        if name not in self.sets:
            return
        if self._set_in_use(name):
            raise KernelPrimitiveFailure(
                "destroy_set", name, "set is in use by a kernel component"
            )
        del self.sets[name]

    async def list_sets(self) -> List[str]:
        return sorted(self.sets)

    # Chains

    async def list_chains(self, family: AddressFamily) -> List[str]:
        return sorted(name for name in self.chains[family] if name not in BUILTIN_CHAINS)

    async def list_rules(self, family: AddressFamily, chain: str) -> List[FilterRule]:
        if chain not in self.chains[family]:
            raise KernelPrimitiveFailure("list_rules", chain, "no such chain")
        return list(self.chains[family][chain])

    async def ensure_chain(self, family: AddressFamily, chain: str) -> None:
        self._record("ensure_chain", chain)
        self.chains[family][chain] = []

    async def append_rule(self, family: AddressFamily, rule: FilterRule) -> None:
        self._record("append_rule", rule.chain)
        self._check_rule(family, rule)
        self.chains[family][rule.chain].append(rule)

    async def insert_rule(
        self, family: AddressFamily, rule: FilterRule, position: int = 1
    ) -> None:
        self._record("insert_rule", rule.chain)
        self._check_rule(family, rule)
        self.chains[family][rule.chain].insert(position - 1, rule)

    async def delete_rule(self, family: AddressFamily, rule: FilterRule) -> bool:
        self._record("delete_rule", rule.chain)
        rules = self.chains[family].get(rule.chain)
        if rules is None or rule not in rules:
            return False
        rules.remove(rule)
        return True

    async def flush_chain(self, family: AddressFamily, chain: str) -> None:
        self._record("flush_chain", chain)
        if chain in self.chains[family]:
            self.chains[family][chain] = []

    async def delete_chain(self, family: AddressFamily, chain: str) -> None:
        self._record("delete_chain", chain)
        chains = self.chains[family]
        if chain not in chains:
            return
        if chain in BUILTIN_CHAINS:
            raise KernelPrimitiveFailure("delete_chain", chain, "built-in chain")
        if chains[chain]:
            raise KernelPrimitiveFailure("delete_chain", chain, "chain is not empty")
        if any(rule.target == chain for rules in chains.values() for rule in rules):
            raise KernelPrimitiveFailure("delete_chain", chain, "chain is referenced")
        del chains[chain]

    async def install_chain(self, program: ChainProgram) -> None:
        """Swap in the whole program at once, like a restore transaction."""
        self._record("install_chain", program.chain)
        chains = self.chains[program.family]

        previous = chains.get(program.chain)
        chains[program.chain] = []
        try:
            for rule in program.rules + [program.splice]:
                self._check_rule(program.family, rule)
        except KernelPrimitiveFailure:
            if previous is None:
                del chains[program.chain]
            else:
                chains[program.chain] = previous
            raise

        chains[program.chain] = list(program.rules)
        primary = [rule for rule in chains[PRIMARY_CHAIN] if rule != program.splice]
        primary.insert(program.splice_position(primary) - 1, program.splice)
        chains[PRIMARY_CHAIN] = primary

    # Simulation

    def evaluate(
        self,
        source: str,
        destination: Optional[str] = None,
        interface: Optional[str] = None,
    ) -> str:
        """
        Verdict (``ACCEPT`` or ``DROP``) for an inbound packet from ``source``.

        Walks INPUT with jump and RETURN semantics; the INPUT policy is ACCEPT.
        """
        family = AddressFamily.from_version(ip_address(source).version)
        destination = destination or _DEFAULT_DESTINATION[family]
        verdict = self._walk(family, PRIMARY_CHAIN, source, destination, interface, 0)
        return verdict or "ACCEPT"

    def _walk(
        self,
        family: AddressFamily,
        chain: str,
        source: str,
        destination: str,
        interface: Optional[str],
        depth: int,
    ) -> Optional[str]:
        if depth > 16:
            raise RuntimeError(f"Chain recursion too deep at {chain}")

        for rule in self.chains[family].get(chain, []):
            if not self._matches(rule, source, destination, interface):
                continue
            if rule.target == "RETURN":
                return None
            if rule.target in ("ACCEPT", "DROP"):
                return rule.target
            if rule.target == "REJECT":
                return "DROP"
            verdict = self._walk(family, rule.target, source, destination, interface, depth + 1)
            if verdict is not None:
                return verdict
        return None

    def _matches(
        self,
        rule: FilterRule,
        source: str,
        destination: str,
        interface: Optional[str],
    ) -> bool:
        if rule.source and ip_address(source) not in ip_network(rule.source):
            return False
        if rule.destination and ip_address(destination) not in ip_network(rule.destination):
            return False
        if rule.in_interface and rule.in_interface != interface:
            return False
        if rule.match_set:
            member_set = self.sets.get(rule.match_set)
            if member_set is None or not member_set.contains(source):
                return False
        return True

    def snapshot(self) -> Dict[str, Dict]:
        """Plain-data view of all sets and chains, for comparisons."""
        return {
            "sets": {
                name: [block.cidr for block in member_set.members]
                for name, member_set in sorted(self.sets.items())
            },
            "chains": {
                family.value: {
                    name: [rule.render() for rule in rules]
                    for name, rules in sorted(chains.items())
                }
                for family, chains in self.chains.items()
            },
        }

    def describe(self) -> str:
        return "in-memory kernel"
