"""
Linux kernel backend driving ``ipset`` and ``iptables``/``ip6tables``.
"""

import shlex
from typing import List, Optional, Sequence

from ..core.errors import KernelPrimitiveFailure
from ..core.logging_config import get_logger
from ..core.objects import AddressFamily, CIDRBlock
from ..core.rules import PRIMARY_CHAIN, ChainProgram, FilterRule
from .base import CommandResult, KernelBackend
from .transport import CommandTransport, LocalTransport

logger = get_logger(__name__)

# Error fragments meaning "the object is already gone"
_SET_MISSING = "does not exist"
_CHAIN_MISSING = "No chain/target/match by that name"
_RULE_MISSING = ("does a matching rule exist", "Bad rule", _CHAIN_MISSING)

TOOLS = ["ipset", "iptables", "ip6tables", "iptables-restore", "ip6tables-restore"]


class LinuxIptables(KernelBackend):
    """Kernel backend issuing ipset and iptables commands through a transport."""

    def __init__(
        self,
        transport: Optional[CommandTransport] = None,
        hashsize: int = 1024,
        maxelem: int = 65536,
        dry_run: bool = False,
    ):
        self.transport = transport or LocalTransport()
        self.hashsize = hashsize
        self.maxelem = maxelem
        self.dry_run = dry_run
        self.history: List[CommandResult] = []

    async def run(
        self,
        argv: Sequence[str],
        operation: str,
        target: str,
        input_data: Optional[str] = None,
        tolerate: Sequence[str] = (),
        mutates: bool = True,
    ) -> CommandResult:
        """
        Execute a command, raising KernelPrimitiveFailure when it fails.

        Failures whose message contains one of ``tolerate`` are returned
        instead of raised. In dry-run mode mutating commands are only recorded.
        """
        if self.dry_run and mutates:
            command = shlex.join(argv)
            result = CommandResult(
                command=command,
                success=True,
                output=f"DRY RUN: Would execute: {command}",
                execution_time=0.0,
            )
            if input_data:
                result.output += "\n" + input_data
            self.history.append(result)
            return result

        result = await self.transport.execute(argv, input_data)
        self.history.append(result)
        if result.success:
            return result

        detail = (result.error or result.output or "").strip()
        if any(fragment in detail for fragment in tolerate):
            logger.debug("%s %s: tolerated failure: %s", operation, target, detail)
            return result
        raise KernelPrimitiveFailure(operation, target, detail or f"exit code {result.exit_code}")

    def _filter_cmd(self, family: AddressFamily, *args: str) -> List[str]:
        return [family.iptables, "-w", *args]

    def _create_line(self, name: str, family: AddressFamily) -> str:
        return (
            f"create {name} hash:net family {family.ipset_family} "
            f"hashsize {self.hashsize} maxelem {self.maxelem}"
        )

    # Address sets

    async def create_set(self, name: str, family: AddressFamily) -> None:
        argv = ["ipset", "-exist"] + self._create_line(name, family).split()
        await self.run(argv, "create_set", name)

    async def flush_set(self, name: str) -> None:
        await self.run(["ipset", "flush", name], "flush_set", name, tolerate=[_SET_MISSING])

    async def add_to_set(self, name: str, blocks: Sequence[CIDRBlock]) -> None:
        if not blocks:
            return
        script = "".join(f"add {name} {block.cidr}\n" for block in blocks)
        await self.run(["ipset", "restore", "-!"], "add_to_set", name, input_data=script)

    async def replace_set(
        self, name: str, family: AddressFamily, blocks: Sequence[CIDRBlock]
    ) -> None:
        """Fill a staging set and swap it in, so the live set is never partial."""
        staging = f"{name}-new"
        lines = [
            self._create_line(name, family),
            self._create_line(staging, family),
            f"flush {staging}",
        ]
        lines.extend(f"add {staging} {block.cidr}" for block in blocks)
        lines.append(f"swap {staging} {name}")
        lines.append(f"destroy {staging}")
        await self.run(
            ["ipset", "restore", "-!"],
            "replace_set",
            name,
            input_data="\n".join(lines) + "\n",
        )
        logger.debug("Replaced set %s with %s entries", name, len(blocks))

    async def destroy_set(self, name: str) -> None:
        await self.run(
            ["ipset", "destroy", name], "destroy_set", name, tolerate=[_SET_MISSING]
        )

    async def list_sets(self) -> List[str]:
        result = await self.run(["ipset", "list", "-n"], "list_sets", "*", mutates=False)
        return sorted(line.strip() for line in result.output.splitlines() if line.strip())

    # Chains

    async def list_chains(self, family: AddressFamily) -> List[str]:
        result = await self.run(
            self._filter_cmd(family, "-S"), "list_chains", family.iptables, mutates=False
        )
        chains = []
        for line in result.output.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "-N":
                chains.append(parts[1])
        return sorted(chains)

    async def list_rules(self, family: AddressFamily, chain: str) -> List[FilterRule]:
        result = await self.run(
            self._filter_cmd(family, "-S", chain), "list_rules", chain, mutates=False
        )
        rules = []
        for line in result.output.splitlines():
            rule = FilterRule.parse(line)
            if rule is not None:
                rules.append(rule)
            elif line.startswith("-A"):
                logger.debug("Ignoring foreign rule in %s: %s", chain, line)
        return rules

    async def ensure_chain(self, family: AddressFamily, chain: str) -> None:
        if chain in await self.list_chains(family):
            await self.flush_chain(family, chain)
        else:
            await self.run(self._filter_cmd(family, "-N", chain), "ensure_chain", chain)

    async def append_rule(self, family: AddressFamily, rule: FilterRule) -> None:
        await self.run(
            self._filter_cmd(family, "-A", rule.chain, *rule.to_args()),
            "append_rule",
            rule.chain,
        )

    async def insert_rule(
        self, family: AddressFamily, rule: FilterRule, position: int = 1
    ) -> None:
        await self.run(
            self._filter_cmd(family, "-I", rule.chain, str(position), *rule.to_args()),
            "insert_rule",
            rule.chain,
        )

    async def delete_rule(self, family: AddressFamily, rule: FilterRule) -> bool:
        if self.dry_run:
            # Rules never disappear in dry-run mode; record the deletion once
            present = rule in await self.list_rules(family, rule.chain)
            if present:
                await self.run(
                    self._filter_cmd(family, "-D", rule.chain, *rule.to_args()),
                    "delete_rule",
                    rule.chain,
                )
            return False

        result = await self.run(
            self._filter_cmd(family, "-D", rule.chain, *rule.to_args()),
            "delete_rule",
            rule.chain,
            tolerate=_RULE_MISSING,
        )
        return result.success

    async def flush_chain(self, family: AddressFamily, chain: str) -> None:
        await self.run(
            self._filter_cmd(family, "-F", chain), "flush_chain", chain, tolerate=[_CHAIN_MISSING]
        )

    async def delete_chain(self, family: AddressFamily, chain: str) -> None:
        await self.run(
            self._filter_cmd(family, "-X", chain), "delete_chain", chain, tolerate=[_CHAIN_MISSING]
        )

    def restore_script(
        self, program: ChainProgram, stale_splices: int, position: int = 1
    ) -> str:
        """
        ``iptables-restore --noflush`` input installing ``program``.

        Declaring the chain creates it or flushes it; ``stale_splices`` copies
        of the splice rule are removed before it is inserted at ``position``.
        """
        lines = ["*filter", f":{program.chain} - [0:0]"]
        lines.extend(rule.render("-A") for rule in program.rules)
        lines.extend(program.splice.render("-D") for _ in range(stale_splices))
        lines.append(
            " ".join(["-I", PRIMARY_CHAIN, str(position)] + program.splice.to_args())
        )
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"

    async def primary_rules(self, family: AddressFamily) -> List[Optional[FilterRule]]:
        """Every rule of the primary chain in kernel order; None for foreign rules."""
        result = await self.run(
            self._filter_cmd(family, "-S", PRIMARY_CHAIN),
            "list_rules",
            PRIMARY_CHAIN,
            mutates=False,
        )
        return [
            FilterRule.parse(line)
            for line in result.output.splitlines()
            if line.startswith("-A")
        ]

    async def install_chain(self, program: ChainProgram) -> None:
        """Install the chain and its splice in one restore transaction."""
        existing = await self.primary_rules(program.family)
        remaining = [rule for rule in existing if rule != program.splice]
        stale = len(existing) - len(remaining)
        script = self.restore_script(program, stale, program.splice_position(remaining))
        await self.run(
            [f"{program.family.iptables}-restore", "-w", "--noflush"],
            "install_chain",
            program.chain,
            input_data=script,
        )
        logger.debug("Installed chain %s (%s rules)", program.chain, len(program.rules))

    async def missing_tools(self) -> List[str]:
        """Names of required tools that cannot be run on the host."""
        missing = []
        for tool in TOOLS:
            result = await self.transport.execute([tool, "--version"])
            if not result.success:
                missing.append(tool)
        return missing

    def describe(self) -> str:
        mode = " (dry run)" if self.dry_run else ""
        return f"iptables on {self.transport.describe()}{mode}"
