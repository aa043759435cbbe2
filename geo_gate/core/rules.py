"""
Filter rule and chain program definitions.
"""

import shlex
from typing import List, Optional, Sequence

from pydantic import BaseModel

from .objects import AddressFamily
from .policy import Scope

PRIMARY_CHAIN = "INPUT"

BUILTIN_TARGETS = ["ACCEPT", "DROP", "RETURN", "REJECT"]


class FilterRule(BaseModel):
    """
    One iptables rule in a named chain.

    Only the matches the engine emits are modelled: source and destination
    prefixes, an inbound interface and a source-address set membership.
    """

    model_config = {"frozen": True}

    chain: str
    target: str
    source: Optional[str] = None
    destination: Optional[str] = None
    in_interface: Optional[str] = None
    match_set: Optional[str] = None

    def to_args(self) -> List[str]:
        """Rule arguments after the chain name, in ``iptables -S`` order."""
        args: List[str] = []
        if self.source:
            args.extend(["-s", self.source])
        if self.destination:
            args.extend(["-d", self.destination])
        if self.in_interface:
            args.extend(["-i", self.in_interface])
        if self.match_set:
            args.extend(["-m", "set", "--match-set", self.match_set, "src"])
        args.extend(["-j", self.target])
        return args

    def render(self, action: str = "-A") -> str:
        """Render as a rule-spec line, e.g. ``-A INPUT -i eth0 -j X``."""
        return " ".join([action, self.chain] + self.to_args())

    @property
    def is_jump(self) -> bool:
        return self.target not in BUILTIN_TARGETS

    @classmethod
    def parse(cls, line: str) -> Optional["FilterRule"]:
        """
        Parse an ``-A CHAIN ...`` line as printed by ``iptables -S``.

        Returns None for chain policy lines (``-P``/``-N``) and for rules
        using matches this engine never emits.
        """
        parts = shlex.split(line)
        if len(parts) < 2 or parts[0] != "-A":
            return None

        fields = {"chain": parts[1]}
        i = 2
        while i < len(parts):
            token = parts[i]
            if token == "-s" and i + 1 < len(parts):
                fields["source"] = parts[i + 1]
                i += 2
            elif token == "-d" and i + 1 < len(parts):
                fields["destination"] = parts[i + 1]
                i += 2
            elif token == "-i" and i + 1 < len(parts):
                fields["in_interface"] = parts[i + 1]
                i += 2
            elif token == "-m" and i + 1 < len(parts) and parts[i + 1] == "set":
                i += 2
            elif token == "--match-set" and i + 2 < len(parts):
                if parts[i + 2] != "src":
                    return None
                fields["match_set"] = parts[i + 1]
                i += 3
            elif token == "-j" and i + 1 < len(parts):
                fields["target"] = parts[i + 1]
                i += 2
            else:
                return None

        if "target" not in fields:
            return None
        return cls(**fields)

    def __str__(self) -> str:
        return self.render()


class ChainProgram(BaseModel):
    """The complete rule program of one scope's chain for one address family."""

    model_config = {"frozen": True}

    scope: Scope
    family: AddressFamily
    chain: str
    rules: List[FilterRule]
    splice: FilterRule

    @property
    def referenced_sets(self) -> List[str]:
        return [rule.match_set for rule in self.rules if rule.match_set]

    @property
    def default_target(self) -> Optional[str]:
        return self.rules[-1].target if self.rules else None

    def splice_position(self, primary: Sequence[Optional[FilterRule]]) -> int:
        """
        1-based position of the splice in the primary chain.

        ``primary`` is the primary chain in kernel order without this
        program's own splice; None stands for a rule that could not be parsed.
        Interface splices go first. A splice without an interface goes right
        after the last interface splice into a ``<chain>_*`` chain, so each
        interface chain sees its traffic before the global chain does,
        whatever order the scopes were installed in.
        """
        if self.splice.in_interface is not None:
            return 1
        siblings = f"{self.chain}_"
        position = 1
        for index, rule in enumerate(primary, 1):
            if rule is not None and rule.in_interface and rule.target.startswith(siblings):
                position = index + 1
        return position

    def render(self) -> List[str]:
        """Deterministic text form; equal programs render identically."""
        lines = [f"-N {self.chain}"]
        lines.extend(rule.render() for rule in self.rules)
        lines.append(self.splice.render("-I"))
        return lines
