"""
Chain synthesizer: compiles a resolved scope policy into a chain program.
"""

from typing import Dict, List, Optional

from ..core.objects import AddressFamily
from ..core.policy import GLOBAL_SCOPE_ID, ResolvedPolicy, Scope
from ..core.rules import PRIMARY_CHAIN, ChainProgram, FilterRule
from .builder import set_name

CHAIN_PREFIX = "GEOIP_FILTER"

# Private, loopback and link-local ranges are never filtered
BYPASS_RANGES: Dict[AddressFamily, List[str]] = {
    AddressFamily.IPV4: [
        "127.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
    ],
    AddressFamily.IPV6: [
        "::1/128",
        "fe80::/10",
        "fc00::/7",
    ],
}


def chain_name(scope: Scope) -> str:
    """``GEOIP_FILTER`` for the global scope, ``GEOIP_FILTER_<if>`` otherwise."""
    if scope.is_global:
        return CHAIN_PREFIX
    return f"{CHAIN_PREFIX}_{scope.interface}"


def scope_for_chain(name: str) -> Optional[Scope]:
    """Inverse of ``chain_name``; None for chains the engine does not own."""
    if name == CHAIN_PREFIX:
        return Scope.global_scope()
    prefix = f"{CHAIN_PREFIX}_"
    interface = name[len(prefix):] if name.startswith(prefix) else ""
    if interface and interface != GLOBAL_SCOPE_ID:
        return Scope.for_interface(interface)
    return None


def splice_rule(scope: Scope) -> FilterRule:
    """The INPUT rule that sends the scope's traffic into its chain."""
    return FilterRule(
        chain=PRIMARY_CHAIN, target=chain_name(scope), in_interface=scope.interface
    )


class ChainSynthesizer:
    """Builds the ordered rule list: bypasses, country matches, default action."""

    def __init__(self, bypass_ranges: Optional[Dict[AddressFamily, List[str]]] = None):
        self.bypass_ranges = bypass_ranges or BYPASS_RANGES

    def bypass_rules(self, chain: str, family: AddressFamily) -> List[FilterRule]:
        rules = []
        for cidr in self.bypass_ranges.get(family, []):
            rules.append(FilterRule(chain=chain, target="RETURN", source=cidr))
            rules.append(FilterRule(chain=chain, target="RETURN", destination=cidr))
        return rules

    def synthesize(
        self, scope: Scope, policy: ResolvedPolicy, family: AddressFamily
    ) -> ChainProgram:
        chain = chain_name(scope)
        rules = self.bypass_rules(chain, family)

        for country in sorted(policy.countries):
            rules.append(
                FilterRule(
                    chain=chain,
                    target=policy.mode.match_target,
                    match_set=set_name(country, family),
                )
            )

        rules.append(FilterRule(chain=chain, target=policy.mode.default_target))

        return ChainProgram(
            scope=scope,
            family=family,
            chain=chain,
            rules=rules,
            splice=splice_rule(scope),
        )
