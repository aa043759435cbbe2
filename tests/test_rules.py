"""
Tests for geo_gate.core.rules module.
"""

from geo_gate.core.objects import AddressFamily
from geo_gate.core.policy import Scope
from geo_gate.core.rules import ChainProgram, FilterRule


class TestFilterRule:
    """Test cases for FilterRule class."""

    def test_render_source_return(self):
        """Test rendering a bypass rule."""
        rule = FilterRule(chain="GEOIP_FILTER", target="RETURN", source="10.0.0.0/8")
        assert rule.render() == "-A GEOIP_FILTER -s 10.0.0.0/8 -j RETURN"

    def test_render_match_set(self):
        """Test rendering a set match rule."""
        rule = FilterRule(chain="GEOIP_FILTER", target="ACCEPT", match_set="country_v4_AR")
        assert rule.to_args() == [
            "-m", "set", "--match-set", "country_v4_AR", "src", "-j", "ACCEPT",
        ]

    def test_render_splice(self):
        """Test rendering an interface splice with a custom action."""
        rule = FilterRule(chain="INPUT", target="GEOIP_FILTER_eth0", in_interface="eth0")
        assert rule.render("-I") == "-I INPUT -i eth0 -j GEOIP_FILTER_eth0"
        assert rule.is_jump

    def test_builtin_targets_are_not_jumps(self):
        """Test that terminal targets are not jumps."""
        assert not FilterRule(chain="X", target="DROP").is_jump
        assert not FilterRule(chain="X", target="RETURN").is_jump

    def test_parse_save_output(self):
        """Test parsing lines as printed by iptables -S."""
        rule = FilterRule.parse(
            "-A GEOIP_FILTER -m set --match-set country_v4_DE src -j DROP"
        )
        assert rule == FilterRule(chain="GEOIP_FILTER", target="DROP", match_set="country_v4_DE")

        splice = FilterRule.parse("-A INPUT -i eth0 -j GEOIP_FILTER_eth0")
        assert splice.in_interface == "eth0"
        assert splice.target == "GEOIP_FILTER_eth0"

    def test_parse_round_trip(self):
        """Test that rendered rules parse back to the same rule."""
        rule = FilterRule(chain="GEOIP_FILTER", target="RETURN", destination="fe80::/10")
        assert FilterRule.parse(rule.render()) == rule

    def test_parse_ignores_other_lines(self):
        """Test that policies, chain declarations and foreign matches are skipped."""
        assert FilterRule.parse("-P INPUT ACCEPT") is None
        assert FilterRule.parse("-N GEOIP_FILTER") is None
        assert FilterRule.parse("-A INPUT -p tcp -m tcp --dport 22 -j ACCEPT") is None
        assert FilterRule.parse("-A INPUT -m set --match-set foo dst -j DROP") is None
        assert FilterRule.parse("") is None


class TestChainProgram:
    """Test cases for ChainProgram class."""

    def _program(self) -> ChainProgram:
        chain = "GEOIP_FILTER"
        return ChainProgram(
            scope=Scope.global_scope(),
            family=AddressFamily.IPV4,
            chain=chain,
            rules=[
                FilterRule(chain=chain, target="RETURN", source="10.0.0.0/8"),
                FilterRule(chain=chain, target="ACCEPT", match_set="country_v4_AR"),
                FilterRule(chain=chain, target="DROP"),
            ],
            splice=FilterRule(chain="INPUT", target=chain),
        )

    def test_referenced_sets(self):
        """Test listing referenced sets."""
        assert self._program().referenced_sets == ["country_v4_AR"]

    def test_default_target(self):
        """Test that the default target is the last rule's target."""
        assert self._program().default_target == "DROP"

    def test_render(self):
        """Test the deterministic text form."""
        assert self._program().render() == [
            "-N GEOIP_FILTER",
            "-A GEOIP_FILTER -s 10.0.0.0/8 -j RETURN",
            "-A GEOIP_FILTER -m set --match-set country_v4_AR src -j ACCEPT",
            "-A GEOIP_FILTER -j DROP",
            "-I INPUT -j GEOIP_FILTER",
        ]

    def test_equal_programs_render_identically(self):
        """Test that equal inputs compare equal."""
        assert self._program() == self._program()
        assert self._program().render() == self._program().render()

    def test_splice_position_interface_first(self):
        """Test that interface splices always go to the top of INPUT."""
        chain = "GEOIP_FILTER_eth0"
        program = ChainProgram(
            scope=Scope.for_interface("eth0"),
            family=AddressFamily.IPV4,
            chain=chain,
            rules=[FilterRule(chain=chain, target="ACCEPT")],
            splice=FilterRule(chain="INPUT", target=chain, in_interface="eth0"),
        )
        global_splice = FilterRule(chain="INPUT", target="GEOIP_FILTER")
        assert program.splice_position([]) == 1
        assert program.splice_position([global_splice, None]) == 1

    def test_splice_position_global_after_interfaces(self):
        """Test that the global splice follows the last interface splice."""
        primary = [
            None,
            FilterRule(chain="INPUT", target="GEOIP_FILTER_eth0", in_interface="eth0"),
            FilterRule(chain="INPUT", target="DOCKER", in_interface="docker0"),
            FilterRule(chain="INPUT", target="GEOIP_FILTER_wg0", in_interface="wg0"),
            None,
            FilterRule(chain="INPUT", target="DOCKER", in_interface="docker0"),
        ]
        assert self._program().splice_position(primary) == 5
        assert self._program().splice_position([None, None]) == 1
        assert self._program().splice_position([]) == 1
