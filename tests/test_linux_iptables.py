"""
Tests for geo_gate.devices.linux_iptables and geo_gate.devices.transport modules.
"""

import asyncio
from typing import Dict, List, Optional, Sequence
from unittest.mock import MagicMock, Mock, patch

import pytest

from geo_gate.core.errors import KernelPrimitiveFailure
from geo_gate.core.objects import AddressFamily, CIDRBlock
from geo_gate.core.policy import Scope
from geo_gate.core.rules import ChainProgram, FilterRule
from geo_gate.devices.base import CommandResult
from geo_gate.devices.linux_iptables import LinuxIptables
from geo_gate.devices.transport import CommandTransport, LocalTransport, SSHTransport

V4 = AddressFamily.IPV4
V6 = AddressFamily.IPV6


class RecordingTransport(CommandTransport):
    """Transport that records commands and replays canned results."""

    def __init__(self, responses: Optional[Dict[str, CommandResult]] = None):
        super().__init__()
        self.calls: List[tuple] = []
        self.responses = responses or {}

    async def execute(
        self, argv: Sequence[str], input_data: Optional[str] = None
    ) -> CommandResult:
        command = " ".join(argv)
        self.calls.append((command, input_data))
        for prefix, result in self.responses.items():
            if command.startswith(prefix):
                return result
        return CommandResult(command=command, success=True, output="", execution_time=0.0)


def _ok(output: str = "") -> CommandResult:
    return CommandResult(command="", success=True, output=output, exit_code=0, execution_time=0.0)


def _fail(error: str) -> CommandResult:
    return CommandResult(
        command="", success=False, output="", error=error, exit_code=1, execution_time=0.0
    )


def _program() -> ChainProgram:
    chain = "GEOIP_FILTER_eth0"
    return ChainProgram(
        scope=Scope.for_interface("eth0"),
        family=V4,
        chain=chain,
        rules=[
            FilterRule(chain=chain, target="RETURN", source="10.0.0.0/8"),
            FilterRule(chain=chain, target="DROP", match_set="country_v4_CN"),
            FilterRule(chain=chain, target="ACCEPT"),
        ],
        splice=FilterRule(chain="INPUT", target=chain, in_interface="eth0"),
    )


class TestLinuxIptablesSets:
    """Test cases for ipset commands."""

    def test_create_set(self):
        """Test the ipset create command."""
        transport = RecordingTransport()
        backend = LinuxIptables(transport, hashsize=2048, maxelem=1000)
        asyncio.run(backend.create_set("country_v6_AR", V6))
        assert transport.calls[0][0] == (
            "ipset -exist create country_v6_AR hash:net family inet6 "
            "hashsize 2048 maxelem 1000"
        )

    def test_replace_set_swaps_staging_set(self):
        """Test that replacement fills a staging set and swaps it in."""
        transport = RecordingTransport()
        backend = LinuxIptables(transport)
        blocks = [CIDRBlock.parse("181.0.0.0/12"), CIDRBlock.parse("186.0.0.0/15")]

        asyncio.run(backend.replace_set("country_v4_AR", V4, blocks))

        command, script = transport.calls[0]
        assert command == "ipset restore -!"
        lines = script.splitlines()
        assert lines[0].startswith("create country_v4_AR hash:net family inet")
        assert "add country_v4_AR-new 181.0.0.0/12" in lines
        assert lines[-2:] == ["swap country_v4_AR-new country_v4_AR", "destroy country_v4_AR-new"]

    def test_destroy_missing_set_tolerated(self):
        """Test that destroying a missing set is not an error."""
        transport = RecordingTransport(
            {"ipset destroy": _fail("ipset v7.1: The set with the given name does not exist")}
        )
        asyncio.run(LinuxIptables(transport).destroy_set("country_v4_AR"))

    def test_destroy_in_use_raises(self):
        """Test that other failures raise KernelPrimitiveFailure."""
        transport = RecordingTransport(
            {"ipset destroy": _fail("Set cannot be destroyed: it is in use by a kernel component")}
        )
        with pytest.raises(KernelPrimitiveFailure) as exc_info:
            asyncio.run(LinuxIptables(transport).destroy_set("country_v4_AR"))
        assert exc_info.value.operation == "destroy_set"
        assert exc_info.value.target == "country_v4_AR"

    def test_list_sets(self):
        """Test parsing ipset list -n."""
        transport = RecordingTransport({"ipset list": _ok("country_v4_AR\nother\n")})
        assert asyncio.run(LinuxIptables(transport).list_sets()) == ["country_v4_AR", "other"]


class TestLinuxIptablesChains:
    """Test cases for iptables commands."""

    def test_list_chains(self):
        """Test discovering user-defined chains."""
        output = "-P INPUT ACCEPT\n-N GEOIP_FILTER\n-N DOCKER\n-A INPUT -j GEOIP_FILTER\n"
        transport = RecordingTransport({"ip6tables -w -S": _ok(output)})
        chains = asyncio.run(LinuxIptables(transport).list_chains(V6))
        assert chains == ["DOCKER", "GEOIP_FILTER"]

    def test_list_rules_skips_foreign(self):
        """Test that rules using other matches are left out."""
        output = (
            "-N GEOIP_FILTER\n"
            "-A GEOIP_FILTER -s 10.0.0.0/8 -j RETURN\n"
            "-A GEOIP_FILTER -p tcp -m tcp --dport 22 -j ACCEPT\n"
            "-A GEOIP_FILTER -j DROP\n"
        )
        transport = RecordingTransport({"iptables -w -S GEOIP_FILTER": _ok(output)})
        rules = asyncio.run(LinuxIptables(transport).list_rules(V4, "GEOIP_FILTER"))
        assert [r.target for r in rules] == ["RETURN", "DROP"]

    def test_install_chain_restore_script(self):
        """Test that install replaces chain and splice in one restore call."""
        program = _program()
        existing = "-P INPUT ACCEPT\n-A INPUT -i eth0 -j GEOIP_FILTER_eth0\n"
        transport = RecordingTransport({"iptables -w -S INPUT": _ok(existing)})

        asyncio.run(LinuxIptables(transport).install_chain(program))

        command, script = transport.calls[-1]
        assert command == "iptables-restore -w --noflush"
        assert script.splitlines() == [
            "*filter",
            ":GEOIP_FILTER_eth0 - [0:0]",
            "-A GEOIP_FILTER_eth0 -s 10.0.0.0/8 -j RETURN",
            "-A GEOIP_FILTER_eth0 -m set --match-set country_v4_CN src -j DROP",
            "-A GEOIP_FILTER_eth0 -j ACCEPT",
            "-D INPUT -i eth0 -j GEOIP_FILTER_eth0",
            "-I INPUT 1 -i eth0 -j GEOIP_FILTER_eth0",
            "COMMIT",
        ]

    def test_install_global_chain_after_interface_splices(self):
        """Test that the global splice is inserted below engine interface splices."""
        chain = "GEOIP_FILTER"
        program = ChainProgram(
            scope=Scope.global_scope(),
            family=V4,
            chain=chain,
            rules=[FilterRule(chain=chain, target="DROP")],
            splice=FilterRule(chain="INPUT", target=chain),
        )
        existing = (
            "-P INPUT ACCEPT\n"
            "-A INPUT -p tcp -m tcp --dport 22 -j ACCEPT\n"
            "-A INPUT -j GEOIP_FILTER\n"
            "-A INPUT -i eth0 -j GEOIP_FILTER_eth0\n"
        )
        transport = RecordingTransport({"iptables -w -S INPUT": _ok(existing)})

        asyncio.run(LinuxIptables(transport).install_chain(program))

        _, script = transport.calls[-1]
        assert script.splitlines()[-3:] == [
            "-D INPUT -j GEOIP_FILTER",
            "-I INPUT 3 -j GEOIP_FILTER",
            "COMMIT",
        ]

    def test_install_chain_failure(self):
        """Test that a failed restore raises with the tool's message."""
        transport = RecordingTransport(
            {"iptables-restore": _fail("iptables-restore: line 4 failed")}
        )
        with pytest.raises(KernelPrimitiveFailure) as exc_info:
            asyncio.run(LinuxIptables(transport).install_chain(_program()))
        assert "line 4 failed" in str(exc_info.value)

    def test_delete_rule_missing(self):
        """Test that deleting a missing rule reports False."""
        transport = RecordingTransport(
            {"iptables -w -D": _fail("iptables: Bad rule (does a matching rule exist in that chain?).")}
        )
        rule = FilterRule(chain="INPUT", target="GEOIP_FILTER")
        assert asyncio.run(LinuxIptables(transport).delete_rule(V4, rule)) is False

    def test_remove_chain_sequence(self):
        """Test unsplice, flush and delete of a chain."""
        program = _program()

        class OneSplice(RecordingTransport):
            deleted = False

            async def execute(self, argv, input_data=None):
                result = await super().execute(argv, input_data)
                command = " ".join(argv)
                if command.startswith("iptables -w -D"):
                    if self.deleted:
                        return _fail("Bad rule (does a matching rule exist in that chain?)")
                    self.deleted = True
                if command == "iptables -w -S":
                    return _ok("-N GEOIP_FILTER_eth0\n")
                return result

        transport = OneSplice()
        asyncio.run(
            LinuxIptables(transport).remove_chain(V4, program.chain, program.splice)
        )
        commands = [c for c, _ in transport.calls]
        assert commands == [
            "iptables -w -D INPUT -i eth0 -j GEOIP_FILTER_eth0",
            "iptables -w -D INPUT -i eth0 -j GEOIP_FILTER_eth0",
            "iptables -w -S",
            "iptables -w -F GEOIP_FILTER_eth0",
            "iptables -w -X GEOIP_FILTER_eth0",
        ]

    def test_dry_run_records_only(self):
        """Test that dry-run mode records mutations without executing them."""
        transport = RecordingTransport()
        backend = LinuxIptables(transport, dry_run=True)

        asyncio.run(backend.create_set("country_v4_AR", V4))
        asyncio.run(backend.install_chain(_program()))

        executed = [c for c, _ in transport.calls]
        assert executed == ["iptables -w -S INPUT"]
        recorded = [r.command for r in backend.history if r.output.startswith("DRY RUN")]
        assert len(recorded) == 2
        assert recorded[1] == "iptables-restore -w --noflush"
        assert "dry run" in str(backend)


class TestLocalTransport:
    """Test cases for LocalTransport class."""

    def test_sudo_prefix(self):
        """Test that sudo is prepended when requested."""
        assert LocalTransport(use_sudo=True).build_argv(["ipset", "list"]) == [
            "sudo", "-n", "ipset", "list",
        ]
        assert LocalTransport().build_argv(["ipset", "list"]) == ["ipset", "list"]

    @patch("asyncio.create_subprocess_exec")
    def test_execute(self, mock_exec):
        """Test running a command with stdin."""
        process = Mock()
        process.returncode = 0

        async def communicate(data):
            assert data == b"add s 1.0.0.0/8\n"
            return b"ok", b""

        process.communicate = communicate

        async def create(*args, **kwargs):
            return process

        mock_exec.side_effect = create

        result = asyncio.run(
            LocalTransport().execute(["ipset", "restore"], "add s 1.0.0.0/8\n")
        )
        assert result.success
        assert result.output == "ok"
        assert result.error is None
        assert mock_exec.call_args[0] == ("ipset", "restore")

    @patch("asyncio.create_subprocess_exec")
    def test_missing_binary(self, mock_exec):
        """Test that a missing binary is reported as a failed result."""
        mock_exec.side_effect = FileNotFoundError("ipset")
        result = asyncio.run(LocalTransport().execute(["ipset", "list"]))
        assert not result.success
        assert "ipset" in result.error


class TestSSHTransport:
    """Test cases for SSHTransport class."""

    def test_describe(self):
        """Test the string form."""
        transport = SSHTransport("192.0.2.10", "admin", port=2222)
        assert transport.describe() == "admin@192.0.2.10:2222"

    @patch("paramiko.SSHClient")
    def test_execute_with_password(self, mock_ssh_client):
        """Test connecting with a password and running a command through sudo."""
        mock_client = Mock()
        mock_ssh_client.return_value = mock_client

        stdin = MagicMock()
        stdout = Mock()
        stdout.read.return_value = b"country_v4_AR\n"
        stdout.channel.recv_exit_status.return_value = 0
        stderr = Mock()
        stderr.read.return_value = b""
        mock_client.exec_command.return_value = (stdin, stdout, stderr)

        transport = SSHTransport("192.0.2.10", "admin", password="secret")
        result = asyncio.run(transport.execute(["ipset", "list", "-n"]))

        assert result.success
        assert result.output == "country_v4_AR\n"
        mock_client.exec_command.assert_called_once_with("sudo -n ipset list -n")
        assert mock_client.connect.call_args.kwargs["password"] == "secret"

    @patch("paramiko.SSHClient")
    def test_execute_not_connected(self, mock_ssh_client):
        """Test the result when authentication fails."""
        import paramiko

        mock_client = Mock()
        mock_client.connect.side_effect = paramiko.AuthenticationException("denied")
        mock_ssh_client.return_value = mock_client

        transport = SSHTransport("192.0.2.10", "admin", password="wrong")
        result = asyncio.run(transport.execute(["ipset", "list", "-n"]))

        assert not result.success
        assert "Not connected" in result.error
