"""
Tests for geo_gate.enforcement.driver module.
"""

import asyncio

import pytest

from geo_gate.core.errors import ActivationError
from geo_gate.core.objects import AddressFamily
from geo_gate.core.policy import CapabilityFlags, DeclaredPolicySet, ScopePolicy
from geo_gate.datasets.loader import StaticDatasetSource
from geo_gate.devices.memory import InMemoryKernel
from geo_gate.enforcement.driver import ActivationDriver
from geo_gate.enforcement.engine import Reconciler

V4 = AddressFamily.IPV4


def _driver(kernel: InMemoryKernel, strict: bool = False, **interfaces) -> ActivationDriver:
    dataset = StaticDatasetSource({("AR", V4): ["181.0.0.0/12"], ("DE", V4): ["5.1.0.0/16"]})
    declared = DeclaredPolicySet(
        global_policy=ScopePolicy(mode="allowlist", countries=["AR"]),
        interfaces=interfaces,
    )
    return ActivationDriver(
        Reconciler(kernel, dataset),
        declared,
        CapabilityFlags(ipv6_enabled=False),
        strict=strict,
    )


class TestActivationDriver:
    """Test cases for ActivationDriver class."""

    def test_start_and_stop(self):
        """Test that stop undoes start."""
        kernel = InMemoryKernel()
        before = kernel.snapshot()
        driver = _driver(kernel)

        result = asyncio.run(driver.start())
        assert result.applied_scopes == ["global"]
        assert kernel.evaluate("8.8.8.8") == "DROP"

        result = asyncio.run(driver.stop())
        assert result.removed_scopes == ["global"]
        assert kernel.snapshot() == before

    def test_refresh_picks_up_dataset_changes(self):
        """Test that refresh rebuilds sets with the same policy."""
        kernel = InMemoryKernel()
        driver = _driver(kernel)
        asyncio.run(driver.start())

        driver.reconciler.builder.dataset.set("AR", V4, ["8.8.8.0/24"])
        asyncio.run(driver.refresh())
        assert kernel.evaluate("8.8.8.8") == "ACCEPT"
        assert kernel.evaluate("181.1.2.3") == "DROP"

    def test_reload(self):
        """Test switching to a new policy set."""
        kernel = InMemoryKernel()
        driver = _driver(kernel, eth0=ScopePolicy(countries=["DE"]))
        asyncio.run(driver.start())

        new_policy = DeclaredPolicySet(
            global_policy=ScopePolicy(mode="blocklist", countries=["DE"])
        )
        result = asyncio.run(driver.reload(new_policy))

        assert driver.declared is new_policy
        assert result.removed_scopes == ["eth0"]
        assert kernel.evaluate("5.1.2.3") == "DROP"
        assert kernel.evaluate("8.8.8.8") == "ACCEPT"

    def test_non_strict_returns_errors(self):
        """Test that scope errors are returned when not strict."""
        driver = _driver(InMemoryKernel(), eth0=ScopePolicy(countries=["XYZ"]))
        result = asyncio.run(driver.start())

        assert not result.is_successful
        assert result.applied_scopes == ["global"]
        assert [e.scope for e in result.scope_errors] == ["eth0"]

    def test_strict_raises(self):
        """Test that a strict driver raises ActivationError on scope errors."""
        driver = _driver(InMemoryKernel(), strict=True, eth0=ScopePolicy(mode="maybe"))

        with pytest.raises(ActivationError) as exc_info:
            asyncio.run(driver.start())

        assert exc_info.value.result.applied_scopes == ["global"]
        assert "1 scope error" in str(exc_info.value)
