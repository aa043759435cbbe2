"""
Country filtering policy definition and management.
"""

import json
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    ValidationError,
    field_validator,
)

from .errors import InvalidPolicy
from .objects import AddressFamily, CountryCode

_INTERFACE_NAME = re.compile(r"^[A-Za-z0-9_.@:+-]{1,15}$")
GLOBAL_SCOPE_ID = "global"


class PolicyMode(str, Enum):
    """How a scope treats the countries it lists."""

    ALLOWLIST = "allowlist"
    BLOCKLIST = "blocklist"

    @classmethod
    def parse(cls, value: Union[str, "PolicyMode"]) -> "PolicyMode":
        if isinstance(value, PolicyMode):
            return value
        aliases = {"allow": cls.ALLOWLIST, "deny": cls.BLOCKLIST}
        normalized = str(value).strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)

    @property
    def match_target(self) -> str:
        """Target for packets from a listed country."""
        return "ACCEPT" if self is PolicyMode.ALLOWLIST else "DROP"

    @property
    def default_target(self) -> str:
        """Target for packets that match no listed country."""
        return "DROP" if self is PolicyMode.ALLOWLIST else "ACCEPT"


class PolicyMetadata(BaseModel):
    """Metadata for a declared policy set."""

    name: str = "country-filter"
    version: str = "1.0"
    description: Optional[str] = None
    author: Optional[str] = None
    tags: List[str] = []


class PolicyValidationResult(BaseModel):
    """Result of policy validation."""

    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []

    def add_error(self, error: str) -> None:
        """Add a validation error."""
        self.errors.append(error)
        self.is_valid = False

    def add_warning(self, warning: str) -> None:
        """Add a validation warning."""
        self.warnings.append(warning)

    def merge(self, other: "PolicyValidationResult") -> None:
        for error in other.errors:
            self.add_error(error)
        self.warnings.extend(other.warnings)


class Scope(BaseModel):
    """The global scope, or a scope bound to one network interface."""

    model_config = {"frozen": True}

    interface: Optional[str] = None

    @classmethod
    def global_scope(cls) -> "Scope":
        return cls()

    @classmethod
    def for_interface(cls, name: str) -> "Scope":
        return cls(interface=name)

    @property
    def is_global(self) -> bool:
        return self.interface is None

    @property
    def scope_id(self) -> str:
        return GLOBAL_SCOPE_ID if self.interface is None else self.interface

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (0, "") if self.interface is None else (1, self.interface)

    def check_interface_name(self) -> None:
        """Raise InvalidPolicy if the interface name cannot be used in a chain name."""
        if self.interface is not None and not _INTERFACE_NAME.match(self.interface):
            raise InvalidPolicy(
                self.scope_id,
                "interface names must be 1-15 characters from [A-Za-z0-9_.@:+-]",
            )
        if self.interface == GLOBAL_SCOPE_ID:
            raise InvalidPolicy(
                self.interface, f"'{GLOBAL_SCOPE_ID}' is reserved for the global scope"
            )

    def __str__(self) -> str:
        return self.scope_id


class ResolvedPolicy(BaseModel):
    """A policy with a validated mode and a canonical, sorted country list."""

    model_config = {"frozen": True}

    mode: PolicyMode
    countries: Tuple[CountryCode, ...] = ()

    @property
    def country_codes(self) -> List[str]:
        return [str(country) for country in self.countries]


class ScopePolicy(BaseModel):
    """
    Declared policy for one scope, as written by the operator.

    Values are kept as declared; ``resolve`` normalizes them and rejects
    malformed input for this scope only.
    """

    enabled: bool = Field(
        default=True, validation_alias=AliasChoices("enabled", "enable")
    )
    mode: Optional[str] = None
    countries: List[str] = []

    @field_validator("countries", mode="before")
    @classmethod
    def coerce_yaml_booleans(cls, v):
        # YAML 1.1 loads a bare NO (Norway) as False
        if isinstance(v, list):
            return ["NO" if item is False else item for item in v]
        return v

    def resolve(
        self,
        scope_id: str = "global",
        default_mode: PolicyMode = PolicyMode.ALLOWLIST,
    ) -> ResolvedPolicy:
        """Validate, upper-case, deduplicate and sort the policy."""
        try:
            mode = PolicyMode.parse(self.mode) if self.mode else default_mode
        except ValueError:
            raise InvalidPolicy(
                scope_id,
                f"unknown mode {self.mode!r} (expected 'allowlist' or 'blocklist')",
            )

        codes = set()
        for raw in self.countries:
            try:
                codes.add(CountryCode.parse(raw))
            except ValidationError:
                raise InvalidPolicy(scope_id, f"malformed country code {raw!r}")

        return ResolvedPolicy(mode=mode, countries=tuple(sorted(codes)))

    def validate_policy(
        self,
        scope_id: str = "global",
        default_mode: PolicyMode = PolicyMode.ALLOWLIST,
    ) -> PolicyValidationResult:
        """Validate this scope's policy without raising."""
        result = PolicyValidationResult(is_valid=True)
        try:
            resolved = self.resolve(scope_id, default_mode)
        except InvalidPolicy as e:
            result.add_error(str(e))
            return result

        if len(resolved.countries) != len(self.countries):
            result.add_warning(
                f"Scope '{scope_id}' lists duplicate countries; they are merged"
            )

        if self.enabled and not resolved.countries:
            if resolved.mode is PolicyMode.ALLOWLIST:
                result.add_warning(
                    f"Scope '{scope_id}' is an allowlist with no countries: "
                    "all public inbound traffic will be dropped"
                )
            else:
                result.add_warning(
                    f"Scope '{scope_id}' is a blocklist with no countries: "
                    "it has no effect"
                )

        return result


class CapabilityFlags(BaseModel):
    """Host capabilities that shape which families are filtered."""

    ipv6_enabled: bool = True

    def families(self) -> List[AddressFamily]:
        families = [AddressFamily.IPV4]
        if self.ipv6_enabled:
            families.append(AddressFamily.IPV6)
        return families

    @classmethod
    def detect(cls, proc_path: str = "/proc/net/if_inet6") -> "CapabilityFlags":
        """IPv6 counts as enabled when the kernel exposes IPv6 interfaces."""
        return cls(ipv6_enabled=os.path.exists(proc_path))


class DeclaredPolicySet(BaseModel):
    """
    The complete declared policy: one global scope plus per-interface scopes.

    This is the main input of the reconciliation engine.
    """

    model_config = {"populate_by_name": True}

    metadata: PolicyMetadata = Field(default_factory=PolicyMetadata)
    global_policy: ScopePolicy = Field(default_factory=ScopePolicy, alias="global")
    interfaces: Dict[str, ScopePolicy] = {}
    settings: Dict[str, Any] = {}

    def add_interface(
        self,
        name: str,
        countries: List[str],
        mode: Optional[str] = None,
        enabled: bool = True,
    ) -> ScopePolicy:
        """Declare (or replace) the policy of one interface."""
        policy = ScopePolicy(enabled=enabled, mode=mode, countries=list(countries))
        self.interfaces[name] = policy
        return policy

    def policy_for(self, scope: Scope) -> Optional[ScopePolicy]:
        if scope.is_global:
            return self.global_policy
        return self.interfaces.get(scope.interface)

    def scopes(self) -> List[Tuple[Scope, ScopePolicy]]:
        """All declared scopes, global first, interfaces in name order."""
        scopes = [(Scope.global_scope(), self.global_policy)]
        for name in sorted(self.interfaces):
            scopes.append((Scope.for_interface(name), self.interfaces[name]))
        return scopes

    def enabled_scopes(self) -> List[Tuple[Scope, ScopePolicy]]:
        return [(scope, policy) for scope, policy in self.scopes() if policy.enabled]

    def default_mode_for(self, scope: Scope) -> PolicyMode:
        """Interfaces without an explicit mode inherit the global one."""
        if scope.is_global:
            return PolicyMode.ALLOWLIST
        try:
            return self.global_policy.resolve("global").mode
        except InvalidPolicy:
            return PolicyMode.ALLOWLIST

    def resolve_scope(self, scope: Scope) -> ResolvedPolicy:
        """Resolve one scope; raises InvalidPolicy for that scope only."""
        policy = self.policy_for(scope)
        if policy is None:
            raise InvalidPolicy(scope.scope_id, "scope is not declared")
        scope.check_interface_name()
        return policy.resolve(scope.scope_id, self.default_mode_for(scope))

    def validate_policy(self) -> PolicyValidationResult:
        """Validate every scope and collect all errors and warnings."""
        result = PolicyValidationResult(is_valid=True)

        for scope, policy in self.scopes():
            try:
                scope.check_interface_name()
            except InvalidPolicy as e:
                result.add_error(str(e))
                continue
            result.merge(
                policy.validate_policy(scope.scope_id, self.default_mode_for(scope))
            )

        if not self.enabled_scopes():
            result.add_warning("No scope is enabled: nothing will be filtered")

        return result

    def export_to_dict(self) -> Dict[str, Any]:
        """Export to a dictionary using the file-format keys."""
        return self.model_dump(mode="json", by_alias=True)

    def export_to_yaml(self) -> str:
        return yaml.safe_dump(
            self.export_to_dict(), default_flow_style=False, sort_keys=False
        )

    def export_to_json(self) -> str:
        return json.dumps(self.export_to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeclaredPolicySet":
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "DeclaredPolicySet":
        return cls.from_dict(yaml.safe_load(yaml_content))

    @classmethod
    def from_json(cls, json_content: str) -> "DeclaredPolicySet":
        return cls.from_dict(json.loads(json_content))

    @classmethod
    def from_file(cls, path: Path) -> "DeclaredPolicySet":
        """Load a policy set from a YAML or JSON file."""
        content = Path(path).read_text()
        suffix = Path(path).suffix.lower()

        if suffix in [".yaml", ".yml"]:
            return cls.from_yaml(content)
        elif suffix == ".json":
            return cls.from_json(content)
        else:
            raise ValueError(f"Unsupported policy file format: {suffix}")
