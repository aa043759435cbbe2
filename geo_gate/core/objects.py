"""
Core network objects: country codes, address families and CIDR blocks.
"""

import re
from enum import Enum
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Union

from pydantic import BaseModel, field_validator, model_validator

_COUNTRY_CODE = re.compile(r"^[A-Za-z]{2}$")


class AddressFamily(str, Enum):
    """IP address family."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def version(self) -> int:
        return 4 if self is AddressFamily.IPV4 else 6

    @property
    def ipset_family(self) -> str:
        """Family keyword used by ``ipset create``."""
        return "inet" if self is AddressFamily.IPV4 else "inet6"

    @property
    def tag(self) -> str:
        """Short tag used in set names."""
        return "v4" if self is AddressFamily.IPV4 else "v6"

    @property
    def iptables(self) -> str:
        """Name of the filter binary for this family."""
        return "iptables" if self is AddressFamily.IPV4 else "ip6tables"

    @classmethod
    def from_version(cls, version: int) -> "AddressFamily":
        return cls.IPV4 if version == 4 else cls.IPV6

    def __str__(self) -> str:
        return self.value


class CountryCode(BaseModel):
    """ISO 3166-1 alpha-2 country code, canonicalized to upper case."""

    model_config = {"frozen": True}

    code: str

    @field_validator("code")
    @classmethod
    def validate_code(cls, v):
        v = v.strip()
        if not _COUNTRY_CODE.match(v):
            raise ValueError(f"Country code must be two letters: {v!r}")
        return v.upper()

    @classmethod
    def parse(cls, value: Union[str, "CountryCode"]) -> "CountryCode":
        if isinstance(value, CountryCode):
            return value
        return cls(code=str(value))

    def __lt__(self, other: "CountryCode") -> bool:
        return self.code < other.code

    def __str__(self) -> str:
        return self.code


class CIDRBlock(BaseModel):
    """A network prefix of a known address family."""

    model_config = {"frozen": True}

    cidr: str
    family: AddressFamily

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v):
        try:
            return str(ip_network(v.strip(), strict=False))
        except ValueError:
            raise ValueError(f"Invalid CIDR notation: {v}")

    @model_validator(mode="after")
    def check_family(self):
        if ip_network(self.cidr).version != self.family.version:
            raise ValueError(f"{self.cidr} is not an {self.family.value} prefix")
        return self

    @classmethod
    def parse(cls, text: str) -> "CIDRBlock":
        """Create a block, inferring the family from the prefix."""
        network = ip_network(text.strip(), strict=False)
        return cls(
            cidr=str(network), family=AddressFamily.from_version(network.version)
        )

    @property
    def network(self) -> Union[IPv4Network, IPv6Network]:
        return ip_network(self.cidr)

    def contains(self, address: str) -> bool:
        """Check if the given address is within this block."""
        try:
            return ip_address(address) in self.network
        except ValueError:
            return False

    def __str__(self) -> str:
        return self.cidr
