"""Address validation.

Classifies textual client addresses (optionally with a ``/prefix``) as
IPv4 or IPv6 and turns them into the ``AllowEntry`` values the allow-list
code passes around. Classification happens once, at the edge; every layer
below receives the tagged entry instead of re-detecting the family.
"""

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from sniguard.core.exceptions import InvalidAddressError


class AddressFamily(str, Enum):
    """IP address family. Selects the rule engine and address grammar."""
    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def max_prefix(self) -> int:
        return 32 if self is AddressFamily.IPV4 else 128

    @property
    def label(self) -> str:
        return "IPv4" if self is AddressFamily.IPV4 else "IPv6"


_DECIMAL = re.compile(r"^[0-9]+$")
_HEX_GROUP = re.compile(r"^[0-9a-fA-F]{0,4}$")


def _parse_prefix(prefix: Optional[str], maximum: int) -> bool:
    if prefix is None:
        return True
    if not _DECIMAL.match(prefix):
        return False
    return 0 <= int(prefix) <= maximum


def classify(text: str) -> Optional[AddressFamily]:
    """Classify an address with optional ``/prefix``.

    IPv4 needs exactly four dot-separated decimal octets in [0, 255] and a
    prefix in [0, 32]. IPv6 needs 1-8 colon-separated groups of 0-4 hex
    digits and a prefix in [0, 128]; compression is not fully validated.

    Args:
        text: Address such as ``203.0.113.5`` or ``2001:db8::/64``

    Returns:
        The address family, or None if the text is not a valid address
    """
    text = text.strip()
    if not text:
        return None

    address, sep, prefix = text.partition("/")
    if sep and not prefix:
        return None
    prefix_value = prefix if sep else None

    if "." in address and ":" not in address:
        octets = address.split(".")
        if len(octets) != 4:
            return None
        for octet in octets:
            if not _DECIMAL.match(octet) or int(octet) > 255:
                return None
        return AddressFamily.IPV4 if _parse_prefix(prefix_value, 32) else None

    if ":" in address:
        groups = address.split(":")
        if not 1 <= len(groups) <= 8:
            return None
        if not all(_HEX_GROUP.match(group) for group in groups):
            return None
        return AddressFamily.IPV6 if _parse_prefix(prefix_value, 128) else None

    return None


IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass(frozen=True)
class AllowEntry:
    """An allow-listed address or network, tagged with its family.

    Two entries are equal when they cover the same network, so
    ``203.0.113.5`` and ``203.0.113.5/32`` are one entry.
    """
    family: AddressFamily
    network: IPNetwork

    @property
    def is_host(self) -> bool:
        return self.network.prefixlen == self.family.max_prefix

    @property
    def address(self) -> str:
        """Bare address for single hosts, ``addr/prefix`` otherwise."""
        if self.is_host:
            return str(self.network.network_address)
        return str(self.network)

    @property
    def cidr(self) -> str:
        """Always-prefixed form, as the rule engine lists it."""
        return str(self.network)

    def __str__(self) -> str:
        return self.address


def parse_allow_entry(text: str) -> AllowEntry:
    """Classify and normalize an address into an AllowEntry.

    Host bits below the prefix are masked (``10.1.2.3/8`` -> ``10.0.0.0/8``),
    matching what the rule engine stores.

    Raises:
        InvalidAddressError: If the text is not a valid IPv4/IPv6 address
    """
    family = classify(text)
    if family is None:
        raise InvalidAddressError(text.strip())

    try:
        network = ipaddress.ip_network(text.strip(), strict=False)
    except ValueError as e:
        raise InvalidAddressError(text.strip(), details=[str(e)]) from e

    return AllowEntry(family=family, network=network)


def sort_entries(entries: "list[AllowEntry] | set[AllowEntry]") -> list[AllowEntry]:
    """Deterministic order: IPv4 before IPv6, then by network."""
    return sorted(
        entries,
        key=lambda e: (e.family is AddressFamily.IPV6, int(e.network.network_address), e.network.prefixlen),
    )
