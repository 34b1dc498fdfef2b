"""Unit tests for address classification and allow entries."""

import ipaddress

import pytest

from sniguard.core.exceptions import InvalidAddressError, ValidationError
from sniguard.core.validation import (
    AddressFamily,
    AllowEntry,
    classify,
    parse_allow_entry,
    sort_entries,
)


class TestClassifyIPv4:
    """Tests for IPv4 classification."""

    @pytest.mark.parametrize("text", [
        "0.0.0.0",
        "203.0.113.5",
        "255.255.255.255",
        "10.0.0.0/8",
        "192.168.1.0/24",
        "1.2.3.4/0",
        "1.2.3.4/32",
        " 203.0.113.5 ",
    ])
    def test_valid_ipv4(self, text):
        """Dotted quads with octets in [0,255] and prefix in [0,32] are IPv4."""
        assert classify(text) is AddressFamily.IPV4

    def test_every_octet_value(self):
        """Every octet value from 0 to 255 is accepted in every position."""
        for value in range(256):
            for position in range(4):
                octets = ["1", "1", "1", "1"]
                octets[position] = str(value)
                assert classify(".".join(octets)) is AddressFamily.IPV4

    def test_every_prefix_value(self):
        """Every prefix from 0 to 32 is accepted; 33 is not."""
        for prefix in range(33):
            assert classify(f"10.0.0.0/{prefix}") is AddressFamily.IPV4
        assert classify("10.0.0.0/33") is None

    @pytest.mark.parametrize("text", [
        "256.0.0.1",
        "1.2.3.999",
        "1.2.3",
        "1.2.3.4.5",
        "1.2.3.4/",
        "1.2.3.4/33",
        "1.2.3.4/-1",
        "1.2.3.4/abc",
        "a.b.c.d",
        "1..2.3",
        "",
        "   ",
        "localhost",
    ])
    def test_invalid_ipv4(self, text):
        """Octets >= 256, bad prefixes and malformed quads are invalid."""
        assert classify(text) is None


class TestClassifyIPv6:
    """Tests for IPv6 classification."""

    @pytest.mark.parametrize("text", [
        "::1",
        "::",
        "2001:db8::1",
        "2001:db8::/32",
        "fe80::1/64",
        "2001:0db8:0000:0000:0000:0000:0000:0001",
        "2001:db8::1/128",
        "2001:db8::/0",
    ])
    def test_valid_ipv6(self, text):
        """Colon-separated hex groups with prefix in [0,128] are IPv6."""
        assert classify(text) is AddressFamily.IPV6

    @pytest.mark.parametrize("text", [
        "2001:db8::/129",
        "2001:db8::g",
        "12345::1",
        "1:2:3:4:5:6:7:8:9",
        "2001:db8::/",
        "2001:db8::/x",
    ])
    def test_invalid_ipv6(self, text):
        """Bad groups, too many groups and bad prefixes are invalid."""
        assert classify(text) is None


class TestParseAllowEntry:
    """Tests for parse_allow_entry."""

    def test_host_without_prefix(self):
        """A bare address is a full-length host entry."""
        entry = parse_allow_entry("203.0.113.5")
        assert entry.family is AddressFamily.IPV4
        assert entry.is_host
        assert entry.address == "203.0.113.5"
        assert entry.cidr == "203.0.113.5/32"

    def test_full_prefix_equals_bare(self):
        """203.0.113.5 and 203.0.113.5/32 are the same entry."""
        assert parse_allow_entry("203.0.113.5") == parse_allow_entry("203.0.113.5/32")

    def test_network_keeps_prefix(self):
        """Networks keep their prefix in both renderings."""
        entry = parse_allow_entry("198.51.100.0/24")
        assert entry.address == "198.51.100.0/24"
        assert str(entry) == "198.51.100.0/24"

    def test_host_bits_masked(self):
        """Host bits below the prefix are dropped, as the rule engine does."""
        assert parse_allow_entry("10.1.2.3/8").address == "10.0.0.0/8"

    def test_ipv6_compressed(self):
        """IPv6 entries are rendered compressed."""
        entry = parse_allow_entry("2001:0db8:0000:0000:0000:0000:0000:0001")
        assert entry.family is AddressFamily.IPV6
        assert entry.address == "2001:db8::1"
        assert entry.cidr == "2001:db8::1/128"

    def test_invalid_raises(self):
        """Invalid input raises InvalidAddressError, a ValidationError."""
        with pytest.raises(InvalidAddressError) as exc:
            parse_allow_entry("300.1.1.1")
        assert isinstance(exc.value, ValidationError)
        assert "300.1.1.1" in exc.value.message
        assert exc.value.exit_code == 3

    def test_grammar_valid_but_unparseable(self):
        """Input that passes the classifier but not ipaddress is still rejected."""
        assert classify("1:2") is AddressFamily.IPV6
        with pytest.raises(InvalidAddressError):
            parse_allow_entry("1:2")


class TestSortEntries:
    """Tests for deterministic ordering."""

    def test_ipv4_first_then_numeric(self):
        """IPv4 entries come first, each family sorted numerically."""
        entries = [
            parse_allow_entry("2001:db8::1"),
            parse_allow_entry("10.0.0.2"),
            parse_allow_entry("9.0.0.1"),
            parse_allow_entry("10.0.0.0/8"),
        ]
        assert [e.address for e in sort_entries(entries)] == [
            "9.0.0.1",
            "10.0.0.0/8",
            "10.0.0.2",
            "2001:db8::1",
        ]

    def test_entries_are_hashable(self):
        """Entries can be deduplicated with a set."""
        network = ipaddress.ip_network("203.0.113.5/32")
        entries = {
            AllowEntry(AddressFamily.IPV4, network),
            parse_allow_entry("203.0.113.5"),
        }
        assert len(entries) == 1
