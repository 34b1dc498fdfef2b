"""Unit tests for the transient IPv6 NAT rule and host network detection."""

import pytest

from sniguard.core.context import create_context
from sniguard.core.exceptions import RuleEngineUnavailableError
from sniguard.core.executor import CommandExecutor
from sniguard.core.validation import AddressFamily
from sniguard.services import network
from sniguard.services.iptables import Rule, Table


MASQUERADE = Rule(
    chain="POSTROUTING",
    target="MASQUERADE",
    table=Table.NAT,
    source="fd00:5347:5541::/64",
    out_interface="sniguard0",
    out_interface_negated=True,
)


class TestInstall:
    """Tests for TransientNatHandler.install."""

    def test_install_twice_then_remove_once(self, firewall, host):
        """Two installs leave one rule; one remove leaves none."""
        host.give_global_ipv6()
        assert firewall.nat.install()
        assert firewall.nat.install()
        assert host.v6.rules("POSTROUTING", table="nat") == [MASQUERADE]

        assert firewall.nat.remove() == 1
        assert host.v6.rules("POSTROUTING", table="nat") == []

    def test_remove_clears_stale_duplicates(self, firewall, host):
        """Stale copies from earlier runs are all removed."""
        for _ in range(3):
            host.v6(["-t", "nat", "-I", "POSTROUTING", "1"] + MASQUERADE.to_args())
        assert firewall.nat.count() == 3
        assert firewall.nat.remove() == 3
        assert firewall.nat.count() == 0

    def test_install_enables_forwarding(self, firewall, host):
        """Installing turns on IPv6 forwarding."""
        host.give_global_ipv6()
        firewall.nat.install()
        assert ["sysctl", "-w", "net.ipv6.conf.all.forwarding=1"] in host.calls

    def test_skipped_without_global_ipv6(self, firewall, host):
        """No global IPv6 on the default route: nothing is installed."""
        assert not firewall.nat.install()
        assert host.v6.rules("POSTROUTING", table="nat") == []
        assert host.commands("sysctl") == []

    def test_skipped_when_disabled(self, firewall, host, state_dir):
        """ipv6_nat=no disables the rule."""
        (state_dir / "sniguard.conf").write_text("ipv6_nat=no\n")
        host.give_global_ipv6()
        assert not firewall.nat.install()
        assert firewall.nat.count() == 0

    def test_ipv4_untouched(self, firewall, host):
        """The NAT rule is IPv6 only."""
        host.give_global_ipv6()
        firewall.nat.install()
        assert host.v4.rules("POSTROUTING", table="nat") == []


class TestWithoutIp6tables:
    """Tests for count and remove on hosts where ip6tables cannot be used."""

    def test_disabled_nat_counts_nothing(self, firewall, host, state_dir):
        """ipv6_nat=no with a broken ip6tables has nothing to count or remove."""
        (state_dir / "sniguard.conf").write_text("manage_iptables=no\nipv6_nat=no\n")
        host.v6.unavailable = True
        assert firewall.nat.count() == 0
        assert firewall.nat.remove() == 0

    def test_enabled_nat_reports_engine(self, firewall, host):
        """With ipv6_nat on, an unusable ip6tables is still an error."""
        host.v6.unavailable = True
        with pytest.raises(RuleEngineUnavailableError):
            firewall.nat.count()
        with pytest.raises(RuleEngineUnavailableError):
            firewall.nat.remove()


class TestNetworkDetection:
    """Tests for default-route and global address detection."""

    def test_default_route_interfaces(self, host):
        """Interfaces are read from 'ip -6 route show default'."""
        host.ipv6_default_route = (
            "default proto ra metric 1024 expires 1790sec pref medium\n"
            "\tnexthop via fe80::1 dev eth0 weight 1\n"
            "\tnexthop via fe80::2 dev eth1 weight 1\n"
        )
        assert network.default_route_interfaces(AddressFamily.IPV6) == ["eth0", "eth1"]

    def test_global_address_detected(self, host):
        """A global, non-deprecated address counts."""
        host.give_global_ipv6("ens3", "2a01:4f8:c17:1::5")
        assert network.has_global_ipv6()

    def test_link_local_only(self, host):
        """Link-local or ULA addresses do not count."""
        host.ipv6_default_route = "default via fe80::1 dev eth0 metric 100\n"
        host.ipv6_addresses["eth0"] = (
            "2: eth0    inet6 fd12:3456::1/64 scope global \\       valid_lft forever preferred_lft forever\n"
            "2: eth0    inet6 fe80::1/64 scope link \\       valid_lft forever preferred_lft forever\n"
        )
        assert not network.has_global_ipv6()

    def test_deprecated_address_ignored(self, host):
        """Deprecated addresses do not count."""
        host.ipv6_default_route = "default via fe80::1 dev eth0 metric 100\n"
        host.ipv6_addresses["eth0"] = (
            "2: eth0    inet6 2a01:4f8::1/64 scope global deprecated dynamic \\       valid_lft 10sec preferred_lft 0sec\n"
        )
        assert not network.has_global_ipv6()

    def test_no_default_route(self, host):
        """No IPv6 default route means no global IPv6."""
        assert network.default_route_interfaces() == []
        assert not network.has_global_ipv6()

    def test_dry_run_forwarding_not_written(self, host, state_dir):
        """Dry-run does not run sysctl."""
        ctx = create_context(dry_run=True)
        network.enable_ipv6_forwarding(CommandExecutor(ctx))
        assert host.commands("sysctl") == []
