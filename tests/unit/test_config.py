"""Unit tests for the options file, typed options and runtime settings."""

import pytest

from sniguard.core.config import (
    AppConfig,
    OptionsFile,
    ProxyOptions,
    RuntimeSettings,
)
from sniguard.core.exceptions import ConfigurationError


class TestProxyOptions:
    """Tests for ProxyOptions."""

    def test_defaults(self):
        """Missing keys fall back to built-in defaults."""
        options = ProxyOptions.from_values({})
        assert options.dns_servers == ["1.1.1.1", "1.0.0.1"]
        assert options.manage_iptables is True
        assert options.ipv6_nat is True

    @pytest.mark.parametrize("raw,expected", [
        ("yes", True), ("no", False), ("true", True), ("false", False),
        ("1", True), ("0", False), ("on", True), ("off", False),
    ])
    def test_boolean_spellings(self, raw, expected):
        """Common boolean spellings are accepted."""
        assert ProxyOptions.from_values({"manage_iptables": raw}).manage_iptables is expected

    def test_dns_servers_split(self):
        """DNS servers may be separated by spaces or commas."""
        options = ProxyOptions.from_values({"dns_servers": "9.9.9.9, 2620:fe::fe"})
        assert options.dns_servers == ["9.9.9.9", "2620:fe::fe"]

    def test_invalid_dns_server(self):
        """Non-IP DNS servers are a configuration error."""
        with pytest.raises(ConfigurationError) as exc:
            ProxyOptions.from_values({"dns_servers": "dns.example.com"})
        assert exc.value.exit_code == 2
        assert any("dns_servers" in d for d in exc.value.details)

    def test_unknown_keys_ignored(self):
        """Unknown keys do not break option parsing."""
        assert ProxyOptions.from_values({"future_option": "x"}).ipv6_nat is True

    def test_to_values(self):
        """Booleans render as yes/no."""
        values = ProxyOptions(manage_iptables=False).to_values()
        assert values["manage_iptables"] == "no"
        assert values["dns_servers"] == "1.1.1.1 1.0.0.1"


class TestOptionsFile:
    """Tests for the key=value file."""

    def test_missing_file_is_empty(self, tmp_path):
        """A missing file means no values."""
        assert OptionsFile(tmp_path / "none.conf").values() == {}

    def test_preserves_comments_and_unknown_keys(self, tmp_path):
        """Rewrites keep comments, blank lines and unknown keys in place."""
        path = tmp_path / "sniguard.conf"
        path.write_text("# header\n\nfuture_option=keep me\nipv6_nat=yes\n")

        options = OptionsFile(path)
        options.set("ipv6_nat", "no")
        options.set("dns_servers", "9.9.9.9")
        options.save()

        assert path.read_text() == (
            "# header\n\nfuture_option=keep me\nipv6_nat=no\ndns_servers=9.9.9.9\n"
        )

    def test_last_occurrence_wins(self, tmp_path):
        """Duplicate keys read as the last value and collapse on set."""
        path = tmp_path / "sniguard.conf"
        path.write_text("ipv6_nat=yes\nipv6_nat=no\n")
        options = OptionsFile(path)
        assert options.get("ipv6_nat") == "no"
        options.set("ipv6_nat", "yes")
        assert options.render() == "ipv6_nat=yes\n"

    def test_unset(self, tmp_path):
        """unset removes every occurrence and reports whether one existed."""
        path = tmp_path / "sniguard.conf"
        path.write_text("ipv6_nat=no\n# note\n")
        options = OptionsFile(path)
        assert options.unset("ipv6_nat")
        assert not options.unset("ipv6_nat")
        assert options.render() == "# note\n"

    def test_whitespace_around_equals(self, tmp_path):
        """Whitespace around keys and values is ignored."""
        path = tmp_path / "sniguard.conf"
        path.write_text("  dns_servers =  8.8.8.8  \n")
        assert OptionsFile(path).get("dns_servers") == "8.8.8.8"


class TestAppConfig:
    """Tests for AppConfig."""

    def test_set_normalizes_and_persists(self, tmp_path):
        """set validates, normalizes and writes the file."""
        path = tmp_path / "sniguard.conf"
        config = AppConfig(settings=RuntimeSettings(), options_path=path)
        assert config.set("manage_iptables", "off") == "no"
        assert "manage_iptables=no" in path.read_text()
        assert config.manage_iptables is False

    def test_set_unknown_key(self, tmp_path):
        """Unknown keys are rejected with the known keys as hint."""
        config = AppConfig(settings=RuntimeSettings(), options_path=tmp_path / "c.conf")
        with pytest.raises(ConfigurationError) as exc:
            config.set("bogus", "1")
        assert "dns_servers" in exc.value.hint

    def test_set_invalid_value_leaves_file(self, tmp_path):
        """An invalid value is not written."""
        path = tmp_path / "sniguard.conf"
        config = AppConfig(settings=RuntimeSettings(), options_path=path)
        with pytest.raises(ConfigurationError):
            config.set("ipv6_nat", "maybe")
        assert not path.exists()

    def test_unset_restores_default(self, tmp_path):
        """After unset, the default applies again."""
        path = tmp_path / "sniguard.conf"
        path.write_text("ipv6_nat=no\n")
        config = AppConfig(settings=RuntimeSettings(), options_path=path)
        assert config.ipv6_nat is False
        assert config.unset("ipv6_nat")
        assert config.ipv6_nat is True

    def test_get_and_effective_values(self, tmp_path):
        """get returns effective values; unknown file keys are included."""
        path = tmp_path / "sniguard.conf"
        path.write_text("future_option=x\n")
        config = AppConfig(settings=RuntimeSettings(), options_path=path)
        assert config.get("ipv6_nat") == "yes"
        assert config.get("future_option") == "x"
        assert config.effective_values()["future_option"] == "x"
        with pytest.raises(ConfigurationError):
            config.get("missing")
        assert "dns_servers: 1.1.1.1 1.0.0.1" in config.to_yaml()


class TestRuntimeSettings:
    """Tests for environment overrides."""

    def test_env_override(self, monkeypatch, tmp_path):
        """SNIGUARD_* variables override defaults."""
        monkeypatch.setenv("SNIGUARD_ALLOWLIST_FILE", str(tmp_path / "list"))
        monkeypatch.setenv("SNIGUARD_CHAIN_PREFIX", "SG")
        settings = RuntimeSettings()
        assert settings.allowlist_file == tmp_path / "list"
        assert settings.chain_prefix == "SG"

    def test_bad_chain_prefix(self, monkeypatch):
        """Chain prefixes must fit iptables' name limit."""
        monkeypatch.setenv("SNIGUARD_CHAIN_PREFIX", "X" * 30)
        with pytest.raises(ValueError):
            RuntimeSettings()
