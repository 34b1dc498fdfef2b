"""Configuration management using Pydantic.

Provides:
- Typed proxy options with validation
- ``key=value`` options file that preserves comments and unknown keys
- Runtime settings (paths, container and network names) with
  ``SNIGUARD_*`` environment variable overrides
"""

import ipaddress
from pathlib import Path
from typing import Any, Optional

import pydantic
import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sniguard.core.exceptions import ConfigurationError
from sniguard.core.fileio import write_text_atomic


# Default paths
DEFAULT_OPTIONS_PATH = Path("/etc/sniguard/sniguard.conf")
DEFAULT_STATE_DIR = Path("/var/lib/sniguard")
DEFAULT_ALLOWLIST_PATH = DEFAULT_STATE_DIR / "allowlist"
DEFAULT_LOCK_PATH = Path("/run/sniguard.lock")
DEFAULT_LOG_DIR = Path("/var/log/sniguard")


class ProxyOptions(BaseModel):
    """Operator-tunable options persisted in the options file."""

    dns_servers: list[str] = Field(default_factory=lambda: ["1.1.1.1", "1.0.0.1"])
    manage_iptables: bool = True
    ipv6_nat: bool = True

    @field_validator("dns_servers", mode="before")
    @classmethod
    def split_dns_servers(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [s for s in v.replace(",", " ").split() if s]
        return v

    @field_validator("dns_servers")
    @classmethod
    def validate_dns_servers(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one DNS server is required")
        for server in v:
            try:
                ipaddress.ip_address(server)
            except ValueError:
                raise ValueError(f"not an IP address: {server}")
        return v

    @classmethod
    def from_values(cls, values: dict[str, str]) -> "ProxyOptions":
        """Build options from raw file values, ignoring unknown keys.

        Raises:
            ConfigurationError: If a known key has an invalid value
        """
        known = {k: v for k, v in values.items() if k in OPTION_DESCRIPTIONS}
        try:
            return cls(**known)
        except pydantic.ValidationError as e:
            details = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ConfigurationError(
                "Invalid configuration value",
                details=details,
            ) from e

    def to_values(self) -> dict[str, str]:
        """Render options back to their ``key=value`` string form."""
        return {
            "dns_servers": " ".join(self.dns_servers),
            "manage_iptables": "yes" if self.manage_iptables else "no",
            "ipv6_nat": "yes" if self.ipv6_nat else "no",
        }


OPTION_DESCRIPTIONS: dict[str, str] = {
    "dns_servers": "Upstream DNS servers handed to the proxy container",
    "manage_iptables": "Create and remove the iptables allow-list chains",
    "ipv6_nat": "Masquerade the container's private IPv6 subnet when the host has global IPv6",
}


class RuntimeSettings(BaseSettings):
    """Paths and names that are fixed per installation.

    Every field can be overridden with a ``SNIGUARD_<FIELD>`` environment
    variable, e.g. ``SNIGUARD_ALLOWLIST_FILE=/tmp/allowlist``.
    """

    model_config = SettingsConfigDict(env_prefix="SNIGUARD_", extra="ignore")

    options_file: Path = DEFAULT_OPTIONS_PATH
    allowlist_file: Path = DEFAULT_ALLOWLIST_PATH
    lock_file: Path = DEFAULT_LOCK_PATH
    lock_timeout: float = 60.0
    audit_log: Path = DEFAULT_LOG_DIR / "audit.log"

    # Container and network
    container_name: str = "sniguard"
    image: str = "sniguard/proxy:latest"
    network_name: str = "sniguard"
    bridge_interface: str = "sniguard0"
    ipv4_subnet: str = "172.29.53.0/24"
    ipv6_subnet: str = "fd00:5347:5541::/64"

    # Firewall and boot integration
    chain_prefix: str = "SNIGUARD"
    unit_name: str = "sniguard"
    unit_dir: Path = Path("/etc/systemd/system")
    executable: str = "/usr/local/bin/sniguard"

    @field_validator("ipv4_subnet", "ipv6_subnet")
    @classmethod
    def validate_subnet(cls, v: str) -> str:
        return str(ipaddress.ip_network(v, strict=False))

    @field_validator("chain_prefix")
    @classmethod
    def validate_chain_prefix(cls, v: str) -> str:
        # iptables chain names max out at 28 characters; "-FORWARD" is the longest suffix
        if not v or len(v) > 20 or not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError("chain_prefix must be 1-20 alphanumeric characters")
        return v


class OptionsFile:
    """``key=value`` options file.

    Comments, blank lines and keys this version does not know about are kept
    verbatim when the file is rewritten.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lines: Optional[list[str]] = None

    @property
    def lines(self) -> list[str]:
        if self._lines is None:
            self._lines = self._read()
        return self._lines

    def _read(self) -> list[str]:
        if not self.path.exists():
            return []
        try:
            return self.path.read_text().splitlines()
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read options file: {self.path}",
                hint="Check file permissions or run with sudo",
                details=[str(e)],
            ) from e

    @staticmethod
    def _parse_line(line: str) -> Optional[tuple[str, str]]:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            return None
        key, _, value = stripped.partition("=")
        return key.strip(), value.strip()

    def values(self) -> dict[str, str]:
        """All key/value pairs in file order (last occurrence wins)."""
        result: dict[str, str] = {}
        for line in self.lines:
            parsed = self._parse_line(line)
            if parsed:
                result[parsed[0]] = parsed[1]
        return result

    def get(self, key: str) -> Optional[str]:
        return self.values().get(key)

    def set(self, key: str, value: str) -> None:
        """Set a key, replacing its first occurrence in place."""
        new_line = f"{key}={value}"
        updated: list[str] = []
        replaced = False
        for line in self.lines:
            parsed = self._parse_line(line)
            if parsed and parsed[0] == key:
                if not replaced:
                    updated.append(new_line)
                    replaced = True
                continue
            updated.append(line)
        if not replaced:
            updated.append(new_line)
        self._lines = updated

    def unset(self, key: str) -> bool:
        """Remove every occurrence of a key. Returns True if one existed."""
        before = len(self.lines)
        self._lines = [
            line for line in self.lines
            if (parsed := self._parse_line(line)) is None or parsed[0] != key
        ]
        return len(self._lines) != before

    def render(self) -> str:
        return "\n".join(self.lines) + "\n" if self.lines else ""

    def save(self) -> None:
        """Atomically rewrite the file."""
        try:
            write_text_atomic(self.path, self.render(), permissions=0o644)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot write options file: {self.path}",
                hint="Run with sudo",
                details=[str(e)],
            ) from e


class AppConfig:
    """Application configuration combining runtime settings and the options file.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        options_path: Optional[Path] = None,
    ) -> None:
        """Initialize application configuration.

        Args:
            settings: Pre-built runtime settings (read from environment if None)
            options_path: Options file override (settings.options_file if None)
        """
        self._settings = settings or RuntimeSettings()
        self.options_file = OptionsFile(options_path or self._settings.options_file)
        self._options: Optional[ProxyOptions] = None

    @property
    def settings(self) -> RuntimeSettings:
        return self._settings

    @property
    def options(self) -> ProxyOptions:
        """Typed options (file values over defaults, lazy loaded)."""
        if self._options is None:
            self._options = ProxyOptions.from_values(self.options_file.values())
        return self._options

    @property
    def dns_servers(self) -> list[str]:
        return self.options.dns_servers

    @property
    def manage_iptables(self) -> bool:
        return self.options.manage_iptables

    @property
    def ipv6_nat(self) -> bool:
        return self.options.ipv6_nat

    def get(self, key: str) -> str:
        """Effective value of a key: file value for unknown keys, typed value otherwise.

        Raises:
            ConfigurationError: If the key is neither known nor present in the file
        """
        if key in OPTION_DESCRIPTIONS:
            return self.options.to_values()[key]
        value = self.options_file.get(key)
        if value is None:
            raise ConfigurationError(
                f"Unknown configuration key: {key}",
                hint=f"Known keys: {', '.join(OPTION_DESCRIPTIONS)}",
            )
        return value

    def effective_values(self) -> dict[str, str]:
        """Every known option plus any unknown keys kept in the file."""
        values = self.options.to_values()
        for key, value in self.options_file.values().items():
            values.setdefault(key, value)
        return values

    def to_yaml(self) -> str:
        """Effective values as YAML for display."""
        return yaml.dump(self.effective_values(), default_flow_style=False, sort_keys=False)

    def set(self, key: str, value: str) -> str:
        """Validate and persist one option. Returns the normalized value.

        Raises:
            ConfigurationError: If the key is unknown or the value invalid
        """
        if key not in OPTION_DESCRIPTIONS:
            raise ConfigurationError(
                f"Unknown configuration key: {key}",
                hint=f"Known keys: {', '.join(OPTION_DESCRIPTIONS)}",
            )
        candidate = {**self.options_file.values(), key: value}
        options = ProxyOptions.from_values(candidate)
        normalized = options.to_values()[key]

        self.options_file.set(key, normalized)
        self.options_file.save()
        self._options = options
        return normalized

    def unset(self, key: str) -> bool:
        """Remove a key from the file so its default applies again."""
        removed = self.options_file.unset(key)
        if removed:
            self.options_file.save()
            self._options = None
        return removed
