"""TLS and P2P network configuration with TLS 1.3 enforcement."""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


class ConfigError(ValueError):
    """Raised when a configuration is invalid."""


class TlsVersion(enum.Enum):
    V1_2 = "1.2"
    V1_3 = "1.3"


_TLS12_REJECTED = "TLS 1.2 is not allowed. Only TLS 1.3 is supported."


@dataclass(frozen=True)
class TlsConfig:
    """TLS settings for peer connections."""

    enabled: bool = True
    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None
    verify_peer_certs: bool = False
    min_tls_version: TlsVersion = TlsVersion.V1_3
    max_tls_version: TlsVersion = TlsVersion.V1_3
    allowed_cipher_suites: List[str] = field(default_factory=list)

    @classmethod
    def secure(cls) -> "TlsConfig":
        """TLS enabled, restricted to TLS 1.3."""
        return cls(enabled=True)

    @classmethod
    def disabled(cls) -> "TlsConfig":
        """Plain TCP without TLS."""
        return cls(enabled=False)

    @classmethod
    def tls13_only(cls) -> "TlsConfig":
        return cls(enabled=True, verify_peer_certs=False)

    def with_cert_and_key(self, cert_path, key_path) -> "TlsConfig":
        return dataclasses.replace(self, cert_path=Path(cert_path), key_path=Path(key_path))

    def with_peer_verification(self, verify: bool) -> "TlsConfig":
        return dataclasses.replace(self, verify_peer_certs=verify)

    def with_tls_versions(self, min_version: TlsVersion, max_version: TlsVersion) -> "TlsConfig":
        """Versions are always pinned to TLS 1.3 whatever is asked for."""
        return dataclasses.replace(
            self, min_tls_version=TlsVersion.V1_3, max_tls_version=TlsVersion.V1_3
        )

    def is_tls13_only(self) -> bool:
        return self.min_tls_version is TlsVersion.V1_3 and self.max_tls_version is TlsVersion.V1_3

    def validate(self) -> None:
        if not self.enabled:
            return
        if TlsVersion.V1_2 in (self.min_tls_version, self.max_tls_version):
            raise ConfigError(_TLS12_REJECTED)
        if self.cert_path is not None and self.key_path is None:
            raise ConfigError("Certificate path provided but no key path")
        if self.cert_path is None and self.key_path is not None:
            raise ConfigError("Key path provided but no certificate path")


@dataclass(frozen=True)
class P2PConfig:
    """Settings for a P2P network node."""

    listen_addr: str = "127.0.0.1:0"
    tls: TlsConfig = field(default_factory=TlsConfig.tls13_only)
    bootstrap_peers: List[str] = field(default_factory=list)
    max_connections: int = 50
    connection_timeout_secs: int = 30
    heartbeat_interval_secs: int = 30
    message_ttl: int = 7
    max_message_size: int = 1024 * 1024

    def with_bootstrap_peers(self, peers) -> "P2PConfig":
        return dataclasses.replace(self, bootstrap_peers=list(peers))

    def with_tls(self, tls_config: TlsConfig) -> "P2PConfig":
        return dataclasses.replace(self, tls=tls_config)

    def with_max_connections(self, maximum: int) -> "P2PConfig":
        return dataclasses.replace(self, max_connections=maximum)

    def validate(self) -> None:
        self.tls.validate()
        if self.tls.enabled and not self.tls.is_tls13_only():
            raise ConfigError("P2P configuration must enforce TLS 1.3 only for security")
        if self.max_connections == 0:
            raise ConfigError("Maximum connections must be greater than 0")
        if self.connection_timeout_secs == 0:
            raise ConfigError("Connection timeout must be greater than 0")
        if self.message_ttl == 0:
            raise ConfigError("Message TTL must be greater than 0")