"""Network constants, host selection, port probing and input validation."""

from __future__ import annotations

import enum
import ipaddress
import os
import socket
import sys
from typing import Optional

MAX_MESSAGE_LENGTH = 1024
MAX_USERNAME_LENGTH = 32

DEFAULT_HOST_LOCALHOST = "127.0.0.1"
DEFAULT_HOST_WILDCARD = "0.0.0.0"
FIXED_PORT = 40000
FALLBACK_PORT_START = 40001
FALLBACK_PORT_END = 40010

TLS_ENABLED = True

MULTICAST_ADDR = "224.0.0.1:9999"
CONNECTION_TIMEOUT = 30
HEARTBEAT_INTERVAL = 60
MAX_CONNECTIONS = 50

DEFAULT_LOG_LEVEL = "error"

_PRIVATE_PREFIXES = ("192.168.", "10.", "172.")


class HostOption(enum.Enum):
    """Which interface a node should listen on."""

    LOCALHOST = "localhost"
    LOCAL_NETWORK = "local_network"
    WILDCARD = "wildcard"

    def to_ip(self) -> str:
        """Return the IP address this option stands for."""
        if self is HostOption.LOCALHOST:
            return DEFAULT_HOST_LOCALHOST
        if self is HostOption.WILDCARD:
            return DEFAULT_HOST_WILDCARD
        return _local_network_ip() or DEFAULT_HOST_LOCALHOST

    def display_name(self) -> str:
        """Return a human-readable description of this option."""
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    HostOption.LOCALHOST: "Localhost (127.0.0.1) - Only local connections",
    HostOption.LOCAL_NETWORK: "Local Network (192.168.x.x) - LAN connections",
    HostOption.WILDCARD: "All Interfaces (0.0.0.0) - External connections",
}


def _local_network_ip() -> Optional[str]:
    """Detect the private LAN address of this machine, if there is one."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.bind(("0.0.0.0", 0))
            sock.connect(("8.8.8.8", 80))
            ip = sock.getsockname()[0]
    except OSError:
        return None
    return ip if ip.startswith(_PRIVATE_PREFIXES) else None


def _parse_host(host: str):
    """Parse a host the way a "host:port" socket address would be parsed."""
    if host.startswith("[") and host.endswith("]"):
        return ipaddress.IPv6Address(host[1:-1])
    return ipaddress.IPv4Address(host)


def _is_port_available(host: str, port: int) -> bool:
    try:
        address = _parse_host(host)
    except ValueError:
        return False
    family = socket.AF_INET6 if address.version == 6 else socket.AF_INET
    try:
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            if os.name == "posix":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((str(address), port))
            sock.listen()
    except OSError:
        return False
    return True


def find_available_port(host: str) -> int:
    """Return the fixed port if free, else the first free fallback port.

    Raises OSError when every port in the range is taken.
    """
    candidates = [FIXED_PORT, *range(FALLBACK_PORT_START, FALLBACK_PORT_END + 1)]
    for port in candidates:
        if _is_port_available(host, port):
            return port
    raise OSError(f"No available ports in range {FIXED_PORT}-{FALLBACK_PORT_END}")


def force_cleanup_terminal(message: str) -> None:
    """Clear the terminal, move the cursor home and exit with status 1."""
    sys.stdout.write("\x1b[2J\x1b[1;1H")
    sys.stdout.flush()
    sys.exit(1)


def is_valid_username(username: str) -> bool:
    """A username is 1..32 bytes of alphanumerics, '_' or '-'."""
    return (
        bool(username)
        and len(username.encode("utf-8")) <= MAX_USERNAME_LENGTH
        and all(c.isalnum() or c in "_-" for c in username)
    )


def is_valid_message_content(content: str) -> bool:
    """Message content must not be blank and at most 1024 bytes long."""
    return bool(content.strip()) and len(content.encode("utf-8")) <= MAX_MESSAGE_LENGTH