"""Self-signed certificates, TLS contexts and line-oriented peer connections."""

from __future__ import annotations

import asyncio
import contextlib
import datetime
import hashlib
import ipaddress
import logging
import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

log = logging.getLogger(__name__)

ORGANIZATION_NAME = "DPQ Chat Network"
COUNTRY_NAME = "ID"
CERT_VALIDITY = datetime.timedelta(days=365)
CLOCK_SKEW = datetime.timedelta(seconds=60)
TLS_INFO = "TLS 1.3"
_CLOSE_TIMEOUT = 1.0


def _split_addr(addr: str) -> Tuple[str, int]:
    """Split a "host:port" (or "[v6]:port") socket address."""
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit() or int(port) > 65535:
        raise ValueError(f"not a socket address: {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        ipaddress.IPv6Address(host)
    else:
        ipaddress.IPv4Address(host)
    return host, int(port)


def _format_addr(sockname) -> str:
    host, port = sockname[0], sockname[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass(frozen=True)
class TlsCertificate:
    """A PEM certificate with its private key and a short fingerprint."""

    cert_pem: str
    key_pem: str
    fingerprint: str


class CertificateManager:
    """Generates a self-signed certificate and TLS contexts for one peer."""

    def __init__(self, peer_id: str) -> None:
        self.peer_id = peer_id
        self._certificate: Optional[TlsCertificate] = None

    @property
    def certificate(self) -> Optional[TlsCertificate]:
        return self._certificate

    def generate_self_signed_cert(self) -> TlsCertificate:
        """Create a fresh ECDSA P-256 certificate valid for one year."""
        log.info("Generating self-signed certificate for peer: %s", self.peer_id)
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name(
            [
                x509.NameAttribute(NameOID.COMMON_NAME, f"Chat-Client-Peer-{self.peer_id}"),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION_NAME),
                x509.NameAttribute(NameOID.COUNTRY_NAME, COUNTRY_NAME),
            ]
        )
        now = datetime.datetime.now(datetime.timezone.utc)
        alt_names = x509.SubjectAlternativeName(
            [
                x509.DNSName(f"peer-{self.peer_id}"),
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")),
            ]
        )
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - CLOCK_SKEW)
            .not_valid_after(now + CERT_VALIDITY)
            .add_extension(alt_names, critical=False)
            .sign(key, hashes.SHA256())
        )
        cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")
        fingerprint = hashlib.sha256(cert_pem.encode("ascii")).digest()[:8].hex()
        self._certificate = TlsCertificate(cert_pem, key_pem, fingerprint)
        log.info("Generated certificate with fingerprint: %s", fingerprint)
        return self._certificate

    def create_client_context(self) -> ssl.SSLContext:
        """A TLS 1.3 client context that accepts any peer certificate."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.minimum_version = ssl.TLSVersion.TLSv1_3
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        log.info("Client TLS configuration created")
        return context

    def create_server_context(self) -> ssl.SSLContext:
        """A TLS 1.3 server context using the generated certificate."""
        if self._certificate is None:
            raise RuntimeError(
                "No certificate available. Call generate_self_signed_cert first."
            )
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_3
        with tempfile.TemporaryDirectory() as directory:
            cert_file = Path(directory, "cert.pem")
            key_file = Path(directory, "key.pem")
            cert_file.write_text(self._certificate.cert_pem, encoding="ascii")
            key_file.write_text(self._certificate.key_pem, encoding="ascii")
            context.load_cert_chain(str(cert_file), str(key_file))
        log.info("Server TLS configuration created")
        return context


@dataclass(frozen=True)
class TlsContext:
    """The client and server contexts a node uses."""

    client_context: ssl.SSLContext
    server_context: ssl.SSLContext

    @classmethod
    def create(cls, cert_manager: CertificateManager) -> "TlsContext":
        return cls(cert_manager.create_client_context(), cert_manager.create_server_context())


class TlsConnection:
    """A TCP connection, optionally TLS-secured, carrying newline-delimited text."""

    def __init__(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, *, tls: bool
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._tls = tls

    @classmethod
    async def connect_tls(cls, addr: str, client_context: ssl.SSLContext) -> "TlsConnection":
        host, port = _split_addr(addr)
        log.debug("Connecting to %s with TLS", addr)
        reader, writer = await asyncio.open_connection(
            host, port, ssl=client_context, server_hostname=host
        )
        log.info("Established TLS 1.3 connection to %s", addr)
        return cls(reader, writer, tls=True)

    @classmethod
    async def connect_plain(cls, addr: str) -> "TlsConnection":
        host, port = _split_addr(addr)
        log.debug("Connecting to %s with plain TCP", addr)
        reader, writer = await asyncio.open_connection(host, port)
        log.info("Established plain TCP connection to %s", addr)
        return cls(reader, writer, tls=False)

    def peer_addr(self) -> str:
        return _format_addr(self._writer.get_extra_info("peername"))

    def local_addr(self) -> str:
        return _format_addr(self._writer.get_extra_info("sockname"))

    def is_tls(self) -> bool:
        return self._tls

    def tls_info(self) -> Optional[str]:
        return TLS_INFO if self._tls else None

    async def readline(self) -> Optional[str]:
        """Read one line without its terminator; None once the peer has closed."""
        data = await self._reader.readline()
        if not data:
            return None
        line = data.decode("utf-8")
        if line.endswith("\n"):
            line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
        return line

    async def write_line(self, line: str) -> None:
        self._writer.write(line.encode("utf-8") + b"\n")
        await self._writer.drain()

    async def close(self) -> None:
        self._writer.close()
        with contextlib.suppress(OSError, ssl.SSLError, asyncio.TimeoutError):
            await asyncio.wait_for(self._writer.wait_closed(), _CLOSE_TIMEOUT)

    async def __aenter__(self) -> "TlsConnection":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class TlsListener:
    """Accepts incoming connections, with or without TLS."""

    def __init__(self, server: asyncio.AbstractServer, queue: asyncio.Queue, tls: bool) -> None:
        self._server = server
        self._queue = queue
        self._tls = tls

    @classmethod
    async def _bind(cls, addr: str, context: Optional[ssl.SSLContext]) -> "TlsListener":
        host, port = _split_addr(addr)
        queue: asyncio.Queue = asyncio.Queue()
        tls = context is not None

        def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            queue.put_nowait(TlsConnection(reader, writer, tls=tls))

        server = await asyncio.start_server(on_connect, host, port, ssl=context)
        listener = cls(server, queue, tls)
        log.info(
            "%s listener bound to %s", "TLS" if tls else "Plain TCP", listener.local_addr()
        )
        return listener

    @classmethod
    async def bind_tls(cls, addr: str, server_context: ssl.SSLContext) -> "TlsListener":
        return await cls._bind(addr, server_context)

    @classmethod
    async def bind_plain(cls, addr: str) -> "TlsListener":
        return await cls._bind(addr, None)

    async def accept(self) -> Tuple[TlsConnection, str]:
        connection = await self._queue.get()
        peer = connection.peer_addr()
        log.info("Accepted %s connection from %s", "TLS 1.3" if self._tls else "plain TCP", peer)
        return connection, peer

    def local_addr(self) -> str:
        return _format_addr(self._server.sockets[0].getsockname())

    async def close(self) -> None:
        self._server.close()
        while not self._queue.empty():
            await self._queue.get_nowait().close()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._server.wait_closed(), _CLOSE_TIMEOUT)


async def probe_tls_connection(
    addr: str, client_context: ssl.SSLContext, timeout_secs: float
) -> bool:
    """True if a TLS connection to addr succeeds within the timeout."""
    try:
        connection = await asyncio.wait_for(
            TlsConnection.connect_tls(addr, client_context), timeout_secs
        )
    except asyncio.TimeoutError:
        log.debug("TLS connection test to %s timed out", addr)
        return False
    except (OSError, ssl.SSLError, ValueError) as exc:
        log.debug("TLS connection test to %s failed: %s", addr, exc)
        return False
    await connection.close()
    log.debug("TLS connection test to %s succeeded", addr)
    return True


async def probe_plain_connection(addr: str, timeout_secs: float) -> bool:
    """True if a plain TCP connection to addr succeeds within the timeout."""
    try:
        connection = await asyncio.wait_for(TlsConnection.connect_plain(addr), timeout_secs)
    except asyncio.TimeoutError:
        log.debug("Plain TCP connection test to %s timed out", addr)
        return False
    except (OSError, ValueError) as exc:
        log.debug("Plain TCP connection test to %s failed: %s", addr, exc)
        return False
    await connection.close()
    log.debug("Plain TCP connection test to %s succeeded", addr)
    return True