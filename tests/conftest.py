"""Shared fixtures: test certificates and a scriptable HTTP proxy."""

import asyncio
import json
import socket
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from proxylink.models.connection import ProxyConfiguration


def make_certificate(key, common_name: str, days: int = 365) -> x509.Certificate:
    """Build a self-signed CA certificate for a key."""
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ProxyLink Tests"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)

    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )


def to_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode('ascii')


def unused_port() -> int:
    """Get a local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(scope="session")
def proxy_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def proxy_cert(proxy_key):
    """The proxy's CA certificate."""
    return make_certificate(proxy_key, "Proxy CA")


@pytest.fixture(scope="session")
def renewed_cert(proxy_key):
    """A renewal of the proxy's certificate, keeping its key."""
    return make_certificate(proxy_key, "Proxy CA (renewed)", days=730)


@pytest.fixture(scope="session")
def other_cert():
    """A certificate for a different key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return make_certificate(key, "Someone Else CA")


@pytest.fixture
def proxy_config(proxy_cert):
    return ProxyConfiguration(address="127.0.0.1", port=8000, certificate=proxy_cert)


class FakeProxy:
    """
    Minimal HTTP proxy answering every request with a fixed response.

    Records the request line of each request it receives. With a delay, it
    holds the response back until the delay passes or the client hangs up.
    """

    def __init__(
        self,
        body: bytes = b"",
        status: int = 200,
        delay: Optional[float] = None
    ):
        self.body = body
        self.status = status
        self.delay = delay
        self.requests: list[str] = []
        self.hung_up = asyncio.Event()
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: set[asyncio.StreamWriter] = set()

    @classmethod
    def serving(cls, certificate: x509.Certificate, **kwargs) -> "FakeProxy":
        """A proxy serving the bootstrap document for a certificate."""
        body = json.dumps({"certificate": to_pem(certificate)}).encode('utf-8')
        return cls(body=body, **kwargs)

    @property
    def port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)

    async def stop(self) -> None:
        for writer in list(self._writers):
            writer.close()
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            request_line = await reader.readline()
            self.requests.append(request_line.decode('latin-1').strip())
            while (await reader.readline()) not in (b"\r\n", b"\n", b""):
                pass

            if self.delay is not None:
                try:
                    # read() only returns early when the client hangs up
                    await asyncio.wait_for(reader.read(), timeout=self.delay)
                    self.hung_up.set()
                    return
                except asyncio.TimeoutError:
                    pass

            reason = "OK" if self.status == 200 else "Error"
            writer.write(
                f"HTTP/1.1 {self.status} {reason}\r\n"
                f"Content-Type: application/json\r\n"
                f"Content-Length: {len(self.body)}\r\n"
                f"Connection: close\r\n\r\n".encode('latin-1')
                + self.body
            )
            await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            self.hung_up.set()
        finally:
            self._writers.discard(writer)
            writer.close()


@pytest_asyncio.fixture
async def fake_proxy_factory():
    """Start fake proxies, stopping all of them after the test."""
    proxies: list[FakeProxy] = []

    async def start(proxy: FakeProxy) -> FakeProxy:
        await proxy.start()
        proxies.append(proxy)
        return proxy

    yield start

    for proxy in proxies:
        await proxy.stop()
