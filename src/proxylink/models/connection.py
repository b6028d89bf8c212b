"""
Connection domain models with strong typing using Pydantic.

These models define the connection lifecycle states and the verified
proxy configuration that a successful probe produces.
"""

from enum import Enum
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from pydantic import BaseModel, ConfigDict, Field

from ..fingerprint import fingerprint


def proxy_url(address: str, port: int) -> str:
    """Build an HTTP proxy URL, bracketing IPv6 literals."""
    host = address
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"http://{host}:{port}"


class ConnectionState(str, Enum):
    """User-visible connection lifecycle states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


class ConnectSource(str, Enum):
    """Where a connect request came from."""
    SCAN = "scan"
    LINK = "link"
    REMOTE_CONTROL = "remote_control"
    RECONNECT = "reconnect"


class ProxyConfiguration(BaseModel):
    """A proxy address that proved it holds the pinned certificate."""

    model_config = ConfigDict(
        frozen=True,
        arbitrary_types_allowed=True,
    )

    address: str = Field(
        ...,
        min_length=1,
        description="Candidate address that answered correctly"
    )
    port: int = Field(
        ...,
        ge=1,
        le=65535,
        description="Proxy port"
    )
    certificate: x509.Certificate = Field(
        ...,
        description="Verified proxy CA certificate"
    )

    @property
    def fingerprint(self) -> str:
        """Public key fingerprint of the certificate."""
        return fingerprint(self.certificate)

    @property
    def certificate_pem(self) -> str:
        """The certificate as PEM text."""
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode('ascii')

    @property
    def proxy_url(self) -> str:
        """HTTP proxy URL for this address and port."""
        return proxy_url(self.address, self.port)

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


class ConnectionSnapshot(BaseModel):
    """Read-only view of the connection state machine."""

    model_config = ConfigDict(
        frozen=True,
        arbitrary_types_allowed=True,
    )

    state: ConnectionState = Field(
        ...,
        description="Current connection state"
    )
    proxy: Optional[ProxyConfiguration] = Field(
        default=None,
        description="Active proxy while connecting or connected"
    )
    error: Optional[str] = Field(
        default=None,
        description="Why the last attempt failed"
    )
