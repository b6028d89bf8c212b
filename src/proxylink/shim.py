"""
OS integration interface.

The tunnel, the system trust store and the user prompts belong to the
platform. Each is modeled as a discrete request with an explicit answer;
nothing here is polled.
"""

from abc import ABC, abstractmethod
from typing import Optional

from cryptography import x509

from .models.connection import ProxyConfiguration


class IntegrationShim(ABC):
    """Abstract platform integration used by the connection state machine."""

    @abstractmethod
    async def active_tunnel(self) -> Optional[ProxyConfiguration]:
        """
        Get the proxy of an already running tunnel.

        Returns:
            The active tunnel's proxy, or None if no tunnel is running
        """
        pass

    @abstractmethod
    async def is_tunnel_provisioned(self) -> bool:
        """Check whether the OS already allows this app to start a tunnel."""
        pass

    @abstractmethod
    async def provision_tunnel(self) -> bool:
        """
        Ask the OS for permission to run a tunnel.

        Returns:
            True if granted, False if denied
        """
        pass

    @abstractmethod
    async def is_certificate_trusted(self, certificate: x509.Certificate) -> bool:
        """
        Check whether the certificate is in the system trust store.

        Membership is decided by public key fingerprint.
        """
        pass

    @abstractmethod
    async def install_certificate(self, certificate: x509.Certificate) -> bool:
        """
        Ask the user to add the certificate to the trust store.

        Returns:
            True if installed, False if declined
        """
        pass

    @abstractmethod
    async def request_tunnel(self, address: str, port: int) -> bool:
        """
        Start routing device traffic through the proxy.

        Args:
            address: Proxy address
            port: Proxy port

        Returns:
            True once the tunnel is active, False if activation was denied
        """
        pass

    @abstractmethod
    async def teardown_tunnel(self) -> None:
        """Request that the tunnel be stopped."""
        pass

    async def explain_setup(self, needs_tunnel: bool) -> None:
        """
        Tell the user which prompts are about to follow.

        Args:
            needs_tunnel: Whether a tunnel permission prompt is part of the series
        """
        return None

    async def confirm_interception(self) -> bool:
        """
        Ask before intercepting on behalf of an untrusted link.

        Returns:
            True if the user accepts
        """
        return True
