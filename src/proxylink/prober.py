"""
Candidate address prober.

Fetches the bootstrap document through one candidate address acting as an
HTTP proxy, and accepts the candidate only if the certificate it returns
matches the pinned fingerprint.
"""

import asyncio
from typing import Optional

import aiohttp
import structlog
from pydantic import ValidationError

from .core.config import ProbeSettings
from .errors import (
    FingerprintMismatch,
    InvalidCertificate,
    MalformedCertificate,
    ProbeConnectionRefused,
    ProbeError,
    ProbeTimeout,
    UnexpectedResponse,
)
from .fingerprint import fingerprint, fingerprints_match, load_certificate
from .models.connection import ProxyConfiguration, proxy_url
from .schemas.payload import BootstrapResponse

logger = structlog.get_logger(__name__)


class AddressProber:
    """
    Probes a single candidate proxy address.

    Each probe owns its own HTTP session and connection, which are closed
    on every exit path, including cancellation.
    """

    CHUNK_SIZE = 8192

    def __init__(self, settings: Optional[ProbeSettings] = None):
        """
        Initialize the prober.

        Args:
            settings: Probe settings (uses defaults if not provided)
        """
        self.settings = settings or ProbeSettings()

    async def probe(
        self,
        address: str,
        port: int,
        expected_fingerprint: str,
        timeout: Optional[float] = None
    ) -> ProxyConfiguration:
        """
        Verify that a candidate address is the expected proxy.

        Args:
            address: Candidate proxy address
            port: Proxy port
            expected_fingerprint: Pinned certificate fingerprint
            timeout: Overrides both connect and read timeouts, in seconds

        Returns:
            Configuration binding the address, port and verified certificate

        Raises:
            ProbeTimeout: If the candidate does not answer in time
            ProbeConnectionRefused: If the candidate cannot be reached
            UnexpectedResponse: If the response is not a 200 bootstrap document
            MalformedCertificate: If the returned certificate cannot be parsed
            FingerprintMismatch: If the certificate is not the pinned one
        """
        logger.debug("Probing candidate proxy", address=address, port=port)

        try:
            body = await self._fetch_bootstrap(address, port, timeout)
            config = self._verify(address, port, expected_fingerprint, body)
        except ProbeError as e:
            logger.info(
                "Candidate proxy rejected",
                address=address,
                port=port,
                reason=e.kind,
                error=e.message
            )
            raise

        logger.debug("Candidate proxy verified", address=address, port=port)
        return config

    def _client_timeout(self, timeout: Optional[float]) -> aiohttp.ClientTimeout:
        """Build per-probe connect and read timeouts."""
        connect_timeout = timeout if timeout is not None else self.settings.connect_timeout
        read_timeout = timeout if timeout is not None else self.settings.read_timeout
        return aiohttp.ClientTimeout(
            total=None,
            sock_connect=connect_timeout,
            sock_read=read_timeout,
        )

    async def _fetch_bootstrap(self, address: str, port: int, timeout: Optional[float]) -> bytes:
        """Fetch the bootstrap document through the candidate."""
        connector = aiohttp.TCPConnector(limit=1, force_close=True)

        try:
            async with aiohttp.ClientSession(
                connector=connector,
                timeout=self._client_timeout(timeout),
                trust_env=False,
            ) as session:
                async with session.get(
                    self.settings.bootstrap_url,
                    proxy=proxy_url(address, port),
                    allow_redirects=False,
                ) as response:
                    if response.status != 200:
                        raise UnexpectedResponse(
                            address,
                            port,
                            f"Proxy responded with non-200: {response.status}",
                            status=response.status
                        )
                    return await self._read_body(address, port, response)

        except asyncio.TimeoutError as e:
            raise ProbeTimeout(address, port, f"Timed out: {str(e) or 'no response'}") from e
        except aiohttp.ClientConnectionError as e:
            raise ProbeConnectionRefused(address, port, f"Connection failed: {e}") from e
        except aiohttp.ClientError as e:
            raise UnexpectedResponse(address, port, f"Invalid response: {e}") from e

    async def _read_body(self, address: str, port: int, response: aiohttp.ClientResponse) -> bytes:
        """Read the response body, refusing oversized documents."""
        limit = self.settings.max_response_size
        body = bytearray()

        async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
            body.extend(chunk)
            if len(body) > limit:
                raise UnexpectedResponse(
                    address,
                    port,
                    f"Bootstrap response exceeds {limit} bytes",
                    status=response.status
                )

        return bytes(body)

    def _verify(
        self,
        address: str,
        port: int,
        expected_fingerprint: str,
        body: bytes
    ) -> ProxyConfiguration:
        """Parse the bootstrap document and check its certificate."""
        try:
            document = BootstrapResponse.model_validate_json(body)
        except ValidationError as e:
            raise UnexpectedResponse(
                address,
                port,
                f"Invalid bootstrap document: {e.error_count()} validation error(s)",
                status=200
            ) from e

        try:
            certificate = load_certificate(document.certificate)
            actual_fingerprint = fingerprint(certificate)
        except InvalidCertificate as e:
            raise MalformedCertificate(address, port, str(e)) from e

        if not fingerprints_match(expected_fingerprint, actual_fingerprint):
            raise FingerprintMismatch(address, port, expected_fingerprint, actual_fingerprint)

        return ProxyConfiguration(address=address, port=port, certificate=certificate)

