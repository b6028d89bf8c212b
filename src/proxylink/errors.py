"""
Exception hierarchy for ProxyLink.

Probe errors are local to one candidate and are recovered by the discovery
race. Everything else is fatal to a connection attempt.
"""

from typing import Optional


class ProxyLinkError(Exception):
    """Base class for all ProxyLink errors."""
    pass


class InvalidCertificate(ProxyLinkError):
    """Raised when certificate data cannot be parsed."""
    pass


class InvalidPayload(ProxyLinkError):
    """Raised when a connect payload is missing, malformed or fails validation."""
    pass


class ProbeError(ProxyLinkError):
    """Raised when a single candidate address fails its bootstrap exchange."""

    kind = "probe_error"

    def __init__(self, address: str, port: int, message: str):
        super().__init__(f"{address}:{port}: {message}")
        self.address = address
        self.port = port
        self.message = message


class ProbeTimeout(ProbeError):
    """No connection or no response within the configured window."""
    kind = "timeout"


class ProbeConnectionRefused(ProbeError):
    """The candidate could not be connected to, or dropped the connection."""
    kind = "connection_refused"


class UnexpectedResponse(ProbeError):
    """The candidate answered, but not with a 200 bootstrap document."""

    kind = "unexpected_response"

    def __init__(self, address: str, port: int, message: str, status: Optional[int] = None):
        super().__init__(address, port, message)
        self.status = status


class MalformedCertificate(ProbeError):
    """The bootstrap document held a certificate that could not be parsed."""
    kind = "malformed_certificate"


class FingerprintMismatch(ProbeError):
    """The candidate's certificate does not match the pinned fingerprint."""

    kind = "fingerprint_mismatch"

    def __init__(self, address: str, port: int, expected: str, actual: str):
        super().__init__(
            address,
            port,
            f"Proxy returned mismatched certificate: '{expected}' != '{actual}'"
        )
        self.expected = expected
        self.actual = actual


class AllCandidatesFailed(ProxyLinkError):
    """
    Raised when every candidate address failed.

    Carries each candidate's error, keyed by address in payload order.
    """

    def __init__(self, errors: dict[str, ProbeError]):
        self.errors = dict(errors)
        summary = "; ".join(
            f"{address} ({error.kind}): {error.message}"
            for address, error in self.errors.items()
        )
        super().__init__(f"No candidate proxy address succeeded: {summary}")

    @property
    def kinds(self) -> set[str]:
        """Distinct failure kinds across all candidates."""
        return {error.kind for error in self.errors.values()}


class TrustOrTunnelDenied(ProxyLinkError):
    """Raised when the user or the OS declines a required setup step."""

    TUNNEL_PROVISION = "tunnel_provision"
    CERTIFICATE_INSTALL = "certificate_install"
    TUNNEL_ACTIVATION = "tunnel_activation"

    def __init__(self, step: str):
        super().__init__(f"Setup step declined: {step}")
        self.step = step
