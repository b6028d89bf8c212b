"""
ProxyLink - Intercepting Proxy Discovery and Trust

Connects a machine to an intercepting proxy advertised by a connect URL:
- Races every candidate address named by the URL
- Pins the proxy's certificate by public key fingerprint
- Sequences certificate trust and tunnel activation around the result
"""

__version__ = "1.0.0"
__author__ = "ProxyLink Team"

from .connection import ConnectionStateMachine
from .errors import (
    ProxyLinkError,
    InvalidCertificate,
    InvalidPayload,
    ProbeError,
    AllCandidatesFailed,
    TrustOrTunnelDenied,
)
from .fingerprint import fingerprint, load_certificate
from .models import ConnectionState, ConnectSource, ProxyConfiguration
from .prober import AddressProber
from .race import DiscoveryRace
from .schemas import CandidatePayload, decode_connect_url, encode_connect_url
from .shim import IntegrationShim
from .store import ProxyStore, MemoryProxyStore, YamlProxyStore

__all__ = [
    "ConnectionStateMachine",
    "ProxyLinkError",
    "InvalidCertificate",
    "InvalidPayload",
    "ProbeError",
    "AllCandidatesFailed",
    "TrustOrTunnelDenied",
    "fingerprint",
    "load_certificate",
    "ConnectionState",
    "ConnectSource",
    "ProxyConfiguration",
    "AddressProber",
    "DiscoveryRace",
    "CandidatePayload",
    "decode_connect_url",
    "encode_connect_url",
    "IntegrationShim",
    "ProxyStore",
    "MemoryProxyStore",
    "YamlProxyStore",
]
