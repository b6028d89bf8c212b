"""
ProxyLink Wire Schemas

Schemas for data received from outside: the connect payload and the
bootstrap response. These are separate from domain models so that
validation failures stay at the edge.
"""

from .payload import (
    CandidatePayload,
    BootstrapResponse,
    decode_connect_url,
    encode_connect_url,
)

__all__ = [
    "CandidatePayload",
    "BootstrapResponse",
    "decode_connect_url",
    "encode_connect_url",
]
