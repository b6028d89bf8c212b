"""
ProxyLink Domain Models

Strongly typed Pydantic models for proxy discovery and connection state.
"""

from .connection import (
    ConnectionState,
    ConnectSource,
    ProxyConfiguration,
    ConnectionSnapshot,
)

__all__ = [
    "ConnectionState",
    "ConnectSource",
    "ProxyConfiguration",
    "ConnectionSnapshot",
]
