"""
Wire schemas for the connect payload and the bootstrap response.

Both decode fail-closed: a missing or mistyped field rejects the whole
document rather than proceeding with partial data.
"""

import base64
import binascii
import json
import re
from ipaddress import IPv6Address, ip_address
from typing import Any, Mapping
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from ..core.config import DEFAULT_CONNECT_URL
from ..errors import InvalidPayload
from ..fingerprint import is_valid_fingerprint

PAYLOAD_QUERY_PARAM = "data"

HOSTNAME_LABEL = re.compile(r"(?!-)[A-Za-z0-9_-]{1,63}(?<!-)")


def normalize_address(address: str) -> str:
    """
    Validate a candidate address as a bare host.

    Accepts an IPv4 or IPv6 literal (brackets optional) or a DNS hostname.
    Anything that would change meaning inside a URL authority is rejected.

    Returns:
        The address without brackets

    Raises:
        ValueError: If the address is not a host
    """
    host = address
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        try:
            IPv6Address(host)
        except ValueError:
            raise ValueError(f"Invalid bracketed IPv6 address: {address!r}") from None

    if "%" in host:
        raise ValueError(f"Scoped IPv6 addresses are not supported: {address!r}")

    try:
        return str(ip_address(host))
    except ValueError:
        pass

    name = host[:-1] if host.endswith(".") else host
    labels = name.split(".")
    # An all-numeric last label would be read as a partial IPv4 address
    if (
        not name
        or len(name) > 253
        or labels[-1].isdigit()
        or not all(HOSTNAME_LABEL.fullmatch(label) for label in labels)
    ):
        raise ValueError(f"Candidate address is not an IP address or hostname: {address!r}")
    return host


class CandidatePayload(BaseModel):
    """
    Decoded connect payload.

    Names every address the proxy might be reachable at, the port it
    listens on, and the fingerprint its certificate must match.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
    )

    addresses: tuple[StrictStr, ...] = Field(
        ...,
        min_length=1,
        description="Candidate proxy addresses, in preference order"
    )
    port: StrictInt = Field(
        ...,
        ge=1,
        le=65535,
        description="Proxy port shared by all candidates"
    )
    cert_fingerprint: StrictStr = Field(
        ...,
        alias="certFingerprint",
        description="Expected base64 SHA-256 public key fingerprint"
    )

    @field_validator('addresses')
    @classmethod
    def validate_addresses(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Strip, validate as hosts, and drop duplicate addresses."""
        seen: list[str] = []
        for address in v:
            address = address.strip()
            if not address:
                raise ValueError("Candidate addresses must not be blank")
            address = normalize_address(address)
            if address not in seen:
                seen.append(address)
        return tuple(seen)

    @field_validator('cert_fingerprint')
    @classmethod
    def validate_fingerprint(cls, v: str) -> str:
        """Validate the fingerprint is a base64 encoded SHA-256 digest."""
        v = v.strip()
        if not is_valid_fingerprint(v):
            raise ValueError("certFingerprint must be a base64 encoded SHA-256 digest")
        return v

    @classmethod
    def parse(cls, data: Any) -> "CandidatePayload":
        """
        Validate raw payload data.

        Raises:
            InvalidPayload: If any field is missing or malformed
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidPayload(f"Invalid connect payload: {e}") from e

    def to_wire(self) -> dict:
        """Convert to the JSON wire representation."""
        return {
            "addresses": list(self.addresses),
            "port": self.port,
            "certFingerprint": self.cert_fingerprint,
        }


class BootstrapResponse(BaseModel):
    """Document served by a candidate proxy at the bootstrap URL."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
    )

    certificate: StrictStr = Field(
        ...,
        min_length=1,
        description="PEM encoded proxy CA certificate"
    )


def decode_connect_url(url: str) -> CandidatePayload:
    """
    Decode the payload carried by a connect URL.

    The payload is a JSON document, encoded as URL-safe base64, in the
    ``data`` query parameter.

    Args:
        url: Scanned or linked connect URL

    Returns:
        The validated payload

    Raises:
        InvalidPayload: If the URL does not carry a valid payload
    """
    query = parse_qs(urlsplit(url).query)
    values = query.get(PAYLOAD_QUERY_PARAM)
    if not values or not values[0].strip():
        raise InvalidPayload(f"Connect URL has no '{PAYLOAD_QUERY_PARAM}' parameter")

    encoded = values[0].strip()
    encoded += "=" * (-len(encoded) % 4)

    try:
        raw = base64.urlsafe_b64decode(encoded)
        data = json.loads(raw.decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise InvalidPayload(f"Connect URL payload is not base64 JSON: {e}") from e

    if not isinstance(data, Mapping):
        raise InvalidPayload("Connect URL payload is not a JSON object")

    return CandidatePayload.parse(data)


def encode_connect_url(payload: CandidatePayload, base_url: str = DEFAULT_CONNECT_URL) -> str:
    """
    Encode a payload as a connect URL.

    Args:
        payload: Payload to encode
        base_url: URL the data parameter is appended to

    Returns:
        Connect URL suitable for a QR code or deep link
    """
    document = json.dumps(payload.to_wire(), separators=(",", ":")).encode('utf-8')
    encoded = base64.urlsafe_b64encode(document).decode('ascii')
    separator = "&" if urlsplit(base_url).query else "?"
    return f"{base_url}{separator}{urlencode({PAYLOAD_QUERY_PARAM: encoded})}"
