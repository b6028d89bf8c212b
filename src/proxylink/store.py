"""
Storage for the last successfully connected proxy.

The state machine's host owns exactly one optional value: the proxy that
was last connected, offered again by reconnect and discarded when a
reconnect fails.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import structlog
import yaml

from .errors import InvalidCertificate
from .fingerprint import load_certificate
from .models.connection import ProxyConfiguration

logger = structlog.get_logger(__name__)


class ProxyStore(ABC):
    """Abstract holder of the last known proxy."""

    @abstractmethod
    async def load(self) -> Optional[ProxyConfiguration]:
        """
        Get the last known proxy.

        Returns:
            The stored configuration, or None if there is none
        """
        pass

    @abstractmethod
    async def save(self, config: ProxyConfiguration) -> None:
        """
        Remember a proxy, replacing any previous one.

        Args:
            config: Configuration of the proxy that was connected
        """
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Forget the last known proxy."""
        pass


class MemoryProxyStore(ProxyStore):
    """Process-local last proxy."""

    def __init__(self, config: Optional[ProxyConfiguration] = None):
        self._config = config

    async def load(self) -> Optional[ProxyConfiguration]:
        return self._config

    async def save(self, config: ProxyConfiguration) -> None:
        self._config = config

    async def clear(self) -> None:
        self._config = None


class YamlProxyStore(ProxyStore):
    """
    Last proxy persisted as a YAML document.

    The document holds the address, port and PEM certificate. A file that
    cannot be read back is treated as no stored proxy.
    """

    def __init__(self, path: Path):
        """
        Initialize the store.

        Args:
            path: YAML file holding the last proxy
        """
        self.path = Path(path)

    async def load(self) -> Optional[ProxyConfiguration]:
        if not self.path.exists():
            return None

        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
            return ProxyConfiguration(
                address=data['address'],
                port=data['port'],
                certificate=load_certificate(data['certificate']),
            )
        except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError, InvalidCertificate) as e:
            logger.warning("Ignoring unreadable last proxy", file=str(self.path), error=str(e))
            return None

    async def save(self, config: ProxyConfiguration) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'address': config.address,
            'port': config.port,
            'certificate': config.certificate_pem,
        }

        with open(self.path, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        logger.debug("Saved last proxy", file=str(self.path), proxy=str(config))

    async def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.debug("Cleared last proxy", file=str(self.path))
