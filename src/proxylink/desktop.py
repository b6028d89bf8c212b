"""
File-backed platform integration for desktop hosts.

- Trust store: a directory of PEM files, matched by public key fingerprint
- Tunnel permission: a marker file, created once the user allows it
- Tunnel: a proxy profile (tunnel.yaml) plus a shell-sourceable proxy.env
  exporting HTTP_PROXY/HTTPS_PROXY for the resolved proxy
"""

import asyncio
import hashlib
from pathlib import Path
from typing import Callable, Optional

import structlog
import typer
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from rich.console import Console
from rich.panel import Panel

from .errors import InvalidCertificate
from .fingerprint import fingerprint, load_certificate
from .models.connection import ProxyConfiguration, proxy_url
from .shim import IntegrationShim

logger = structlog.get_logger(__name__)

ConfirmPrompt = Callable[[str], bool]

CA_BUNDLE_EXPORTS = ("export SSL_CERT_FILE=", "export REQUESTS_CA_BUNDLE=")


def _typer_confirm(message: str) -> bool:
    return typer.confirm(message, default=False)


class DesktopShim(IntegrationShim):
    """
    Integration shim storing its state under a data directory.

    Prompts go through a confirm callable (typer.confirm by default), or
    are accepted without asking when assume_yes is set.
    """

    TRUST_DIR = "trusted"
    PROVISIONED_FILE = "tunnel.provisioned"
    TUNNEL_FILE = "tunnel.yaml"
    ENV_FILE = "proxy.env"

    def __init__(
        self,
        data_dir: Path,
        assume_yes: bool = False,
        confirm: Optional[ConfirmPrompt] = None,
        console: Optional[Console] = None
    ):
        """
        Initialize the shim.

        Args:
            data_dir: Directory holding trust store, permission and tunnel files
            assume_yes: Accept every prompt without asking
            confirm: Prompt callable returning the user's answer
            console: Console for informational output
        """
        self.data_dir = Path(data_dir)
        self.assume_yes = assume_yes
        self._confirm = confirm or _typer_confirm
        self.console = console or Console(stderr=True)

    @property
    def trust_dir(self) -> Path:
        return self.data_dir / self.TRUST_DIR

    @property
    def tunnel_file(self) -> Path:
        return self.data_dir / self.TUNNEL_FILE

    @property
    def env_file(self) -> Path:
        return self.data_dir / self.ENV_FILE

    async def _ask(self, message: str) -> bool:
        """Ask the user, unless every prompt is pre-accepted."""
        if self.assume_yes:
            return True
        return await asyncio.to_thread(self._confirm, message)

    async def active_tunnel(self) -> Optional[ProxyConfiguration]:
        if not self.tunnel_file.exists():
            return None

        try:
            with open(self.tunnel_file, 'r') as f:
                data = yaml.safe_load(f) or {}
            return ProxyConfiguration(
                address=data['address'],
                port=data['port'],
                certificate=load_certificate(data['certificate']),
            )
        except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError, InvalidCertificate) as e:
            logger.warning("Ignoring unreadable tunnel profile", file=str(self.tunnel_file), error=str(e))
            return None

    async def is_tunnel_provisioned(self) -> bool:
        return (self.data_dir / self.PROVISIONED_FILE).exists()

    async def provision_tunnel(self) -> bool:
        if not await self._ask("Allow proxylink to route this machine's HTTP traffic through a proxy?"):
            return False

        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / self.PROVISIONED_FILE).touch()
        logger.info("Tunnel permission granted")
        return True

    async def is_certificate_trusted(self, certificate: x509.Certificate) -> bool:
        return self._trusted_path(certificate) is not None

    async def install_certificate(self, certificate: x509.Certificate) -> bool:
        subject = certificate.subject.rfc4514_string() or "(no subject)"
        if not await self._ask(f"Trust certificate authority {subject} ({fingerprint(certificate)})?"):
            return False

        self.trust_dir.mkdir(parents=True, exist_ok=True)
        name = hashlib.sha256(fingerprint(certificate).encode('ascii')).hexdigest()[:16]
        pem_file = self.trust_dir / f"{name}.pem"
        pem_file.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
        logger.info("Installed certificate", file=str(pem_file))
        return True

    async def request_tunnel(self, address: str, port: int) -> bool:
        url = proxy_url(address, port)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._write_env([
            f"export HTTP_PROXY={url}",
            f"export HTTPS_PROXY={url}",
            f"export http_proxy={url}",
            f"export https_proxy={url}",
        ])
        logger.info("Tunnel profile written", proxy=url, env_file=str(self.env_file))
        return True

    async def record_tunnel(self, config: ProxyConfiguration) -> None:
        """
        Persist the connected proxy so later runs find the active tunnel.

        Also points CA bundle variables at the trusted copy of its certificate.
        """
        data = {
            'address': config.address,
            'port': config.port,
            'certificate': config.certificate_pem,
        }
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with open(self.tunnel_file, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        trusted = self._trusted_path(config.certificate)
        if trusted is not None and self.env_file.exists():
            lines = [
                line for line in self.env_file.read_text().splitlines()
                if not line.startswith(CA_BUNDLE_EXPORTS)
            ]
            lines.append(f"export SSL_CERT_FILE={trusted}")
            lines.append(f"export REQUESTS_CA_BUNDLE={trusted}")
            self._write_env(lines)

    async def teardown_tunnel(self) -> None:
        for path in (self.env_file, self.tunnel_file):
            if path.exists():
                path.unlink()
        logger.info("Tunnel profile removed")

    async def explain_setup(self, needs_tunnel: bool) -> None:
        message = (
            "To intercept traffic from this machine, you need to "
            + ("allow proxylink to configure a proxy tunnel and " if needs_tunnel else "")
            + "trust your proxy's certificate authority.\n\n"
            "Please accept the following prompts to allow this."
        )
        self.console.print(Panel(message, title="Enable interception", border_style="cyan"))

    async def confirm_interception(self) -> bool:
        return await self._ask(
            "Do you want to share all this machine's HTTP traffic with this proxy? "
            "Only accept this if you trust the source."
        )

    def _write_env(self, lines: list[str]) -> None:
        self.env_file.write_text("\n".join(lines) + "\n")

    def _trusted_path(self, certificate: x509.Certificate) -> Optional[Path]:
        """Find the trust store file holding the certificate's public key."""
        if not self.trust_dir.is_dir():
            return None

        expected = fingerprint(certificate)
        for pem_file in sorted(self.trust_dir.glob("*.pem")):
            try:
                if fingerprint(pem_file.read_bytes()) == expected:
                    return pem_file
            except (OSError, InvalidCertificate) as e:
                logger.debug("Skipping unreadable trusted certificate", file=str(pem_file), error=str(e))
        return None
