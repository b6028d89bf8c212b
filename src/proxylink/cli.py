"""
Command Line Interface for ProxyLink.

Provides commands for connecting to an intercepting proxy from a connect
URL, reconnecting, disconnecting, and inspecting payloads and certificates.

Built with Typer for automatic tab completion.
"""

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .connection import ConnectionStateMachine
from .core.config import DEFAULT_CONNECT_URL, Settings, get_settings
from .core.logging import setup_logging
from .desktop import DesktopShim
from .errors import InvalidCertificate, InvalidPayload, ProbeError
from .fingerprint import fingerprint as compute_fingerprint
from .models.connection import ConnectionSnapshot, ConnectionState, ConnectSource
from .prober import AddressProber
from .race import DiscoveryRace
from .schemas.payload import CandidatePayload, decode_connect_url, encode_connect_url
from .store import YamlProxyStore

console = Console()

app = typer.Typer(
    name="proxylink",
    help="ProxyLink - Discover, verify and route traffic through an intercepting proxy",
    add_completion=True,
    rich_markup_mode="rich",
)

LAST_PROXY_FILE = "last_proxy.yaml"

STATE_STYLES = {
    ConnectionState.DISCONNECTED: "dim",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.CONNECTED: "green",
    ConnectionState.DISCONNECTING: "yellow",
    ConnectionState.FAILED: "red",
}


class AppContext:
    """Settings shared by every command."""

    def __init__(self, settings: Settings):
        self.settings = settings


def version_callback(value: bool):
    if value:
        console.print(f"proxylink version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Annotated[Optional[Path], typer.Option("--config", "-c", help="Path to configuration file")] = None,
    log_level: Annotated[Optional[str], typer.Option("--log-level", "-l", help="Override log level")] = None,
    version: Annotated[bool, typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit.")] = False,
):
    """
    ProxyLink - Discover, verify and route traffic through an intercepting proxy

    Probes every address named by a connect URL, accepts the one serving
    the pinned certificate, then sets up trust and the proxy tunnel.
    """
    settings = Settings.load_from_yaml(config) if config else get_settings()
    level = log_level or settings.log.level
    setup_logging(level=level, format=settings.log.format, log_file=settings.log.file)
    ctx.obj = AppContext(settings)


def _settings(ctx: typer.Context) -> Settings:
    if ctx.obj is None:
        return get_settings()
    return ctx.obj.settings


def _build_machine(settings: Settings, assume_yes: bool = False) -> tuple[ConnectionStateMachine, DesktopShim]:
    """Wire the state machine to the desktop shim and the persisted last proxy."""
    data_dir = settings.get_data_dir()
    shim = DesktopShim(data_dir, assume_yes=assume_yes)
    machine = ConnectionStateMachine(
        race=DiscoveryRace(AddressProber(settings.probe)),
        shim=shim,
        store=YamlProxyStore(data_dir / LAST_PROXY_FILE),
    )

    async def on_state_change(snapshot: ConnectionSnapshot) -> None:
        if snapshot.state is ConnectionState.CONNECTED and snapshot.proxy is not None:
            await shim.record_tunnel(snapshot.proxy)

    machine.set_state_callback(on_state_change)
    return machine, shim


def _print_snapshot(snapshot: ConnectionSnapshot, shim: Optional[DesktopShim] = None) -> None:
    style = STATE_STYLES[snapshot.state]
    lines = [f"[{style}]{snapshot.state.value.upper()}[/{style}]"]

    if snapshot.proxy is not None:
        lines.append(f"Proxy: [bold]{snapshot.proxy.address}:{snapshot.proxy.port}[/bold]")
        lines.append(f"Certificate: {snapshot.proxy.fingerprint}")
    if shim is not None and snapshot.state is ConnectionState.CONNECTED:
        lines.append(f"\nLoad the proxy into a shell with: [cyan]source {shim.env_file}[/cyan]")
    if snapshot.error:
        lines.append(f"\n[red]{escape(snapshot.error)}[/red]")
    if snapshot.state is ConnectionState.FAILED:
        lines.append("\nCheck the proxy is running and reachable, then try again.")

    console.print(Panel("\n".join(lines), title="Connection", border_style=style))


@app.command()
def connect(
    ctx: typer.Context,
    url: Annotated[str, typer.Argument(help="Connect URL from a QR code or link")],
    remote_control: Annotated[bool, typer.Option("--remote-control", help="Trusted automation request, skip the interception prompt")] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Accept all prompts")] = False,
):
    """Connect to the proxy described by a connect URL."""
    source = ConnectSource.REMOTE_CONTROL if remote_control else ConnectSource.LINK
    machine, shim = _build_machine(_settings(ctx), assume_yes=yes)

    async def _run() -> bool:
        await machine.initialize()
        if machine.state is ConnectionState.CONNECTED:
            console.print("[yellow]Already connected. Disconnect first.[/yellow]")
            return False
        return await machine.connect_from_url(url, source=source)

    connected = asyncio.run(_run())
    _print_snapshot(machine.snapshot(), shim)
    if not connected:
        raise typer.Exit(code=1)


@app.command()
def reconnect(
    ctx: typer.Context,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Accept all prompts")] = False,
):
    """Reconnect to the last connected proxy, after verifying it again."""
    machine, shim = _build_machine(_settings(ctx), assume_yes=yes)

    async def _run() -> bool:
        await machine.initialize()
        if machine.state is ConnectionState.CONNECTED:
            console.print("[yellow]Already connected.[/yellow]")
            return True
        if await machine.store.load() is None:
            console.print("[yellow]No previous proxy to reconnect to.[/yellow]")
            return False
        return await machine.reconnect()

    connected = asyncio.run(_run())
    _print_snapshot(machine.snapshot(), shim)
    if not connected:
        raise typer.Exit(code=1)


@app.command()
def disconnect(ctx: typer.Context):
    """Stop routing traffic through the proxy."""
    machine, shim = _build_machine(_settings(ctx))

    async def _run() -> bool:
        await machine.initialize()
        if not await machine.disconnect():
            return False
        # Removing the tunnel profile completes synchronously
        await machine.handle_tunnel_stopped()
        return True

    if not asyncio.run(_run()):
        console.print("[yellow]Not connected.[/yellow]")
        raise typer.Exit(code=1)
    _print_snapshot(machine.snapshot(), shim)


@app.command()
def status(ctx: typer.Context):
    """Show the current connection state."""
    machine, shim = _build_machine(_settings(ctx))
    asyncio.run(machine.initialize())
    _print_snapshot(machine.snapshot(), shim)

    last = asyncio.run(machine.store.load())
    if last is not None and machine.state is not ConnectionState.CONNECTED:
        console.print(f"[dim]Last proxy: {last.address}:{last.port} (use 'proxylink reconnect')[/dim]")


@app.command()
def decode(
    url: Annotated[str, typer.Argument(help="Connect URL to decode")],
):
    """Show the payload carried by a connect URL."""
    try:
        payload = decode_connect_url(url)
    except InvalidPayload as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    table = Table(title="Connect payload")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Addresses", "\n".join(payload.addresses))
    table.add_row("Port", str(payload.port))
    table.add_row("Certificate fingerprint", payload.cert_fingerprint)
    console.print(table)


@app.command()
def encode(
    address: Annotated[list[str], typer.Option("--address", "-a", help="Candidate address (repeatable)")],
    port: Annotated[int, typer.Option("--port", "-p", help="Proxy port")],
    cert_fingerprint: Annotated[Optional[str], typer.Option("--fingerprint", "-f", help="Expected certificate fingerprint")] = None,
    cert: Annotated[Optional[Path], typer.Option("--cert", help="Certificate to fingerprint instead")] = None,
    base_url: Annotated[str, typer.Option("--base-url", help="URL the payload is appended to")] = DEFAULT_CONNECT_URL,
):
    """Build a connect URL for a proxy."""
    try:
        if cert is not None:
            cert_fingerprint = compute_fingerprint(cert.read_bytes())
        if cert_fingerprint is None:
            console.print("[red]Provide --fingerprint or --cert[/red]")
            raise typer.Exit(code=1)
        payload = CandidatePayload.parse({
            "addresses": address,
            "port": port,
            "certFingerprint": cert_fingerprint,
        })
    except (InvalidPayload, InvalidCertificate, OSError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    typer.echo(encode_connect_url(payload, base_url=base_url))


@app.command()
def fingerprint(
    cert: Annotated[Path, typer.Argument(help="PEM or DER certificate file")],
):
    """Print the public key fingerprint of a certificate."""
    try:
        typer.echo(compute_fingerprint(cert.read_bytes()))
    except (InvalidCertificate, OSError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1)


@app.command()
def probe(
    ctx: typer.Context,
    address: Annotated[str, typer.Argument(help="Candidate proxy address")],
    port: Annotated[int, typer.Option("--port", "-p", help="Proxy port")],
    cert_fingerprint: Annotated[str, typer.Option("--fingerprint", "-f", help="Expected certificate fingerprint")],
    timeout: Annotated[Optional[float], typer.Option("--timeout", "-t", help="Connect and read timeout in seconds")] = None,
):
    """Probe a single candidate address without connecting."""
    prober = AddressProber(_settings(ctx).probe)

    try:
        config = asyncio.run(prober.probe(address, port, cert_fingerprint, timeout=timeout))
    except ProbeError as e:
        console.print(f"[red]✗ {e.kind}[/red]: {escape(e.message)}")
        raise typer.Exit(code=1)

    subject = config.certificate.subject.rfc4514_string()
    console.print(f"[green]✓[/green] {config.address}:{config.port} serves {subject}")
