"""wecomos command line.

    wecomos serve                  run the webhook server
    wecomos decrypt KEY CIPHERTEXT decrypt a captured Encrypt value offline
    wecomos probe                  check account credentials
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from wecomos import __version__
from wecomos.channels.wecom.crypto import decrypt_message
from wecomos.config import ConfigProvider

console = Console()

# Sample from the WeCom callback documentation, used when decrypt gets no arguments
SAMPLE_AES_KEY = "jWmYm7qr5nMoAUwZRjGtBxmz3KA1tkAj3ykkR6q2B2C"
SAMPLE_CIPHERTEXT = (
    "RypEvHKD8QQKFhvQ6QleEB4J58tiPdvo+rtK1I9qca6aM/wvqnLSV5zEPeusUiX5L5X/0lWfrf0QADHHhGd3QczcdCUpj911L3vg3W/sYYvuJTs3TUUkSUXxaccAS0qhxchrRYt66wiSpGLYL42aM6A8dTT+6k4aSknmPj48kzJs8qLjvd4Xgpue06DOdnLxAUHzM6+kDZ+HMZfJYuR+LtwGc2hgf5gsijff0ekUNXZiqATP7PF5mZxZ3Izoun1s4zG4LUMnvw2r+KqCKIw+3IQH03v+BCA9nMELNqbSf6tiWSrXJB3LAVGUcallcrw8V2t9EL4EhzJWrQUax5wLVMNS0+rUPA3k22Ncx4XXZS9o0MBH27Bo6BpNelZpS+/uh9KsNlY6bHCmJU9p8g7m3fVKn28H3KDYA5Pl/T8Z1ptDAVe0lXdQ2YoyyH2uyPIGHBZZIs2pDBS8R07+qN+E7Q=="
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@click.group()
@click.version_option(version=__version__, prog_name="wecomos")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $WECOM_CONFIG or ./wecomos.yaml)",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[Path], verbose: bool):
    """WeCom webhook bridge"""
    _setup_logging(verbose)
    ctx.obj = ConfigProvider(config_path)


@cli.command(name="serve")
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.option("--echo", is_flag=True, help="Reply to every message with an echo")
@click.option("--probe/--no-probe", default=True, help="Probe credentials on start")
@click.pass_obj
def serve_cmd(config: ConfigProvider, host: Optional[str], port: Optional[int], echo: bool, probe: bool):
    """Run the webhook server"""
    from wecomos.app import create_app
    from wecomos.bridge import WeComBridge
    from wecomos.host_local import LocalHostRuntime, echo_reply

    settings = config.get()
    runtime = LocalHostRuntime(
        reply_handler=echo_reply if echo else None,
        default_agent=settings.default_agent,
    )
    bridge = WeComBridge(config, runtime=runtime, probe_on_start=probe)
    app = create_app(bridge=bridge)

    bind_host = host or settings.server.host
    bind_port = port or settings.server.port
    console.print(f"ℹ️  Serving WeCom webhooks on [cyan]http://{bind_host}:{bind_port}[/cyan]")
    uvicorn.run(app, host=bind_host, port=bind_port, log_config=None)


@cli.command(name="decrypt")
@click.argument("encoding_aes_key", required=False)
@click.argument("ciphertext", required=False)
@click.option("--corp-id", default=None, help="Require this receive id")
def decrypt_cmd(encoding_aes_key: Optional[str], ciphertext: Optional[str], corp_id: Optional[str]):
    """Decrypt a captured Encrypt value (documentation sample if no arguments)"""
    if not encoding_aes_key or not ciphertext:
        console.print("ℹ️  Using the WeCom documentation sample")
        encoding_aes_key, ciphertext = SAMPLE_AES_KEY, SAMPLE_CIPHERTEXT

    key = encoding_aes_key.strip()
    if len(key) != 43:
        console.print(f"❌ [red]EncodingAESKey length={len(key)}, expected 43[/red]")
        raise click.Abort()

    result = decrypt_message(ciphertext, key, corp_id)
    if result is None:
        console.print("❌ [red]Decrypt failed[/red] (run with -v for the reason)")
        raise click.Abort()

    console.print("✅ [green]Decrypt succeeded[/green]")
    console.print(f"receive_id: {result.receive_id}")
    console.print(f"message length: {len(result.message)}")
    console.print(result.message[:200], markup=False)


@cli.command(name="probe")
@click.option("--account", "account_id", default=None, help="Account id (default account if omitted)")
@click.pass_obj
def probe_cmd(config: ConfigProvider, account_id: Optional[str]):
    """Check that corp id, agent id and secret work"""
    from wecomos.channels.wecom.client import WeComClient
    from wecomos.channels.wecom.probe import probe_account

    account = config.account(account_id)
    if not account.configured:
        console.print(f"❌ [red]Account {account.account_id} is not configured[/red]")
        raise click.Abort()

    result = asyncio.run(
        probe_account(WeComClient(), account.corp_id, account.agent_id, account.secret)
    )
    if not result.ok:
        console.print(f"❌ [red]Probe failed: {result.error}[/red] ({result.elapsed_ms}ms)")
        raise click.Abort()

    table = Table(title=f"WeCom account {account.account_id}")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("corp_id", account.corp_id)
    table.add_row("agent_id", account.agent_id)
    table.add_row("agent name", (result.agent.name if result.agent else None) or "-")
    table.add_row("secret source", account.secret_source.value)
    table.add_row("elapsed", f"{result.elapsed_ms}ms")
    console.print(table)
    console.print("✅ [green]Probe passed[/green]")


def main():
    cli()


if __name__ == "__main__":
    main()
