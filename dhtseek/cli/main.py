"""dhtseek command line entry point.

Searches the mainline DHT for peers of one infohash until interrupted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import click
from rich.console import Console

from dhtseek.cli.verbosity import VerbosityManager
from dhtseek.config.config import init_config
from dhtseek.core.infohash import decode_info_hash
from dhtseek.models import Config
from dhtseek.observability.debug_http import DebugHTTPServer
from dhtseek.observability.profiler import cpu_profile
from dhtseek.session.controller import EngineFactory, SessionController
from dhtseek.session.drain import PeerObserver
from dhtseek.utils.exceptions import (
    ConfigurationError,
    EngineStartError,
    InfoHashDecodeError,
    ProfilingError,
)

logger = logging.getLogger(__name__)

EXAMPLE_INFOHASH = "d1c5676ae7ac98e8b19f63565905105e3c4c37a2"


def _print_plain(console: Console, text: str) -> None:
    console.print(text, markup=False, highlight=False, soft_wrap=True)


def _usage_error(ctx: click.Context, console: Console, reason: str | None = None) -> None:
    if reason:
        _print_plain(console, f"Error: {reason}")
    _print_plain(console, f"Usage: {ctx.info_name} <infohash>")
    _print_plain(console, f"Example infohash: {EXAMPLE_INFOHASH}")
    ctx.exit(1)


async def run_session(
    target: bytes,
    config: Config,
    engine_factory: EngineFactory | None = None,
    observer: PeerObserver | None = None,
) -> SessionController:
    """Run one discovery session until SIGINT/SIGTERM.

    Raises:
        EngineStartError: if the DHT engine cannot start.

    """
    controller = SessionController(
        config.discovery, engine_factory=engine_factory, observer=observer
    )
    await controller.start(target)

    obs = config.observability
    debug_server: DebugHTTPServer | None = None
    try:
        controller.install_signal_handlers()
        if obs.enable_debug_http:

            def _debug_vars() -> dict[str, Any]:
                return {
                    "engine": controller.engine.get_stats(),
                    "session": controller.get_stats(),
                }

            debug_server = DebugHTTPServer(
                _debug_vars, obs.debug_http_host, obs.debug_http_port
            )
            await debug_server.start()

        await controller.run_until_interrupted()
    finally:
        try:
            await controller.shutdown()
        finally:
            if debug_server is not None:
                await debug_server.stop()
            await controller.close()
    return controller


@click.command()
@click.argument("args", nargs=-1, metavar="INFOHASH")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(dir_okay=False),
    help="Configuration file (TOML)",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.option("--port", type=click.IntRange(0, 65535), help="DHT UDP port (0 = any)")
@click.option("--min-peers", type=click.IntRange(1, 1000), help="Peers each lookup tries to find")
@click.option("--interval", type=float, help="Seconds between peer requests")
@click.option("--announce/--no-announce", default=None, help="Announce our port to the DHT")
@click.option(
    "--debug-http/--no-debug-http",
    default=None,
    help="Serve /debug/vars on the diagnostic port",
)
@click.option(
    "--cpuprofile",
    type=click.Path(dir_okay=False),
    help="Write a CPU profile to this file",
)
@click.pass_context
def main(
    ctx: click.Context,
    args: tuple[str, ...],
    config_file: str | None,
    verbose: int,
    port: int | None,
    min_peers: int | None,
    interval: float | None,
    announce: bool | None,
    debug_http: bool | None,
    cpuprofile: str | None,
) -> None:
    """Find peers for INFOHASH on the BitTorrent DHT and print their addresses."""
    err_console = Console(stderr=True)

    if len(args) != 1:
        _usage_error(ctx, err_console)
    try:
        target = decode_info_hash(args[0])
    except InfoHashDecodeError as e:
        _usage_error(ctx, err_console, str(e))

    try:
        manager = init_config(
            config_file,
            overrides={
                "discovery.dht_port": port,
                "discovery.min_peer_hint": min_peers,
                "discovery.request_interval": interval,
                "discovery.announce": announce,
                "observability.enable_debug_http": debug_http,
                "observability.cpuprofile": cpuprofile,
            },
        )
    except ConfigurationError as e:
        _print_plain(err_console, f"Configuration error: {e}")
        ctx.exit(1)

    verbosity = VerbosityManager.from_count(verbose)
    manager.setup_logging(verbosity.get_logging_level())

    try:
        with cpu_profile(manager.config.observability.cpuprofile):
            asyncio.run(run_session(target, manager.config))
    except (EngineStartError, ProfilingError) as e:
        logger.debug("Session failed to start", exc_info=True)
        _print_plain(err_console, f"Error: {e}")
        ctx.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
