"""Session controller.

Drives one peer-discovery session: starts the DHT engine, issues a
``get_peers`` request for the target every interval, drains the engine's
results and shuts down through a stop/acknowledge handshake when interrupted.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from typing import Any, Awaitable, Callable

from dhtseek.config.config import get_config
from dhtseek.core.infohash import INFO_HASH_LENGTH
from dhtseek.discovery.dht import AsyncDHTEngine
from dhtseek.models import DiscoveryConfig
from dhtseek.session.drain import PeerObserver, ResultDrainer

logger = logging.getLogger(__name__)

EngineFactory = Callable[..., Awaitable[Any]]


class SessionState(str, Enum):
    """Lifecycle states of a session."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    DRAINING_STOP = "draining_stop"
    TERMINATED = "terminated"


class SessionController:
    """Owns the engine, the pacing loop and the result drain loop."""

    def __init__(
        self,
        config: DiscoveryConfig | None = None,
        engine_factory: EngineFactory | None = None,
        observer: PeerObserver | None = None,
    ):
        """Initialize the controller.

        Args:
            config: Discovery settings (port, interval, announce, lookup tuning);
                defaults to the global configuration
            engine_factory: Coroutine function building a started-but-idle
                engine; defaults to :meth:`AsyncDHTEngine.create`
            observer: Receives ``(info_hash, address)`` for each peer found

        """
        self.config = config or get_config().discovery
        self.engine_factory = engine_factory or AsyncDHTEngine.create
        self.observer = observer

        self.state = SessionState.IDLE
        self.engine: Any = None
        self.drainer: ResultDrainer | None = None
        self.interrupt = asyncio.Event()
        self.stop_token = asyncio.Event()
        self.requests_issued = 0

        self._target: bytes | None = None
        self._ack: asyncio.Task[None] | None = None
        self._signals: list[signal.Signals] = []

    @property
    def target(self) -> bytes | None:
        """Infohash this session searches for."""
        return self._target

    async def start(self, target: bytes, min_peer_hint: int | None = None) -> None:
        """Construct and start the engine, then start the drain loop.

        Raises:
            EngineStartError: if the engine cannot be constructed.

        """
        if self.state is not SessionState.IDLE:
            msg = f"Session already started (state {self.state.value})"
            raise RuntimeError(msg)
        if len(target) != INFO_HASH_LENGTH:
            msg = f"Target must be {INFO_HASH_LENGTH} bytes, got {len(target)}"
            raise ValueError(msg)

        hint = self.config.min_peer_hint if min_peer_hint is None else min_peer_hint
        self.state = SessionState.STARTING
        self._target = target
        try:
            self.engine = await self.engine_factory(
                port=self.config.dht_port,
                min_peer_hint=hint,
                announce=self.config.announce,
                config=self.config,
            )
        except BaseException:
            self.state = SessionState.TERMINATED
            raise

        self.engine.run()
        self.drainer = ResultDrainer(self.engine.results, self.stop_token, self.observer)
        self._ack = self.drainer.start()
        self.state = SessionState.RUNNING
        logger.info(
            "Searching the DHT for %s (peer hint %d, every %.1fs)",
            target.hex(),
            hint,
            self.config.request_interval,
        )

    async def run_until_interrupted(self) -> None:
        """Issue one peer request per interval until :attr:`interrupt` is set.

        The first request goes out one interval after the loop begins.
        """
        interval = self.config.request_interval
        while not self.interrupt.is_set():
            try:
                await asyncio.wait_for(self.interrupt.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self._request()
        if self.state is SessionState.RUNNING:
            self.state = SessionState.INTERRUPTED
        logger.info("Interrupted after %d requests", self.requests_issued)

    def _request(self) -> None:
        self.requests_issued += 1
        logger.debug("Requesting peers for %s (#%d)", self._target.hex(), self.requests_issued)
        self.engine.request_peers(self._target, announce=self.config.announce)

    def request_interrupt(self) -> None:
        """Ask the pacing loop to stop."""
        if not self.interrupt.is_set():
            logger.info("Interrupt received, shutting down")
            self.interrupt.set()

    async def shutdown(self) -> None:
        """Hand the stop token to the drain loop and wait for its acknowledgment.

        Calling it again after (or during) a shutdown only waits for the same
        acknowledgment.
        """
        self.interrupt.set()
        if self.state in (SessionState.DRAINING_STOP, SessionState.TERMINATED):
            if self._ack is not None:
                await asyncio.shield(self._ack)
            return

        self.state = SessionState.DRAINING_STOP
        self.stop_token.set()
        if self._ack is not None:
            await asyncio.shield(self._ack)
        self.state = SessionState.TERMINATED
        logger.debug("Result drain acknowledged stop")

    async def close(self) -> None:
        """Stop the engine and remove signal handlers."""
        self.remove_signal_handlers()
        if self.engine is not None:
            await self.engine.stop()

    async def run(self, target: bytes, min_peer_hint: int | None = None) -> None:
        """Start, pace until interrupted, then shut down and stop the engine."""
        await self.start(target, min_peer_hint)
        try:
            await self.run_until_interrupted()
        finally:
            try:
                await self.shutdown()
            finally:
                await self.close()

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to :meth:`request_interrupt`."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self.request_interrupt)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug("Cannot install handler for %s: %s", sig, e)
                continue
            self._signals.append(sig)

    def remove_signal_handlers(self) -> None:
        if not self._signals:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    def get_stats(self) -> dict[str, Any]:
        """Snapshot of controller and drain counters."""
        return {
            "state": self.state.value,
            "target": self._target.hex() if self._target else None,
            "requests_issued": self.requests_issued,
            "drain": self.drainer.get_stats() if self.drainer else {},
        }
