"""Result drain loop.

Consumes peer batches from the engine's result queue and renders every peer
address until the session hands it the stop token.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from dhtseek.core.infohash import decode_peer_address
from dhtseek.utils.exceptions import PeerAddressDecodeError

logger = logging.getLogger(__name__)

PeerObserver = Callable[[bytes, str], None]


def log_peer(info_hash: bytes, address: str) -> None:
    """Default observer: one log line per peer address."""
    logger.info("%s", address, extra={"info_hash": info_hash.hex()})


class ResultDrainer:
    """Drains ``{info_hash: [compact_peer, ...]}`` batches from a queue.

    The drainer runs as a task until ``stop`` is set. The task returned by
    :meth:`start` is the acknowledgment: it completes once the loop has seen
    the stop token and exited.
    """

    def __init__(
        self,
        results: asyncio.Queue[dict[bytes, list[bytes]]],
        stop: asyncio.Event,
        observer: PeerObserver | None = None,
    ):
        """Initialize the drainer.

        Args:
            results: Queue the engine publishes result batches on
            stop: Stop token owned by the session
            observer: Called with ``(info_hash, address)`` for each peer

        """
        self.results = results
        self.stop = stop
        self.observer = observer or log_peer
        self.task: asyncio.Task[None] | None = None

        self.batches_processed = 0
        self.peers_emitted = 0
        self.decode_failures = 0

    def start(self) -> asyncio.Task[None]:
        """Start the loop and return its acknowledgment handle."""
        if self.task is None:
            self.task = asyncio.create_task(self._run(), name="dht-result-drain")
        return self.task

    async def _run(self) -> None:
        logger.warning("Note that there are many bad nodes that reply to anything you ask.")
        logger.warning("Peers found:")

        stop_waiter = asyncio.create_task(self.stop.wait())
        try:
            while True:
                getter = asyncio.create_task(self.results.get())
                done, _ = await asyncio.wait(
                    {getter, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    self.process_batch(getter.result())
                    continue
                getter.cancel()
                try:
                    batch = await getter
                except asyncio.CancelledError:
                    break
                # The get completed before the cancellation landed
                self.process_batch(batch)
                break
        finally:
            stop_waiter.cancel()
        logger.debug(
            "Result drain stopped after %d batches, %d peers, %d bad tokens",
            self.batches_processed,
            self.peers_emitted,
            self.decode_failures,
        )

    def process_batch(self, batch: dict[bytes, list[bytes]]) -> None:
        """Render every token of every collection in ``batch``."""
        self.batches_processed += 1
        for info_hash, tokens in batch.items():
            for token in tokens:
                self._emit(info_hash, token)

    def _emit(self, info_hash: bytes, token: bytes) -> None:
        try:
            address = decode_peer_address(token)
        except PeerAddressDecodeError as e:
            self.decode_failures += 1
            logger.warning("Skipping undecodable peer token: %s", e)
            return
        try:
            self.observer(info_hash, address)
        except Exception:
            logger.exception("Peer observer failed for %s", address)
            return
        self.peers_emitted += 1

    def get_stats(self) -> dict[str, int]:
        return {
            "batches_processed": self.batches_processed,
            "peers_emitted": self.peers_emitted,
            "decode_failures": self.decode_failures,
        }
