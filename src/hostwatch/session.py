"""Per-connection subscription sessions driving the periodic collect-and-push cycle."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from hostwatch.assembler import SnapshotAssembler
from hostwatch.config import DEFAULT_SERVER_ID, MIN_POLL_INTERVAL
from hostwatch.errors import SourceUnavailable
from hostwatch.models import MetricSnapshot, SubscriptionStatus
from hostwatch.persistence import HistorySink, persist_in_background
from hostwatch.processes import DEFAULT_PROCESS_LIMIT

logger = logging.getLogger(__name__)

METRICS_UPDATE = "metrics-update"

EmitFn = Callable[[str, dict[str, Any]], Awaitable[None]]


class ConnectionSession:
    """
    Subscription state of one live connection.

    The session exclusively owns its timer task. Every transition out of
    SUBSCRIBED cancels it, and every transition bumps a generation counter so
    an assembly still in flight from an earlier subscription is allowed to
    finish but its result is discarded.

    Ticks run on a fixed grid measured from the previous tick's start. A tick
    that finds the previous assembly still running is skipped, so at most one
    assembly per connection is ever in flight.
    """

    def __init__(
        self,
        connection_id: str,
        assembler: SnapshotAssembler,
        emit: EmitFn,
        interval: float = 2.0,
        process_limit: int = DEFAULT_PROCESS_LIMIT,
        sink: HistorySink | None = None,
    ) -> None:
        """
        Initialize the session.

        Args:
            connection_id: Identifier of the owning connection, used in logs.
            assembler: Source of snapshots.
            emit: Coroutine function ``emit(event, payload)`` delivering to the
                connection. Any exception it raises terminates the session.
            interval: Seconds between ticks. Clamped to a 0.1s minimum.
            process_limit: Number of processes enriched per tick.
            sink: Optional history sink written to after each successful tick.
        """
        self.connection_id = connection_id
        self._assembler = assembler
        self._emit = emit
        self._interval = max(MIN_POLL_INTERVAL, interval)
        self._process_limit = process_limit
        self._sink = sink

        self._status = SubscriptionStatus.IDLE
        self._server_id: str | None = None
        self._generation = 0
        self._timer: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._pending_writes: set[asyncio.Task] = set()

    @property
    def status(self) -> SubscriptionStatus:
        return self._status

    @property
    def server_id(self) -> str | None:
        return self._server_id

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def has_timer(self) -> bool:
        """Whether a periodic timer is currently armed."""
        return self._timer is not None and not self._timer.done()

    @property
    def is_collecting(self) -> bool:
        """Whether an assembly is in flight."""
        return self._inflight is not None and not self._inflight.done()

    def subscribe(self, server_id: str | None = DEFAULT_SERVER_ID) -> None:
        """
        Start streaming ``server_id``, replacing any current subscription.

        Must be called from a running event loop.
        """
        if self._status is SubscriptionStatus.TERMINATED:
            logger.warning("Connection %s: subscribe after close ignored", self.connection_id)
            return

        self._cancel_timer()
        self._generation += 1
        self._server_id = server_id or DEFAULT_SERVER_ID
        self._status = SubscriptionStatus.SUBSCRIBED
        self._timer = asyncio.get_running_loop().create_task(
            self._run_timer(self._generation, self._server_id),
            name=f"hostwatch-timer-{self.connection_id}",
        )
        logger.info("Connection %s subscribed to %s", self.connection_id, self._server_id)

    def unsubscribe(self) -> None:
        """Stop streaming; the session can be subscribed again later."""
        if self._status is not SubscriptionStatus.SUBSCRIBED:
            return
        self._cancel_timer()
        self._generation += 1
        self._status = SubscriptionStatus.IDLE
        logger.info("Connection %s unsubscribed from %s", self.connection_id, self._server_id)
        self._server_id = None

    def close(self) -> None:
        """Terminate the session. Idempotent."""
        if self._status is SubscriptionStatus.TERMINATED:
            return
        self._cancel_timer()
        self._generation += 1
        self._status = SubscriptionStatus.TERMINATED
        self._server_id = None
        # In-flight cycles and history writes drop their own references when done
        self._sink = None
        logger.info("Connection %s session closed", self.connection_id)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run_timer(self, generation: int, server_id: str) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._interval
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            # Stay on the grid; ticks missed while the loop was busy are dropped
            now = loop.time()
            while next_tick <= now:
                next_tick += self._interval
            self._tick(generation, server_id)

    def _tick(self, generation: int, server_id: str) -> None:
        if self.is_collecting:
            logger.debug("Connection %s: previous cycle still running, tick skipped", self.connection_id)
            return
        self._inflight = asyncio.get_running_loop().create_task(
            self._collect_and_emit(generation, server_id),
            name=f"hostwatch-cycle-{self.connection_id}",
        )
        self._inflight.add_done_callback(self._cycle_done)

    def _cycle_done(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _collect_and_emit(self, generation: int, server_id: str) -> None:
        try:
            snapshot = await self._assembler.assemble(
                server_id,
                include_processes=True,
                process_limit=self._process_limit,
            )
        except SourceUnavailable as exc:
            logger.warning("Connection %s: cycle dropped, %s", self.connection_id, exc)
            return
        except Exception:
            # Keep the session alive; the next tick retries
            logger.exception("Connection %s: unexpected error while collecting", self.connection_id)
            return

        if generation != self._generation:
            logger.debug("Connection %s: stale cycle discarded", self.connection_id)
            return

        persist_in_background(self._sink, snapshot, self._pending_writes)
        await self._deliver(snapshot)

    async def _deliver(self, snapshot: MetricSnapshot) -> None:
        try:
            await self._emit(METRICS_UPDATE, snapshot.to_dict())
        except Exception as exc:
            logger.info("Connection %s: transport gone (%s)", self.connection_id, exc)
            self.close()
