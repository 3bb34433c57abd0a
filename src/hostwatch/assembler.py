"""Snapshot assembly: one concurrent fan-out over every metric source."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from hostwatch.adapters import CpuAdapter, GpuAdapter, MemoryAdapter
from hostwatch.config import DEFAULT_SERVER_ID, Settings
from hostwatch.errors import SourceUnavailable
from hostwatch.gpu import GpuCollector
from hostwatch.models import MetricSnapshot, ProcessInfo
from hostwatch.processes import DEFAULT_PROCESS_LIMIT, ProcessEnricher

logger = logging.getLogger(__name__)


class SnapshotAssembler:
    """
    Composes CPU, memory, GPU and (optionally) process data into a MetricSnapshot.

    CPU and memory are mandatory: if either fails the whole call raises
    SourceUnavailable. GPU and processes are optional: a failure or a timeout
    degrades them to None and an empty tuple respectively.
    """

    def __init__(
        self,
        cpu: CpuAdapter | Any | None = None,
        memory: MemoryAdapter | Any | None = None,
        gpu: GpuCollector | Any | None = None,
        processes: ProcessEnricher | Any | None = None,
        optional_timeout: float = 5.0,
    ) -> None:
        self._cpu = cpu or CpuAdapter()
        self._memory = memory or MemoryAdapter()
        self._gpu = gpu or GpuCollector(GpuAdapter())
        self._processes = processes or ProcessEnricher()
        self._optional_timeout = optional_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SnapshotAssembler":
        return cls(
            gpu=GpuCollector(GpuAdapter(), debug=settings.debug_gpu),
            optional_timeout=settings.optional_timeout,
        )

    async def assemble(
        self,
        server_id: str = DEFAULT_SERVER_ID,
        include_processes: bool = False,
        process_limit: int = DEFAULT_PROCESS_LIMIT,
    ) -> MetricSnapshot:
        """
        Collect one snapshot.

        All queries are issued together; the timestamp is taken once every
        query has resolved and is shared by the whole snapshot.

        Raises:
            SourceUnavailable: If the CPU or memory source fails.
        """
        queries = [
            self._cpu.query(),
            self._memory.query(),
            self._optional("gpu", self._gpu.collect(), None),
        ]
        if include_processes:
            queries.append(self._optional("processes", self._processes.collect(process_limit), []))

        results = await asyncio.gather(*queries, return_exceptions=True)
        cpu, memory, gpu = results[:3]
        for source, result in (("cpu", cpu), ("memory", memory)):
            if isinstance(result, SourceUnavailable):
                raise result
            if isinstance(result, BaseException):
                raise SourceUnavailable(source, str(result)) from result

        processes: tuple[ProcessInfo, ...] | None = None
        if include_processes:
            processes = tuple(results[3])

        return MetricSnapshot(
            server_id=server_id,
            timestamp=datetime.now(timezone.utc),
            cpu=cpu,
            memory=memory,
            gpu=gpu or None,
            processes=processes,
        )

    async def list_processes(self, limit: int = DEFAULT_PROCESS_LIMIT) -> list[ProcessInfo]:
        """Enriched process list independent of a full snapshot; listing errors propagate."""
        return await self._processes.collect(limit)

    async def _optional(self, source: str, awaitable, fallback):
        try:
            return await asyncio.wait_for(awaitable, self._optional_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s source timed out after %.1fs", source, self._optional_timeout)
        except Exception as exc:
            logger.debug("%s source degraded: %s", source, exc)
        return fallback
