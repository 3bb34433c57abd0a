"""Process listing enriched with live per-process usage."""

import asyncio
import logging
from typing import Any

from hostwatch.adapters import ProcessAdapter, ProcessSampler, RawProcess
from hostwatch.models import ProcessInfo

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_LIMIT = 50


class ProcessEnricher:
    """
    Lists processes and samples each one concurrently.

    A failed sample (process exited mid-listing, permission denied) keeps the
    entry with zero CPU and memory; only a failed listing fails the batch.
    """

    def __init__(
        self,
        adapter: ProcessAdapter | Any | None = None,
        sampler: ProcessSampler | Any | None = None,
    ) -> None:
        self._adapter = adapter or ProcessAdapter()
        self._sampler = sampler or ProcessSampler()

    async def collect(self, limit: int = DEFAULT_PROCESS_LIMIT) -> list[ProcessInfo]:
        entries = await self._adapter.list_processes(limit)
        return list(await asyncio.gather(*(self._enrich(entry) for entry in entries)))

    async def _enrich(self, entry: RawProcess) -> ProcessInfo:
        pid = entry["pid"]
        try:
            cpu_percent, memory_bytes = await self._sampler.sample(pid)
        except Exception as exc:
            # NoSuchProcess, AccessDenied, ZombieProcess and friends
            logger.debug("Sampling pid %s failed: %s", pid, exc)
            cpu_percent, memory_bytes = 0.0, 0

        return ProcessInfo(
            pid=pid,
            name=entry.get("name") or "",
            user=entry.get("user"),
            state=entry.get("state") or "?",
            cpu_percent=float(cpu_percent or 0.0),
            memory_bytes=int(memory_bytes or 0),
            ppid=entry.get("ppid"),
        )
