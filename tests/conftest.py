"""Shared fakes for hostwatch tests."""

import asyncio
from types import SimpleNamespace

import pytest

from hostwatch.assembler import SnapshotAssembler
from hostwatch.models import CpuCore, CpuMetrics, GpuDevice, MemoryMetrics, ProcessInfo


class FakeSource:
    """Stands in for any adapter, collector or enricher."""

    def __init__(self, result=None, error=None, delay: float = 0.0) -> None:
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def _resolve(self, *args):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result

    query = _resolve
    collect = _resolve
    list_processes = _resolve
    sample = _resolve


class Recorder:
    """Emit callable that stores every event it receives."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))


class RecordingSink:
    def __init__(self, error=None) -> None:
        self.records = []
        self.error = error

    async def write(self, record) -> None:
        if self.error is not None:
            raise self.error
        self.records.append(record)


CPU = CpuMetrics(usage=12.5, cores=(CpuCore(load=10.0, speed_mhz=2400.0), CpuCore(load=15.0)))
MEMORY = MemoryMetrics(
    total_bytes=16 * 1024**3,
    used_bytes=8 * 1024**3,
    free_bytes=4 * 1024**3,
    available_bytes=7 * 1024**3,
    swap_total_bytes=2 * 1024**3,
    swap_used_bytes=0,
)
GPUS = (GpuDevice(index=0, name="NVIDIA GeForce RTX 3080", vendor="NVIDIA", utilization_percent=35.0),)
PROCESSES = [ProcessInfo(pid=1, name="init", state="sleeping", user="root", cpu_percent=0.5, memory_bytes=4096)]


@pytest.fixture
def samples():
    """Canned source results used by the default fakes."""
    return SimpleNamespace(cpu=CPU, memory=MEMORY, gpus=GPUS, processes=PROCESSES)


@pytest.fixture
def fake_source():
    return FakeSource


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def recording_sink():
    return RecordingSink


@pytest.fixture
def make_assembler():
    """Factory for a SnapshotAssembler wired to fakes; override any source."""

    def make(cpu=None, memory=None, gpu=None, processes=None, optional_timeout: float = 1.0):
        return SnapshotAssembler(
            cpu=cpu or FakeSource(CPU),
            memory=memory or FakeSource(MEMORY),
            gpu=gpu or FakeSource(GPUS),
            processes=processes or FakeSource(PROCESSES),
            optional_timeout=optional_timeout,
        )

    return make
