"""Data models for hostwatch."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class SubscriptionStatus(Enum):
    """Lifecycle states of a connection session."""

    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    TERMINATED = "terminated"


@dataclass(slots=True, frozen=True)
class CpuCore:
    """Load of a single logical core."""

    load: float  # 0.0 - 100.0
    speed_mhz: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"load": self.load, "speedMHz": self.speed_mhz}


@dataclass(slots=True, frozen=True)
class CpuMetrics:
    """Aggregate and per-core CPU load."""

    usage: float  # 0.0 - 100.0
    cores: tuple[CpuCore, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"usage": self.usage, "cores": [core.to_dict() for core in self.cores]}


@dataclass(slots=True, frozen=True)
class MemoryMetrics:
    """Physical memory and swap, in bytes."""

    total_bytes: int
    used_bytes: int
    free_bytes: int
    available_bytes: int
    swap_total_bytes: int
    swap_used_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalBytes": self.total_bytes,
            "usedBytes": self.used_bytes,
            "freeBytes": self.free_bytes,
            "availableBytes": self.available_bytes,
            "swapTotalBytes": self.swap_total_bytes,
            "swapUsedBytes": self.swap_used_bytes,
        }


@dataclass(slots=True, frozen=True)
class GpuDevice:
    """Normalized view of one GPU controller."""

    index: int
    name: str
    vendor: str | None = None
    utilization_percent: float | None = None
    mem_used_bytes: int | None = None
    mem_total_bytes: int | None = None
    bus_address: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "vendor": self.vendor,
            "name": self.name,
            "utilizationPercent": self.utilization_percent,
            "memUsedBytes": self.mem_used_bytes,
            "memTotalBytes": self.mem_total_bytes,
            "busAddress": self.bus_address,
        }


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Immutable snapshot of a process state."""

    pid: int
    name: str
    state: str  # 'running', 'sleeping', 'zombie', etc.
    cpu_percent: float = 0.0  # 0.0 - 100.0 * core_count
    memory_bytes: int = 0  # RSS
    user: str | None = None
    ppid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "user": self.user,
            "cpuPercent": self.cpu_percent,
            "memoryBytes": self.memory_bytes,
            "state": self.state,
            "ppid": self.ppid,
        }


@dataclass(slots=True, frozen=True)
class MetricSnapshot:
    """
    One complete collection cycle.

    ``gpu`` is either None (no GPU discoverable) or a non-empty tuple.
    ``processes`` is None when the cycle did not ask for processes.
    """

    server_id: str
    timestamp: datetime
    cpu: CpuMetrics
    memory: MemoryMetrics
    gpu: tuple[GpuDevice, ...] | None = None
    processes: tuple[ProcessInfo, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire payload of a ``metrics-update`` event."""
        return {
            "serverId": self.server_id,
            "timestamp": self.timestamp.isoformat(),
            "cpu": self.cpu.to_dict(),
            "memory": self.memory.to_dict(),
            "gpu": [device.to_dict() for device in self.gpu] if self.gpu else None,
            "processes": [proc.to_dict() for proc in self.processes or ()],
        }
