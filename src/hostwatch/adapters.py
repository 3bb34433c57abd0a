"""
Source adapters wrapping host introspection.

Every adapter exposes an async ``query``-style method. psutil calls block, so
they run in worker threads through ``asyncio.to_thread``. NVIDIA GPUs are read
through NVML, with ``nvidia-smi`` as a subprocess fallback.
"""

import asyncio
import csv
import io
import itertools
import logging
import re
import shutil
import time
from pathlib import Path
from typing import Any

import psutil
import pynvml

from hostwatch.errors import SourceUnavailable
from hostwatch.gpu import MEBIBYTE
from hostwatch.models import CpuCore, CpuMetrics, MemoryMetrics

logger = logging.getLogger(__name__)

RawController = dict[str, Any]
RawProcess = dict[str, Any]


def _clamp_percent(value: float) -> float:
    return min(100.0, max(0.0, float(value)))


def cpu_metrics_from_counters(
    total: float,
    per_core: list[float],
    frequencies: list[Any] | None = None,
) -> CpuMetrics:
    """
    Build CpuMetrics from raw psutil counters.

    Args:
        total: Aggregate load as returned by ``psutil.cpu_percent()``.
        per_core: Per-core load as returned by ``psutil.cpu_percent(percpu=True)``.
        frequencies: Result of ``psutil.cpu_freq(percpu=True)``. When it holds one
            entry per core, each core gets its own speed; a single entry is the
            aggregate and applies to every core.
    """
    frequencies = frequencies or []
    if len(frequencies) == len(per_core):
        speeds = [freq.current or None for freq in frequencies]
    elif len(frequencies) == 1:
        speeds = [frequencies[0].current or None] * len(per_core)
    else:
        speeds = [None] * len(per_core)

    cores = tuple(
        CpuCore(load=_clamp_percent(load), speed_mhz=speed)
        for load, speed in zip(per_core, speeds)
    )
    return CpuMetrics(usage=_clamp_percent(total), cores=cores)


class CpuAdapter:
    """Aggregate and per-core CPU load from psutil."""

    def __init__(self) -> None:
        # Initialize CPU percent (first call returns 0.0)
        try:
            psutil.cpu_percent()
            psutil.cpu_percent(percpu=True)
        except Exception as exc:
            logger.debug("CPU counters not primed: %s", exc)

    async def query(self) -> CpuMetrics:
        """
        Read current CPU load.

        Raises:
            SourceUnavailable: If the host counters cannot be read.
        """
        try:
            return await asyncio.to_thread(self._read)
        except Exception as exc:
            raise SourceUnavailable("cpu", str(exc)) from exc

    def _read(self) -> CpuMetrics:
        # Non-blocking, uses previous call's data
        total = psutil.cpu_percent()
        per_core = psutil.cpu_percent(percpu=True)
        try:
            frequencies = psutil.cpu_freq(percpu=True)
        except (NotImplementedError, OSError) as exc:
            # Clock speed is optional; load figures are still valid
            logger.debug("CPU frequency unavailable: %s", exc)
            frequencies = []
        return cpu_metrics_from_counters(total, per_core, frequencies)


class MemoryAdapter:
    """Physical memory and swap totals from psutil, in bytes."""

    async def query(self) -> MemoryMetrics:
        """
        Read current memory usage.

        Raises:
            SourceUnavailable: If the host counters cannot be read.
        """
        try:
            return await asyncio.to_thread(self._read)
        except Exception as exc:
            raise SourceUnavailable("memory", str(exc)) from exc

    def _read(self) -> MemoryMetrics:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return MemoryMetrics(
            total_bytes=mem.total,
            used_bytes=mem.used,
            free_bytes=mem.free,
            available_bytes=mem.available,
            swap_total_bytes=swap.total,
            swap_used_bytes=swap.used,
        )


NVIDIA_SMI_FIELDS = ("index", "name", "utilization.gpu", "memory.used", "memory.total", "pci.bus_id")


def parse_nvidia_smi_csv(text: str) -> list[RawController]:
    """
    Turn ``nvidia-smi --format=csv,noheader,nounits`` output into raw records.

    Memory figures are reported in MiB and kept under the legacy ``vram`` and
    ``vramUsed`` keys; values stay strings, the normalizer coerces them.
    """
    controllers: list[RawController] = []
    for row in csv.reader(io.StringIO(text), skipinitialspace=True):
        if len(row) != len(NVIDIA_SMI_FIELDS):
            continue
        _, name, util, used, total, bus = (cell.strip() for cell in row)
        controllers.append(
            {
                "vendor": "NVIDIA",
                "model": name,
                "utilizationGpu": util,
                "vramUsed": used,
                "vram": total,
                "busAddress": bus,
            }
        )
    return controllers


class NvidiaSmiAdapter:
    """NVIDIA controllers via the ``nvidia-smi`` query interface."""

    def __init__(self, binary: str = "nvidia-smi", timeout: float = 5.0) -> None:
        self._binary = binary
        self._timeout = timeout

    async def query(self) -> list[RawController]:
        """Return raw controller records; an empty list when nvidia-smi is absent."""
        binary = shutil.which(self._binary)
        if binary is None:
            return []

        proc = await asyncio.create_subprocess_exec(
            binary,
            f"--query-gpu={','.join(NVIDIA_SMI_FIELDS)}",
            "--format=csv,noheader,nounits",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            raise RuntimeError(
                f"nvidia-smi exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        return parse_nvidia_smi_csv(stdout.decode(errors="replace"))


def _decode(value: Any) -> str:
    return value.decode("utf-8", errors="ignore") if isinstance(value, (bytes, bytearray)) else str(value)


def _nvml_read(read: Any, handle: Any) -> Any:
    try:
        return read(handle)
    except pynvml.NVMLError as exc:
        # NOT_SUPPORTED is common for utilization on older boards
        logger.debug("NVML %s failed: %s", read.__name__, exc)
        return None


class NvmlAdapter:
    """
    NVIDIA controllers through NVML.

    Records use the same keys as :func:`parse_nvidia_smi_csv` (memory in MiB
    under ``vram``/``vramUsed``). When NVML cannot be initialized (library
    missing, driver not loaded) the query falls back to ``nvidia-smi``.
    """

    def __init__(self, fallback: Any | None = None) -> None:
        self._fallback = fallback or NvidiaSmiAdapter()

    async def query(self) -> list[RawController]:
        controllers = await asyncio.to_thread(self._read)
        if controllers is None:
            return await self._fallback.query()
        return controllers

    def _read(self) -> list[RawController] | None:
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as exc:
            logger.debug("NVML unavailable, using nvidia-smi: %s", exc)
            return None
        try:
            return [
                self._controller(pynvml.nvmlDeviceGetHandleByIndex(index))
                for index in range(pynvml.nvmlDeviceGetCount())
            ]
        finally:
            pynvml.nvmlShutdown()

    @staticmethod
    def _controller(handle: Any) -> RawController:
        raw: RawController = {"vendor": "NVIDIA", "model": _decode(pynvml.nvmlDeviceGetName(handle))}
        memory = _nvml_read(pynvml.nvmlDeviceGetMemoryInfo, handle)
        if memory is not None:
            raw["vramUsed"] = memory.used / MEBIBYTE
            raw["vram"] = memory.total / MEBIBYTE
        rates = _nvml_read(pynvml.nvmlDeviceGetUtilizationRates, handle)
        if rates is not None:
            raw["utilizationGpu"] = rates.gpu
        pci = _nvml_read(pynvml.nvmlDeviceGetPciInfo, handle)
        if pci is not None:
            raw["busAddress"] = _decode(pci.busId)
        return raw


PCI_VENDORS = {
    "0x1002": "AMD",
    "0x8086": "Intel",
    "0x10de": "NVIDIA",
    "0x1af4": "Red Hat (virtio)",
    "0x15ad": "VMware",
}

_CARD_RE = re.compile(r"^card\d+$")


class DrmSysfsAdapter:
    """
    Controllers exposed under ``/sys/class/drm`` (amdgpu, i915 and friends).

    NVIDIA cards are left to :class:`NvmlAdapter`. Memory is reported in
    bytes under ``memoryTotal``/``memoryUsed`` and utilization under
    ``utilization.gpu``, wherever the kernel driver exposes them.
    """

    def __init__(self, root: Path | str = "/sys/class/drm") -> None:
        self._root = Path(root)

    async def query(self) -> list[RawController]:
        return await asyncio.to_thread(self._scan)

    def _scan(self) -> list[RawController]:
        if not self._root.is_dir():
            return []

        controllers: list[RawController] = []
        for card in sorted(self._root.iterdir(), key=lambda p: p.name):
            if not _CARD_RE.match(card.name):
                continue
            device = card / "device"
            vendor_id = _read_text(device / "vendor")
            if vendor_id is None or vendor_id == "0x10de":
                continue

            raw: RawController = {"vendor": PCI_VENDORS.get(vendor_id, vendor_id)}
            total = _read_text(device / "mem_info_vram_total")
            used = _read_text(device / "mem_info_vram_used")
            busy = _read_text(device / "gpu_busy_percent")
            if total is not None:
                raw["memoryTotal"] = total
            if used is not None:
                raw["memoryUsed"] = used
            if busy is not None:
                raw["utilization"] = {"gpu": busy}
            slot = _pci_slot(device / "uevent")
            if slot is not None:
                raw["busAddress"] = slot
            controllers.append(raw)
        return controllers


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except OSError:
        return None


def _pci_slot(uevent: Path) -> str | None:
    text = _read_text(uevent)
    if text is None:
        return None
    for line in text.splitlines():
        key, _, value = line.partition("=")
        if key == "PCI_SLOT_NAME":
            return value
    return None


class GpuAdapter:
    """Concatenates the controllers reported by several GPU probes, in order."""

    def __init__(self, probes: list[Any] | None = None) -> None:
        self._probes = probes if probes is not None else [NvmlAdapter(), DrmSysfsAdapter()]

    async def query(self) -> list[RawController]:
        results = await asyncio.gather(
            *(probe.query() for probe in self._probes), return_exceptions=True
        )
        controllers: list[RawController] = []
        for probe, result in zip(self._probes, results):
            if isinstance(result, BaseException):
                logger.debug("GPU probe %s failed: %s", type(probe).__name__, result)
                continue
            controllers.extend(result)
        return controllers


LISTING_ATTRS = ["pid", "name", "username", "status", "ppid"]


class ProcessAdapter:
    """Lists processes in host order using psutil.process_iter()."""

    async def list_processes(self, limit: int = 50) -> list[RawProcess]:
        """
        Return up to ``limit`` raw listing entries.

        Each entry carries ``pid``, ``name``, ``user``, ``state`` and ``ppid``.
        Attributes psutil cannot read (AccessDenied) come back as None. Errors
        from the listing call itself propagate.
        """
        return await asyncio.to_thread(self._list, limit)

    def _list(self, limit: int) -> list[RawProcess]:
        entries: list[RawProcess] = []
        for proc in itertools.islice(psutil.process_iter(attrs=LISTING_ATTRS), limit):
            info = proc.info
            entries.append(
                {
                    "pid": info.get("pid", proc.pid),
                    "name": info.get("name") or "",
                    "user": info.get("username"),
                    "state": info.get("status") or "?",
                    "ppid": info.get("ppid"),
                }
            )
        return entries


class ProcessSampler:
    """
    Samples live CPU% and RSS for a single pid.

    CPU% needs two ``cpu_times()`` readings ``interval`` seconds apart. Each
    reading runs in a worker thread; the wait between them is an asyncio sleep,
    so no thread is held for the sampling window. As with psutil's own
    ``cpu_percent``, 100 means one fully busy core.
    """

    def __init__(self, interval: float = 0.1) -> None:
        self._interval = interval

    async def sample(self, pid: int) -> tuple[float, int]:
        """Return ``(cpu_percent, memory_bytes)``; psutil errors propagate."""
        proc, before, started, rss = await asyncio.to_thread(self._first_reading, pid)
        await asyncio.sleep(self._interval)
        after, finished = await asyncio.to_thread(self._reading, proc)

        elapsed = finished - started
        if elapsed <= 0:
            return 0.0, rss
        busy = (after.user + after.system) - (before.user + before.system)
        return max(0.0, busy / elapsed * 100), rss

    @staticmethod
    def _first_reading(pid: int) -> tuple[psutil.Process, Any, float, int]:
        proc = psutil.Process(pid)
        with proc.oneshot():
            times = proc.cpu_times()
            rss = proc.memory_info().rss
        return proc, times, time.monotonic(), rss

    @staticmethod
    def _reading(proc: psutil.Process) -> tuple[Any, float]:
        return proc.cpu_times(), time.monotonic()


class ProcessController:
    """Signals and reprioritizes host processes; psutil errors propagate."""

    async def terminate(self, pid: int) -> None:
        """Send SIGTERM (TerminateProcess on Windows) to ``pid``."""
        await asyncio.to_thread(self._terminate, pid)

    async def renice(self, pid: int, nice: int) -> int:
        """Set the niceness of ``pid`` and return the value the host now reports."""
        return await asyncio.to_thread(self._renice, pid, nice)

    @staticmethod
    def _terminate(pid: int) -> None:
        psutil.Process(pid).terminate()

    @staticmethod
    def _renice(pid: int, nice: int) -> int:
        proc = psutil.Process(pid)
        proc.nice(nice)
        return proc.nice()
