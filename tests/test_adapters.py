"""Tests for the host source adapters."""

import asyncio
import contextlib
import os
import subprocess
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import psutil
import pynvml
import pytest

from hostwatch import adapters
from hostwatch.adapters import (
    CpuAdapter,
    DrmSysfsAdapter,
    GpuAdapter,
    MemoryAdapter,
    NvidiaSmiAdapter,
    NvmlAdapter,
    ProcessAdapter,
    ProcessController,
    ProcessSampler,
    cpu_metrics_from_counters,
)
from hostwatch.errors import SourceUnavailable
from hostwatch.gpu import MEBIBYTE, normalize_controllers


def freq(current: float) -> SimpleNamespace:
    return SimpleNamespace(current=current, min=0.0, max=0.0)


@pytest.fixture
def fake_nvml(monkeypatch):
    """Two NVIDIA boards behind a patched NVML; the second lacks utilization."""
    boards = [
        {
            "name": b"NVIDIA GeForce RTX 3080",
            "memory": SimpleNamespace(used=2048 * MEBIBYTE, total=10240 * MEBIBYTE),
            "rates": SimpleNamespace(gpu=35, memory=12),
            "pci": SimpleNamespace(busId=b"00000000:01:00.0"),
        },
        {
            "name": "Tesla T4",
            "memory": SimpleNamespace(used=0, total=15360 * MEBIBYTE),
            "rates": pynvml.NVMLError(pynvml.NVML_ERROR_NOT_SUPPORTED),
            "pci": SimpleNamespace(busId="00000000:02:00.0"),
        },
    ]
    state = SimpleNamespace(calls=[])

    def field(key):
        def read(handle):
            value = boards[handle][key]
            if isinstance(value, Exception):
                raise value
            return value

        return read

    monkeypatch.setattr(pynvml, "nvmlInit", lambda: state.calls.append("init"))
    monkeypatch.setattr(pynvml, "nvmlShutdown", lambda: state.calls.append("shutdown"))
    monkeypatch.setattr(pynvml, "nvmlDeviceGetCount", lambda: len(boards))
    monkeypatch.setattr(pynvml, "nvmlDeviceGetHandleByIndex", lambda index: index)
    monkeypatch.setattr(pynvml, "nvmlDeviceGetName", field("name"))
    monkeypatch.setattr(pynvml, "nvmlDeviceGetMemoryInfo", field("memory"))
    monkeypatch.setattr(pynvml, "nvmlDeviceGetUtilizationRates", field("rates"))
    monkeypatch.setattr(pynvml, "nvmlDeviceGetPciInfo", field("pci"))
    return state


class TestCpuMetricsFromCounters:
    def test_core_count_matches_input(self):
        metrics = cpu_metrics_from_counters(25.0, [10.0, 20.0, 30.0, 40.0])

        assert len(metrics.cores) == 4
        assert [core.load for core in metrics.cores] == [10.0, 20.0, 30.0, 40.0]

    def test_values_clamped_to_percent_range(self):
        metrics = cpu_metrics_from_counters(150.0, [-5.0, 101.0])

        assert metrics.usage == 100.0
        assert [core.load for core in metrics.cores] == [0.0, 100.0]

    def test_per_core_frequencies(self):
        metrics = cpu_metrics_from_counters(5.0, [1.0, 2.0], [freq(1200.0), freq(3400.0)])
        assert [core.speed_mhz for core in metrics.cores] == [1200.0, 3400.0]

    def test_aggregate_frequency_applies_to_every_core(self):
        metrics = cpu_metrics_from_counters(5.0, [1.0, 2.0, 3.0], [freq(2000.0)])
        assert [core.speed_mhz for core in metrics.cores] == [2000.0, 2000.0, 2000.0]

    def test_missing_or_mismatched_frequencies(self):
        assert cpu_metrics_from_counters(5.0, [1.0, 2.0, 3.0], None).cores[0].speed_mhz is None
        mismatched = cpu_metrics_from_counters(5.0, [1.0, 2.0, 3.0], [freq(1.0), freq(2.0)])
        assert len(mismatched.cores) == 3
        assert all(core.speed_mhz is None for core in mismatched.cores)

    def test_zero_frequency_reported_as_unknown(self):
        metrics = cpu_metrics_from_counters(5.0, [1.0], [freq(0.0)])
        assert metrics.cores[0].speed_mhz is None


class TestCpuAdapter:
    @pytest.mark.asyncio
    async def test_query_reads_host(self):
        metrics = await CpuAdapter().query()

        assert 0.0 <= metrics.usage <= 100.0
        assert len(metrics.cores) == len(psutil.cpu_percent(percpu=True))
        for core in metrics.cores:
            assert 0.0 <= core.load <= 100.0

    @pytest.mark.asyncio
    async def test_unreadable_counters_raise_source_unavailable(self, monkeypatch):
        adapter = CpuAdapter()

        def broken(*args, **kwargs):
            raise OSError("no /proc/stat")

        monkeypatch.setattr(adapters.psutil, "cpu_percent", broken)

        with pytest.raises(SourceUnavailable) as excinfo:
            await adapter.query()
        assert excinfo.value.source == "cpu"

    @pytest.mark.asyncio
    async def test_frequency_failure_is_not_fatal(self, monkeypatch):
        adapter = CpuAdapter()

        def no_freq(*args, **kwargs):
            raise NotImplementedError

        monkeypatch.setattr(adapters.psutil, "cpu_freq", no_freq)
        metrics = await adapter.query()

        assert all(core.speed_mhz is None for core in metrics.cores)


class TestMemoryAdapter:
    @pytest.mark.asyncio
    async def test_query_reads_host(self):
        metrics = await MemoryAdapter().query()

        assert metrics.total_bytes > 0
        assert 0 <= metrics.used_bytes <= metrics.total_bytes
        assert metrics.swap_used_bytes <= metrics.swap_total_bytes or metrics.swap_total_bytes == 0

    @pytest.mark.asyncio
    async def test_failure_raises_source_unavailable(self, monkeypatch):
        def broken():
            raise OSError("no /proc/meminfo")

        monkeypatch.setattr(adapters.psutil, "virtual_memory", broken)

        with pytest.raises(SourceUnavailable) as excinfo:
            await MemoryAdapter().query()
        assert excinfo.value.source == "memory"


def write(path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


class TestGpuAdapters:
    @pytest.mark.asyncio
    async def test_drm_sysfs_reads_amd_card(self, tmp_path):
        device = tmp_path / "card0" / "device"
        write(device / "vendor", "0x1002\n")
        write(device / "mem_info_vram_total", "8589934592\n")
        write(device / "mem_info_vram_used", "1073741824\n")
        write(device / "gpu_busy_percent", "12\n")
        write(device / "uevent", "DRIVER=amdgpu\nPCI_SLOT_NAME=0000:03:00.0\n")
        # Connector entries and NVIDIA cards are ignored
        (tmp_path / "card0-DP-1").mkdir()
        write(tmp_path / "card1" / "device" / "vendor", "0x10de\n")

        raw = await DrmSysfsAdapter(tmp_path).query()
        devices = normalize_controllers(raw)

        assert len(devices) == 1
        gpu = devices[0]
        assert gpu.vendor == "AMD"
        assert gpu.name == "AMD GPU"
        assert gpu.mem_total_bytes == 8589934592
        assert gpu.mem_used_bytes == 1073741824
        assert gpu.utilization_percent == 12.0
        assert gpu.bus_address == "0000:03:00.0"

    @pytest.mark.asyncio
    async def test_drm_sysfs_missing_root(self, tmp_path):
        assert await DrmSysfsAdapter(tmp_path / "missing").query() == []

    @pytest.mark.asyncio
    async def test_nvidia_smi_absent_returns_empty(self):
        adapter = NvidiaSmiAdapter(binary="definitely-not-nvidia-smi")
        assert await adapter.query() == []

    @pytest.mark.asyncio
    async def test_composite_skips_failing_probe(self, fake_source):
        adapter = GpuAdapter(
            probes=[
                fake_source(error=RuntimeError("nvidia-smi exited with 9")),
                fake_source([{"vendor": "Intel"}]),
            ]
        )
        assert await adapter.query() == [{"vendor": "Intel"}]

    @pytest.mark.asyncio
    async def test_nvml_reads_every_device(self, fake_nvml):
        raw = await NvmlAdapter(fallback=NvidiaSmiAdapter(binary="definitely-not-nvidia-smi")).query()
        devices = normalize_controllers(raw)

        assert fake_nvml.calls == ["init", "shutdown"]
        assert len(devices) == 2
        first, second = devices
        assert first.name == "NVIDIA GeForce RTX 3080"
        assert first.vendor == "NVIDIA"
        assert first.utilization_percent == 35.0
        assert first.mem_used_bytes == 2048 * MEBIBYTE
        assert first.mem_total_bytes == 10240 * MEBIBYTE
        assert first.bus_address == "00000000:01:00.0"
        assert second.name == "Tesla T4"
        assert second.utilization_percent is None
        assert second.mem_total_bytes == 15360 * MEBIBYTE

    @pytest.mark.asyncio
    async def test_nvml_unavailable_falls_back_to_nvidia_smi(self, fake_nvml, fake_source, monkeypatch):
        def missing_library():
            raise pynvml.NVMLError(pynvml.NVML_ERROR_LIBRARY_NOT_FOUND)

        monkeypatch.setattr(pynvml, "nvmlInit", missing_library)
        fallback = fake_source([{"vendor": "NVIDIA", "vram": "1024"}])

        assert await NvmlAdapter(fallback=fallback).query() == [{"vendor": "NVIDIA", "vram": "1024"}]
        assert fallback.calls == 1
        assert fake_nvml.calls == []

    @pytest.mark.asyncio
    async def test_nvml_device_error_still_shuts_down(self, fake_nvml, monkeypatch):
        def lost(index):
            raise pynvml.NVMLError(pynvml.NVML_ERROR_GPU_IS_LOST)

        monkeypatch.setattr(pynvml, "nvmlDeviceGetHandleByIndex", lost)

        with pytest.raises(pynvml.NVMLError):
            await NvmlAdapter().query()
        assert fake_nvml.calls == ["init", "shutdown"]


class TestProcessAdapters:
    @pytest.mark.asyncio
    async def test_listing_respects_limit(self):
        entries = await ProcessAdapter().list_processes(5)

        assert 0 < len(entries) <= 5
        for entry in entries:
            assert entry["pid"] >= 0
            assert isinstance(entry["name"], str)
            assert isinstance(entry["state"], str)
            assert set(entry) == {"pid", "name", "user", "state", "ppid"}

    @pytest.mark.asyncio
    async def test_sampler_reads_own_process(self):
        cpu, rss = await ProcessSampler(interval=0.05).sample(os.getpid())

        assert cpu >= 0.0
        assert rss > 0

    @pytest.mark.asyncio
    async def test_sampler_missing_pid_raises(self):
        with pytest.raises(psutil.NoSuchProcess):
            await ProcessSampler(interval=0.01).sample(99999999)

    @pytest.mark.asyncio
    async def test_sampler_cpu_from_two_readings(self, monkeypatch):
        class BusyProcess:
            """Accrues 0.05s of user time per cpu_times() reading."""

            def __init__(self, pid):
                self.pid = pid
                self.user = 1.0

            def oneshot(self):
                return contextlib.nullcontext()

            def cpu_times(self):
                times = SimpleNamespace(user=self.user, system=0.5)
                self.user += 0.05
                return times

            def memory_info(self):
                return SimpleNamespace(rss=4096)

        monkeypatch.setattr(adapters.psutil, "Process", BusyProcess)

        cpu, rss = await ProcessSampler(interval=0.1).sample(42)

        assert rss == 4096
        assert 5.0 < cpu <= 50.0

    @pytest.mark.asyncio
    async def test_sampling_window_holds_no_worker_thread(self):
        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(max_workers=1)
        loop.set_default_executor(executor)
        sampler = ProcessSampler(interval=0.2)

        try:
            start = time.monotonic()
            results = await asyncio.gather(*(sampler.sample(os.getpid()) for _ in range(20)))
            elapsed = time.monotonic() - start
        finally:
            executor.shutdown(wait=False)

        assert len(results) == 20
        assert all(rss > 0 for _, rss in results)
        # Twenty 0.2s windows on one worker would take 4s if the wait blocked it
        assert elapsed < 1.5


@pytest.fixture
def sleeper():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    try:
        yield proc
    finally:
        if proc.poll() is None:
            proc.kill()
        proc.wait(timeout=5)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals and niceness")
class TestProcessController:
    @pytest.mark.asyncio
    async def test_terminate_stops_process(self, sleeper):
        await ProcessController().terminate(sleeper.pid)

        assert sleeper.wait(timeout=5) != 0

    @pytest.mark.asyncio
    async def test_renice_lowers_priority(self, sleeper):
        target = min(19, psutil.Process(sleeper.pid).nice() + 5)

        assert await ProcessController().renice(sleeper.pid, target) == target
        assert psutil.Process(sleeper.pid).nice() == target

    @pytest.mark.asyncio
    async def test_missing_pid_raises(self):
        with pytest.raises(psutil.NoSuchProcess):
            await ProcessController().terminate(99999999)
