"""
GPU normalization.

Vendors report the same attribute under different keys and sometimes in
different units. Each GpuDevice field is resolved through a fixed precedence
chain of extractors; the first one yielding a usable value wins.
"""

import json
import logging
import math
from collections.abc import Callable, Sequence
from typing import Any

from hostwatch.models import GpuDevice

logger = logging.getLogger(__name__)

MEBIBYTE = 1024 * 1024

Extractor = Callable[[dict[str, Any]], Any]


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        # nvidia-smi prints "[N/A]" / "[Not Supported]"
        return None
    return number if math.isfinite(number) else None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _number(key: str) -> Extractor:
    return lambda raw: _as_number(raw.get(key))


def _nested_number(key: str, subkey: str) -> Extractor:
    def extract(raw: dict[str, Any]) -> float | None:
        nested = raw.get(key)
        return _as_number(nested.get(subkey)) if isinstance(nested, dict) else None

    return extract


def _bytes(key: str) -> Extractor:
    def extract(raw: dict[str, Any]) -> int | None:
        value = _as_number(raw.get(key))
        return int(value) if value is not None else None

    return extract


def _megabytes(key: str) -> Extractor:
    def extract(raw: dict[str, Any]) -> int | None:
        value = _as_number(raw.get(key))
        if value is None or not math.isfinite(value * MEBIBYTE):
            return None
        return int(value * MEBIBYTE)

    return extract


def _text(key: str) -> Extractor:
    return lambda raw: _as_text(raw.get(key))


def _default_name(raw: dict[str, Any]) -> str:
    return f"{_as_text(raw.get('vendor')) or ''} GPU".strip()


NAME_CHAIN: tuple[Extractor, ...] = (_text("model"), _text("name"), _default_name)
VENDOR_CHAIN: tuple[Extractor, ...] = (_text("vendor"),)
MEM_TOTAL_CHAIN: tuple[Extractor, ...] = (_bytes("memoryTotal"), _megabytes("vram"))
MEM_USED_CHAIN: tuple[Extractor, ...] = (_bytes("memoryUsed"), _megabytes("vramUsed"))
UTILIZATION_CHAIN: tuple[Extractor, ...] = (
    _nested_number("utilization", "gpu"),
    _number("utilizationGpu"),
    _number("util"),
)
BUS_CHAIN: tuple[Extractor, ...] = (_text("busAddress"), _text("bus"))


def first_of(raw: dict[str, Any], chain: Sequence[Extractor]) -> Any:
    """Evaluate ``chain`` in order and return the first non-None value."""
    for extract in chain:
        value = extract(raw)
        if value is not None:
            return value
    return None


def normalize_controller(index: int, raw: dict[str, Any]) -> GpuDevice:
    """Map one raw controller record onto a GpuDevice."""
    return GpuDevice(
        index=index,
        vendor=first_of(raw, VENDOR_CHAIN),
        name=first_of(raw, NAME_CHAIN),
        utilization_percent=first_of(raw, UTILIZATION_CHAIN),
        mem_used_bytes=first_of(raw, MEM_USED_CHAIN),
        mem_total_bytes=first_of(raw, MEM_TOTAL_CHAIN),
        bus_address=first_of(raw, BUS_CHAIN),
    )


def normalize_controllers(raw_controllers: Sequence[dict[str, Any]] | None) -> tuple[GpuDevice, ...] | None:
    """
    Normalize a raw controller list.

    Returns None rather than an empty tuple when there is nothing to report,
    so "no GPU" stays distinguishable from "GPU with unknown attributes".
    """
    if not raw_controllers:
        return None
    return tuple(normalize_controller(index, raw) for index, raw in enumerate(raw_controllers))


class GpuCollector:
    """Runs a GPU adapter and normalizes its output, degrading every failure to None."""

    def __init__(self, adapter: Any, debug: bool = False) -> None:
        self._adapter = adapter
        self._debug = debug

    async def collect(self) -> tuple[GpuDevice, ...] | None:
        try:
            raw = await self._adapter.query()
            if self._debug:
                logger.debug("GPU raw controllers: %s", json.dumps(raw, default=str))
            devices = normalize_controllers(raw)
        except Exception as exc:
            logger.debug("GPU introspection failed: %s", exc)
            return None

        if self._debug and devices:
            logger.debug("GPU normalized: %s", json.dumps([d.to_dict() for d in devices]))
        return devices
