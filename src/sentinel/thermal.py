"""Thermal source adapters.

:class:`LhmThermalAdapter` reads the LibreHardwareMonitor web server's
``data.json`` tree; :class:`LocalSensorsAdapter` reads the kernel sensors
through psutil. Both classify every reading into a :class:`SensorKind` and
expose the same ``fetch() -> SourceResult`` contract, so either can serve
as the thermal family's collector.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Iterator
from typing import Any

import psutil
import requests

from sentinel.config import DEFAULT_LHM_URL
from sentinel.errors import MalformedThermalPayload, SourceTimeout, SourceUnavailable
from sentinel.log import get_logger
from sentinel.models import SensorKind, ThermalBatch, ThermalReading
from sentinel.sources import Fresh, SourceFamily, SourceResult, Unavailable

logger = get_logger(__name__)

CATEGORY_NODES = frozenset(
    {"Temperatures", "Fans", "Voltages", "Clocks", "Powers", "Load", "Data", "Throughput"}
)

_CPU_MARKERS = ("cpu", "intel core", "amd ryzen", "processor")
_GPU_MARKERS = ("gpu", "nvidia", "geforce", "radeon", "amd rx", "intel arc")
_STORAGE_MARKERS = ("ssd", "nvme", "samsung", "wd ", "western digital", "crucial", "kingston", "hynix")
# Super-I/O chips report a "CPU" temperature from a socket diode, not the die.
_MOTHERBOARD_MARKERS = ("nuvoton", "nct", "ite ", "it87", "fintek", "winbond", "motherboard", "super i/o", "lpc")
_PACKAGE_NAMES = ("package", "cpu total", "tctl", "tdie")

_LEADING_NUMBER = re.compile(r"^[0-9.,-]+")

_KIND_ORDER = {kind: i for i, kind in enumerate(SensorKind)}


def parse_sensor_value(text: str | None) -> float | None:
    """
    Parse an LHM value string such as ``"65.2 °C"`` or ``"1200 RPM"``.

    A comma decimal separator is accepted. Returns None for empty, ``"-"``
    and ``"N/A"`` values or anything without a leading number.
    """
    if text is None:
        return None
    text = text.strip()
    if not text or text in ("-", "N/A"):
        return None
    match = _LEADING_NUMBER.match(text)
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", "."))
    except ValueError:
        return None


def natural_sort_key(name: str) -> tuple[str, int]:
    """Split a trailing number off so ``Core #2`` sorts before ``Core #10``."""
    match = re.search(r"(\d+)(?!.*\d)", name)
    if not match:
        return (name, 0)
    return (name[: match.start()], int(match.group(1)))


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


def classify_sensor(hardware_path: str, name: str, category: str) -> SensorKind | None:
    """
    Classify one LHM leaf sensor.

    Args:
        hardware_path: Space-joined breadcrumb of hardware nodes above the sensor.
        name: Sensor name (leaf text before the colon).
        category: Enclosing category node, e.g. ``"Temperatures"``.

    Returns:
        The sensor kind, or None for categories the monitor does not track.
    """
    if category == "Fans":
        return SensorKind.FAN
    if category != "Temperatures":
        return None

    path = hardware_path.lower()
    lowered = name.lower()
    if _contains_any(path, _MOTHERBOARD_MARKERS):
        return SensorKind.MOTHERBOARD
    if _contains_any(path, _CPU_MARKERS):
        if _contains_any(lowered, _PACKAGE_NAMES):
            return SensorKind.CPU_PACKAGE
        return SensorKind.CPU_CORE
    if _contains_any(path, _GPU_MARKERS):
        if "hot spot" in lowered or "hotspot" in lowered:
            return SensorKind.GPU_HOTSPOT
        return SensorKind.GPU_CORE
    if _contains_any(path, _STORAGE_MARKERS):
        return SensorKind.NVME
    return SensorKind.MOTHERBOARD


def _walk(
    node: dict[str, Any],
    path: list[str],
    category: str,
) -> Iterator[tuple[list[str], str, str, float]]:
    """Yield ``(hardware_path, sensor_name, category, value)`` for every leaf sensor."""
    if not isinstance(node, dict):
        raise MalformedThermalPayload(f"expected an object node, got {type(node).__name__}")

    text = str(node.get("Text") or "").strip()
    raw_value = str(node.get("Value") or "")
    children = node.get("Children") or []
    if not isinstance(children, list):
        raise MalformedThermalPayload(f"'Children' of {text!r} is not a list")

    is_category = text in CATEGORY_NODES
    if is_category:
        category = text

    if raw_value and not children and category:
        value = parse_sensor_value(raw_value)
        if value is not None:
            name = text.split(":", 1)[0].strip()
            yield list(path), name, category, value

    is_hardware = not is_category and bool(text) and not raw_value
    child_path = path + [text] if is_hardware else path
    for child in children:
        yield from _walk(child, child_path, category)


def parse_lhm_payload(payload: Any, now: float) -> ThermalBatch:
    """
    Flatten a decoded LHM ``data.json`` tree into a ThermalBatch.

    The root node (``"Sensor"``) is not part of any hardware path.

    Raises:
        MalformedThermalPayload: If the tree has the wrong shape or holds no sensors.
    """
    if not isinstance(payload, dict):
        raise MalformedThermalPayload("payload root is not an object")

    readings: list[ThermalReading] = []
    for child in payload.get("Children") or []:
        for path, name, category, value in _walk(child, [], ""):
            kind = classify_sensor(" ".join(path), name, category)
            if kind is None:
                continue
            display = name
            if kind is SensorKind.NVME and path:
                display = f"{path[-1]}: {name}"
            readings.append(
                ThermalReading(
                    sensor_id="/".join([*path, name]),
                    name=display,
                    kind=kind,
                    value=value,
                    source="lhm",
                )
            )

    if not readings:
        raise MalformedThermalPayload("no temperature or fan sensors in payload")
    readings.sort(key=lambda r: (_KIND_ORDER[r.kind], natural_sort_key(r.name)))
    return ThermalBatch(readings=tuple(readings), as_of=now)


class LhmThermalAdapter:
    """Polls a LibreHardwareMonitor web server over HTTP."""

    family = SourceFamily.THERMAL

    def __init__(
        self,
        url: str | None = DEFAULT_LHM_URL,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 3.0,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._url = url
        self._auth = (username, password or "") if username else None
        self._timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock

    @property
    def url(self) -> str | None:
        return self._url

    def is_available(self) -> bool:
        return bool(self._url)

    def poll(self) -> SourceResult:
        return self.fetch()

    def fetch(self) -> SourceResult:
        """
        Fetch and parse one thermal batch.

        Transport failures and malformed payloads are logged and reported
        as Unavailable for this cycle; nothing is raised.
        """
        if not self._url:
            return Unavailable("no thermal feed URL configured")
        try:
            payload = self._request()
            batch = parse_lhm_payload(payload, self._clock())
        except MalformedThermalPayload as e:
            logger.warning("Malformed thermal payload from %s: %s", self._url, e)
            return Unavailable(f"malformed payload: {e}")
        except SourceUnavailable as e:
            logger.debug("Thermal feed %s unavailable: %s", self._url, e)
            return Unavailable(str(e))
        return Fresh(batch, batch.as_of)

    def _request(self) -> Any:
        try:
            response = self._session.get(self._url, auth=self._auth, timeout=self._timeout)
            response.raise_for_status()
        except requests.Timeout as e:
            raise SourceTimeout(f"timed out after {self._timeout}s") from e
        except requests.RequestException as e:
            raise SourceUnavailable(f"request failed: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise MalformedThermalPayload(f"invalid JSON: {e}") from e


_LOCAL_CPU_CHIPS = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "cpu-thermal")
_LOCAL_GPU_CHIPS = ("amdgpu", "nouveau", "radeon", "i915")
_LOCAL_STORAGE_CHIPS = ("nvme", "drivetemp")


def classify_local_sensor(chip: str, label: str) -> SensorKind:
    """Classify a psutil ``sensors_temperatures()`` entry by its driver name."""
    chip = chip.lower()
    lowered = label.lower()
    if chip.startswith(_LOCAL_CPU_CHIPS):
        if _contains_any(lowered, _PACKAGE_NAMES + ("package id",)):
            return SensorKind.CPU_PACKAGE
        return SensorKind.CPU_CORE
    if chip.startswith(_LOCAL_GPU_CHIPS):
        if "junction" in lowered or "hotspot" in lowered:
            return SensorKind.GPU_HOTSPOT
        return SensorKind.GPU_CORE
    if chip.startswith(_LOCAL_STORAGE_CHIPS):
        return SensorKind.NVME
    return SensorKind.MOTHERBOARD


class LocalSensorsAdapter:
    """Reads kernel hardware sensors through psutil (Linux and FreeBSD only)."""

    family = SourceFamily.THERMAL

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def is_available(self) -> bool:
        if not hasattr(psutil, "sensors_temperatures"):
            return False
        try:
            return bool(psutil.sensors_temperatures())
        except OSError:
            return False

    def poll(self) -> SourceResult:
        return self.fetch()

    def fetch(self) -> SourceResult:
        try:
            temperatures = psutil.sensors_temperatures()
            fans = psutil.sensors_fans() if hasattr(psutil, "sensors_fans") else {}
        except OSError as e:
            logger.debug("Reading local sensors failed: %s", e)
            return Unavailable(f"local sensors unreadable: {e}")

        readings: list[ThermalReading] = []
        for chip, entries in temperatures.items():
            for i, entry in enumerate(entries):
                if entry.current is None:
                    continue
                label = entry.label or f"{chip} {i}"
                readings.append(
                    ThermalReading(
                        sensor_id=f"{chip}/{label}",
                        name=label,
                        kind=classify_local_sensor(chip, label),
                        value=float(entry.current),
                        source="psutil",
                    )
                )
        for chip, entries in fans.items():
            for i, entry in enumerate(entries):
                label = entry.label or f"{chip} fan {i}"
                readings.append(
                    ThermalReading(
                        sensor_id=f"{chip}/{label}",
                        name=label,
                        kind=SensorKind.FAN,
                        value=float(entry.current),
                        source="psutil",
                    )
                )

        if not readings:
            return Unavailable("no local sensors reported")
        readings.sort(key=lambda r: (_KIND_ORDER[r.kind], natural_sort_key(r.name)))
        now = self._clock()
        return Fresh(ThermalBatch(readings=tuple(readings), as_of=now), now)
