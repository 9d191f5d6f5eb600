#!/usr/bin/env python3
"""
mmcd_datalogger.py — MMCD Datalogger for 1G DSM ECUs
=====================================================

Datalogger and diagnostic tool for the 1990-1994 Mitsubishi ECU fitted to
the Eclipse / Talon / Laser (1G DSM).

The ECU talks a half-duplex, single-byte request protocol: send one address
byte, get back the echoed address and one data byte. Addresses 0x00-0xBF are
sensor/RAM reads. Addresses at or above 0xC0 are actuator commands. Sending
an unknown command byte can do anything, so only a fixed whitelist is allowed.

Target Hardware:
    ECU:    1990-94 Mitsubishi 4G63 (1G DSM)
    Bus:    single-wire diagnostic line, 1920 baud 8N1
    Cable:  FTDI/PL2303 USB-serial with a K-line style interface

Architecture:
    Single-file module with CLI backend.
    Transport -> ECU protocol engine -> Sampler -> CSV / .mmcd writers.
    Reads legacy PalmOS MMCd PDB logs for import.
    Virtual ECU transport and simulator for offline testing.

Requires: Python 3.10+, pyserial, rich
Optional: ftd2xx (D2XX transport)

MIT License

Copyright (c) 2026 MMCD Datalogger contributors

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 — IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import os
import csv
import math
import time
import random
import struct
import logging
import argparse
import threading
from pathlib import Path
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, replace
from enum import IntEnum, Enum, auto
from typing import Optional, Callable, List, Tuple, Dict, Sequence, Protocol
from collections import deque

import serial
import serial.tools.list_ports
from rich.logging import RichHandler

# FTDI D2XX (optional)
try:
    import ftd2xx
    D2XX_AVAILABLE = True
except ImportError:
    ftd2xx = None
    D2XX_AVAILABLE = False

# ── Version & Metadata ──
__version__ = "1.1.0"
__app_name__ = "MMCD Datalogger"
__target_ecu__ = "1990-94 Mitsubishi 1G DSM"

# ── Logging Setup ──
LOG_DIR = Path(os.environ.get("MMCD_LOG_DIR") or Path(__file__).resolve().parent / "logs")


def setup_logging(
    name: str = "mmcd",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Logger level (DEBUG captures everything to file).
        console_level: Level for terminal output. WARNING+ by default so the
                       live datalog line is not interleaved with chatter.
        log_dir:       Override log directory (default: LOG_DIR).
        rich_console:  Use RichHandler for the console, plain stderr otherwise.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = Path(log_dir or LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: DEBUG+ including every TX/RX byte ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_fmt)
    logger.addHandler(fh)

    # ── Console handler ──
    if rich_console:
        ch = RichHandler(
            level=console_level,
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    logger.info("=" * 60)
    logger.info("Logger initialized: %s (%s v%s)", name, __app_name__, __version__)
    logger.info("Log file: %s", log_file)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger


def set_console_level(logger: logging.Logger, level: int) -> None:
    """Change the level of the console handler(s) only, leaving file output alone."""
    for h in logger.handlers:
        if not isinstance(h, logging.FileHandler):
            h.setLevel(level)


def add_log_file(logger: logging.Logger, path: str) -> logging.FileHandler:
    """Attach an extra DEBUG file handler at *path* (the CLI --log-file flag)."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(str(path), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(funcName)s:%(lineno)d | %(message)s",
    ))
    logger.addHandler(fh)
    return fh


log = setup_logging()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 — CONSTANTS & PROTOCOL DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════

# ── Serial line ──
DEFAULT_BAUD = 1920                 # original MMCd rate
READ_TIMEOUT_MS = 500

# ── Exchange timing ──
QUERY_TIMEOUT_MS = 500              # 2-byte sensor reply
COMMAND_ECHO_TIMEOUT_MS = 500       # 1-byte command echo
ACTUATOR_TIMEOUT_S = 7.0            # ECU runs the actuator ~6 s before replying
ERASE_TIMEOUT_S = 1.0

# ── Sampler ──
WATCHDOG_THRESHOLD = 20             # consecutive failed cycles before disconnect
EMPTY_INDICES_BACKOFF_S = 0.1
LIVE_POLL_INTERVAL_S = 0.001
SIM_POLL_INTERVAL_S = 0.05
STOP_JOIN_TIMEOUT_S = 5.0

# ── Address space ──
MAX_SENSORS = 32
SENSOR_ADDR_LIMIT = 0xC0            # 0x00-0xBF readable, 0xC0+ are commands
ADDR_NOT_QUERIED = 0xFF             # slot sentinel: never sent on the wire
PROBE_ADDR = 0x21                   # RPM

# ── Diagnostic trouble codes ──
DTC_ACTIVE_LO = 0x38
DTC_ACTIVE_HI = 0x39
DTC_STORED_LO = 0x3B
DTC_STORED_HI = 0x3C
CMD_ERASE_DTC = 0xCA

# ── Command results ──
RESULT_OK = 0x00
RESULT_ENGINE_RUNNING = 0xFF

# Injector duty cycle: min(255, INJP_raw * RPM_raw / 117)
INJD_DIVISOR = 117

COMM_LOG_SIZE = 500

# Loopback / virtual ECU history (recent requests only)
LOOPBACK_TX_HISTORY = 4096
VECU_COMMAND_HISTORY = 256


class UnitSystem(IntEnum):
    """Display units. Stored as a byte in the .mmcd header."""
    METRIC = 0      # Celsius, bar
    ENGLISH = 1     # Fahrenheit, psi
    RAW = 2         # raw decimal value


def parse_unit_system(name: str) -> UnitSystem:
    """Map a user-supplied unit name to a UnitSystem. Unknown names mean metric."""
    name = (name or "").strip().lower()
    if name in ("imperial", "english"):
        return UnitSystem.ENGLISH
    if name in ("raw", "numeric"):
        return UnitSystem.RAW
    return UnitSystem.METRIC


@dataclass(frozen=True)
class ActuatorTest:
    """One whitelisted actuator test command."""
    name: str
    addr: int
    description: str
    engine_off: bool    # solenoids/relays only run with the engine stopped


ACTUATOR_TESTS: Dict[str, ActuatorTest] = {t.name: t for t in [
    ActuatorTest("fuel-pump", 0xF6, "Fuel pump relay", True),
    ActuatorTest("purge", 0xF5, "Canister purge solenoid", True),
    ActuatorTest("pressure", 0xF4, "Pressure solenoid", True),
    ActuatorTest("egr", 0xF3, "EGR solenoid", True),
    ActuatorTest("mvic", 0xF2, "MVIC motor", True),
    ActuatorTest("boost", 0xF1, "Boost solenoid", True),
    ActuatorTest("inj1", 0xFC, "Disable injector #1", False),
    ActuatorTest("inj2", 0xFB, "Disable injector #2", False),
    ActuatorTest("inj3", 0xFA, "Disable injector #3", False),
    ActuatorTest("inj4", 0xF9, "Disable injector #4", False),
    ActuatorTest("inj5", 0xF8, "Disable injector #5", False),
    ActuatorTest("inj6", 0xF7, "Disable injector #6", False),
]}

ACTUATOR_BY_ADDR: Dict[int, ActuatorTest] = {t.addr: t for t in ACTUATOR_TESTS.values()}

# The only bytes >= 0xC0 that may ever be put on the wire.
COMMAND_WHITELIST = frozenset([CMD_ERASE_DTC, *ACTUATOR_BY_ADDR])


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 — SENSOR DEFINITIONS & CONVERSIONS
# ═══════════════════════════════════════════════════════════════════════

ConvertFunc = Callable[[int, UnitSystem], Tuple[float, str]]


def _c_to_f(c: float) -> float:
    return c * 9.0 / 5.0 + 32.0


def _temperature(temp_c: float, units: UnitSystem) -> Tuple[float, str]:
    if units == UnitSystem.ENGLISH:
        temp_f = _c_to_f(temp_c)
        return temp_f, f"{temp_f:.1f}°F"
    return temp_c, f"{temp_c:.1f}°C"


def conv_dec(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    return float(raw), f"{raw}"


def conv_hex(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    return float(raw), f"{raw:02x}"


def conv_flg0(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    """Flags at 0x00: A = AC clutch relay on (bit 0x20 clear)."""
    return float(raw), "A" if raw & 0x20 == 0 else "-"


def conv_flg2(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    """Flags at 0x02, rendered as five positions: T S A N I."""
    flags = (
        "T" if raw & 0x04 == 0 else "-",    # TDC
        "S" if raw & 0x08 else "-",         # power steering
        "A" if raw & 0x10 == 0 else "-",    # AC switch
        "N" if raw & 0x20 == 0 else "-",    # park/neutral
        "I" if raw & 0x80 else "-",         # idle switch
    )
    return float(raw), "".join(flags)


AIR_TEMP_INTERP = bytes([
    0xF4, 0xB0, 0x91, 0x80, 0x74, 0x6A, 0x62, 0x5A,
    0x53, 0x4C, 0x45, 0x3E, 0x35, 0x2B, 0x1D, 0x01,
    0x01,
])

COOLANT_TEMP_INTERP = bytes([
    0xEE, 0xBE, 0xA0, 0x90, 0x84, 0x7B, 0x73, 0x6C,
    0x65, 0x5F, 0x58, 0x51, 0x49, 0x40, 0x33, 0x15,
    0x15,
])


def interp_temperature(raw: int, table: bytes, offset: float) -> float:
    """Linear interpolation over a 17-entry, 16-step thermistor table (°C)."""
    idx, rem = divmod(raw, 16)
    v1 = float(table[idx])
    v2 = float(table[idx + 1])
    return v1 - rem * (v1 - v2) / 16.0 - offset


def conv_airt(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    if units == UnitSystem.RAW:
        return conv_dec(raw, units)
    return _temperature(interp_temperature(raw, AIR_TEMP_INTERP, 60.0), units)


def conv_cool(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    if units == UnitSystem.RAW:
        return conv_dec(raw, units)
    return _temperature(interp_temperature(raw, COOLANT_TEMP_INTERP, 80.0), units)


def conv_egrt(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    if units == UnitSystem.RAW:
        return conv_dec(raw, units)
    return _temperature(-1.5 * raw + 314.27, units)


def conv_batt(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    v = 0.0733 * raw
    return v, f"{v:.1f}V"


def conv_erpm(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    v = 31.25 * raw
    return v, f"{v:.0f}rpm"


def conv_injp(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    v = 0.256 * raw
    return v, f"{v:.2f}ms"


def conv_baro(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    if units == UnitSystem.RAW:
        return conv_dec(raw, units)
    bar = 0.00486 * raw
    if units == UnitSystem.ENGLISH:
        psi = bar * 14.50326
        return psi, f"{psi:.2f}psi"
    return bar, f"{bar:.3f}bar"


def conv_airf(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    v = 6.29 * raw
    return v, f"{v:.1f}Hz"


def conv_thrl(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    v = 100.0 * raw / 255.0
    return v, f"{v:.1f}%"


def conv_ftxx(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    """Fuel trim, 0..200 % with 128 = 100 %."""
    v = 100.0 * raw / 128.0
    return v, f"{v:.1f}%"


def conv_oxyg(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    v = 0.0195 * raw
    return v, f"{v:.3f}V"


def conv_tima(raw: int, units: UnitSystem = UnitSystem.METRIC) -> Tuple[float, str]:
    v = raw - 10.0
    return v, f"{v:.0f}°"


@dataclass(frozen=True)
class SensorDef:
    """One slot of the 32-entry sensor table."""
    addr: int
    slug: str = ""
    description: str = ""
    unit: str = ""
    exists: bool = False
    computed: bool = False
    converter: ConvertFunc = conv_dec

    @property
    def pollable(self) -> bool:
        return self.exists and not self.computed and self.addr != ADDR_NOT_QUERIED

    def format(self, raw: int, units: UnitSystem = UnitSystem.METRIC) -> str:
        return self.converter(raw, units)[1]

    def convert(self, raw: int, units: UnitSystem = UnitSystem.METRIC) -> float:
        return self.converter(raw, units)[0]


def default_definitions() -> List[SensorDef]:
    """
    The 32-slot table of the original MMCd panel.

    Slot indices are part of the .mmcd and PDB formats and must not move.
    """
    defs = [SensorDef(addr=ADDR_NOT_QUERIED)]      # 0: unused
    defs += [
        SensorDef(0x00, "FLG0", "Flags 0 (AC clutch)", "flags", True, converter=conv_flg0),
        SensorDef(0x02, "FLG2", "Flags 2 (TDC/PS/AC/PN/Idle)", "flags", True, converter=conv_flg2),
        SensorDef(0x06, "TIMA", "Timing advance", "deg", True, converter=conv_tima),
        SensorDef(0x07, "COOL", "Coolant temp", "deg", True, converter=conv_cool),
        SensorDef(0x0C, "FTRL", "Fuel trim low", "%", True, converter=conv_ftxx),
        SensorDef(0x0D, "FTRM", "Fuel trim middle", "%", True, converter=conv_ftxx),
        SensorDef(0x0E, "FTRH", "Fuel trim high", "%", True, converter=conv_ftxx),
        SensorDef(0x0F, "FTO2", "O2 feedback trim", "%", True, converter=conv_ftxx),
        SensorDef(0x12, "EGRT", "EGR temp", "deg", True, converter=conv_egrt),
        SensorDef(0x13, "O2-R", "O2 sensor (rear)", "V", True, converter=conv_oxyg),
        SensorDef(0x14, "BATT", "Battery", "V", True, converter=conv_batt),
        SensorDef(0x15, "BARO", "Barometer", "bar", True, converter=conv_baro),
        SensorDef(0x16, "ISC", "ISC position", "%", True, converter=conv_thrl),
        SensorDef(0x17, "TPS", "Throttle position", "%", True, converter=conv_thrl),
        SensorDef(0x1A, "MAFS", "Mass air flow", "Hz", True, converter=conv_airf),
        SensorDef(0x1D, "ACLE", "Accel enrichment", "%", True, converter=conv_thrl),
        SensorDef(0x21, "RPM", "Engine speed", "rpm", True, converter=conv_erpm),
        SensorDef(0x26, "KNCK", "Knock sum", "count", True, converter=conv_dec),
        SensorDef(0x29, "INJP", "Inj pulse width", "ms", True, converter=conv_injp),
        SensorDef(ADDR_NOT_QUERIED, "INJD", "Inj duty cycle", "%", True, True, conv_ftxx),
        SensorDef(0x3A, "AIRT", "Air temp", "deg", True, converter=conv_airt),
        SensorDef(0x3E, "O2-F", "O2 sensor (front)", "V", True, converter=conv_oxyg),
    ]
    # 23-31: spare slots, never polled
    defs += [SensorDef(addr=0x00) for _ in range(len(defs), MAX_SENSORS)]
    return defs


COMMON_SENSOR_SLUGS = ["RPM", "TPS", "COOL", "TIMA", "KNCK", "INJP", "O2-R", "BATT"]


def find_by_slug(defs: Sequence[SensorDef], slug: str) -> int:
    """Index of *slug* (case-insensitive), or -1."""
    slug = slug.strip().upper()
    for i, d in enumerate(defs):
        if d.slug and d.slug.upper() == slug:
            return i
    return -1


def find_by_addr(defs: Sequence[SensorDef], addr: int) -> int:
    for i, d in enumerate(defs):
        if d.exists and d.addr == addr:
            return i
    return -1


def slugs_to_indices(defs: Sequence[SensorDef], slugs: Sequence[str]) -> Tuple[List[int], List[str]]:
    """Resolve slugs to slot indices. Returns (indices, unknown_slugs)."""
    indices: List[int] = []
    unknown: List[str] = []
    for slug in slugs:
        idx = find_by_slug(defs, slug)
        if idx >= 0:
            if idx not in indices:
                indices.append(idx)
        else:
            unknown.append(slug)
    return indices, unknown


def all_pollable_indices(defs: Sequence[SensorDef]) -> List[int]:
    return [i for i, d in enumerate(defs) if d.pollable]


def with_derived_indices(defs: Sequence[SensorDef], indices: Sequence[int]) -> List[int]:
    """Append the INJD slot when both of its sources (RPM, INJP) are selected."""
    result = list(indices)
    rpm, injp, injd = (find_by_slug(defs, s) for s in ("RPM", "INJP", "INJD"))
    if min(rpm, injp, injd) >= 0 and rpm in result and injp in result and injd not in result:
        result.append(injd)
    return result


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 — SAMPLE
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Sample:
    """
    One polling cycle: timestamp, 32-bit presence mask and 32 raw bytes.

    A raw byte is only meaningful when its presence bit is set; absent slots
    read as None, never as zero.
    """
    timestamp_ns: int
    present: int = 0
    raw: bytes = bytes(MAX_SENSORS)

    def __post_init__(self):
        if len(self.raw) != MAX_SENSORS:
            raise ValueError(f"raw must be {MAX_SENSORS} bytes, got {len(self.raw)}")
        if not 0 <= self.present <= 0xFFFFFFFF:
            raise ValueError(f"presence mask out of range: {self.present:#x}")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def empty(cls, timestamp_ns: Optional[int] = None) -> "Sample":
        return cls(time.time_ns() if timestamp_ns is None else timestamp_ns)

    def has(self, idx: int) -> bool:
        return 0 <= idx < MAX_SENSORS and bool(self.present & (1 << idx))

    def value(self, idx: int) -> Optional[int]:
        return self.raw[idx] if self.has(idx) else None

    def with_value(self, idx: int, value: int) -> "Sample":
        if not 0 <= idx < MAX_SENSORS:
            raise IndexError(f"slot {idx} out of range")
        if not 0 <= value <= 0xFF:
            raise ValueError(f"raw value {value} is not a byte")
        raw = bytearray(self.raw)
        raw[idx] = value
        return replace(self, present=self.present | (1 << idx), raw=bytes(raw))

    @property
    def indices(self) -> List[int]:
        return [i for i in range(MAX_SENSORS) if self.present & (1 << i)]

    @property
    def time(self) -> datetime:
        """UTC timestamp."""
        return datetime.fromtimestamp(self.timestamp_ns / 1e9, tz=timezone.utc)

    def converted_values(self, defs: Sequence[SensorDef],
                         units: UnitSystem = UnitSystem.METRIC) -> Dict[str, str]:
        """Formatted values keyed by slug, present slots only."""
        return {defs[i].slug: defs[i].format(self.raw[i], units)
                for i in self.indices if i < len(defs) and defs[i].exists}

    def converted_floats(self, defs: Sequence[SensorDef],
                         units: UnitSystem = UnitSystem.METRIC) -> Dict[str, float]:
        return {defs[i].slug: defs[i].convert(self.raw[i], units)
                for i in self.indices if i < len(defs) and defs[i].exists}


def compute_derivatives(sample: Sample, defs: Sequence[SensorDef]) -> Sample:
    """
    Fill the injector duty-cycle slot from RPM and INJP.

    Only set when both sources are present; idempotent.
    """
    rpm, injp, injd = (find_by_slug(defs, s) for s in ("RPM", "INJP", "INJD"))
    if min(rpm, injp, injd) < 0:
        return sample
    e, p = sample.value(rpm), sample.value(injp)
    if e is None or p is None:
        return sample
    return sample.with_value(injd, min(255, p * e // INJD_DIVISOR))


def present_mask(samples: Sequence[Sample]) -> int:
    mask = 0
    for s in samples:
        mask |= s.present
    return mask


def present_indices(samples: Sequence[Sample]) -> List[int]:
    mask = present_mask(samples)
    return [i for i in range(MAX_SENSORS) if mask & (1 << i)]


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 — DIAGNOSTIC TROUBLE CODES
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DTCCode:
    bit: int
    code: str
    description: str


DTC_TABLE: Tuple[DTCCode, ...] = (
    DTCCode(0, "11", "Oxygen sensor"),
    DTCCode(1, "12", "Intake air flow sensor"),
    DTCCode(2, "13", "Intake air temperature sensor"),
    DTCCode(3, "14", "Throttle position sensor"),
    DTCCode(4, "15", "ISC motor position sensor"),
    DTCCode(5, "21", "Engine coolant temperature sensor"),
    DTCCode(6, "22", "Engine speed sensor"),
    DTCCode(7, "23", "TDC sensor"),
    DTCCode(8, "24", "Vehicle speed sensor"),
    DTCCode(9, "25", "Barometric pressure sensor"),
    DTCCode(10, "31", "Knock sensor"),
    DTCCode(11, "41", "Injector circuit"),
    DTCCode(12, "42", "Fuel pump relay"),
    DTCCode(13, "43", "EGR"),
    DTCCode(14, "44", "Ignition coil"),
    DTCCode(15, "36", "Ignition circuit"),
)


def decode_dtcs(bitmap: int) -> List[DTCCode]:
    """Codes for every set bit of a 16-bit fault bitmap, in bit order."""
    return [c for c in DTC_TABLE if bitmap & (1 << c.bit)]


@dataclass
class DTCResult:
    active_raw: int
    stored_raw: int
    active: List[DTCCode] = field(default_factory=list)
    stored: List[DTCCode] = field(default_factory=list)

    @classmethod
    def from_bitmaps(cls, active_raw: int, stored_raw: int) -> "DTCResult":
        return cls(active_raw, stored_raw, decode_dtcs(active_raw), decode_dtcs(stored_raw))


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 — ERRORS
# ═══════════════════════════════════════════════════════════════════════

class MMCDError(Exception):
    """Base class for all datalogger errors."""


class TransportError(MMCDError):
    """Port unavailable, not open, or I/O failure on the line."""


class ProtocolError(MMCDError):
    """A single exchange failed. The bus is flushed and usable again."""


class AddressRangeError(ProtocolError):
    def __init__(self, addr: int):
        self.addr = addr
        super().__init__(f"address 0x{addr:02X} is not a sensor address (0x00-0x{SENSOR_ADDR_LIMIT - 1:02X})")


class CommandRejectedError(ProtocolError):
    def __init__(self, addr: int):
        self.addr = addr
        super().__init__(f"command 0x{addr:02X} is not whitelisted")


class QueryTimeoutError(ProtocolError):
    def __init__(self, addr: int, received: bytes = b"", stage: str = "reply"):
        self.addr = addr
        self.received = bytes(received)
        self.stage = stage
        got = self.received.hex(" ") or "nothing"
        super().__init__(f"timeout waiting for {stage} to 0x{addr:02X} (got {got})")


class EchoMismatchError(ProtocolError):
    def __init__(self, addr: int, got: int):
        self.addr = addr
        self.got = got
        super().__init__(f"echo mismatch: sent 0x{addr:02X}, got 0x{got:02X}")


class PollError(ProtocolError):
    """Every slot of a polling cycle failed."""

    def __init__(self, failed: int, last: Optional[Exception] = None):
        self.failed = failed
        self.last = last
        super().__init__(f"all {failed} sensor queries failed" + (f" (last: {last})" if last else ""))


class LogFormatError(MMCDError, ValueError):
    """A log file is not in the expected format."""


class SessionError(MMCDError):
    """Operation not possible in the current session."""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 — TRANSPORT LAYER (Serial / D2XX / Loopback)
# ═══════════════════════════════════════════════════════════════════════

class BaseTransport:
    """Abstract byte pipe to the ECU."""

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def send(self, data: bytes) -> int:
        raise NotImplementedError

    def receive(self, size: int) -> bytes:
        """Up to *size* bytes; fewer (possibly none) if the read deadline passes."""
        raise NotImplementedError

    def flush(self) -> None:
        """Discard unread input."""
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError


class PySerialTransport(BaseTransport):
    """
    PySerial transport (COM port / tty / VCP).

    *port* may be any pyserial URL, e.g. ``socket://127.0.0.1:1920`` to reach
    tools/virtual_mmcd_ecu.py.
    """

    def __init__(self, port: str, baud: int = DEFAULT_BAUD, read_timeout_ms: int = READ_TIMEOUT_MS):
        self.port = port
        self.baud = baud
        self.read_timeout_ms = read_timeout_ms
        self._serial: Optional[serial.SerialBase] = None

    def open(self) -> None:
        if self.is_open:
            return
        if self.baud != DEFAULT_BAUD:
            log.warning("Non-standard baud rate %d (ECU talks %d)", self.baud, DEFAULT_BAUD)
        try:
            self._serial = serial.serial_for_url(
                self.port,
                baudrate=self.baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
                timeout=self.read_timeout_ms / 1000.0,
                write_timeout=1.0,
            )
            log.info("Opened %s at %d baud", self.port, self.baud)
        except (serial.SerialException, ValueError) as e:
            self._serial = None
            raise TransportError(f"Failed to open {self.port}: {e}") from e

    def close(self) -> None:
        if self._serial is not None:
            if self._serial.is_open:
                self._serial.close()
                log.info("Closed %s", self.port)
            self._serial = None

    def send(self, data: bytes) -> int:
        if not self.is_open:
            raise TransportError("Port not open")
        try:
            n = self._serial.write(data)
            self._serial.flush()
            return n
        except serial.SerialException as e:
            raise TransportError(f"Write to {self.port} failed: {e}") from e

    def receive(self, size: int) -> bytes:
        if not self.is_open:
            raise TransportError("Port not open")
        try:
            return bytes(self._serial.read(size))
        except serial.SerialException as e:
            raise TransportError(f"Read from {self.port} failed: {e}") from e

    def flush(self) -> None:
        if self.is_open:
            self._serial.reset_input_buffer()

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @staticmethod
    def list_ports() -> List[str]:
        """List available serial ports."""
        return [p.device for p in serial.tools.list_ports.comports()]


class D2XXTransport(BaseTransport):
    """FTDI D2XX direct USB transport (lower latency than the VCP driver)."""

    def __init__(self, device_index: int = 0, baud: int = DEFAULT_BAUD,
                 read_timeout_ms: int = READ_TIMEOUT_MS):
        self.device_index = device_index
        self.baud = baud
        self.read_timeout_ms = read_timeout_ms
        self._device = None

    def open(self) -> None:
        if self._device is not None:
            return
        if not D2XX_AVAILABLE:
            raise TransportError("ftd2xx not installed (pip install ftd2xx)")
        try:
            self._device = ftd2xx.open(self.device_index)
            self._device.setBaudRate(self.baud)
            self._device.setDataCharacteristics(
                ftd2xx.defines.BITS_8,
                ftd2xx.defines.STOP_BITS_1,
                ftd2xx.defines.PARITY_NONE,
            )
            self._device.setFlowControl(ftd2xx.defines.FLOW_NONE, 0, 0)
            self._device.setTimeouts(self.read_timeout_ms, 1000)
            self._device.setLatencyTimer(2)
            self._device.purge(ftd2xx.defines.PURGE_RX | ftd2xx.defines.PURGE_TX)
            log.info("Opened FTDI D2XX device %d at %d baud", self.device_index, self.baud)
        except ftd2xx.DeviceError as e:
            self._device = None
            raise TransportError(f"Failed to open D2XX device {self.device_index}: {e}") from e

    def close(self) -> None:
        if self._device is not None:
            device, self._device = self._device, None
            try:
                device.close()
            except ftd2xx.DeviceError as e:
                log.warning("D2XX close failed: %s", e)

    def send(self, data: bytes) -> int:
        if self._device is None:
            raise TransportError("D2XX device not open")
        try:
            return self._device.write(bytes(data))
        except ftd2xx.DeviceError as e:
            raise TransportError(f"D2XX write failed: {e}") from e

    def receive(self, size: int) -> bytes:
        if self._device is None:
            raise TransportError("D2XX device not open")
        try:
            return bytes(self._device.read(size))
        except ftd2xx.DeviceError as e:
            raise TransportError(f"D2XX read failed: {e}") from e

    def flush(self) -> None:
        if self._device is not None:
            self._device.purge(ftd2xx.defines.PURGE_RX)

    @property
    def is_open(self) -> bool:
        return self._device is not None


class VirtualECU:
    """
    In-memory model of the ECU's byte protocol.

    Sensor addresses reply ``[addr, ram[addr]]``; whitelisted commands reply
    ``[cmd, result]``; anything else at or above 0xC0 gets no reply.
    """

    IDLE_RAM = {
        0x00: 0x20, 0x02: 0x80, 0x06: 20, 0x07: 0x20,
        0x0C: 0x80, 0x0D: 0x80, 0x0E: 0x80, 0x0F: 0x80,
        0x12: 0x70, 0x13: 0x17, 0x14: 0xC1, 0x15: 0xD0,
        0x16: 0x59, 0x17: 0x0A, 0x1A: 0x0B, 0x1D: 0x0D,
        0x21: 0x1B, 0x26: 0x00, 0x29: 0x0C, 0x3A: 0x80, 0x3E: 0x17,
    }

    def __init__(self, engine_running: bool = False):
        self.ram = bytearray(256)
        for addr, value in self.IDLE_RAM.items():
            self.ram[addr] = value
        self.engine_running = engine_running
        self.commands: deque = deque(maxlen=VECU_COMMAND_HISTORY)
        self.query_count = 0
        self._lock = threading.Lock()

    def set_sensor(self, addr: int, value: int) -> None:
        with self._lock:
            self.ram[addr] = value

    def set_dtcs(self, active: int = 0, stored: int = 0) -> None:
        with self._lock:
            self.ram[DTC_ACTIVE_LO] = active & 0xFF
            self.ram[DTC_ACTIVE_HI] = (active >> 8) & 0xFF
            self.ram[DTC_STORED_LO] = stored & 0xFF
            self.ram[DTC_STORED_HI] = (stored >> 8) & 0xFF

    def respond(self, request: int) -> bytes:
        with self._lock:
            if request < SENSOR_ADDR_LIMIT:
                self.query_count += 1
                return bytes([request, self.ram[request]])
            if request not in COMMAND_WHITELIST:
                return b""
            self.commands.append(request)
            if request == CMD_ERASE_DTC:
                self.ram[DTC_STORED_LO] = 0
                self.ram[DTC_STORED_HI] = 0
                return bytes([request, RESULT_OK])
            test = ACTUATOR_BY_ADDR[request]
            if test.engine_off and self.engine_running:
                return bytes([request, RESULT_ENGINE_RUNNING])
            return bytes([request, RESULT_OK])


class LoopbackTransport(BaseTransport):
    """
    In-memory transport backed by a VirtualECU, for tests and demos.

    Fault injection:
        silent_addrs   requests that get no reply at all
        echo_override  request -> wrong echo byte to send back
        dead           no replies for anything
    """

    def __init__(self, ecu: Optional[VirtualECU] = None, empty_read_delay_s: float = 0.002):
        self.ecu = ecu or VirtualECU()
        self.silent_addrs: set = set()
        self.echo_override: Dict[int, int] = {}
        self.dead = False
        self.empty_read_delay_s = empty_read_delay_s
        self.tx_log: deque = deque(maxlen=LOOPBACK_TX_HISTORY)
        self.flush_count = 0
        self._rx_buffer = bytearray()
        self._opened = False
        self._lock = threading.Lock()

    def open(self) -> None:
        self._opened = True
        log.info("Loopback transport opened (virtual ECU)")

    def close(self) -> None:
        self._opened = False

    def send(self, data: bytes) -> int:
        if not self._opened:
            raise TransportError("Port not open")
        with self._lock:
            self.tx_log.append(bytes(data))
            for b in data:
                self._rx_buffer.extend(self._simulate_response(b))
        return len(data)

    def receive(self, size: int) -> bytes:
        if not self._opened:
            raise TransportError("Port not open")
        with self._lock:
            result = bytes(self._rx_buffer[:size])
            del self._rx_buffer[:size]
        if not result:
            time.sleep(self.empty_read_delay_s)
        return result

    def flush(self) -> None:
        with self._lock:
            self.flush_count += 1
            self._rx_buffer.clear()

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def sent_bytes(self) -> bytes:
        """The most recent LOOPBACK_TX_HISTORY writes, concatenated."""
        with self._lock:
            return b"".join(self.tx_log)

    def _simulate_response(self, request: int) -> bytes:
        if self.dead or request in self.silent_addrs:
            return b""
        resp = self.ecu.respond(request)
        if resp and request in self.echo_override:
            resp = bytes([self.echo_override[request]]) + resp[1:]
        return resp


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 — ECU PROTOCOL ENGINE
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class CommConfig:
    """Per-run connection settings (built from CLI args or by the caller)."""
    port: Optional[str] = None
    baud: int = DEFAULT_BAUD
    transport: str = "pyserial"
    units: UnitSystem = UnitSystem.METRIC
    interval_s: float = LIVE_POLL_INTERVAL_S
    probe: bool = True
    device_index: int = 0

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "CommConfig":
        transport = getattr(args, "transport", "pyserial") or "pyserial"
        return cls(
            port=getattr(args, "port", None) or os.environ.get("MMCD_PORT"),
            baud=getattr(args, "baud", DEFAULT_BAUD) or DEFAULT_BAUD,
            transport=transport,
            units=parse_unit_system(getattr(args, "units", "metric")),
            interval_s=SIM_POLL_INTERVAL_S if transport == "sim" else LIVE_POLL_INTERVAL_S,
            probe=not getattr(args, "no_probe", False),
            device_index=getattr(args, "device_index", 0) or 0,
        )


class ECU:
    """
    Request/reply engine for the MMCD protocol.

    Every exchange (request byte out, reply bytes in) runs under one bus lock,
    so concurrent callers never interleave on the wire. Any failure that might
    leave stale bytes in the receive buffer flushes before raising.
    """

    def __init__(self, transport: BaseTransport, defs: Optional[Sequence[SensorDef]] = None,
                 query_timeout_ms: int = QUERY_TIMEOUT_MS,
                 echo_timeout_ms: int = COMMAND_ECHO_TIMEOUT_MS):
        self.transport = transport
        self.defs = list(defs) if defs is not None else default_definitions()
        self.query_timeout_s = query_timeout_ms / 1000.0
        self.echo_timeout_s = echo_timeout_ms / 1000.0
        self._bus_lock = threading.Lock()
        self._callbacks: Dict[str, List[Callable]] = {}

    # ── Event System ──

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback. Events: log."""
        self._callbacks.setdefault(event, []).append(callback)

    def emit(self, event: str, **kwargs) -> None:
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                log.error("Event callback error: %s", e)

    # ── Connection ──

    def connect(self, probe: bool = True) -> None:
        """Open the transport and (optionally) check the ECU answers."""
        self.transport.open()
        if probe:
            try:
                self.probe()
            except ProtocolError:
                self.transport.close()
                raise
        self.emit("log", msg="Connected to ECU", level="success")

    def disconnect(self) -> None:
        self.transport.close()
        self.emit("log", msg="Disconnected", level="info")

    # ── Low-level I/O ──

    def _receive_exact(self, count: int, timeout_s: float) -> bytes:
        """Read until *count* bytes arrive or *timeout_s* elapses."""
        deadline = time.monotonic() + timeout_s
        buf = bytearray()
        while len(buf) < count and time.monotonic() < deadline:
            buf.extend(self.transport.receive(count - len(buf)))
        return bytes(buf)

    # ── Exchanges ──

    def query(self, addr: int) -> int:
        """Read one sensor/RAM byte. Raises ProtocolError subclasses on failure."""
        if not 0 <= addr < SENSOR_ADDR_LIMIT:
            raise AddressRangeError(addr)
        with self._bus_lock:
            self.transport.send(bytes([addr]))
            reply = self._receive_exact(2, self.query_timeout_s)
            log.debug("TX %02X  RX [%d]: %s", addr, len(reply), reply.hex(" "))
            if len(reply) < 2:
                self.transport.flush()
                raise QueryTimeoutError(addr, reply)
            if reply[0] != addr:
                self.transport.flush()
                raise EchoMismatchError(addr, reply[0])
            return reply[1]

    def send_command(self, addr: int, timeout_s: float) -> int:
        """
        Send a whitelisted command and return the ECU's result byte.

        0x00 = OK, 0xFF = precondition not met (engine running).
        Blocks the bus for up to echo timeout + *timeout_s*.
        """
        if addr not in COMMAND_WHITELIST:
            raise CommandRejectedError(addr)
        with self._bus_lock:
            self.transport.flush()
            self.transport.send(bytes([addr]))
            log.debug("TX CMD %02X", addr)

            echo = self._receive_exact(1, self.echo_timeout_s)
            if not echo:
                self.transport.flush()
                raise QueryTimeoutError(addr, echo, stage="command echo")
            if echo[0] != addr:
                self.transport.flush()
                raise EchoMismatchError(addr, echo[0])

            result = self._receive_exact(1, timeout_s)
            if not result:
                self.transport.flush()
                raise QueryTimeoutError(addr, echo, stage="command result")
            log.debug("RX CMD %02X result %02X", addr, result[0])
            return result[0]

    def probe(self) -> None:
        """Flush, then read RPM once. Raises ProtocolError if the ECU is silent."""
        with self._bus_lock:
            self.transport.flush()
        try:
            self.query(PROBE_ADDR)
        except ProtocolError as e:
            raise ProtocolError(f"ECU did not respond to probe: {e}") from e

    def poll(self, indices: Sequence[int], cancel: Optional[threading.Event] = None) -> Sample:
        """
        Query each pollable slot in *indices*, in order, into one Sample.

        A failed slot is left absent. If every queried slot fails the cycle
        raises PollError. TransportError always propagates.

        *cancel* is checked before every query; once set, the cycle ends and
        whatever was read so far is returned, so a stop waits for at most
        one query deadline.
        """
        sample = Sample.empty()
        attempted = failed = 0
        last_error: Optional[ProtocolError] = None
        for idx in indices:
            if cancel is not None and cancel.is_set():
                return compute_derivatives(sample, self.defs)
            if not 0 <= idx < len(self.defs):
                continue
            d = self.defs[idx]
            if not d.pollable:
                continue
            attempted += 1
            try:
                value = self.query(d.addr)
            except ProtocolError as e:
                failed += 1
                last_error = e
                log.debug("Poll %s (0x%02X) failed: %s", d.slug, d.addr, e)
                continue
            sample = sample.with_value(idx, value)
        if attempted and failed == attempted:
            raise PollError(failed, last_error)
        return compute_derivatives(sample, self.defs)

    # ── Diagnostics ──

    def read_dtcs(self) -> DTCResult:
        raw = {}
        for label, addr in (("active low", DTC_ACTIVE_LO), ("active high", DTC_ACTIVE_HI),
                            ("stored low", DTC_STORED_LO), ("stored high", DTC_STORED_HI)):
            try:
                raw[addr] = self.query(addr)
            except ProtocolError as e:
                raise ProtocolError(f"failed to read {label} DTC byte: {e}") from e
        result = DTCResult.from_bitmaps(
            raw[DTC_ACTIVE_LO] | (raw[DTC_ACTIVE_HI] << 8),
            raw[DTC_STORED_LO] | (raw[DTC_STORED_HI] << 8),
        )
        self.emit("log", msg=f"DTCs read: active=0x{result.active_raw:04X} "
                             f"stored=0x{result.stored_raw:04X}", level="info")
        return result

    def erase_dtcs(self) -> None:
        result = self.send_command(CMD_ERASE_DTC, ERASE_TIMEOUT_S)
        if result != RESULT_OK:
            raise ProtocolError(f"unexpected erase DTC response: 0x{result:02X}")
        self.emit("log", msg="Stored DTCs erased", level="success")

    def run_actuator_test(self, name: str) -> Tuple[int, str]:
        """Run a named actuator test. Returns (result_byte, message)."""
        test = ACTUATOR_TESTS.get(name.strip().lower())
        if test is None:
            raise ValueError(f"unknown test command: {name}")
        self.emit("log", msg=f"Actuator test {test.name} (0x{test.addr:02X}): {test.description}",
                  level="info")
        result = self.send_command(test.addr, ACTUATOR_TIMEOUT_S)
        if result == RESULT_OK:
            message = "OK"
        elif result == RESULT_ENGINE_RUNNING:
            message = "engine running, solenoid commands require engine OFF"
        else:
            message = f"unexpected response 0x{result:02X}"
        self.emit("log", msg=f"{test.name}: {message}",
                  level="success" if result == RESULT_OK else "warning")
        return result, message


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 — SIMULATOR
# ═══════════════════════════════════════════════════════════════════════

class Simulator:
    """
    Synthetic ECU data for demo mode.

    Walks a 60 s driving cycle (idle, accelerate, cruise, decelerate, idle)
    advancing 50 ms per poll, with noise on every channel.
    """

    TICK_S = 0.05
    CYCLE_S = 60.0

    def __init__(self, defs: Optional[Sequence[SensorDef]] = None, seed: Optional[int] = None):
        self.defs = list(defs) if defs is not None else default_definitions()
        self.tick = 0.0
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def _targets(self) -> Dict[str, float]:
        pos = math.fmod(self.tick, self.CYCLE_S)
        if 10 <= pos < 20:
            p = (pos - 10) / 10.0
            return dict(rpm=850 + p * 5150, tps=30 + p * 60, cool=82 + p * 8,
                        timing=10 + p * 25, injp=3.0 + p * 15.0)
        if 20 <= pos < 40:
            return dict(rpm=3200, tps=25, cool=90, timing=32, injp=8.0)
        if 40 <= pos < 50:
            p = (pos - 40) / 10.0
            return dict(rpm=3200 - p * 2350, tps=25 - p * 25, cool=90 - p * 8,
                        timing=32 - p * 22, injp=8.0 - p * 5.0)
        return dict(rpm=850, tps=0, cool=82, timing=10, injp=3.0)

    def _noise(self, base: float, amplitude: float) -> float:
        return base + (self._rng.random() - 0.5) * 2 * amplitude

    def _raw_for(self, idx: int, slug: str, t: Dict[str, float]) -> int:
        n = self._noise
        if slug == "RPM":
            v = n(t["rpm"], 30) / 31.25
        elif slug == "TPS":
            v = n(t["tps"], 1) * 255 / 100
        elif slug == "COOL":
            v = n(200 - t["cool"] * 1.2, 2)
        elif slug == "TIMA":
            v = n(t["timing"] + 10, 1)
        elif slug == "KNCK":
            v = self._rng.randint(1, 5) if t["rpm"] > 4000 and self._rng.random() < 0.15 else 0
        elif slug == "INJP":
            v = n(t["injp"] / 0.256, 0.5)
        elif slug == "BATT":
            v = n(14.2 / 0.0733, 0.5)
        elif slug in ("O2-R", "O2-F"):
            v = (0.45 + 0.35 * math.sin(self.tick * 3.0 + idx)) / 0.0195
        elif slug == "BARO":
            v = n(1.01 / 0.00486, 0.3)
        elif slug == "ISC":
            v = n(35 if t["rpm"] < 1000 else 10, 2 if t["rpm"] < 1000 else 1) * 255 / 100
        elif slug == "MAFS":
            v = n(t["rpm"] * 0.08 / 6.29, 1)
        elif slug == "AIRT":
            v = n(128, 2)
        elif slug == "EGRT":
            v = n((314.27 - 150 + t["tps"] * 0.5) / 1.5, 2)
        elif slug in ("FTRL", "FTRM", "FTRH"):
            v = n(128, 3)
        elif slug == "FTO2":
            v = n(128, 5)
        elif slug == "ACLE":
            v = n(t["tps"] * 0.5 * 255 / 100, 3) if t["tps"] > 50 else n(5, 2)
        elif slug == "FLG0":
            v = 0x20
        elif slug == "FLG2":
            v = 0x80 if t["rpm"] < 1000 else 0x00
        else:
            v = n(128, 10)
        return int(min(255.0, max(0.0, v)))

    def poll(self, indices: Sequence[int], cancel: Optional[threading.Event] = None) -> Sample:
        with self._lock:
            self.tick += self.TICK_S
            targets = self._targets()
            sample = Sample.empty()
            for idx in indices:
                if not 0 <= idx < len(self.defs):
                    continue
                d = self.defs[idx]
                if not d.exists or d.computed:
                    continue
                sample = sample.with_value(idx, self._raw_for(idx, d.slug, targets))
            return compute_derivatives(sample, self.defs)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 9 — SAMPLER (background polling loop + watchdog)
# ═══════════════════════════════════════════════════════════════════════

class SamplePoller(Protocol):
    def poll(self, indices: Sequence[int], cancel: Optional[threading.Event] = None) -> Sample: ...


class SamplerState(Enum):
    IDLE = auto()
    RUNNING = auto()
    DISCONNECTED = auto()


@dataclass
class SamplerStats:
    sample_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    current_hz: float = 0.0
    uptime_s: float = 0.0


class Sampler:
    """
    Polls a SamplePoller on a background thread and fans samples out to
    subscribers.

    After WATCHDOG_THRESHOLD consecutive failed cycles the disconnect
    subscribers fire once (state DISCONNECTED) and the loop ends in IDLE. No
    subscriber is called once stop() has been requested.
    """

    def __init__(self, poller: SamplePoller, indices: Sequence[int] = (),
                 interval_s: float = LIVE_POLL_INTERVAL_S,
                 watchdog_threshold: int = WATCHDOG_THRESHOLD,
                 empty_backoff_s: float = EMPTY_INDICES_BACKOFF_S):
        self.poller = poller
        self.interval_s = interval_s
        self.watchdog_threshold = watchdog_threshold
        self.empty_backoff_s = empty_backoff_s

        self._lock = threading.Lock()
        self._indices: List[int] = list(indices)
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._state = SamplerState.IDLE

        self._sample_cbs: List[Callable[[Sample], None]] = []
        self._error_cbs: List[Callable[[Exception], None]] = []
        self._disconnect_cbs: List[Callable[[Exception], None]] = []

        self._sample_count = 0
        self._error_count = 0
        self._consecutive = 0
        self._start_time = 0.0
        self._last_sample: Optional[Sample] = None

    # ── Subscribers ──

    def on_sample(self, callback: Callable[[Sample], None]) -> None:
        with self._lock:
            self._sample_cbs.append(callback)

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        with self._lock:
            self._error_cbs.append(callback)

    def on_disconnect(self, callback: Callable[[Exception], None]) -> None:
        with self._lock:
            self._disconnect_cbs.append(callback)

    # ── Control ──

    def set_indices(self, indices: Sequence[int]) -> None:
        """Replace the slot list; picked up on the next tick."""
        with self._lock:
            self._indices = list(indices)

    @property
    def indices(self) -> List[int]:
        with self._lock:
            return list(self._indices)

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive() and self._state == SamplerState.RUNNING:
                return
            self._stop_event = threading.Event()
            self._sample_count = 0
            self._error_count = 0
            self._consecutive = 0
            self._last_sample = None
            self._start_time = time.monotonic()
            self._state = SamplerState.RUNNING
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event,), name="mmcd-sampler", daemon=True,
            )
            self._thread.start()
        log.info("Sampler started (interval %.3fs)", self.interval_s)

    def stop(self) -> None:
        """Stop the loop. Idempotent; safe from any thread, subscribers included."""
        with self._lock:
            event, thread = self._stop_event, self._thread
            if event is None:
                return
            event.set()
            self._stop_event = None
            self._thread = None
            self._state = SamplerState.IDLE
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=STOP_JOIN_TIMEOUT_S)
            if thread.is_alive():
                log.warning("Sampler thread did not exit within %.0fs", STOP_JOIN_TIMEOUT_S)
        log.info("Sampler stopped")

    # ── Status ──

    @property
    def state(self) -> SamplerState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state == SamplerState.RUNNING

    @property
    def last_sample(self) -> Optional[Sample]:
        with self._lock:
            return self._last_sample

    def stats(self) -> SamplerStats:
        with self._lock:
            uptime = time.monotonic() - self._start_time if self._start_time else 0.0
            hz = self._sample_count / uptime if uptime > 0 else 0.0
            return SamplerStats(self._sample_count, self._error_count,
                                self._consecutive, hz, uptime)

    # ── Loop ──

    def _dispatch(self, event: threading.Event, callbacks: List[Callable], arg) -> None:
        for cb in callbacks:
            if event.is_set():
                return
            try:
                cb(arg)
            except Exception as e:
                log.error("Sampler callback error: %s", e)

    def _run(self, event: threading.Event) -> None:
        while not event.is_set():
            with self._lock:
                indices = list(self._indices)
            if not indices:
                event.wait(self.empty_backoff_s)
                continue

            try:
                sample = self.poller.poll(indices, event)
            except Exception as e:
                if event.is_set():
                    break
                with self._lock:
                    self._error_count += 1
                    self._consecutive += 1
                    consecutive = self._consecutive
                    error_cbs = list(self._error_cbs)
                log.debug("Poll cycle failed (%d consecutive): %s", consecutive, e)
                self._dispatch(event, error_cbs, e)
                if consecutive >= self.watchdog_threshold:
                    self._trip_watchdog(event, e)
                    return
            else:
                if event.is_set():
                    break
                if not sample.present:
                    # nothing in the slot list is queryable (e.g. only INJD)
                    event.wait(self.empty_backoff_s)
                    continue
                with self._lock:
                    self._sample_count += 1
                    self._consecutive = 0
                    self._last_sample = sample
                    sample_cbs = list(self._sample_cbs)
                self._dispatch(event, sample_cbs, sample)

            event.wait(self.interval_s)

    def _trip_watchdog(self, event: threading.Event, error: Exception) -> None:
        """DISCONNECTED while the disconnect subscribers run, then back to IDLE."""
        with self._lock:
            if event.is_set():
                return
            self._state = SamplerState.DISCONNECTED
            disconnect_cbs = list(self._disconnect_cbs)
        log.warning("ECU not responding after %d consecutive errors, disconnecting",
                    self.watchdog_threshold)
        self._dispatch(event, disconnect_cbs, error)
        with self._lock:
            if self._stop_event is event and self._state == SamplerState.DISCONNECTED:
                self._state = SamplerState.IDLE


# ═══════════════════════════════════════════════════════════════════════
# SECTION 10 — LOG FILE CODECS (.mmcd / PDB / CSV)
# ═══════════════════════════════════════════════════════════════════════

# Native .mmcd layout (little-endian):
#   header  magic[4] version u8 units u8 n_indices u16 n_samples u32 reserved[4]
#   indices n_indices bytes
#   records timestamp_ns i64 mask u32 reserved[4] raw[32]
MMCD_MAGIC = b"MMCD"
MMCD_VERSION = 1
MMCD_HEADER = struct.Struct("<4sBBHI4x")
MMCD_RECORD = struct.Struct("<qI4x32s")
MMCD_COUNT_OFFSET = 8
# Timestamps a record may carry: 1970-01-01 up to the end of year 9999
MMCD_MAX_TIMESTAMP_NS = 253402300799 * 1_000_000_000


class BinaryLogWriter:
    """
    Streams samples into a native .mmcd file.

    The sample count in the header is a placeholder until close().
    """

    def __init__(self, path, indices: Sequence[int], units: UnitSystem = UnitSystem.METRIC):
        self.path = Path(path)
        self.indices = list(indices)
        self.units = units
        if len(self.indices) > 0xFFFF:
            raise ValueError("too many slot indices")
        if any(not 0 <= i <= 0xFF for i in self.indices):
            raise ValueError("slot indices must fit in a byte")
        self._count = 0
        self._lock = threading.Lock()
        self._file = open(self.path, "wb")
        self._file.write(MMCD_HEADER.pack(MMCD_MAGIC, MMCD_VERSION, int(units), len(self.indices), 0))
        self._file.write(bytes(self.indices))
        log.info("Binary log opened: %s (%d slots)", self.path, len(self.indices))

    def write_sample(self, sample: Sample) -> None:
        with self._lock:
            if self._file is None:
                raise ValueError("write to closed log")
            self._file.write(MMCD_RECORD.pack(sample.timestamp_ns, sample.present, sample.raw))
            self._count += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def close(self) -> None:
        with self._lock:
            if self._file is None:
                return
            f, self._file = self._file, None
            try:
                f.seek(MMCD_COUNT_OFFSET)
                f.write(struct.pack("<I", self._count))
            finally:
                f.close()
        log.info("Binary log closed: %s (%d samples)", self.path, self._count)

    def __enter__(self) -> "BinaryLogWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


@dataclass
class BinaryLog:
    version: int
    units: int
    indices: List[int]
    sample_count: int
    samples: List[Sample] = field(default_factory=list)


def read_binary_log(path) -> BinaryLog:
    """
    Read a .mmcd file.

    A trailing partial record is ignored. Records whose timestamp is outside
    0..MMCD_MAX_TIMESTAMP_NS are skipped with a warning.
    """
    data = Path(path).read_bytes()
    if len(data) < len(MMCD_MAGIC) or data[:len(MMCD_MAGIC)] != MMCD_MAGIC:
        raise LogFormatError(f"{path}: not an MMCD binary log (bad magic)")
    if len(data) < MMCD_HEADER.size:
        raise LogFormatError(f"{path}: truncated header")
    _, version, units, n_indices, n_samples = MMCD_HEADER.unpack_from(data, 0)
    pos = MMCD_HEADER.size
    if len(data) < pos + n_indices:
        raise LogFormatError(f"{path}: truncated index table")
    indices = list(data[pos:pos + n_indices])
    pos += n_indices

    samples = []
    bad_time = 0
    while pos + MMCD_RECORD.size <= len(data):
        ts, mask, raw = MMCD_RECORD.unpack_from(data, pos)
        pos += MMCD_RECORD.size
        if not 0 <= ts <= MMCD_MAX_TIMESTAMP_NS:
            bad_time += 1
            continue
        samples.append(Sample(ts, mask, raw))
    if bad_time:
        log.warning("%s: skipped %d records with out-of-range timestamps", path, bad_time)
    if pos != len(data):
        log.warning("%s: ignoring %d trailing bytes", path, len(data) - pos)
    return BinaryLog(version, units, indices, n_samples, samples)


# PalmOS PDB (big-endian, 68K)
PDB_HEADER = struct.Struct(">32sHHIIIIII4s4sIIH")     # 78 bytes
PDB_RECORD_ENTRY = struct.Struct(">IB3s")              # 8 bytes
PDB_BLOCK_HEADER = struct.Struct(">4sI")               # "DBLK" + length
PDB_GRAPH_SAMPLE = struct.Struct(">II32s")             # 40 bytes
PDB_TYPE = b"strm"
PDB_CREATOR = b"MMCd"
PDB_BLOCK_TAG = b"DBLK"
PALM_EPOCH_OFFSET = 2082844800      # seconds from 1904-01-01 to 1970-01-01

_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class PDBValidationPolicy:
    """Heuristics for dropping garbage entries from uninitialised Palm memory."""
    min_year: int = 1995
    max_year: int = 2030
    drop_all_ones_mask: bool = True


@dataclass
class PDBLog:
    name: str
    samples: List[Sample] = field(default_factory=list)
    skipped: int = 0

    @property
    def present_mask(self) -> int:
        return present_mask(self.samples)


def _pdb_sample(raw_time: int, mask: int, data: bytes,
                policy: PDBValidationPolicy) -> Optional[Sample]:
    if raw_time == 0 or mask == 0:
        return None
    if policy.drop_all_ones_mask and mask == 0xFFFFFFFF:
        return None
    unix_s = raw_time - PALM_EPOCH_OFFSET
    year = (_UNIX_EPOCH + timedelta(seconds=unix_s)).year
    if not policy.min_year <= year <= policy.max_year:
        return None
    return Sample(unix_s * 1_000_000_000, mask, data)


def parse_pdb(path, policy: Optional[PDBValidationPolicy] = None) -> PDBLog:
    """
    Parse a PalmOS MMCd log database.

    Malformed records and garbage entries are skipped; only a bad header,
    wrong type/creator or a truncated record list is an error.
    """
    policy = policy or PDBValidationPolicy()
    data = Path(path).read_bytes()
    file_size = len(data)
    if file_size < PDB_HEADER.size:
        raise LogFormatError(f"{path}: truncated PDB header")

    fields = PDB_HEADER.unpack_from(data, 0)
    raw_name, db_type, creator, num_records = fields[0], fields[9], fields[10], fields[13]
    if db_type != PDB_TYPE or creator != PDB_CREATOR:
        raise LogFormatError(f"{path}: not an MMCd log file: type={db_type!r} creator={creator!r}")
    name = raw_name.split(b"\x00", 1)[0].decode("latin-1")

    table_end = PDB_HEADER.size + num_records * PDB_RECORD_ENTRY.size
    if file_size < table_end:
        raise LogFormatError(f"{path}: truncated record list ({num_records} records)")
    offsets = [PDB_RECORD_ENTRY.unpack_from(data, PDB_HEADER.size + i * PDB_RECORD_ENTRY.size)[0]
               for i in range(num_records)]

    result = PDBLog(name)
    for i, start in enumerate(offsets):
        end = offsets[i + 1] if i + 1 < len(offsets) else file_size
        end = min(end, file_size)
        if start >= file_size or start >= end:
            log.debug("PDB record %d: empty or out of range (%d..%d)", i, start, end)
            continue
        if end - start < PDB_BLOCK_HEADER.size:
            continue
        tag, _ = PDB_BLOCK_HEADER.unpack_from(data, start)
        if tag != PDB_BLOCK_TAG:
            log.debug("PDB record %d: not a data block (%r)", i, tag)
            continue
        pos = start + PDB_BLOCK_HEADER.size
        while pos + PDB_GRAPH_SAMPLE.size <= end:
            sample = _pdb_sample(*PDB_GRAPH_SAMPLE.unpack_from(data, pos), policy)
            if sample is None:
                result.skipped += 1
            else:
                result.samples.append(sample)
            pos += PDB_GRAPH_SAMPLE.size

    log.info("Parsed PDB '%s': %d samples (%d skipped)", name, len(result.samples), result.skipped)
    return result


class CSVLogWriter:
    """
    Text log: ``Timestamp,Elapsed_ms,<slug>,<slug>_raw,...``.

    Each row is flushed as it is written. Absent slots are empty cells.
    """

    def __init__(self, path, defs: Sequence[SensorDef], indices: Sequence[int],
                 units: UnitSystem = UnitSystem.METRIC):
        self.path = Path(path)
        self.defs = list(defs)
        self.indices = [i for i in indices if 0 <= i < len(self.defs) and self.defs[i].exists]
        self.units = units
        self._count = 0
        self._start_ns: Optional[int] = None
        self._lock = threading.Lock()
        self._file = open(self.path, "w", newline="", encoding="utf-8")
        self._writer = csv.writer(self._file)
        header = ["Timestamp", "Elapsed_ms"]
        for i in self.indices:
            header += [self.defs[i].slug, f"{self.defs[i].slug}_raw"]
        self._writer.writerow(header)
        self._file.flush()
        log.info("CSV log opened: %s (%d columns)", self.path, len(header))

    def write_sample(self, sample: Sample) -> None:
        with self._lock:
            if self._file is None:
                raise ValueError("write to closed log")
            if self._start_ns is None:
                self._start_ns = sample.timestamp_ns
            local = sample.time.astimezone()
            row = [local.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3],
                   str((sample.timestamp_ns - self._start_ns) // 1_000_000)]
            for i in self.indices:
                v = sample.value(i)
                if v is None:
                    row += ["", ""]
                else:
                    row += [self.defs[i].format(v, self.units), str(v)]
            self._writer.writerow(row)
            self._file.flush()
            self._count += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def close(self) -> None:
        with self._lock:
            if self._file is None:
                return
            f, self._file = self._file, None
            f.close()
        log.info("CSV log closed: %s (%d samples)", self.path, self._count)

    def __enter__(self) -> "CSVLogWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def open_log_writer(path, defs: Sequence[SensorDef], indices: Sequence[int],
                    units: UnitSystem = UnitSystem.METRIC):
    """``.mmcd`` -> BinaryLogWriter, anything else -> CSVLogWriter."""
    if Path(path).suffix.lower() == ".mmcd":
        return BinaryLogWriter(path, indices, units)
    return CSVLogWriter(path, defs, indices, units)


def import_pdb(pdb_path, output, fmt: str = "csv", defs: Optional[Sequence[SensorDef]] = None,
               units: UnitSystem = UnitSystem.METRIC,
               policy: Optional[PDBValidationPolicy] = None) -> int:
    """Convert a PDB log to CSV or .mmcd. Returns the number of samples written."""
    defs = list(defs) if defs is not None else default_definitions()
    pdb = parse_pdb(pdb_path, policy)
    if not pdb.samples:
        raise LogFormatError(f"{pdb_path}: no samples in PDB log")
    indices = with_derived_indices(defs, present_indices(pdb.samples))

    if fmt == "mmcd":
        writer = BinaryLogWriter(output, indices, units)
    elif fmt == "csv":
        writer = CSVLogWriter(output, defs, indices, units)
    else:
        raise ValueError(f"unknown output format: {fmt}")
    with writer:
        for s in pdb.samples:
            writer.write_sample(compute_derivatives(s, defs))
        count = writer.count
    log.info("Imported %d samples from %s -> %s", count, pdb_path, output)
    return count


# ═══════════════════════════════════════════════════════════════════════
# SECTION 11 — COMMUNICATION LOG
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LogEntry:
    time: datetime
    level: str
    message: str
    detail: str = ""


_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "success": logging.INFO,
           "warning": logging.WARNING, "error": logging.ERROR}


class CommLog:
    """Bounded ring of recent communication events, mirrored to the logger."""

    def __init__(self, maxlen: int = COMM_LOG_SIZE):
        self._entries: deque = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def add(self, level: str, message: str, detail: str = "") -> LogEntry:
        entry = LogEntry(datetime.now(), level, message, detail)
        with self._lock:
            self._entries.append(entry)
        log.log(_LEVELS.get(level, logging.INFO), "%s%s", message, f" ({detail})" if detail else "")
        return entry

    def entries(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 12 — SESSION
# ═══════════════════════════════════════════════════════════════════════

class Session:
    """
    One connection's worth of state: poller, sampler, active slots, units,
    optional log writer and comm log. Created on connect, closed on disconnect.
    """

    def __init__(self, poller: SamplePoller, *, defs: Sequence[SensorDef],
                 units: UnitSystem = UnitSystem.METRIC, ecu: Optional[ECU] = None,
                 interval_s: float = LIVE_POLL_INTERVAL_S):
        self.defs = list(defs)
        self.units = units
        self.ecu = ecu
        self.poller = poller
        self.comm_log = CommLog()
        self.connected = True
        self._writer = None
        self._writer_lock = threading.Lock()
        self.sampler = Sampler(poller, interval_s=interval_s)
        self.sampler.on_sample(self._write_sample)
        self.sampler.on_disconnect(self._handle_disconnect)
        self.set_active_sensors(COMMON_SENSOR_SLUGS)
        if ecu is not None:
            ecu.on("log", lambda msg, level="info": self.comm_log.add(level, msg))

    # ── Constructors ──

    @classmethod
    def open_transport(cls, transport: BaseTransport, *, probe: bool = True,
                       defs: Optional[Sequence[SensorDef]] = None,
                       units: UnitSystem = UnitSystem.METRIC,
                       interval_s: float = LIVE_POLL_INTERVAL_S) -> "Session":
        defs = list(defs) if defs is not None else default_definitions()
        ecu = ECU(transport, defs)
        ecu.connect(probe=probe)
        session = cls(ecu, defs=defs, units=units, ecu=ecu, interval_s=interval_s)
        session.comm_log.add("info", "Connected", type(transport).__name__)
        return session

    @classmethod
    def open_serial(cls, port: str, baud: int = DEFAULT_BAUD, **kwargs) -> "Session":
        return cls.open_transport(PySerialTransport(port, baud), **kwargs)

    @classmethod
    def open_demo(cls, *, defs: Optional[Sequence[SensorDef]] = None,
                  units: UnitSystem = UnitSystem.METRIC, seed: Optional[int] = None,
                  interval_s: float = SIM_POLL_INTERVAL_S) -> "Session":
        defs = list(defs) if defs is not None else default_definitions()
        session = cls(Simulator(defs, seed), defs=defs, units=units, interval_s=interval_s)
        session.comm_log.add("info", "Demo mode (simulated ECU)")
        return session

    @property
    def demo(self) -> bool:
        return self.ecu is None

    # ── Sensors ──

    def set_active_sensors(self, slugs: Sequence[str]) -> List[int]:
        indices, unknown = slugs_to_indices(self.defs, slugs)
        for slug in unknown:
            log.warning("Unknown sensor: %s", slug)
        indices = with_derived_indices(self.defs, indices)
        self.sampler.set_indices(indices)
        return indices

    @property
    def active_indices(self) -> List[int]:
        return self.sampler.indices

    # ── Monitoring ──

    def start_monitoring(self, on_sample: Optional[Callable[[Sample], None]] = None) -> None:
        if not self.connected:
            raise SessionError("session is disconnected")
        if on_sample is not None:
            self.sampler.on_sample(on_sample)
        self.sampler.start()

    def stop_monitoring(self) -> None:
        self.sampler.stop()

    def stats(self) -> SamplerStats:
        return self.sampler.stats()

    # ── File logging ──

    def start_logging(self, path) -> Path:
        self.stop_logging()
        writer = open_log_writer(path, self.defs, self.active_indices, self.units)
        with self._writer_lock:
            self._writer = writer
        self.comm_log.add("info", "Logging started", str(path))
        return Path(path)

    def stop_logging(self) -> int:
        with self._writer_lock:
            writer, self._writer = self._writer, None
        if writer is None:
            return 0
        writer.close()
        self.comm_log.add("info", "Logging stopped", f"{writer.count} samples")
        return writer.count

    @property
    def logging(self) -> bool:
        with self._writer_lock:
            return self._writer is not None

    def _write_sample(self, sample: Sample) -> None:
        with self._writer_lock:
            writer = self._writer
            if writer is None:
                return
            try:
                writer.write_sample(sample)
            except (OSError, ValueError) as e:
                self._writer = None
                self.comm_log.add("error", "Log write failed, logging stopped", str(e))
                writer.close()

    def _handle_disconnect(self, error: Exception) -> None:
        self.connected = False
        self.comm_log.add("error", "ECU not responding, disconnected", str(error))
        self.stop_logging()

    # ── Diagnostics ──

    def _require_ecu(self) -> ECU:
        if self.ecu is None:
            raise SessionError("not available in demo mode")
        return self.ecu

    def read_dtcs(self) -> DTCResult:
        return self._require_ecu().read_dtcs()

    def erase_dtcs(self) -> None:
        self._require_ecu().erase_dtcs()

    def run_actuator_test(self, name: str) -> Tuple[int, str]:
        return self._require_ecu().run_actuator_test(name)

    # ── Teardown ──

    def close(self) -> None:
        self.stop_monitoring()
        self.stop_logging()
        if self.ecu is not None and self.ecu.transport.is_open:
            self.ecu.disconnect()
        if self.connected:
            self.connected = False
            self.comm_log.add("info", "Session closed")

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 13 — CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

REVIEW_ROW_LIMIT = 50


def cli_log_callback(msg: str, level: str = "info") -> None:
    """Print log messages to console."""
    prefix = {"info": "  ", "warning": "⚠ ", "error": "✗ ", "success": "✓ ", "debug": "  "}
    print(f"{prefix.get(level, '  ')}{msg}")


def confirm_prompt(question: str) -> bool:
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def build_transport(config: CommConfig) -> BaseTransport:
    if config.transport == "loopback":
        return LoopbackTransport()
    if config.transport == "d2xx":
        return D2XXTransport(config.device_index, config.baud)
    if not config.port:
        raise SessionError("--port is required (or set MMCD_PORT)")
    return PySerialTransport(config.port, config.baud)


def open_session(config: CommConfig) -> Session:
    if config.transport == "sim":
        return Session.open_demo(units=config.units, interval_s=config.interval_s)
    return Session.open_transport(build_transport(config), probe=config.probe,
                                  units=config.units, interval_s=config.interval_s)


def print_sensor_table(defs: Sequence[SensorDef]) -> None:
    print(f"  {'Idx':>3}  {'Slug':<5} {'Addr':<5} {'Unit':<6} Description")
    for i, d in enumerate(defs):
        if not d.exists:
            continue
        addr = "calc" if d.computed else f"0x{d.addr:02X}"
        print(f"  {i:>3}  {d.slug:<5} {addr:<5} {d.unit:<6} {d.description}")
    print(f"\n  Common set: {' '.join(COMMON_SENSOR_SLUGS)}")


def print_dtcs(result: DTCResult) -> None:
    for title, codes, raw in (("Active", result.active, result.active_raw),
                              ("Stored", result.stored, result.stored_raw)):
        print(f"=== {title} DTCs ===")
        if not codes:
            print(f"  No {title.lower()} faults")
        for c in codes:
            print(f"  Code {c.code}: {c.description}")
        print(f"  (raw: 0x{raw:04X})\n")


def print_actuator_tests() -> None:
    print("Available actuator test commands:\n")
    print("  Solenoids/Relays (engine OFF only):")
    for t in ACTUATOR_TESTS.values():
        if t.engine_off:
            print(f"    {t.name:<12}  0x{t.addr:02X}  {t.description}")
    print("\n  Injector Disable (engine running):")
    for t in ACTUATOR_TESTS.values():
        if not t.engine_off:
            print(f"    {t.name:<12}  0x{t.addr:02X}  {t.description}")
    print("\nUsage: mmcd test --command <name>")


def review_file(path: str, defs: Sequence[SensorDef], units: UnitSystem) -> None:
    """Print a summary and the first rows of a .mmcd, PDB or CSV log."""
    suffix = Path(path).suffix.lower()
    if suffix == ".csv":
        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        if not rows:
            raise LogFormatError(f"{path}: empty CSV file")
        print(f"Log file: {path}\nColumns: {len(rows[0])}\n")
        for row in rows[:REVIEW_ROW_LIMIT + 1]:
            print("  " + "  ".join(row))
        total = len(rows) - 1
    else:
        if suffix == ".pdb":
            pdb = parse_pdb(path)
            samples = pdb.samples
            print(f"PDB log: {path}\nName: {pdb.name}\nSkipped entries: {pdb.skipped}")
        else:
            blog = read_binary_log(path)
            samples = blog.samples
            units = UnitSystem(blog.units) if blog.units in set(UnitSystem) else units
            print(f"MMCD log: {path}\nVersion: {blog.version}  Units: {units.name.lower()}  "
                  f"Header count: {blog.sample_count}")
        if samples:
            span = (samples[-1].timestamp_ns - samples[0].timestamp_ns) / 1e9
            print(f"Samples: {len(samples)}  Span: {span:.1f}s  "
                  f"{samples[0].time:%Y-%m-%d %H:%M:%S} -> {samples[-1].time:%H:%M:%S} UTC\n")
        for s in samples[:REVIEW_ROW_LIMIT]:
            values = compute_derivatives(s, defs).converted_values(defs, units)
            print(f"  {s.time:%H:%M:%S.%f}"[:-3] + "  " +
                  "  ".join(f"{k}={v}" for k, v in values.items()))
        total = len(samples)
    if total > REVIEW_ROW_LIMIT:
        print(f"\n... showing first {REVIEW_ROW_LIMIT} of {total} rows")
    else:
        print(f"\n{total} rows total")


def _live_line(sample: Sample, defs: Sequence[SensorDef], units: UnitSystem) -> None:
    values = sample.converted_values(defs, units)
    print("\r  " + "  ".join(f"{k}={v}" for k, v in values.items()) + "   ", end="", flush=True)


def run_log_command(args: argparse.Namespace, session: Session) -> int:
    slugs = [s for s in (args.sensors or "").split(",") if s.strip()]
    if args.all_sensors or [s.strip().lower() for s in slugs] == ["all"]:
        slugs =[session.defs[i].slug for i in all_pollable_indices(session.defs)]
    indices = session.set_active_sensors(slugs or COMMON_SENSOR_SLUGS)
    if not indices:
        print("✗ No valid sensors selected")
        return 1

    out = args.output or str(LOG_DIR / f"mmcd_{datetime.now():%Y%m%d_%H%M%S}.csv")
    session.start_logging(out)
    print(f"Logging {' '.join(session.defs[i].slug for i in indices)} → {out}")
    print("Press Ctrl+C to stop...")

    on_sample = None if args.no_display else (lambda s: _live_line(s, session.defs, session.units))
    session.start_monitoring(on_sample)
    deadline = time.monotonic() + args.duration if args.duration else None
    try:
        while session.sampler.is_running:
            if deadline is not None and time.monotonic() >= deadline:
                break
            time.sleep(0.2)
    finally:
        session.stop_monitoring()
        count = session.stop_logging()
        stats = session.stats()
        print(f"\n\n{count} samples written, {stats.error_count} errors, "
              f"{stats.current_hz:.1f} Hz")
    if not session.connected:
        print("✗ ECU stopped responding")
        return 1
    return 0


def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface."""
    defs = default_definitions()
    units = parse_unit_system(getattr(args, "units", "metric"))

    try:
        # ── Offline commands ──
        if args.command == "about":
            print(f"{__app_name__} v{__version__}")
            print(f"Target: {__target_ecu__}")
            print("Datalogger and diagnostics for the MMCD single-byte ECU protocol.")
            print("License: MIT")
            return 0

        if args.command == "ports":
            ports = PySerialTransport.list_ports()
            if ports:
                print("Available ports:")
                for p in ports:
                    print(f"  {p}")
            else:
                print("No serial ports found")
            return 0

        if args.command == "sensors":
            print_sensor_table(defs)
            return 0

        if args.command == "import":
            fmt = args.format
            output = args.output or str(Path(args.file).with_suffix(f".{fmt}"))
            count = import_pdb(args.file, output, fmt, defs, units)
            print(f"✓ Imported {count} samples → {output}")
            return 0

        if args.command == "review":
            review_file(args.file, defs, units)
            return 0

        if args.command == "test" and not args.test_command:
            print_actuator_tests()
            return 0

        # ── ECU commands ──
        config = CommConfig.from_args(args)
        print(f"\n{__app_name__} v{__version__}")
        print("Connecting...")
        session = open_session(config)
        if session.ecu is not None:
            session.ecu.on("log", cli_log_callback)
    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        return 130
    except MMCDError as e:
        print(f"✗ Error: {e}")
        log.debug("CLI error", exc_info=True)
        return 1
    except (OSError, ValueError, OverflowError) as e:
        print(f"✗ Error: {e}")
        log.exception("CLI error")
        return 1

    try:
        if args.command == "log":
            return run_log_command(args, session)

        elif args.command == "dtc":
            print_dtcs(session.read_dtcs())
            if args.erase:
                if not (args.yes or confirm_prompt("Erase all stored DTCs?")):
                    print("Cancelled.")
                    return 0
                print("Erasing DTCs...")
                session.erase_dtcs()
                print("✓ done")
            return 0

        elif args.command == "test":
            test = ACTUATOR_TESTS.get(args.test_command.lower())
            if test is None:
                print(f"✗ Unknown test command: {args.test_command}")
                return 1
            print(f"Sending: {test.name} (0x{test.addr:02X}): {test.description}")
            print("Waiting for ECU response (~6 seconds)...")
            result, message = session.run_actuator_test(test.name)
            print(f"ECU response: 0x{result:02X} ({message})")
            return 0 if result == RESULT_OK else 1

        else:
            print(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        return 130
    except MMCDError as e:
        print(f"\n✗ Error: {e}")
        log.debug("CLI error", exc_info=True)
        return 1
    except Exception as e:
        print(f"\n✗ Error: {e}")
        log.exception("CLI error")
        return 1
    finally:
        session.close()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 14 — ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mmcd",
        description=f"{__app_name__} v{__version__} for {__target_ecu__} datalogger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s log --port /dev/ttyUSB0                     # Log common sensors to CSV
  %(prog)s log --port COM3 --sensors RPM,TPS -o run.mmcd
  %(prog)s log --transport sim --duration 10           # Demo data, no ECU
  %(prog)s dtc --port COM3 --erase                     # Read + erase fault codes
  %(prog)s test --port COM3 --command fuel-pump        # Actuator test
  %(prog)s import --file MMCd-Log.pdb --format mmcd    # Convert PalmOS log
  %(prog)s review --file run.mmcd                      # Summarise a log
  %(prog)s sensors                                     # Sensor table
  %(prog)s ports                                       # List serial ports
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    log_p = subparsers.add_parser("log", help="Datalog sensors until Ctrl+C")
    log_p.add_argument("--sensors", "-s", help="Comma-separated sensor slugs or 'all' (default: common set)")
    log_p.add_argument("--all", dest="all_sensors", action="store_true", help="Log every pollable sensor")
    log_p.add_argument("--output", "-o", help="Output file (.csv or .mmcd)")
    log_p.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    log_p.add_argument("--no-display", action="store_true", help="Do not print the live value line")

    dtc_p = subparsers.add_parser("dtc", help="Read (and optionally erase) trouble codes")
    dtc_p.add_argument("--erase", action="store_true", help="Erase stored DTCs after reading")

    test_p = subparsers.add_parser("test", help="List or run actuator tests")
    test_p.add_argument("--command", "-c", dest="test_command", help="Actuator test name")

    import_p = subparsers.add_parser("import", help="Convert a PalmOS MMCd .pdb log")
    import_p.add_argument("--file", "-f", required=True, help="PDB file to import")
    import_p.add_argument("--output", "-o", help="Output path (default: input name + format)")
    import_p.add_argument("--format", choices=["csv", "mmcd"], default="csv", help="Output format")

    review_p = subparsers.add_parser("review", help="Summarise a .mmcd, .pdb or .csv log")
    review_p.add_argument("--file", "-f", required=True, help="Log file to review")

    sensors_p = subparsers.add_parser("sensors", help="Show the sensor table")
    ports_p = subparsers.add_parser("ports", help="List available serial ports")
    about_p = subparsers.add_parser("about", help="Show version information")

    # Connection options
    for sub in [log_p, dtc_p, test_p]:
        sub.add_argument("--port", "-p", default=os.environ.get("MMCD_PORT"),
                         help="Serial port or pyserial URL (default: $MMCD_PORT)")
        sub.add_argument("--baud", "-b", type=int, default=DEFAULT_BAUD,
                         help=f"Baud rate (default: {DEFAULT_BAUD})")
        sub.add_argument("--transport", choices=["pyserial", "d2xx", "loopback", "sim"],
                         default="pyserial", help="Transport (sim = simulated data, log only)")
        sub.add_argument("--device-index", type=int, default=0, help="FTDI device index (for D2XX)")
        sub.add_argument("--no-probe", action="store_true", help="Skip the RPM probe on connect")
        sub.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    # Shared options
    for sub in [log_p, dtc_p, test_p, import_p, review_p, sensors_p, ports_p, about_p]:
        sub.add_argument("--units", "-u", default="metric",
                         help="metric | english (imperial) | raw (numeric)")
        sub.add_argument("--verbose", "-v", action="store_true", help="Debug output on console")
        sub.add_argument("--log-file", help="Also write the debug log to this file")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0
    if args.verbose:
        set_console_level(log, logging.DEBUG)
    if args.log_file:
        add_log_file(log, args.log_file)
    if getattr(args, "transport", None) == "sim" and args.command != "log":
        print("✗ --transport sim only supports the log command")
        return 1
    return run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
