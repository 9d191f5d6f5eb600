"""
conftest.py — Shared fixtures for mmcd_datalogger tests.
"""
import sys
import time
import struct
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the parent directory is on sys.path so we can import the main module
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import mmcd_datalogger as mmcd  # noqa: E402


# ── Helpers ──

def wait_for(predicate, timeout: float = 5.0, interval: float = 0.005) -> bool:
    """Poll *predicate* until it is truthy or *timeout* passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def palm_time(year: int, month: int = 6, day: int = 1) -> int:
    """PalmOS seconds-since-1904 for a UTC date."""
    unix = int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())
    return unix + mmcd.PALM_EPOCH_OFFSET


def graph_sample(t: int, mask: int, data: bytes = bytes(32)) -> bytes:
    return struct.pack(">II32s", t, mask, data)


def dblk(*samples: bytes, tag: bytes = b"DBLK") -> bytes:
    body = b"".join(samples)
    return tag + struct.pack(">I", len(body)) + body


def build_pdb(records, name: bytes = b"MMCd Log 1", db_type: bytes = b"strm",
              creator: bytes = b"MMCd", offsets=None) -> bytes:
    """Assemble a PalmOS PDB image from record bodies (offsets may be overridden)."""
    n = len(records)
    header = struct.pack(">32sHHIIIIII4s4sIIH", name, 0, 1, 0, 0, 0, 0, 0, 0,
                         db_type, creator, 0, 0, n)
    base = len(header) + 8 * n
    entries, body = b"", b""
    for i, rec in enumerate(records):
        offset = offsets[i] if offsets is not None else base + len(body)
        entries += struct.pack(">IB3s", offset, 0, i.to_bytes(3, "big"))
        body += rec
    return header + entries + body


class FakePoller:
    """SamplePoller whose failures are scripted by call number (1-based)."""

    def __init__(self, fail_when=lambda n: False):
        self.fail_when = fail_when
        self.calls = 0
        self.indices_seen = []
        self._lock = threading.Lock()

    def poll(self, indices, cancel=None):
        with self._lock:
            self.calls += 1
            n = self.calls
            self.indices_seen.append(list(indices))
        if self.fail_when(n):
            raise mmcd.PollError(len(indices))
        return mmcd.Sample.empty().with_value(indices[0], n % 256)


# ── Fixtures ──

@pytest.fixture
def defs():
    return mmcd.default_definitions()


@pytest.fixture
def virtual_ecu() -> mmcd.VirtualECU:
    return mmcd.VirtualECU()


@pytest.fixture
def loopback(virtual_ecu) -> mmcd.LoopbackTransport:
    """An open LoopbackTransport wired to a fresh VirtualECU."""
    t = mmcd.LoopbackTransport(virtual_ecu)
    t.open()
    return t


@pytest.fixture
def ecu(loopback, defs) -> mmcd.ECU:
    """ECU on the loopback with short timeouts so failure paths run fast."""
    return mmcd.ECU(loopback, defs, query_timeout_ms=40, echo_timeout_ms=40)


@pytest.fixture
def pdb_path(tmp_path) -> Path:
    """A PDB with two data records, one junk record and a few garbage samples."""
    rpm_data = bytearray(32)
    rpm_data[17] = 0x40     # RPM
    rpm_data[19] = 0x20     # INJP
    rpm_data[4] = 0x20      # COOL
    mask = (1 << 17) | (1 << 19) | (1 << 4)
    rec1 = dblk(
        graph_sample(palm_time(2004, 6, 1), mask, bytes(rpm_data)),
        graph_sample(palm_time(2004, 6, 1) + 1, mask, bytes(rpm_data)),
        graph_sample(0, mask),                       # empty time
        graph_sample(palm_time(2004), 0),            # empty mask
    )
    rec2 = b"JUNK" + bytes(60)
    rec3 = dblk(
        graph_sample(palm_time(2004, 6, 2), 1 << 14, bytes([0x80] * 32)),
        graph_sample(palm_time(2004), 0xFFFFFFFF),   # impossible mask
        graph_sample(palm_time(1980), 1 << 14),      # garbage timestamp
    )
    p = tmp_path / "MMCd-Log.pdb"
    p.write_bytes(build_pdb([rec1, rec2, rec3]))
    return p
