#!/usr/bin/env python3
"""Tests for tools/virtual_mmcd_ecu.py (TCP virtual ECU + byte sender)."""
import sys
import socket
import argparse
import threading
import importlib.util
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import mmcd_datalogger as mmcd

tool_path = Path(__file__).resolve().parent.parent / "tools" / "virtual_mmcd_ecu.py"
spec = importlib.util.spec_from_file_location("virtual_mmcd_ecu", tool_path)
vtool = importlib.util.module_from_spec(spec)
sys.modules[spec.name] = vtool
spec.loader.exec_module(vtool)


def _vecu_args(**overrides) -> argparse.Namespace:
    values = dict(engine_running=False, dtc_active="0", dtc_stored="0", set=None)
    values.update(overrides)
    return argparse.Namespace(**values)


class TestHelpers:

    @pytest.mark.parametrize("text", ["21 07", "0x21,0x07", "2107", "0X21 0x07"])
    def test_parse_hex_bytes(self, text):
        assert vtool.parse_hex_bytes(text) == b"\x21\x07"

    def test_hex_str(self):
        assert vtool.hex_str(b"\x21\x1b") == "21 1B"

    def test_build_vecu(self):
        vecu = vtool.build_vecu(_vecu_args(engine_running=True, dtc_stored="0x0020",
                                           set=["0x21=0x60", "7=64"]))
        assert vecu.engine_running
        assert vecu.ram[0x21] == 0x60
        assert vecu.ram[0x07] == 64
        assert vecu.ram[mmcd.DTC_STORED_LO] == 0x20


class TestHandleClient:

    def test_replies_per_request_byte(self):
        vecu = mmcd.VirtualECU()
        server_end, client_end = socket.socketpair()
        traces = []
        result = {}
        t = threading.Thread(
            target=lambda: result.update(n=vtool.handle_client(vecu, server_end, traces.append)),
        )
        t.start()
        client_end.sendall(b"\x21\xCA\xC5")
        client_end.shutdown(socket.SHUT_WR)
        received = b""
        client_end.settimeout(2.0)
        while True:
            chunk = client_end.recv(64)
            if not chunk:
                break
            received += chunk
        client_end.close()
        t.join(timeout=2)

        assert received == b"\x21\x1B\xCA\x00"
        assert result["n"] == 3
        assert list(vecu.commands) == [0xCA]
        assert any("no reply" in line for line in traces)

    def test_serves_protocol_engine_over_socket_url(self):
        vecu = mmcd.VirtualECU()
        vecu.set_dtcs(active=0x0001)
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]

        def serve():
            conn, _ = server.accept()
            vtool.handle_client(vecu, conn, trace=lambda line: None)

        t = threading.Thread(target=serve, daemon=True)
        t.start()
        ecu = mmcd.ECU(mmcd.PySerialTransport(f"socket://127.0.0.1:{port}"))
        try:
            ecu.connect()
            assert ecu.query(0x07) == 0x20
            assert [c.code for c in ecu.read_dtcs().active] == ["11"]
            assert ecu.run_actuator_test("inj2") == (0x00, "OK")
        finally:
            ecu.disconnect()
            t.join(timeout=2)
            server.close()
