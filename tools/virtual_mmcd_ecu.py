#!/usr/bin/env python3
"""
virtual_mmcd_ecu.py — Standalone Virtual ECU + Byte Sender
===========================================================

A TCP server that answers the MMCD single-byte protocol like a 1G DSM ECU,
plus a sender for poking a real ECU one request at a time.

Useful for:
    - Running the datalogger without a car (``--port socket://127.0.0.1:1920``)
    - Checking a cable/ECU by hand before a logging session
    - Reproducing fault codes and actuator-test responses

The virtual ECU answers:
    - 0x00-0xBF:  [addr, ram[addr]]   (idle-engine values preloaded)
    - 0xCA:       erase stored DTCs, [0xCA, 0x00]
    - 0xF1-0xFC:  actuator tests, [cmd, 0x00] or [cmd, 0xFF] if the
                  engine is running and the test needs it off
    - other bytes >= 0xC0: no reply

Usage:
    # Virtual ECU on TCP 1920 with a stored code 21 (coolant sensor)
    python virtual_mmcd_ecu.py --mode vecu --tcp-port 1920 --dtc-stored 0x0020

    # Then, in another shell
    python mmcd_datalogger.py log --port socket://127.0.0.1:1920

    # Read RPM and coolant from a real ECU
    python virtual_mmcd_ecu.py --mode send --serial /dev/ttyUSB0 --bytes "21 07"

MIT License — Copyright (c) 2026 MMCD Datalogger contributors
"""

from __future__ import annotations
import sys
import time
import socket
import argparse
from pathlib import Path
from typing import Callable, List

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import mmcd_datalogger as mmcd  # noqa: E402


def hex_str(data: bytes) -> str:
    return " ".join(f"{b:02X}" for b in data)


def parse_hex_bytes(text: str) -> bytes:
    """'21 07', '0x21,0x07' or '2107' -> bytes."""
    clean = text.replace(",", " ").replace("0x", "").replace("0X", "")
    return bytes.fromhex(clean.replace(" ", ""))


def build_vecu(args: argparse.Namespace) -> mmcd.VirtualECU:
    vecu = mmcd.VirtualECU(engine_running=args.engine_running)
    vecu.set_dtcs(int(args.dtc_active, 0), int(args.dtc_stored, 0))
    for item in args.set or []:
        addr, value = item.split("=", 1)
        vecu.set_sensor(int(addr, 0), int(value, 0))
    return vecu


# ═══════════════════════════════════════════════════════════════════════
# TCP SERVER (for vECU mode)
# ═══════════════════════════════════════════════════════════════════════

def run_vecu_tcp(vecu: mmcd.VirtualECU, host: str = "127.0.0.1", port: int = 1920):
    """Run the virtual ECU as a TCP server, one client at a time."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((host, port))
    server.listen(1)
    print(f"[vECU] TCP server listening on {host}:{port}")
    print(f"[vECU] Connect with: mmcd log --port socket://{host}:{port}")

    try:
        while True:
            conn, addr = server.accept()
            print(f"[vECU] Client connected from {addr}")
            handle_client(vecu, conn)
    except KeyboardInterrupt:
        print("\n[vECU] Shutting down")
    finally:
        server.close()


def handle_client(vecu: mmcd.VirtualECU, conn: socket.socket,
                  trace: Callable[[str], None] = print) -> int:
    """Serve one connection until it closes. Returns the number of requests handled."""
    handled = 0
    try:
        while True:
            data = conn.recv(1024)
            if not data:
                break
            for b in data:
                resp = vecu.respond(b)
                handled += 1
                if resp:
                    conn.sendall(resp)
                    trace(f"[vECU] RX {b:02X}  TX {hex_str(resp)}")
                else:
                    trace(f"[vECU] RX {b:02X}  (no reply)")
    except (ConnectionResetError, BrokenPipeError):
        trace("[vECU] Client disconnected")
    finally:
        conn.close()
    return handled


# ═══════════════════════════════════════════════════════════════════════
# BYTE SENDER (for talking to a real ECU)
# ═══════════════════════════════════════════════════════════════════════

def send_bytes(port: str, requests: bytes, baud: int = mmcd.DEFAULT_BAUD) -> List[int]:
    """
    Query each sensor address in *requests* through the protocol engine.

    Command bytes are refused here; use ``mmcd test`` / ``mmcd dtc --erase``.
    """
    ecu = mmcd.ECU(mmcd.PySerialTransport(port, baud))
    ecu.connect(probe=False)
    values = []
    try:
        for addr in requests:
            try:
                value = ecu.query(addr)
            except mmcd.ProtocolError as e:
                print(f"  TX {addr:02X}  ✗ {e}")
                continue
            idx = mmcd.find_by_addr(ecu.defs, addr)
            label = ""
            if idx >= 0:
                d = ecu.defs[idx]
                label = f"  {d.slug} = {d.format(value)}"
            print(f"  TX {addr:02X}  RX {addr:02X} {value:02X}{label}")
            values.append(value)
            time.sleep(0.01)
    finally:
        ecu.disconnect()
    return values


# ═══════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(
        description="Virtual MMCD ECU + Byte Sender",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modes:
  vecu   Run as a virtual ECU (TCP server)
  send   Query sensor addresses on a real ECU

Examples:
  python virtual_mmcd_ecu.py --mode vecu --engine-running
  python virtual_mmcd_ecu.py --mode vecu --set 0x21=0x60 --set 0x07=0x40
  python virtual_mmcd_ecu.py --mode send --serial COM3 --bytes "21 07 14"
        """,
    )
    parser.add_argument("--mode", choices=["vecu", "send"], default="vecu",
                        help="Operating mode (default: vecu)")
    parser.add_argument("--serial", type=str, default="COM3",
                        help="Serial port for send mode")
    parser.add_argument("--baud", type=int, default=mmcd.DEFAULT_BAUD,
                        help=f"Baud rate (default: {mmcd.DEFAULT_BAUD})")
    parser.add_argument("--host", type=str, default="127.0.0.1",
                        help="TCP host for vECU mode (default: 127.0.0.1)")
    parser.add_argument("--tcp-port", type=int, default=1920,
                        help="TCP port for vECU mode (default: 1920)")
    parser.add_argument("--engine-running", action="store_true",
                        help="Solenoid tests answer 0xFF (engine running)")
    parser.add_argument("--dtc-active", default="0", help="Active DTC bitmap (e.g. 0x0021)")
    parser.add_argument("--dtc-stored", default="0", help="Stored DTC bitmap")
    parser.add_argument("--set", action="append", metavar="ADDR=VALUE",
                        help="Preset a RAM byte, repeatable")
    parser.add_argument("--bytes", type=str, default=None,
                        help="Hex sensor addresses to query (send mode)")
    args = parser.parse_args()

    if args.mode == "vecu":
        run_vecu_tcp(build_vecu(args), args.host, args.tcp_port)

    elif args.mode == "send":
        if not args.bytes:
            print("ERROR: --bytes is required for send mode")
            sys.exit(1)
        try:
            send_bytes(args.serial, parse_hex_bytes(args.bytes), args.baud)
        except mmcd.MMCDError as e:
            print(f"ERROR: {e}")
            sys.exit(1)


if __name__ == "__main__":
    main()
