#!/usr/bin/env python3
"""
Loopback reference participant.

A minimal native participant speaking a toy line protocol over plain TCP.
It exercises the harness end to end without a real protocol stack: the
listener publishes its address through the rendezvous store, the dialer
reads it, negotiates security and muxer names, and echoes the probe.

Set LOOPBACK_FAULT to inject a failure:
    no-publish   listener never writes its record
    corrupt      listener flips the first byte of the echo
    refuse       listener publishes the address of a closed socket
    reject-muxer listener refuses every multiplexer
"""

import hashlib
import json
import os
import socket
import struct
import sys
import time
import logging

from interop_harness.rendezvous import RendezvousStore, RendezvousRecord
from interop_harness.utils.constants import (
    ENV_ROLE, ENV_TRANSPORT, ENV_SECURITY, ENV_MUXER, ENV_CASE_ID, ENV_REDIS_URL,
    ENV_LISTENER_KEY, ENV_PROBE, ENV_TIMEOUT,
)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger("loopback")


def emit(event: str, **fields) -> None:
    print(json.dumps({"event": event, **fields}), flush=True)


def recv_exact(conn: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            raise ConnectionError(f"peer closed after {len(data)} of {size} bytes")
        data += chunk
    return data


def recv_line(conn: socket.socket) -> str:
    data = b""
    while not data.endswith(b"\n"):
        chunk = conn.recv(1)
        if not chunk:
            raise ConnectionError("peer closed during negotiation")
        data += chunk
    return data.decode("utf-8").strip()


def run_listener(store: RendezvousStore, fault: str, timeout: float) -> int:
    case_id = os.environ[ENV_CASE_ID]
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    server.settimeout(timeout)
    port = server.getsockname()[1]
    peer_id = "loopback-" + hashlib.sha256(case_id.encode("utf-8")).hexdigest()[:16]
    multiaddr = f"/ip4/127.0.0.1/tcp/{port}/p2p/{peer_id}"

    if fault == "no-publish":
        logger.info("Not publishing a rendezvous record")
        emit("ready")
        time.sleep(timeout)
        return 0

    if fault == "refuse":
        # Advertise a port nobody is listening on
        server.close()

    store.publish(os.environ[ENV_LISTENER_KEY], RendezvousRecord(
        test_case_id=case_id,
        role="listener",
        listen_multiaddr=multiaddr,
        peer_identity=peer_id,
        ready_timestamp=time.time(),
    ))
    logger.info(f"Listening on {multiaddr}")
    emit("ready", multiaddr=multiaddr)

    if fault == "refuse":
        time.sleep(timeout)
        return 0

    conn, _ = server.accept()
    with conn:
        security, muxer = recv_line(conn).split()[1:3]
        if security != os.environ[ENV_SECURITY]:
            conn.sendall(f"NO security {security}\n".encode("utf-8"))
            return 1
        if fault == "reject-muxer" or muxer != os.environ[ENV_MUXER]:
            conn.sendall(f"NO muxer {muxer}\n".encode("utf-8"))
            return 1
        conn.sendall(b"OK\n")

        (size,) = struct.unpack(">I", recv_exact(conn, 4))
        payload = bytearray(recv_exact(conn, size))
        if fault == "corrupt" and payload:
            payload[0] ^= 0xFF
        conn.sendall(struct.pack(">I", len(payload)) + bytes(payload))
    server.close()
    return 0


def run_dialer(store: RendezvousStore, timeout: float) -> int:
    record = store.await_record(os.environ[ENV_LISTENER_KEY], timeout)
    emit("ready")
    parts = record.listen_multiaddr.strip("/").split("/")
    host, port = parts[1], int(parts[3])
    probe = bytes.fromhex(os.environ[ENV_PROBE])

    start = time.perf_counter()
    try:
        conn = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        emit("error", stage="dial", message=str(e))
        return 1
    try:
        return exchange(conn, probe, start)
    except OSError as e:
        emit("error", stage="stream", message=str(e))
        return 1
    finally:
        conn.close()


def exchange(conn: socket.socket, probe: bytes, start: float) -> int:
    conn.sendall(f"HELLO {os.environ[ENV_SECURITY]} {os.environ[ENV_MUXER]}\n".encode("utf-8"))
    reply = recv_line(conn)
    if reply != "OK":
        stage = reply.split()[1] if len(reply.split()) > 1 else "security"
        emit("error", stage=stage, message=reply)
        return 1
    handshake_ms = (time.perf_counter() - start) * 1000
    emit("connected", handshake_plus_one_rtt_ms=round(handshake_ms, 3))

    ping_start = time.perf_counter()
    conn.sendall(struct.pack(">I", len(probe)) + probe)
    (size,) = struct.unpack(">I", recv_exact(conn, 4))
    echoed = recv_exact(conn, size)
    ping_ms = (time.perf_counter() - ping_start) * 1000
    emit("echo", payload=echoed.hex(), ping_rtt_ms=round(ping_ms, 3))
    return 0


def main() -> int:
    role = os.environ[ENV_ROLE]
    transport = os.environ[ENV_TRANSPORT]
    if transport != "tcp":
        emit("error", stage="dial", message=f"loopback only speaks tcp, not {transport}")
        return 1
    timeout = float(os.environ.get(ENV_TIMEOUT, "30"))
    fault = os.environ.get("LOOPBACK_FAULT", "")
    store = RendezvousStore.from_url(os.environ[ENV_REDIS_URL])
    try:
        if role == "listener":
            return run_listener(store, fault, timeout)
        return run_dialer(store, timeout)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
