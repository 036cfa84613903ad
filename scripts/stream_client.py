#!/usr/bin/env python3
"""
Stream Client Script
====================

Manual end-to-end check against a running appliance.

This script:
    1. Asks the appliance to start streaming over the HTTP API
    2. Connects to the broadcast endpoint
    3. Dumps the received bitstream to a file for a fixed duration
    4. Optionally asks the appliance to stop and reports a summary

Prerequisites:
    - camcast must be running (python -m camcast.main)

Usage:
    python scripts/stream_client.py --duration 10 --output capture.mjpeg
    python scripts/stream_client.py --api http://localhost:8080 --address tcp://127.0.0.1:8554
"""

import argparse
import logging
import socket
import sys
import time

import requests

from camcast.output.broadcast import parse_address


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)


def send_command(api: str, command: str) -> dict:
    """POST a control command and return the JSON reply."""
    response = requests.post(f"{api}/control/{command}", timeout=5.0)
    response.raise_for_status()
    return response.json()


def connect(host: str, port: int, retry_for: float) -> socket.socket:
    """Connect to the broadcast endpoint, retrying while it comes up."""
    deadline = time.monotonic() + retry_for
    while True:
        try:
            return socket.create_connection((host, port), timeout=5.0)
        except OSError as e:
            if time.monotonic() >= deadline:
                raise
            logger.info(f"Endpoint not up yet ({e}), retrying...")
            time.sleep(0.25)


def run_client(
    api: str,
    address: str,
    output: str,
    duration: float,
    stop_after: bool,
) -> dict:
    """
    Start the stream, record it, and return stats.

    Args:
        api: Base URL of the HTTP API
        address: tcp://host:port of the broadcast server
        output: File the bitstream is written to
        duration: Seconds to record
        stop_after: Send STOP_STREAM when done

    Returns:
        Summary statistics
    """
    endpoint = parse_address(address)
    host = "127.0.0.1" if endpoint.host == "0.0.0.0" else endpoint.host

    reply = send_command(api, "start")
    logger.info(f"Start requested: {reply}")

    sock = connect(host, endpoint.port, retry_for=5.0)
    logger.info(f"Connected to {host}:{endpoint.port}")

    total = 0
    start = time.monotonic()
    with sock, open(output, "wb") as f:
        sock.settimeout(1.0)
        while time.monotonic() - start < duration:
            try:
                data = sock.recv(65536)
            except socket.timeout:
                continue
            if not data:
                logger.info("Server closed the connection")
                break
            f.write(data)
            total += len(data)

    elapsed = time.monotonic() - start

    if stop_after:
        logger.info(f"Stop requested: {send_command(api, 'stop')}")

    status = requests.get(f"{api}/status", timeout=5.0).json()

    return {
        "bytes_received": total,
        "elapsed_seconds": round(elapsed, 2),
        "throughput_kbps": round(total * 8 / 1000 / elapsed, 1) if elapsed > 0 else 0.0,
        "server_state": status.get("state"),
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Record the camcast stream to a file")
    parser.add_argument("--api", default="http://localhost:8080", help="HTTP API base URL")
    parser.add_argument("--address", default="tcp://127.0.0.1:8554", help="Broadcast endpoint")
    parser.add_argument("--output", default="capture.bin", help="Output file")
    parser.add_argument("--duration", type=float, default=10.0, help="Seconds to record")
    parser.add_argument("--no-stop", action="store_true", help="Leave the stream running")
    args = parser.parse_args()

    try:
        stats = run_client(
            api=args.api.rstrip("/"),
            address=args.address,
            output=args.output,
            duration=args.duration,
            stop_after=not args.no_stop,
        )
    except (requests.RequestException, OSError) as e:
        logger.error(f"Client failed: {e}")
        return 1

    logger.info("=" * 50)
    for key, value in stats.items():
        logger.info(f"{key}: {value}")
    logger.info("=" * 50)
    return 0


if __name__ == "__main__":
    sys.exit(main())
