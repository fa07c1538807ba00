#!/usr/bin/env python3
"""
FluxLED Bulb Scanner

Finds LEDENET controllers on the local network. A discovery datagram is
broadcast to UDP port 48899 and every controller answers with a single
"ip,id,model" line.
"""

import argparse
import ipaddress
import json
import logging
import socket
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from flux_bulb import WifiLedBulb
from flux_protocol import (
    DISCOVERY_MESSAGE,
    DISCOVERY_PORT,
    FluxLEDError,
    TransportError,
    parse_discovery_reply,
)

log = logging.getLogger(__name__)

BROADCAST_ADDRESS = '255.255.255.255'
DISCOVERY_TIMEOUT = 10.0
POLL_INTERVAL = 1.0
MAX_REPLY_LEN = 64


@dataclass
class DiscoveredBulb:
    """A controller that answered a discovery broadcast."""
    ip_address: str
    device_id: str
    model: str

    def to_bulb(self, **kwargs) -> WifiLedBulb:
        """Create a session for this controller."""
        return WifiLedBulb(self.ip_address, device_id=self.device_id, model=self.model, **kwargs)

    def to_dict(self) -> dict:
        return {
            'ip_address': self.ip_address,
            'id': self.device_id,
            'model': self.model,
        }

    def __str__(self) -> str:
        return f"{self.device_id} ({self.ip_address}) {self.model}"


def get_broadcast_address(subnet: str) -> str:
    """Calculate the broadcast address for a given subnet."""
    network = ipaddress.ip_network(subnet, strict=False)
    return str(network.broadcast_address)


def _udp_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(('', 0))
    return sock


class BulbScanner:
    """
    Broadcast discovery of controllers.

    The listen loop wakes up at least every poll_interval seconds to check for
    cancellation, so cancel_scan() from another thread returns promptly.
    """

    def __init__(
        self,
        broadcast_address: str = BROADCAST_ADDRESS,
        port: int = DISCOVERY_PORT,
        poll_interval: float = POLL_INTERVAL,
        socket_factory: Optional[Callable[[], socket.socket]] = None,
    ):
        self.broadcast_address = broadcast_address
        self.port = port
        self.poll_interval = poll_interval
        self._socket_factory = socket_factory or _udp_socket
        self._cancel = threading.Event()
        self._found: dict[str, DiscoveredBulb] = {}

    @property
    def discovered_bulbs(self) -> list[DiscoveredBulb]:
        """Bulbs found by the most recent (or running) scan."""
        return list(self._found.values())

    def cancel_scan(self) -> None:
        self._cancel.set()

    def _cancelled(self, cancel: Optional[threading.Event]) -> bool:
        return self._cancel.is_set() or (cancel is not None and cancel.is_set())

    def iter_bulbs(
        self,
        timeout: float = DISCOVERY_TIMEOUT,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[DiscoveredBulb]:
        """
        Yield each controller once as its reply arrives.

        The broadcast is repeated whenever the network has been quiet for a
        poll interval. Iteration ends at the timeout or on cancellation, and
        the socket is closed either way.

        Raises:
            TransportError: The broadcast could not be sent
        """
        self._cancel.clear()
        self._found = {}
        deadline = time.monotonic() + timeout

        sock = self._socket_factory()
        try:
            send_broadcast = True
            while not self._cancelled(cancel):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break

                if send_broadcast:
                    try:
                        sock.sendto(DISCOVERY_MESSAGE, (self.broadcast_address, self.port))
                    except OSError as exc:
                        raise TransportError(f"Error sending broadcast: {exc}") from exc
                    send_broadcast = False

                sock.settimeout(min(self.poll_interval, remaining))
                try:
                    data, addr = sock.recvfrom(MAX_REPLY_LEN)
                except socket.timeout:
                    send_broadcast = True
                    continue

                # our own broadcast looped back
                if data == DISCOVERY_MESSAGE:
                    continue

                reply = parse_discovery_reply(data)
                if reply is None:
                    log.debug("Ignoring malformed reply from %s: %r", addr[0], data)
                    continue

                ip_address, device_id, model = reply
                if ip_address in self._found:
                    continue

                bulb = DiscoveredBulb(ip_address, device_id, model)
                self._found[ip_address] = bulb
                log.debug("Found: %s", bulb)
                yield bulb
        finally:
            sock.close()

    def scan(
        self,
        timeout: float = DISCOVERY_TIMEOUT,
        cancel: Optional[threading.Event] = None,
    ) -> list[DiscoveredBulb]:
        """Run a complete scan and return every controller found."""
        return list(self.iter_bulbs(timeout, cancel))


def main():
    parser = argparse.ArgumentParser(
        description='Scan local network for FluxLED / Magic Home WiFi controllers.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Broadcast to 255.255.255.255
  %(prog)s -s 192.168.1.0/24        # Broadcast to a subnet
  %(prog)s -t 3                     # Stop listening after 3 seconds
  %(prog)s --json                   # JSON output
        """
    )

    parser.add_argument(
        '-b', '--broadcast',
        default=BROADCAST_ADDRESS,
        help=f'Broadcast address (default: {BROADCAST_ADDRESS})'
    )

    parser.add_argument(
        '-s', '--subnet',
        help='Subnet in CIDR notation, overrides --broadcast'
    )

    parser.add_argument(
        '-t', '--timeout',
        type=float,
        default=DISCOVERY_TIMEOUT,
        help=f'Seconds to listen for replies (default: {DISCOVERY_TIMEOUT})'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    parser.add_argument(
        '--json',
        action='store_true',
        help='Output results in JSON format'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(name)s: %(message)s')

    broadcast = args.broadcast
    if args.subnet:
        try:
            broadcast = get_broadcast_address(args.subnet)
        except ValueError as e:
            print(f"Invalid subnet: {e}", file=sys.stderr)
            sys.exit(1)

    if not args.json:
        print(f"Scanning for FluxLED controllers via {broadcast}...")
        print()

    scanner = BulbScanner(broadcast_address=broadcast)
    try:
        bulbs = scanner.scan(timeout=args.timeout)
    except FluxLEDError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        bulbs = scanner.discovered_bulbs

    if args.json:
        result = {
            'broadcast': broadcast,
            'devices': [b.to_dict() for b in bulbs],
        }
        print(json.dumps(result, indent=2))
        return

    if bulbs:
        print(f"Found {len(bulbs)} controller(s):")
        print("-" * 60)
        for bulb in sorted(bulbs, key=lambda b: b.ip_address):
            print(f"  ID:      {bulb.device_id}")
            print(f"  IP:      {bulb.ip_address}")
            print(f"  Model:   {bulb.model}")
            print("-" * 60)
    else:
        print("No controllers found.")
        print()
        print("Troubleshooting tips:")
        print("  - Make sure the controllers are powered and joined to your WiFi")
        print("  - Try broadcasting to your subnet (-s 192.168.1.0/24)")
        print("  - Try increasing the timeout (-t)")
        print(f"  - Check that UDP port {DISCOVERY_PORT} is not blocked by firewall")


if __name__ == '__main__':
    main()
