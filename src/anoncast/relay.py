#!/usr/bin/env python

"""Broadcast relay for anonymous one-time pad packages.

The relay forwards every package it receives to every other connected
client.  It holds no key material: it only reads the clear length prefix,
so it learns neither the channel nor the payload of anything it relays.
Each client keeps the packages its keystore can decode and silently drops
the rest.

Example: serve until interrupted

>>> server = RelayServer(('0.0.0.0', 8888))
>>> server.serve_forever()
"""

import logging
import socketserver
import threading

from .errors import BrokenPackageRecv, ConnectionClosed
from .package import DEFAULT_MAX_PACKAGE_SIZE, read_frame

logger = logging.getLogger(__name__)


class RelayRequestHandler(socketserver.BaseRequestHandler):
    """Reads packages from one client and hands them to the server."""

    def setup(self):
        self.send_lock = threading.Lock()
        self.server.add_peer(self)

    def handle(self):
        while True:
            try:
                data = read_frame(self.request, self.server.max_package_size)
            except ConnectionClosed:
                return
            except BrokenPackageRecv as e:
                logger.warning("Dropping client %s:%d: %s",
                               self.client_address[0],
                               self.client_address[1], e)
                return
            self.server.broadcast(data, self)

    def finish(self):
        self.server.remove_peer(self)

    def send(self, data):
        with self.send_lock:
            self.request.sendall(data)


class RelayServer(socketserver.ThreadingTCPServer):
    """Threaded TCP server relaying packages between all its clients.

    Parameters
    ----------
    address : tuple
        (host, port) to bind to.  Port 0 picks a free port, see
        ``server_address``.
    max_package_size : int
        Largest package length accepted from a client.
    """

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address, max_package_size=DEFAULT_MAX_PACKAGE_SIZE):
        self.max_package_size = max_package_size
        self._peers = set()
        self._peers_lock = threading.Lock()
        super().__init__(address, RelayRequestHandler)

    def add_peer(self, handler):
        with self._peers_lock:
            self._peers.add(handler)
        logger.info("Client %s:%d connected", *handler.client_address[:2])

    def remove_peer(self, handler):
        with self._peers_lock:
            self._peers.discard(handler)
        logger.info("Client %s:%d disconnected", *handler.client_address[:2])

    @property
    def peer_count(self):
        with self._peers_lock:
            return len(self._peers)

    def broadcast(self, data, source):
        """Send *data* to every client except *source*."""
        with self._peers_lock:
            peers = [peer for peer in self._peers if peer is not source]

        for peer in peers:
            try:
                peer.send(data)
            except OSError as e:
                # the peer's own handler notices and unregisters it
                logger.debug("Relay to %s:%d failed: %s",
                             peer.client_address[0],
                             peer.client_address[1], e)
