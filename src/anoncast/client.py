#!/usr/bin/env python

"""TCP client sending and receiving anonymous one-time pad packages.

Example: send on one channel, then wait for the next package addressed to
any channel in the local keystore

>>> client = Client('/var/lib/anoncast', ('relay.example', 8888))
>>> client.start()
>>> client.write(channel_id, b'hello')
>>> package = client.receive()
>>> client.close()
"""

import enum
import logging
import os
import socket
import threading

from .errors import (
    BrokenPackageRecv,
    BrokenPackageSend,
    ConnectionClosed,
    ConnectionFailed,
    PackageError,
    UnknownChannel,
)
from .keystore import DEFAULT_KEY_BUFFER_SIZE, KeyStore
from .package import (
    DEFAULT_MAX_PACKAGE_SIZE,
    decode_package,
    encode_package,
    read_frame,
)

logger = logging.getLogger(__name__)


class State(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTED = 'connected'
    CLOSED = 'closed'


def parse_address(address):
    """Accept ``(host, port)`` or ``'host:port'``."""
    if isinstance(address, str):
        host, sep, port = address.rpartition(':')
        if not sep or not host:
            raise ValueError("address %r is not host:port" % address)
        return host, int(port)
    host, port = address
    return host, int(port)


class Client:
    """Anonymous messaging client over a single stream connection.

    The client starts DISCONNECTED.  ``start`` connects, ``stop`` drops the
    connection and ``close`` additionally closes the keystore, after which
    the client is CLOSED for good.

    One thread may write while another receives.  Calling ``stop`` or
    ``close`` from another thread wakes a blocked ``receive`` with
    ``ConnectionClosed``.

    Parameters
    ----------
    data_dir : str
        Directory for local state; the keystore lives in ``keystore/``.
    address : tuple or str
        Remote ``(host, port)`` or ``'host:port'``.
    key_buffer_size : int
        Bytes of key material per stream for newly created channels.
    max_package_size : int
        Largest package length accepted by ``receive``; ``write`` refuses
        payloads that could reach it.
    """

    def __init__(self, data_dir, address,
                 key_buffer_size=DEFAULT_KEY_BUFFER_SIZE,
                 max_package_size=DEFAULT_MAX_PACKAGE_SIZE):
        self.address = parse_address(address)
        self.max_package_size = max_package_size
        self.keystore = KeyStore.load(
            os.path.join(data_dir, 'keystore'), key_buffer_size)

        self._state = State.DISCONNECTED
        self._conn = None
        self._mutex = threading.Lock()
        self._send_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def state(self):
        return self._state

    def _connection(self):
        with self._mutex:
            if self._state is State.CONNECTED:
                return self._conn
            return None

    def start(self):
        """Connect to the remote address.

        Does nothing if already connected.

        Raises
        ------
        ConnectionFailed
            If the connection cannot be established.
        ConnectionClosed
            If the client has been closed.
        """
        with self._mutex:
            if self._state is State.CLOSED:
                raise ConnectionClosed("client is closed")
            if self._state is State.CONNECTED:
                return
            try:
                conn = socket.create_connection(self.address)
            except OSError as e:
                raise ConnectionFailed(
                    "cannot connect to %s:%d: %s"
                    % (self.address + (e,))) from e
            self._conn = conn
            self._state = State.CONNECTED
        logger.info("Connected to %s:%d", *self.address)

    def stop(self):
        """Drop the connection.  Safe to call more than once."""
        with self._mutex:
            conn, self._conn = self._conn, None
            if self._state is State.CONNECTED:
                self._state = State.DISCONNECTED
        if conn is None:
            return

        # shutdown wakes a recv blocked in another thread, close alone does not
        try:
            conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        conn.close()
        logger.info("Disconnected from %s:%d", *self.address)

    def write(self, channel_id, payload):
        """Encrypt *payload* for *channel_id* and send it.

        Sends nothing, without error, while the client is not connected.

        Raises
        ------
        BrokenPackageSend
            If the package cannot be encoded, or would be too large for
            ``max_package_size``.  The connection stays open.
        ConnectionClosed
            If sending fails.  The connection is dropped.
        """
        conn = self._connection()
        if conn is None:
            return

        try:
            data = encode_package(self.keystore, channel_id, payload,
                                  self.max_package_size)
        except PackageError as e:
            raise BrokenPackageSend(
                "attempted to send a broken package: %s" % e) from e

        try:
            with self._send_lock:
                conn.sendall(data)
        except OSError as e:
            self.stop()
            raise ConnectionClosed("connection lost while sending") from e

    def receive(self):
        """Block until a package for a known channel arrives.

        Packages for channels missing from the keystore are dropped and the
        wait continues.

        Returns
        -------
        DataPackage

        Raises
        ------
        ConnectionClosed
            If not connected, or the connection fails or is closed while
            waiting.  The connection is dropped.
        BrokenPackageRecv
            If a package cannot be decoded.  A package with an invalid
            length also drops the connection, since the stream cannot be
            re-aligned after it.
        """
        while True:
            conn = self._connection()
            if conn is None:
                raise ConnectionClosed("not connected")

            try:
                data = read_frame(conn, self.max_package_size)
            except (ConnectionClosed, BrokenPackageRecv):
                self.stop()
                raise

            try:
                return decode_package(self.keystore, data)
            except UnknownChannel:
                logger.debug("Dropping package for an unknown channel")
            except PackageError as e:
                raise BrokenPackageRecv(
                    "received a broken package: %s" % e) from e

    def close(self):
        """Disconnect and close the keystore.  The client is then unusable."""
        self.stop()
        with self._mutex:
            if self._state is State.CLOSED:
                return
            self._state = State.CLOSED
            store, self.keystore = self.keystore, None
        store.close()
