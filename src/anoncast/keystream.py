#!/usr/bin/env python

r"""File-backed one-time pad key streams.

A ``KeyStream`` is one direction of pre-shared random bytes::

    <name>.key   raw key material, read through a read-only numpy memmap
    <name>.pos   allocation cursor, 8 bytes big-endian (outbound only)

Outbound streams hand out never-used ranges with ``allocate``; the cursor
only moves forward and is written to disk before the range is returned, so
a restart can never hand out the same bytes twice.  ``read_at`` fetches
bytes at an absolute offset without touching the cursor.  Inbound streams
are only ever read at positions announced by the peer.

An outbound stream holds an exclusive ``flock`` on its ``.key`` file while
open, so a second store, in this process or another, cannot open it and
allocate from the same cursor.
"""

import fcntl
import os
import struct
import threading
import numpy as np

from .errors import KeyExhausted, KeyStreamClosed, KeyStreamLocked

_POS_STRUCT = struct.Struct('>Q')


def xor_bytes(data, key):
    """XOR *data* with the first ``len(data)`` bytes of *key*.

    Parameters
    ----------
    data : bytes-like
        Plaintext or ciphertext.
    key : bytes-like
        Key material, at least as long as *data*.

    Returns
    -------
    bytes
        Same length as *data*.
    """
    if len(key) < len(data):
        raise ValueError("key too short: need %d bytes, got %d"
                         % (len(data), len(key)))
    dt = np.frombuffer(bytes(data), dtype=np.uint8)
    kt = np.frombuffer(bytes(key[:len(data)]), dtype=np.uint8)
    return (dt ^ kt).tobytes()


def fsync_dir(path):
    """Flush directory entry changes in *path*, such as renames, to disk."""
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_material(path, material):
    """Write key material to a new owner-only file.

    Raises ``FileExistsError`` rather than overwrite existing material.
    """
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(material)
        f.flush()
        os.fsync(f.fileno())
    fsync_dir(os.path.dirname(os.path.abspath(path)))


def lock_exclusive(path):
    """Open *path* and take a non-blocking exclusive ``flock`` on it.

    Returns the open descriptor; closing it releases the lock.

    Raises
    ------
    KeyStreamLocked
        If another open file already holds the lock.
    """
    fd = os.open(path, os.O_RDONLY)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        raise KeyStreamLocked("%s is in use by another key store" % path)
    except BaseException:
        os.close(fd)
        raise
    return fd


class KeyStream:
    """One direction of pre-shared key material.

    Parameters
    ----------
    key_path : str
        File holding the raw key bytes.
    pos_path : str or None
        File holding the persisted allocation cursor.  ``None`` keeps the
        cursor in memory only, which is what inbound streams use.

    Raises
    ------
    KeyStreamLocked
        If *pos_path* is given and the stream is already open elsewhere.
    """

    def __init__(self, key_path, pos_path=None):
        self.key_path = key_path
        self.pos_path = pos_path
        self._lock = threading.Lock()
        self._lock_fd = None
        if pos_path is not None:
            self._lock_fd = lock_exclusive(key_path)

        try:
            if os.path.getsize(key_path) > 0:
                self._material = np.memmap(key_path, dtype=np.uint8, mode='r')
            else:
                # numpy refuses to map an empty file
                self._material = np.empty(0, dtype=np.uint8)
            self._size = len(self._material)
            self._position = self._read_position()
        except BaseException:
            self._release()
            raise
        self._closed = False

    @classmethod
    def create(cls, key_path, material, pos_path=None):
        """Write *material* to *key_path* and open it as a stream."""
        write_material(key_path, material)
        return cls(key_path, pos_path)

    def _read_position(self):
        if self.pos_path is None or not os.path.exists(self.pos_path):
            return 0
        with open(self.pos_path, 'rb') as f:
            data = f.read()
        if len(data) != _POS_STRUCT.size:
            raise ValueError("corrupt cursor file %s" % self.pos_path)
        position = _POS_STRUCT.unpack(data)[0]
        if position > self._size:
            raise ValueError("cursor %d beyond end of %s (%d bytes)"
                             % (position, self.key_path, self._size))
        return position

    def _write_position(self, position):
        tmp_path = self.pos_path + '.tmp'
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(_POS_STRUCT.pack(position))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.pos_path)
        fsync_dir(os.path.dirname(os.path.abspath(self.pos_path)))

    def allocate(self, n):
        """Reserve *n* fresh bytes and return their start position.

        The reservation is exclusive: concurrent callers always receive
        disjoint ranges.  Nothing is reserved when the stream cannot
        satisfy the whole request.

        Raises
        ------
        KeyExhausted
            If fewer than *n* bytes remain.
        KeyStreamClosed
            If the stream was closed.
        """
        if n <= 0:
            raise ValueError("allocation size must be positive, got %d" % n)

        with self._lock:
            if self._closed:
                raise KeyStreamClosed("key stream %s is closed" % self.key_path)
            start = self._position
            if start + n > self._size:
                raise KeyExhausted(
                    "%s: need %d key bytes, have %d"
                    % (self.key_path, n, self._size - start))
            if self.pos_path is not None:
                self._write_position(start + n)
            self._position = start + n
            return start

    def read_at(self, position, n):
        """Return the *n* key bytes starting at *position*.

        Raises
        ------
        KeyExhausted
            If the range runs past the end of the material.
        KeyStreamClosed
            If the stream was closed.
        """
        if position < 0 or n < 0:
            raise ValueError("invalid key range (%d, %d)" % (position, n))
        material = self._material
        if material is None:
            raise KeyStreamClosed("key stream %s is closed" % self.key_path)
        if position + n > self._size:
            raise KeyExhausted(
                "%s: range [%d, %d) beyond %d key bytes"
                % (self.key_path, position, position + n, self._size))
        return material[position:position + n].tobytes()

    @property
    def size(self):
        """Total bytes of key material."""
        return self._size

    @property
    def position(self):
        """Current allocation cursor."""
        with self._lock:
            return self._position

    @property
    def remaining(self):
        """Bytes still available to ``allocate``."""
        with self._lock:
            return self._size - self._position

    @property
    def closed(self):
        return self._closed

    def _release(self):
        if self._lock_fd is not None:
            os.close(self._lock_fd)
            self._lock_fd = None

    def close(self):
        """Release the memory map and the file lock.  Safe to call more than
        once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._material = None
            self._release()
