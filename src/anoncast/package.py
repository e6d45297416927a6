#!/usr/bin/env python

r"""Binary package format for anonymous one-time pad messaging.

A package carries one payload for one channel.  The channel id never
appears in clear; integers use the self-describing encoding of
``anoncast.varint``::

    +--------------+------------+-------------+-----------------+
    | total length | id key pos | channel id  | payload key pos |
    | (clear)      | (clear)    | 16 B, id    | id key          |
    +--------------+------------+-------------+-----------------+
    | payload size | payload    | check symbol|
    | payload key  | payload key| 1 B (clear) |
    +--------------+------------+-------------+

*total length* counts every byte after itself.  The id key covers the
channel id and the payload key position; the payload key covers the
payload size and the payload.  The receiver first recovers the channel by
trying every registered pack (``KeyStore.try_recover_channel_id``), then
follows the payload key position to decrypt the rest.

The check symbol is a framing sanity check, not an integrity check.
"""

from .errors import (
    BrokenPackageRecv,
    ConnectionClosed,
    KeyExhausted,
    KeyMaterialExhausted,
    KeyStreamClosed,
    MalformedPackage,
    NoKeyPack,
    PackageTooLarge,
    UnknownChannel,
    WrongTerminator,
)
from .keystream import xor_bytes
from .varint import INT_MAX_SIZE, UUID_SIZE, bytes_to_int, int_to_bytes

CHECK_SYMBOL = 0b10110010
DEFAULT_MAX_PACKAGE_SIZE = 1 << 20


class DataPackage:
    """A decoded package: the channel it belongs to and its payload.

    Parameters
    ----------
    channel_id : uuid.UUID
        Channel the payload is sent on.
    payload : bytes
        Plaintext payload.
    """

    def __init__(self, channel_id, payload):
        self.channel_id = channel_id
        self.payload = bytes(payload)

    def __eq__(self, other):
        if not isinstance(other, DataPackage):
            return NotImplemented
        return (self.channel_id == other.channel_id
                and self.payload == other.payload)

    def __repr__(self):
        return 'DataPackage(%s, %d bytes)' % (self.channel_id, len(self.payload))

    def marshal_binary(self, store):
        """Encrypt this package with *store*'s key material."""
        return encode_package(store, self.channel_id, self.payload)

    @classmethod
    def unmarshal_binary(cls, store, data):
        """Decrypt a package with *store*'s key material."""
        return decode_package(store, data)


def max_package_length(payload_len):
    """Largest total length a package with *payload_len* payload bytes can
    declare, whatever key positions it ends up with."""
    return (INT_MAX_SIZE + UUID_SIZE + INT_MAX_SIZE
            + len(int_to_bytes(payload_len)) + payload_len + 1)


def encode_package(store, channel_id, payload, max_package_size=None):
    """Encode and encrypt *payload* for *channel_id*.

    Allocates fresh bytes from the channel's outbound payload and id
    streams; allocated bytes are never handed out again, even if encoding
    fails later.

    Parameters
    ----------
    store : KeyStore
        Store holding the channel's key pack.
    channel_id : uuid.UUID
        Destination channel.
    payload : bytes
        Plaintext.
    max_package_size : int, optional
        Refuse, before any key is allocated, payloads whose package could
        reach this length.  Receivers drop such packages.

    Returns
    -------
    bytes
        The complete package, length prefix included.

    Raises
    ------
    NoKeyPack
        If *channel_id* has no key pack, or it was removed while encoding.
    KeyMaterialExhausted
        If either outbound stream cannot cover the package.
    PackageTooLarge
        If the payload exceeds *max_package_size*.
    """
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError("payload must be bytes, not %s"
                        % type(payload).__name__)
    payload = bytes(payload)

    if (max_package_size is not None
            and max_package_length(len(payload)) >= max_package_size):
        raise PackageTooLarge(
            "%d byte payload does not fit in a %d byte package"
            % (len(payload), max_package_size))

    pack = store.get_key_pack(channel_id)
    if pack is None:
        raise NoKeyPack("no key pack for channel %s" % channel_id)

    payload_size_enc = int_to_bytes(len(payload))
    try:
        payload_key_len = len(payload_size_enc) + len(payload)
        payload_key_pos = pack.payload_out.allocate(payload_key_len)
        payload_key = pack.payload_out.read_at(payload_key_pos, payload_key_len)

        payload_key_pos_enc = int_to_bytes(payload_key_pos)
        id_key_len = UUID_SIZE + len(payload_key_pos_enc)
        id_key_pos = pack.id_out.allocate(id_key_len)
        id_key = pack.id_out.read_at(id_key_pos, id_key_len)
    except KeyExhausted as e:
        raise KeyMaterialExhausted(
            "channel %s: %s" % (channel_id, e)) from e
    except KeyStreamClosed as e:
        raise NoKeyPack("key pack %s was removed" % channel_id) from e

    body = b''.join([
        int_to_bytes(id_key_pos),
        xor_bytes(channel_id.bytes, id_key[:UUID_SIZE]),
        xor_bytes(payload_key_pos_enc, id_key[UUID_SIZE:]),
        xor_bytes(payload_size_enc, payload_key[:len(payload_size_enc)]),
        xor_bytes(payload, payload_key[len(payload_size_enc):]),
        bytes([CHECK_SYMBOL]),
    ])
    return int_to_bytes(len(body)) + body


def _decrypt_int(stream, position, ciphertext):
    """Decrypt an encoded integer at the start of *ciphertext*.

    Only the key bytes the integer actually covers are read: the length
    byte is decrypted first and announces the rest.
    """
    if len(ciphertext) == 0:
        raise MalformedPackage("package truncated before integer field")
    width = 1 + (ciphertext[0] ^ stream.read_at(position, 1)[0])
    if width > INT_MAX_SIZE or width > len(ciphertext):
        raise MalformedPackage("invalid integer field of width %d" % width)
    plain = xor_bytes(ciphertext[:width], stream.read_at(position, width))
    return bytes_to_int(plain)


def decode_package(store, data):
    """Decrypt a package produced by ``encode_package``.

    Parameters
    ----------
    store : KeyStore
        Store holding the receiver's key packs.
    data : bytes
        The complete package, length prefix included.

    Returns
    -------
    DataPackage

    Raises
    ------
    WrongTerminator
        If the last byte is not ``CHECK_SYMBOL``.
    UnknownChannel
        If no registered pack owns the package.
    KeyMaterialExhausted
        If the announced key positions lie beyond the inbound material.
    MalformedPackage
        If the package is truncated or inconsistent.
    """
    data = bytes(data)
    if len(data) == 0 or data[-1] != CHECK_SYMBOL:
        raise WrongTerminator("wrong check symbol")

    try:
        total_len, offset = bytes_to_int(data)
        id_key_pos, n = bytes_to_int(data[offset:offset + INT_MAX_SIZE])
    except ValueError as e:
        raise MalformedPackage(str(e)) from e
    if total_len != len(data) - offset:
        raise MalformedPackage("declared length %d, got %d bytes"
                               % (total_len, len(data) - offset))
    offset += n

    # everything up to the check symbol
    body = data[:-1]
    enc_id = body[offset:offset + UUID_SIZE]
    if len(enc_id) != UUID_SIZE:
        raise MalformedPackage("package truncated inside the channel id")
    offset += UUID_SIZE

    channel_id = store.try_recover_channel_id(id_key_pos, enc_id)
    if channel_id is None:
        raise UnknownChannel("package is not for any known channel")
    pack = store.get_key_pack(channel_id)
    if pack is None:
        raise UnknownChannel("key pack %s was removed" % channel_id)

    try:
        payload_key_pos, n = _decrypt_int(
            pack.id_in, id_key_pos + UUID_SIZE, body[offset:])
        offset += n

        payload_size, size_len = _decrypt_int(
            pack.payload_in, payload_key_pos, body[offset:])
        offset += size_len

        ciphertext = body[offset:]
        if len(ciphertext) != payload_size:
            raise MalformedPackage("payload size %d, got %d bytes"
                                   % (payload_size, len(ciphertext)))
        payload_key = pack.payload_in.read_at(
            payload_key_pos + size_len, payload_size)
    except KeyExhausted as e:
        raise KeyMaterialExhausted(
            "channel %s: %s" % (channel_id, e)) from e
    except KeyStreamClosed as e:
        raise UnknownChannel("key pack %s was removed" % channel_id) from e

    return DataPackage(channel_id, xor_bytes(ciphertext, payload_key))


def recv_exact(sock, n):
    """Receive exactly n bytes from a socket, or None on disconnect."""
    data = b''
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            return None
        data += chunk
    return data


def read_frame(sock, max_package_size=DEFAULT_MAX_PACKAGE_SIZE):
    """Read one length-prefixed package from a stream socket.

    The first ``INT_MAX_SIZE`` bytes are read as a fixed-width prefix; the
    encoded total length then tells how much more to read.

    Returns
    -------
    bytes
        The complete package, ready for ``decode_package``.

    Raises
    ------
    ConnectionClosed
        If the peer disconnects or the socket fails.
    BrokenPackageRecv
        If the declared length is outside ``(0, max_package_size)``.  The
        stream cannot be re-aligned after this.
    """
    try:
        prefix = recv_exact(sock, INT_MAX_SIZE)
    except OSError as e:
        raise ConnectionClosed(str(e)) from e
    if prefix is None:
        raise ConnectionClosed("connection closed by peer")

    try:
        package_size, size_len = bytes_to_int(prefix)
    except ValueError as e:
        raise BrokenPackageRecv("unreadable package length") from e
    if package_size <= 0 or package_size >= max_package_size:
        raise BrokenPackageRecv("invalid package length %d" % package_size)

    remaining = size_len + package_size - INT_MAX_SIZE
    if remaining < 0:
        raise BrokenPackageRecv("package shorter than its length prefix")
    if remaining == 0:
        return prefix

    try:
        rest = recv_exact(sock, remaining)
    except OSError as e:
        raise ConnectionClosed(str(e)) from e
    if rest is None:
        raise ConnectionClosed("connection closed inside a package")
    return prefix + rest
