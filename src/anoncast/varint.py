#!/usr/bin/env python

"""Self-describing variable-length integer encoding.

An integer is written as one length byte ``n`` followed by ``n`` big-endian
bytes holding the value, with no leading zero bytes.  Zero is the single
byte ``0x00``.  The decoder reports the value together with the number of
bytes it occupied, so fields need no fixed width::

    0      -> 00
    255    -> 01 ff
    1000   -> 02 03 e8
    2**64-1 -> 08 ff ff ff ff ff ff ff ff
"""

INT_MAX_SIZE = 9
UUID_SIZE = 16

_MAX_VALUE_BYTES = INT_MAX_SIZE - 1


def int_to_bytes(value):
    """Encode a non-negative integer.

    Parameters
    ----------
    value : int
        Integer in ``[0, 2**64)``.

    Returns
    -------
    bytes
        Between 1 and ``INT_MAX_SIZE`` bytes.
    """
    if value < 0:
        raise ValueError("cannot encode negative integer %d" % value)
    body = value.to_bytes((value.bit_length() + 7) // 8, 'big')
    if len(body) > _MAX_VALUE_BYTES:
        raise ValueError("integer %d does not fit in %d bytes"
                         % (value, _MAX_VALUE_BYTES))
    return bytes([len(body)]) + body


def bytes_to_int(data):
    """Decode an integer from the start of *data*.

    Bytes after the encoded integer are ignored.

    Returns
    -------
    tuple
        ``(value, consumed)`` where *consumed* is the encoded width.

    Raises
    ------
    ValueError
        If *data* is empty, the length byte is out of range, or *data* is
        shorter than the length byte announces.
    """
    if len(data) == 0:
        raise ValueError("no data to decode an integer from")
    n = data[0]
    if n > _MAX_VALUE_BYTES:
        raise ValueError("invalid integer width %d" % n)
    if len(data) < n + 1:
        raise ValueError("integer needs %d bytes, got %d" % (n + 1, len(data)))
    return int.from_bytes(bytes(data[1:n + 1]), 'big'), n + 1
