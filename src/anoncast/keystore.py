#!/usr/bin/env python

r"""Registry of per-channel key packs.

Each channel is a directory under the store root, named by the channel's
UUID and holding four key streams::

    <root>/<uuid>/id_out.key       id_out.pos
                  id_in.key
                  payload_out.key  payload_out.pos
                  payload_in.key

The ``id`` streams hide the channel id on the wire, the ``payload`` streams
encrypt the payload length and body.  For two parties sharing a channel,
one party's ``*_out`` material is byte-for-byte the other party's
``*_in`` material.

Channel ids are never sent in clear.  A receiver finds the channel of a
package with ``KeyStore.try_recover_channel_id``: every registered pack
tries to decrypt the announced id with its own inbound id key, and the one
that gets its own id back is the owner.  The cost is linear in the number
of registered channels, paid once per received package.
"""

import logging
import os
import shutil
import threading
import uuid

from .errors import AlreadyExists, KeyExhausted, NoKeyPack
from .keystream import KeyStream, xor_bytes

logger = logging.getLogger(__name__)

DEFAULT_PERM_MODE = 0o700
DEFAULT_KEY_BUFFER_SIZE = 1 << 20

ID_OUT = 'id_out'
ID_IN = 'id_in'
PAYLOAD_OUT = 'payload_out'
PAYLOAD_IN = 'payload_in'

# The peer's view of each stream.
_MIRROR = {
    ID_OUT: ID_IN,
    ID_IN: ID_OUT,
    PAYLOAD_OUT: PAYLOAD_IN,
    PAYLOAD_IN: PAYLOAD_OUT,
}


def _key_path(path, name):
    return os.path.join(path, name + '.key')


def _pos_path(path, name):
    if name.endswith('_out'):
        return os.path.join(path, name + '.pos')
    return None


def parse_pack_id(src):
    """Channel id of a shared-secret bundle, taken from its directory name.

    Raises
    ------
    ValueError
        If the name is not a UUID.
    """
    name = os.path.basename(os.path.normpath(src))
    try:
        return uuid.UUID(name)
    except ValueError:
        raise ValueError("bundle name %r is not a channel id" % name)


class KeyPack:
    """The four directional key streams of one channel.

    Use ``create``, ``load`` or ``import_bundle`` rather than the
    constructor.
    """

    def __init__(self, pack_id, path, id_out, id_in, payload_out, payload_in):
        self.id = pack_id
        self.path = path
        self.id_out = id_out
        self.id_in = id_in
        self.payload_out = payload_out
        self.payload_in = payload_in

    def __repr__(self):
        return 'KeyPack(%s)' % self.id

    @property
    def streams(self):
        return {
            ID_OUT: self.id_out,
            ID_IN: self.id_in,
            PAYLOAD_OUT: self.payload_out,
            PAYLOAD_IN: self.payload_in,
        }

    @classmethod
    def _open(cls, pack_id, path):
        streams = {}
        try:
            for name in _MIRROR:
                streams[name] = KeyStream(
                    _key_path(path, name), _pos_path(path, name))
        except BaseException:
            for stream in streams.values():
                stream.close()
            raise
        return cls(pack_id, path, **streams)

    @classmethod
    def _materialize(cls, pack_id, path, materials):
        os.makedirs(path, mode=DEFAULT_PERM_MODE)
        try:
            for name, material in materials.items():
                KeyStream.create(_key_path(path, name), material).close()
            return cls._open(pack_id, path)
        except BaseException:
            shutil.rmtree(path, ignore_errors=True)
            raise

    @classmethod
    def create(cls, pack_id, path, size):
        """Generate *size* fresh random bytes for each of the four streams.

        The outbound material must still be handed to the peer, see
        ``export``.
        """
        return cls._materialize(
            pack_id, path, {name: os.urandom(size) for name in _MIRROR})

    @classmethod
    def load(cls, pack_id, path):
        """Reopen a pack written earlier, resuming its allocation cursors."""
        if not os.path.isdir(path):
            raise FileNotFoundError("no key pack directory %s" % path)
        return cls._open(pack_id, path)

    @classmethod
    def import_bundle(cls, pack_id, path, src):
        """Copy the shared-secret bundle *src* into *path*.

        Bundles are written from the importer's point of view, so stream
        names are kept as they are.  Outbound cursors start at zero.
        """
        materials = {}
        for name in _MIRROR:
            with open(_key_path(src, name), 'rb') as f:
                materials[name] = f.read()
        return cls._materialize(pack_id, path, materials)

    def export(self, dest_dir):
        """Write this pack's material as a bundle for the peer.

        Returns
        -------
        str
            The bundle directory, ``<dest_dir>/<uuid>``.
        """
        bundle = os.path.join(dest_dir, str(self.id))
        os.makedirs(bundle, mode=DEFAULT_PERM_MODE)
        for name, stream in self.streams.items():
            KeyStream.create(
                _key_path(bundle, _MIRROR[name]),
                stream.read_at(0, stream.size)).close()
        return bundle

    def close(self):
        for stream in self.streams.values():
            stream.close()


class KeyStore:
    """Thread-safe mapping from channel id to ``KeyPack``.

    Registry changes and the channel id recovery scan hold the same lock,
    so a pack is never removed while a scan is looking at it.

    Parameters
    ----------
    path : str
        Root directory holding one sub-directory per channel.
    buffer_size : int
        Bytes of random material generated per stream for new packs.
    """

    def __init__(self, path, buffer_size=DEFAULT_KEY_BUFFER_SIZE):
        self.path = path
        self.buffer_size = buffer_size
        self._packs = {}
        self._lock = threading.RLock()

    @classmethod
    def load(cls, path, buffer_size=DEFAULT_KEY_BUFFER_SIZE):
        """Open the store at *path*, loading every channel found there.

        A missing root is created with owner-only permissions.  Entries that
        are not channel ids are ignored; channels that fail to load are
        logged and skipped.  That includes channels another open store
        holds, since two stores allocating from one cursor would reuse key
        bytes.
        """
        store = cls(path, buffer_size)

        if not os.path.exists(path):
            os.makedirs(path, mode=DEFAULT_PERM_MODE)
            return store

        for name in sorted(os.listdir(path)):
            entry = os.path.join(path, name)
            try:
                pack_id = uuid.UUID(name)
            except ValueError:
                logger.debug("Ignoring keystore entry %s", name)
                continue

            if pack_id in store._packs:
                continue
            try:
                store._packs[pack_id] = KeyPack.load(pack_id, entry)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load key pack %s: %s", name, e)

        logger.info("Loaded %d key packs from %s", len(store._packs), path)
        return store

    def _pack_path(self, pack_id):
        return os.path.join(self.path, str(pack_id))

    def add_key_pack(self, pack_id):
        """Create, store and register a fresh key pack.

        Raises
        ------
        AlreadyExists
            If *pack_id* is registered or its directory already exists.
        """
        with self._lock:
            path = self._pack_path(pack_id)
            if pack_id in self._packs or os.path.exists(path):
                raise AlreadyExists("key pack %s already exists" % pack_id)
            pack = KeyPack.create(pack_id, path, self.buffer_size)
            self._packs[pack_id] = pack
            return pack

    def remove_key_pack(self, pack_id, purge=False):
        """Unregister and close a pack.  Does nothing if it is absent.

        With *purge* the pack's material is deleted from disk as well.
        """
        with self._lock:
            pack = self._packs.pop(pack_id, None)
        if pack is None:
            return
        pack.close()
        if purge:
            shutil.rmtree(pack.path)

    def import_key_pack(self, src):
        """Register the key pack in the shared-secret bundle *src*.

        Raises
        ------
        AlreadyExists
            If the bundle's channel id is already known.
        """
        pack_id = parse_pack_id(src)
        with self._lock:
            path = self._pack_path(pack_id)
            if pack_id in self._packs or os.path.exists(path):
                raise AlreadyExists("key pack %s already exists" % pack_id)
            pack = KeyPack.import_bundle(pack_id, path, src)
            self._packs[pack_id] = pack
            return pack

    def export_key_pack(self, pack_id, dest_dir):
        """Write the bundle the peer imports to share channel *pack_id*."""
        pack = self.get_key_pack(pack_id)
        if pack is None:
            raise NoKeyPack("no key pack for channel %s" % pack_id)
        return pack.export(dest_dir)

    def get_key_pack(self, pack_id):
        """Return the pack for *pack_id*, or ``None``."""
        with self._lock:
            return self._packs.get(pack_id)

    def channel_ids(self):
        with self._lock:
            return list(self._packs)

    def __len__(self):
        with self._lock:
            return len(self._packs)

    def __contains__(self, pack_id):
        with self._lock:
            return pack_id in self._packs

    def try_recover_channel_id(self, id_key_pos, enc_id):
        """Find the channel whose inbound id key decrypts *enc_id*.

        Parameters
        ----------
        id_key_pos : int
            Position in the sender's id stream, sent in clear.
        enc_id : bytes
            The encrypted channel id.

        Returns
        -------
        uuid.UUID or None
            The matching channel, or ``None`` if no pack matches.
        """
        with self._lock:
            for pack_id, pack in self._packs.items():
                try:
                    key = pack.id_in.read_at(id_key_pos, len(enc_id))
                except KeyExhausted:
                    continue
                if xor_bytes(enc_id, key) == pack_id.bytes:
                    return pack_id
        return None

    def close(self):
        """Close every registered pack and empty the registry."""
        with self._lock:
            packs = list(self._packs.values())
            self._packs.clear()
        for pack in packs:
            pack.close()
