#!/usr/bin/env python3

"""Tests for the package codec.

Packages are encoded with Alice's store and decoded with Bob's, whose
inbound streams mirror Alice's outbound ones.
"""

import os
import tempfile
import threading
import unittest
import uuid
from unittest import mock

from anoncast.errors import (
    KeyMaterialExhausted,
    MalformedPackage,
    NoKeyPack,
    PackageTooLarge,
    UnknownChannel,
    WrongTerminator,
)
from anoncast.keystore import KeyStore
from anoncast.package import (
    CHECK_SYMBOL,
    DataPackage,
    decode_package,
    encode_package,
    max_package_length,
)
from anoncast.varint import UUID_SIZE, bytes_to_int

BUFFER_SIZE = 1000


def remove_after_lookup(store, channel):
    """Patch *store* so that looking up *channel* also removes it, as a
    concurrent ``remove_key_pack`` right after the lookup would."""
    lookup = store.get_key_pack

    def get_key_pack(pack_id):
        pack = lookup(pack_id)
        if pack_id == channel:
            store.remove_key_pack(pack_id)
        return pack

    return mock.patch.object(store, 'get_key_pack', side_effect=get_key_pack)


class PackageTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.bundles = os.path.join(self.dir, 'bundles')
        os.mkdir(self.bundles)
        self.alice = KeyStore.load(os.path.join(self.dir, 'alice'), BUFFER_SIZE)
        self.bob = KeyStore.load(os.path.join(self.dir, 'bob'), BUFFER_SIZE)

    def tearDown(self):
        self.alice.close()
        self.bob.close()
        self._tmp.cleanup()

    def share(self):
        pack_id = uuid.uuid4()
        self.alice.add_key_pack(pack_id)
        self.bob.import_key_pack(
            self.alice.export_key_pack(pack_id, self.bundles))
        return pack_id


class TestRoundTrip(PackageTestCase):

    def test_payloads(self):
        channel = self.share()
        for payload in (b'', b'hi', os.urandom(300), bytes(range(256)) * 2):
            data = encode_package(self.alice, channel, payload)
            self.assertEqual(decode_package(self.bob, data),
                             DataPackage(channel, payload))

    def test_example_scenario(self):
        """'hi' on a channel with 1000-byte streams consumes 4 payload key
        bytes (2 size, 2 payload) and 17 id key bytes (16 id, 1 position)."""
        channel = self.share()
        data = encode_package(self.alice, channel, b'hi')

        package = decode_package(self.bob, data)
        self.assertEqual(package.channel_id, channel)
        self.assertEqual(package.payload, b'hi')

        sent = self.alice.get_key_pack(channel)
        self.assertEqual(sent.payload_out.position, 4)
        self.assertEqual(sent.id_out.position, UUID_SIZE + 1)
        received = self.bob.get_key_pack(channel)
        self.assertEqual(received.payload_in.position, 0)
        self.assertEqual(received.id_in.position, 0)

    def test_layout(self):
        channel = self.share()
        data = encode_package(self.alice, channel, b'hi')
        self.assertEqual(len(data), 25)

        total_len, n = bytes_to_int(data)
        self.assertEqual((total_len, n), (23, 2))
        self.assertEqual(bytes_to_int(data[n:]), (0, 1))
        self.assertEqual(data[-1], CHECK_SYMBOL)
        self.assertNotIn(channel.bytes, data)

    def test_decode_order_does_not_matter(self):
        channel = self.share()
        payloads = [b'first', b'second', b'third']
        frames = [encode_package(self.alice, channel, p) for p in payloads]
        for data, payload in reversed(list(zip(frames, payloads))):
            self.assertEqual(decode_package(self.bob, data).payload, payload)

    def test_both_directions(self):
        channel = self.share()
        to_bob = encode_package(self.alice, channel, b'ping')
        to_alice = encode_package(self.bob, channel, b'pong')
        self.assertEqual(decode_package(self.bob, to_bob).payload, b'ping')
        self.assertEqual(decode_package(self.alice, to_alice).payload, b'pong')

    def test_marshal_methods(self):
        channel = self.share()
        package = DataPackage(channel, b'payload')
        data = package.marshal_binary(self.alice)
        self.assertEqual(DataPackage.unmarshal_binary(self.bob, data), package)

    def test_consecutive_packages_use_fresh_key(self):
        channel = self.share()
        first = encode_package(self.alice, channel, b'same')
        second = encode_package(self.alice, channel, b'same')
        self.assertNotEqual(first[3:], second[3:])


class TestChannelRecovery(PackageTestCase):

    def test_picks_sender_channel(self):
        a, b, c = self.share(), self.share(), self.share()
        for channel in (b, c, a):
            data = encode_package(self.alice, channel, channel.bytes)
            package = decode_package(self.bob, data)
            self.assertEqual(package.channel_id, channel)
            self.assertEqual(package.payload, channel.bytes)

    def test_unknown_channel(self):
        self.share()
        stranger = uuid.uuid4()
        self.alice.add_key_pack(stranger)
        data = encode_package(self.alice, stranger, b'not for bob')
        with self.assertRaises(UnknownChannel):
            decode_package(self.bob, data)


class TestErrors(PackageTestCase):

    def test_no_key_pack(self):
        with self.assertRaises(NoKeyPack):
            encode_package(self.alice, uuid.uuid4(), b'hi')

    def test_payload_type(self):
        channel = self.share()
        with self.assertRaises(TypeError):
            encode_package(self.alice, channel, 'text')

    def test_wrong_terminator(self):
        channel = self.share()
        data = bytearray(encode_package(self.alice, channel, b'hi'))
        data[-1] ^= 0xff
        with self.assertRaises(WrongTerminator):
            decode_package(self.bob, bytes(data))
        with self.assertRaises(WrongTerminator):
            decode_package(self.bob, b'')

    def test_truncated(self):
        channel = self.share()
        data = encode_package(self.alice, channel, b'hello')
        with self.assertRaises(MalformedPackage):
            decode_package(self.bob, data[:-2] + data[-1:])
        with self.assertRaises(MalformedPackage):
            decode_package(self.bob, data[:10] + data[-1:])

    def test_payload_exhaustion_allocates_nothing(self):
        channel = self.share()
        pack = self.alice.get_key_pack(channel)
        with self.assertRaises(KeyMaterialExhausted):
            encode_package(self.alice, channel, bytes(BUFFER_SIZE))
        self.assertEqual(pack.payload_out.position, 0)
        self.assertEqual(pack.id_out.position, 0)

        # the largest payload that fits: 3 size bytes + 997 payload bytes
        payload = os.urandom(BUFFER_SIZE - 3)
        data = encode_package(self.alice, channel, payload)
        self.assertEqual(decode_package(self.bob, data).payload, payload)
        self.assertEqual(pack.payload_out.remaining, 0)

    def test_package_too_large(self):
        channel = self.share()
        pack = self.alice.get_key_pack(channel)
        limit = max_package_length(2)
        with self.assertRaises(PackageTooLarge):
            encode_package(self.alice, channel, b'hi', limit)
        self.assertEqual(pack.payload_out.position, 0)
        self.assertEqual(pack.id_out.position, 0)

        data = encode_package(self.alice, channel, b'hi', limit + 1)
        total_len, _ = bytes_to_int(data)
        self.assertLess(total_len, limit + 1)

    def test_pack_removed_while_encoding(self):
        channel = self.share()
        with remove_after_lookup(self.alice, channel):
            with self.assertRaises(NoKeyPack):
                encode_package(self.alice, channel, b'hi')
        self.assertNotIn(channel, self.alice)

    def test_pack_removed_while_decoding(self):
        channel = self.share()
        data = encode_package(self.alice, channel, b'hi')
        with remove_after_lookup(self.bob, channel):
            with self.assertRaises(UnknownChannel):
                decode_package(self.bob, data)

    def test_id_exhaustion(self):
        channel = self.share()
        pack = self.alice.get_key_pack(channel)
        pack.id_out.allocate(BUFFER_SIZE - UUID_SIZE)
        with self.assertRaises(KeyMaterialExhausted):
            encode_package(self.alice, channel, b'hi')

    def test_inbound_position_beyond_material(self):
        """A sender with more material than the receiver announces
        positions the receiver cannot follow."""
        channel = uuid.uuid4()
        self.alice.add_key_pack(channel)
        bundle = self.alice.export_key_pack(channel, self.bundles)
        for name in ('payload_in', 'payload_out'):
            path = os.path.join(bundle, name + '.key')
            with open(path, 'r+b') as f:
                f.truncate(8)
        self.bob.import_key_pack(bundle)

        data = encode_package(self.alice, channel, os.urandom(20))
        with self.assertRaises(KeyMaterialExhausted):
            decode_package(self.bob, data)


class TestConcurrentRemoval(PackageTestCase):

    def test_decode_while_pack_comes_and_goes(self):
        """Decoding races with removing and re-importing the channel: each
        attempt yields the payload or UnknownChannel, nothing else."""
        channel = self.share()
        bundle = os.path.join(self.bundles, str(channel))
        frames = [encode_package(self.alice, channel, b'msg %d' % i)
                  for i in range(4)]
        payloads = {b'msg %d' % i for i in range(4)}

        done = threading.Event()
        decoded = []
        unknown = []
        errors = []

        def decode():
            while True:
                for data in frames:
                    try:
                        decoded.append(decode_package(self.bob, data).payload)
                    except UnknownChannel:
                        unknown.append(data)
                    except Exception as e:
                        errors.append(e)
                if done.is_set():
                    return

        decoder = threading.Thread(target=decode)
        decoder.start()
        try:
            for _ in range(20):
                self.bob.remove_key_pack(channel, purge=True)
                self.bob.import_key_pack(bundle)
        finally:
            done.set()
            decoder.join(10)

        self.assertFalse(decoder.is_alive())
        self.assertEqual(errors, [])
        self.assertLessEqual(set(decoded), payloads)
        self.assertTrue(decoded or unknown)


if __name__ == '__main__':
    unittest.main()
