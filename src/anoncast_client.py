#!/usr/bin/env python3

"""Command-line anoncast client.

Sharing a channel between Alice and Bob::

    alice$ anoncast_client.py new
    4f1c...                                  (the new channel id)
    alice$ anoncast_client.py export 4f1c... /media/usb
    bob$   anoncast_client.py import /media/usb/4f1c...

Then, with a relay running (``anoncast_server.py``)::

    bob$   anoncast_client.py listen --host relay.example
    alice$ anoncast_client.py send --host relay.example 4f1c... 'hello'
"""

import argparse
import logging
import os
import sys
import uuid

import anoncast.client
import anoncast.errors
import anoncast.keystore
import anoncast.package

DEFAULT_DATA_DIR = os.path.join(os.path.expanduser('~'), '.anoncast')
DEFAULT_PORT = 8888


def open_store(args):
    return anoncast.keystore.KeyStore.load(
        os.path.join(args.data_dir, 'keystore'), args.key_buffer_size)


def open_client(args):
    return anoncast.client.Client(
        args.data_dir, (args.host, args.port),
        key_buffer_size=args.key_buffer_size,
        max_package_size=args.max_package_size)


def cmd_new(args):
    store = open_store(args)
    try:
        pack = store.add_key_pack(uuid.uuid4())
        print(pack.id)
    finally:
        store.close()


def cmd_export(args):
    store = open_store(args)
    try:
        print(store.export_key_pack(args.channel, args.dest_dir))
    finally:
        store.close()


def cmd_import(args):
    store = open_store(args)
    try:
        pack = store.import_key_pack(args.bundle)
        print(pack.id)
    finally:
        store.close()


def cmd_list(args):
    store = open_store(args)
    try:
        for pack_id in sorted(store.channel_ids(), key=str):
            pack = store.get_key_pack(pack_id)
            print('%s  id: %d bytes left  payload: %d bytes left'
                  % (pack_id, pack.id_out.remaining,
                     pack.payload_out.remaining))
    finally:
        store.close()


def cmd_send(args):
    with open_client(args) as client:
        client.start()
        client.write(args.channel, args.message.encode('utf-8'))


def cmd_listen(args):
    with open_client(args) as client:
        client.start()
        while True:
            try:
                package = client.receive()
            except anoncast.errors.BrokenPackageRecv as e:
                print('Broken package: %s' % e, file=sys.stderr)
                continue
            except anoncast.errors.ConnectionClosed:
                break
            print('%s: %s' % (package.channel_id,
                              package.payload.decode('utf-8', 'replace')))
            sys.stdout.flush()


def build_parser():
    parser = argparse.ArgumentParser(
        prog='anoncast_client.py',
        description='Anonymous messaging over pre-shared one-time pads',
    )
    parser.add_argument('--data-dir', default=DEFAULT_DATA_DIR,
                        help='Local state directory (default: %s)'
                             % DEFAULT_DATA_DIR)
    parser.add_argument('--key-buffer-size', type=int,
                        default=anoncast.keystore.DEFAULT_KEY_BUFFER_SIZE,
                        help='Key bytes per stream for new channels')
    parser.add_argument('--max-package-size', type=int,
                        default=anoncast.package.DEFAULT_MAX_PACKAGE_SIZE,
                        help='Largest package accepted, in bytes')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Verbose logging')
    sub = parser.add_subparsers(dest='command')

    sub.add_parser('new', help='Create a channel with fresh key material')

    ex = sub.add_parser('export', help='Write a channel bundle for the peer')
    ex.add_argument('channel', type=uuid.UUID, help='Channel id')
    ex.add_argument('dest_dir', help='Directory to write the bundle into')

    im = sub.add_parser('import', help='Import a channel bundle')
    im.add_argument('bundle', help='Bundle directory')

    sub.add_parser('list', help='List channels and remaining key material')

    for name, help_text in (('send', 'Send a message on a channel'),
                            ('listen', 'Print messages for known channels')):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument('--host', required=True, help='Relay address')
        cmd.add_argument('--port', type=int, default=DEFAULT_PORT,
                         help='Port (default: %d)' % DEFAULT_PORT)
        if name == 'send':
            cmd.add_argument('channel', type=uuid.UUID, help='Channel id')
            cmd.add_argument('message', help='Message text')

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    dispatch = {
        'new':    cmd_new,
        'export': cmd_export,
        'import': cmd_import,
        'list':   cmd_list,
        'send':   cmd_send,
        'listen': cmd_listen,
    }
    try:
        dispatch[args.command](args)
    except (anoncast.errors.AnoncastError, OSError, ValueError) as e:
        print('Error: %s' % e, file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
