#!/usr/bin/env python3

import argparse
import logging

import anoncast.package
import anoncast.relay


class Range(object):
    def __init__(self, start, end):
        self.start = start
        self.end = end
        self.format = '%d--%d'

    def __eq__(self, other):
        return self.start <= other <= self.end

    def __str__(self):
        return (self.format % (self.start, self.end)) + ' inclusive'

    def __repr__(self):
        return self.format % (self.start, self.end)


def main():
    parser = argparse.ArgumentParser(
        description='anoncast relay: forwards packages between all clients')

    parser.add_argument(
        '-l', '--listen-address',
        type=str,
        help="The address upon which to listen.",
        default='0.0.0.0')

    parser.add_argument(
        '-p', '--port',
        type=int,
        help="The port upon which to listen.",
        default=8888,
        choices=[Range(1, 65535)])

    parser.add_argument(
        '-m', '--max-package-size',
        type=int,
        help="Largest package accepted from a client, in bytes.",
        default=anoncast.package.DEFAULT_MAX_PACKAGE_SIZE,
        choices=[Range(64, 1 << 30)])

    parser.add_argument(
        '-v', '--verbose',
        help="Log every connection.",
        action='store_true')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    server = anoncast.relay.RelayServer(
        (args.listen_address, args.port),
        max_package_size=args.max_package_size)
    print("Relay listening on %s:%d" % server.server_address[:2])
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == '__main__':
    main()
