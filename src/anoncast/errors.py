#!/usr/bin/env python

"""Exceptions raised by the anoncast key store, package codec and client."""


class AnoncastError(Exception):
    """Base class for all anoncast errors."""


class KeyExhausted(AnoncastError, EOFError):
    """A key stream has fewer bytes left than were requested."""


class KeyStreamClosed(AnoncastError, ValueError):
    """The key stream was closed, usually because its pack was removed."""


class KeyStreamLocked(AnoncastError, OSError):
    """An outbound key stream is already open in another key store."""


class AlreadyExists(AnoncastError):
    """A key pack with this channel id is already registered."""


class PackageError(AnoncastError):
    """Base class for package encode/decode failures."""


class NoKeyPack(PackageError, KeyError):
    """No key pack is registered for the channel."""


class WrongTerminator(PackageError):
    """The last byte of a package is not the check symbol."""


class UnknownChannel(PackageError):
    """No registered key pack decodes the package's channel id."""


class KeyMaterialExhausted(PackageError):
    """Not enough key material left to encode/decode the package."""


class MalformedPackage(PackageError, ValueError):
    """The package is truncated or its fields are inconsistent."""


class PackageTooLarge(PackageError, ValueError):
    """The payload would not fit in a package of the allowed size."""


class BrokenPackageSend(PackageError):
    """Attempted to send a package that could not be encoded."""


class BrokenPackageRecv(PackageError):
    """Received a package that could not be decoded."""


class ConnectionClosed(AnoncastError, ConnectionError):
    """The connection is closed or was dropped."""


class ConnectionFailed(AnoncastError, ConnectionError):
    """Could not connect to the remote address."""
