from .client import Client, State
from .errors import (
    AnoncastError,
    AlreadyExists,
    BrokenPackageRecv,
    BrokenPackageSend,
    ConnectionClosed,
    ConnectionFailed,
    KeyExhausted,
    KeyMaterialExhausted,
    KeyStreamClosed,
    KeyStreamLocked,
    MalformedPackage,
    NoKeyPack,
    PackageError,
    PackageTooLarge,
    UnknownChannel,
    WrongTerminator,
)
from .keystore import KeyPack, KeyStore
from .keystream import KeyStream
from .package import DataPackage, decode_package, encode_package
from .relay import RelayServer
