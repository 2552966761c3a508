"""Exception types raised by the keytag driver."""
from __future__ import annotations


class KeytagError(Exception):
    """Base exception for keytag errors."""


class NotFound(KeytagError):
    """An advertisement, service or characteristic is absent."""


class TransportFailure(KeytagError):
    """A connect, read or write was rejected or timed out."""


class CapabilityWriteFailure(KeytagError):
    """The hub rejected a capability update."""


class AlreadyPaired(KeytagError):
    """The tag is already present in the pairing store."""


class UnknownDevice(KeytagError):
    """No paired tag exists for the given address."""


__all__ = [
    "KeytagError",
    "NotFound",
    "TransportFailure",
    "CapabilityWriteFailure",
    "AlreadyPaired",
    "UnknownDevice",
]
