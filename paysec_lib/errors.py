"""
Exception types raised by the payment network security layer.

Validation failures (bad signature, stale timestamp, malformed token) are
never raised; they come back as result values. Only configuration problems
and cryptographic operation failures are exceptions.
"""


class PaySecError(Exception):
    """Base class for all errors raised by this library."""


class ConfigurationError(PaySecError):
    """Missing or unusable settings, keys or certificates."""


class EncryptionError(PaySecError):
    """A payload could not be encrypted."""


class DecryptionError(PaySecError):
    """A token could not be decrypted or failed its integrity check."""
