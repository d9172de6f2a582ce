# backend/errors.py
from __future__ import annotations


class ScanError(Exception):
    """Base class for every error the scanner raises to its callers."""

    def __init__(self, message: str, host: str = "", port: str = ""):
        super().__init__(message)
        self.message = message
        self.host = host
        self.port = port

    def __str__(self) -> str:
        if self.host:
            return f"{self.host}:{self.port}: {self.message}" if self.port else f"{self.host}: {self.message}"
        return self.message


class ConfigurationError(ScanError):
    """Missing/invalid target or unknown version name. Raised before any probe."""


class NetworkError(ScanError):
    """TCP dial failed (resolution, refused, unreachable, dial timeout)."""


class HandshakeTimeout(ScanError):
    """The deadline elapsed while the TLS handshake was in flight."""


class ScanCancelled(ScanError):
    """The caller's cancellation token fired before the next probe started."""


class ProtocolMismatch(ScanError):
    """The remote rejected the offered version/cipher.

    Only surfaces when a single connection is all the operation has
    (certificate fetch); sweeps and enumeration fold it into their tables.
    """


class EnumerationInconsistency(ScanError):
    """A version the sweep marked supported yielded no cipher suites."""

