"""Exception types raised by the enrichment pipeline."""

from __future__ import annotations


class ExtenscanError(Exception):
    """Base class for extenscan errors."""


class TransientLookupFailure(ExtenscanError):
    """A registry or vulnerability lookup failed (network, timeout, bad payload).

    Never retried within a scan cycle; the next cycle tries again.
    """

    def __init__(self, subject: str, message: str):
        super().__init__(f"{subject}: {message}")
        self.subject = subject
        self.message = message


class UnparseableVersion(ExtenscanError, ValueError):
    """A version string is not major.minor.patch."""


class UnknownSeverity(ExtenscanError, ValueError):
    """An advisory carries no severity the resolver understands."""


class CacheCorruption(ExtenscanError):
    """A cache row could not be decoded."""


class ConfigurationError(ExtenscanError):
    """Invalid configuration or input file. Fatal, raised before enrichment starts."""
