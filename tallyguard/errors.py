"""Exception hierarchy for tallyguard."""

from __future__ import annotations


class TallyguardError(Exception):
    """Base class for engine errors."""


class StoreError(TallyguardError):
    """A store backend failed to read or write."""


class CacheError(TallyguardError):
    """A cache backend failed to read or write."""


class ConfigurationError(TallyguardError, ValueError):
    """Unsupported backend or malformed configuration."""
