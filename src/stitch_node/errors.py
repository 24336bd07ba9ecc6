"""Exception hierarchy for the stitch daemon."""

from __future__ import annotations


class StitchError(Exception):
    """Base class for all stitch-node errors."""


class ConfigError(StitchError):
    """Raised when the configuration file is missing or invalid."""


class LedgerError(StitchError):
    """Raised when a ledger node request fails or returns an error."""


class StreamClosedError(LedgerError):
    """Raised when the block-added notification stream ends."""


class BroadcastError(StitchError):
    """Raised when a stitch request could not be delivered to any peer."""


class WalletError(StitchError):
    """Raised when the operator wallet cannot load a key or build a transaction."""
