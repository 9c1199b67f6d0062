"""
Error taxonomy for xrelay.

Ledger adapters raise these; the coordinator and watchers convert them into
retry / forward / abandon decisions so nothing escapes a worker thread.
"""


class RelayError(Exception):
    """Base class for all relayer errors."""


class ConfigError(RelayError):
    """Missing or invalid configuration. Fatal at startup."""

    def __init__(self, message: str, missing=None):
        super().__init__(message)
        self.missing = list(missing or [])


class StoreCorruption(RelayError):
    """The persisted correlation file cannot be read."""


class CorrelationConflict(RelayError):
    """recordLock saw a different ref for a role that is already set."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key


class UnknownEntry(RelayError, KeyError):
    """No correlation entry for the given variant."""


class IntegrationGap(RelayError):
    """A reveal event does not carry the raw secret."""


class LedgerError(RelayError):
    """Base class for errors reported by a ledger adapter."""


class TransientLedgerError(LedgerError):
    """RPC timeout, dropped subscription, node unavailable. Retry with backoff."""


class ClaimRejected(LedgerError):
    """The ledger rejected a claim (hash mismatch, too early, revert).

    Retryable until the escrow deadline.
    """


class EscrowAlreadyClaimed(LedgerError):
    """The escrow is already Claimed. Equivalent to a successful forward."""


class EscrowTerminal(LedgerError):
    """The escrow is Refunded or no longer exists. Do not retry."""


class DeadlineExceeded(LedgerError):
    """The escrow deadline has passed. Claim can no longer succeed."""
