"""
Secret forwarding for xrelay.

Correlates the two escrows of a swap and forwards revealed secrets.
"""

from .store import CorrelationStore
from .coordinator import Coordinator, ForwardOutcome
from .watcher import LedgerWatcher
from .retry import RetryDriver

__all__ = ["CorrelationStore", "Coordinator", "ForwardOutcome", "LedgerWatcher", "RetryDriver"]
