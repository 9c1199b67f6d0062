"""
Common interface for ledger escrow adapters.

The escrow contracts themselves are external: adapters only observe their
reveal events and call their claim entry points.
"""

import time
from typing import Any, List, Tuple

from ..core import HashAlgorithm, EscrowRef, RevealEvent


class EscrowLedger:
    """
    One ledger as seen by the relayer.

    Subclasses set `ledger_id` and `algorithm` and implement the methods below.
    `claim` must raise the errors from xrelay.errors:
        EscrowAlreadyClaimed, EscrowTerminal, DeadlineExceeded,
        ClaimRejected, TransientLedgerError
    """

    ledger_id: str = ""
    algorithm: HashAlgorithm = HashAlgorithm.KECCAK256

    def subscribe(self, cursor: Any = None) -> Any:
        """Open (or reopen) the reveal event stream. Returns the cursor to poll from."""
        raise NotImplementedError

    def fetch_reveals(self, cursor: Any) -> Tuple[List[RevealEvent], Any]:
        """Return reveal events after `cursor` and the advanced cursor."""
        raise NotImplementedError

    def claim(self, ref: EscrowRef, secret: bytes) -> str:
        """Submit a claim for `ref` with the raw secret. Returns the tx id."""
        raise NotImplementedError

    def now(self) -> int:
        """Ledger time in unix seconds (used for deadline checks)."""
        return int(time.time())
