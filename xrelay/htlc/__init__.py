"""
Escrow adapters for each ledger.

The escrows themselves are external contracts; the adapters only:
1. Decode secret-reveal events into RevealEvents
2. Submit claims with the raw secret and the escrow's recorded parameters

Each ledger checks the secret with its own hash:
- EVM: keccak256 (EscrowSrc / EscrowDst withdraw)
- Sui: blake2b256 (shared_locker::claim_shared)
"""

from .base import EscrowLedger
from .evm import EVMEscrow, decode_reveal_log
from .sui import SuiEscrow, decode_reveal_event

__all__ = [
    "EscrowLedger",
    "EVMEscrow",
    "decode_reveal_log",
    "SuiEscrow",
    "decode_reveal_event",
]
