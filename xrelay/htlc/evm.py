"""
EVM escrow adapter for xrelay.

Observes secret revelations on EscrowSrc/EscrowDst contracts and replays
secrets into `withdraw(bytes32 secret, Immutables immutables)`.

Native hashlock: keccak256(secret).

Reveal event shapes accepted:
    SecretRevealed(bytes32 indexed secretHash, bytes secret)
    EscrowWithdrawal(bytes32 secret)
"""

import logging
from typing import Optional, Dict, Any, List, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from ..core import (
    HashAlgorithm, EscrowRef, RevealEvent, hash_secret, normalize_secret, short_hex,
)
from ..chains.evm import EVMClient
from ..errors import (
    IntegrationGap, ClaimRejected, DeadlineExceeded, EscrowAlreadyClaimed,
    TransientLedgerError,
)
from .base import EscrowLedger

log = logging.getLogger(__name__)

SECRET_REVEALED_SIG = "SecretRevealed(bytes32,bytes)"
ESCROW_WITHDRAWAL_SIG = "EscrowWithdrawal(bytes32)"

SECRET_REVEALED_TOPIC = Web3.keccak(text=SECRET_REVEALED_SIG)
ESCROW_WITHDRAWAL_TOPIC = Web3.keccak(text=ESCROW_WITHDRAWAL_SIG)

IMMUTABLES_FIELDS = (
    "orderHash", "hashlock", "maker", "taker", "token",
    "amount", "safetyDeposit", "timelocks",
)

# Escrow ABI (minimal - only what the relayer uses)
ESCROW_ABI = [
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "secret", "type": "bytes32"},
            {
                "name": "immutables",
                "type": "tuple",
                "components": [
                    {"name": "orderHash", "type": "bytes32"},
                    {"name": "hashlock", "type": "bytes32"},
                    {"name": "maker", "type": "address"},
                    {"name": "taker", "type": "address"},
                    {"name": "token", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "safetyDeposit", "type": "uint256"},
                    {"name": "timelocks", "type": "uint256"},
                ],
            },
        ],
        "outputs": [],
    },
    {
        "name": "SecretRevealed",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "secretHash", "type": "bytes32", "indexed": True},
            {"name": "secret", "type": "bytes", "indexed": False},
        ],
    },
    {
        "name": "EscrowWithdrawal",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "secret", "type": "bytes32", "indexed": False},
        ],
    },
]

# Custom errors of the escrow contracts
REVERT_INVALID_SECRET = "InvalidSecret"
REVERT_INVALID_TIME = "InvalidTime"


def _selector(name: str) -> str:
    return bytes(Web3.keccak(text=f"{name}()")[:4]).hex()


REVERT_SELECTORS = {
    REVERT_INVALID_SECRET: _selector(REVERT_INVALID_SECRET),
    REVERT_INVALID_TIME: _selector(REVERT_INVALID_TIME),
}


def revert_matches(message: str, error: str) -> bool:
    """True if a revert message names `error` or carries its selector."""
    return error in message or REVERT_SELECTORS[error] in message.lower()


def _as_bytes(value: Any) -> bytes:
    """HexBytes / bytes / 0x-string -> bytes."""
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


def _bytes32(value: Any) -> bytes:
    raw = _as_bytes(value)
    if len(raw) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(raw)}")
    return raw


def immutables_from_params(params: Dict[str, Any]) -> Tuple:
    """
    Build the Immutables tuple from an EscrowRef's params.

    Raises:
        ValueError: a field is missing or malformed
    """
    missing = [f for f in IMMUTABLES_FIELDS if f not in params]
    if missing:
        raise ValueError(f"Immutables missing fields: {', '.join(missing)}")
    return (
        _bytes32(params["orderHash"]),
        _bytes32(params["hashlock"]),
        Web3.to_checksum_address(params["maker"]),
        Web3.to_checksum_address(params["taker"]),
        Web3.to_checksum_address(params["token"]),
        int(params["amount"]),
        int(params["safetyDeposit"]),
        int(params["timelocks"]),
    )


def decode_reveal_log(log_entry: Dict[str, Any], ledger_id: str = "ethereum") -> Optional[RevealEvent]:
    """
    Decode one EVM log into a RevealEvent.

    Returns:
        RevealEvent, or None if the log is not a reveal event

    Raises:
        IntegrationGap: reveal event without usable raw secret bytes
    """
    topics = [_as_bytes(t) for t in log_entry.get("topics", [])]
    if not topics:
        return None

    topic0 = topics[0]
    data = _as_bytes(log_entry.get("data", b""))
    tx_hash = log_entry.get("transactionHash")
    if tx_hash is None or isinstance(tx_hash, str):
        tx_id = tx_hash
    else:
        tx_id = Web3.to_hex(tx_hash)

    if topic0 == bytes(SECRET_REVEALED_TOPIC):
        hashlock = "0x" + topics[1].hex() if len(topics) > 1 else None
        try:
            (secret_raw,) = abi_decode(["bytes"], data)
        except DecodingError as e:
            raise IntegrationGap(f"SecretRevealed log {tx_id} has undecodable data: {e}")
        event_type = "SecretRevealed"
    elif topic0 == bytes(ESCROW_WITHDRAWAL_TOPIC):
        hashlock = None
        secret_raw = data[:32]
        event_type = "EscrowWithdrawal"
    else:
        return None

    if not secret_raw:
        raise IntegrationGap(
            f"{event_type} log {tx_id} carries only a hash ({hashlock}); "
            f"cannot derive variants without the raw secret"
        )
    try:
        secret = normalize_secret(secret_raw)
    except ValueError as e:
        raise IntegrationGap(f"{event_type} log {tx_id}: {e}")

    if hashlock and hash_secret(secret, HashAlgorithm.KECCAK256).hex() != hashlock[2:]:
        log.warning(f"{event_type} {tx_id}: event hash {hashlock[:18]}... is not "
                    f"keccak256(secret); using the raw secret")

    return RevealEvent(
        ledger_id=ledger_id,
        secret=secret,
        tx_id=tx_id,
        event_type=event_type,
        hashlock=hashlock,
    )


class EVMEscrow(EscrowLedger):
    """EVM ledger: watches reveal logs and submits withdraw() claims."""

    algorithm = HashAlgorithm.KECCAK256

    def __init__(self, client: EVMClient):
        self.client = client
        self.config = client.config
        self.ledger_id = client.config.ledger_id

    # =========================================================================
    # Event stream
    # =========================================================================

    def _safe_head(self) -> int:
        return self.client.block_number() - max(self.config.confirmations, 1) + 1

    def subscribe(self, cursor: Any = None) -> int:
        """Returns the next block to scan."""
        head = self._safe_head()
        if cursor is None:
            log.info(f"[{self.ledger_id}] Watching reveal logs from block {head}")
            return head
        return int(cursor)

    def fetch_reveals(self, cursor: Any) -> Tuple[List[RevealEvent], int]:
        start = int(cursor)
        head = self._safe_head()
        if start > head:
            return [], start

        end = min(head, start + self.config.max_block_range - 1)
        logs = self.client.get_logs(
            start, end, [[SECRET_REVEALED_TOPIC, ESCROW_WITHDRAWAL_TOPIC]]
        )

        events = []
        for entry in logs:
            try:
                event = decode_reveal_log(entry, self.ledger_id)
            except IntegrationGap as e:
                log.error(f"[{self.ledger_id}] INTEGRATION GAP: {e}")
                continue
            if event:
                events.append(event)
        return events, end + 1

    # =========================================================================
    # Claims
    # =========================================================================

    def has_withdrawal(self, ref: EscrowRef) -> bool:
        """True when the escrow already emitted a reveal log (it was claimed)."""
        head = self.client.block_number()
        start = ref.params.get("deployed_block")
        if start is None:
            start = max(0, head - self.config.claim_lookback)
        start = int(start)
        while start <= head:
            end = min(head, start + self.config.max_block_range - 1)
            logs = self.client.get_logs(
                start, end, [[SECRET_REVEALED_TOPIC, ESCROW_WITHDRAWAL_TOPIC]],
                address=ref.locator,
            )
            if logs:
                return True
            start = end + 1
        return False

    def claim(self, ref: EscrowRef, secret: bytes) -> str:
        """Call withdraw(secret, immutables) on the escrow at ref.locator."""
        secret = normalize_secret(secret)
        if ref.is_expired(self.now()):
            raise DeadlineExceeded(f"Escrow {ref.locator} deadline {ref.deadline} passed")

        try:
            immutables = immutables_from_params(ref.params)
        except ValueError as e:
            raise ClaimRejected(f"Escrow {ref.locator}: {e}")

        if immutables[1] != hash_secret(secret, HashAlgorithm.KECCAK256):
            raise ClaimRejected(f"Escrow {ref.locator}: hashlock does not match keccak256(secret)")

        contract = self.client.contract(ref.locator, ESCROW_ABI)
        log.info(f"[{self.ledger_id}] withdraw({short_hex(secret)}) on {ref.locator}")

        try:
            return self.client.send_transaction(contract.functions.withdraw(secret, immutables))
        except ContractLogicError as e:
            self._raise_for_revert(ref, f"{e} {e.data or ''}")
        except ClaimRejected as e:
            self._raise_for_revert(ref, str(e))

    def _raise_for_revert(self, ref: EscrowRef, message: str):
        """Map a revert to the error taxonomy. Always raises."""
        if revert_matches(message, REVERT_INVALID_SECRET):
            raise ClaimRejected(f"Escrow {ref.locator}: hash mismatch ({message})")

        if revert_matches(message, REVERT_INVALID_TIME) and ref.is_expired(self.now()):
            raise DeadlineExceeded(f"Escrow {ref.locator}: {message}")

        try:
            claimed = self.has_withdrawal(ref)
        except TransientLedgerError as e:
            raise ClaimRejected(f"Escrow {ref.locator}: {message} (state unknown: {e})")
        if claimed:
            raise EscrowAlreadyClaimed(f"Escrow {ref.locator} already withdrawn")
        raise ClaimRejected(f"Escrow {ref.locator}: {message}")
