"""
Sui escrow adapter for xrelay.

Observes `{package}::shared_locker::SrcSecretRevealed` events and replays
secrets into `shared_locker::claim_shared(locker, secret, recipient, clock)`.

Native hashlock: blake2b256(secret).
"""

import re
import base64
import logging
from typing import Optional, Dict, Any, List, Tuple

from ..core import (
    HashAlgorithm, EscrowRef, RevealEvent, hash_secret, normalize_secret, short_hex,
)
from ..config import SuiConfig, SUI_CLOCK_OBJECT
from ..chains.sui import SuiClient, SuiKeypair, SuiRPCError
from ..errors import (
    IntegrationGap, ClaimRejected, DeadlineExceeded, EscrowAlreadyClaimed,
    EscrowTerminal,
)
from .base import EscrowLedger

log = logging.getLogger(__name__)

MOVE_ABORT_RE = re.compile(r"MoveAbort\(.*?,\s*(\d+)\)")

# Object errors returned by sui_getObject for a locker that is gone
MISSING_OBJECT_CODES = ("deleted", "notExists")


def _decode_bytes(value: Any) -> bytes:
    """vector<u8> as it appears in parsedJson: list of ints, hex or base64."""
    if value is None:
        return b""
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, str):
        if value.startswith("0x"):
            return bytes.fromhex(value[2:])
        try:
            return bytes.fromhex(value)
        except ValueError:
            return base64.b64decode(value)
    raise ValueError(f"Unsupported byte encoding: {type(value).__name__}")


def decode_reveal_event(event: Dict[str, Any], ledger_id: str = "sui") -> RevealEvent:
    """
    Decode one SrcSecretRevealed event.

    Raises:
        IntegrationGap: the event does not carry the raw secret
    """
    parsed = event.get("parsedJson") or {}
    event_id = event.get("id") or {}
    tx_id = event_id.get("txDigest")

    try:
        raw = _decode_bytes(parsed.get("secret"))
    except ValueError as e:
        raise IntegrationGap(f"Sui event {tx_id}: undecodable secret: {e}")
    if not raw:
        raise IntegrationGap(
            f"Sui event {tx_id} has no secret field; cannot derive variants from a hash"
        )
    try:
        secret = normalize_secret(raw)
    except ValueError as e:
        raise IntegrationGap(f"Sui event {tx_id}: {e}")

    hashlock = None
    if parsed.get("hashlock") is not None:
        try:
            hashlock = "0x" + _decode_bytes(parsed["hashlock"]).hex()
        except ValueError:
            hashlock = None

    return RevealEvent(
        ledger_id=ledger_id,
        secret=secret,
        tx_id=tx_id,
        event_type=event.get("type", ""),
        hashlock=hashlock,
    )


class SuiEscrow(EscrowLedger):
    """Sui ledger: watches locker reveal events and submits claim_shared calls."""

    algorithm = HashAlgorithm.BLAKE2B256

    def __init__(self, client: SuiClient, keypair: SuiKeypair, config: Optional[SuiConfig] = None):
        self.client = client
        self.keypair = keypair
        self.config = config or client.config
        self.ledger_id = self.config.ledger_id

    # =========================================================================
    # Event stream
    # =========================================================================

    def subscribe(self, cursor: Any = None) -> Dict:
        """
        Returns the event cursor to resume from.

        Without a saved cursor, starts after the newest existing event.
        An empty dict means "from the first event".
        """
        if cursor is not None:
            return cursor
        page = self.client.query_events(self.config.event_type, None, 1, descending=True)
        data = (page or {}).get("data") or []
        if data:
            log.info(f"[{self.ledger_id}] Watching {self.config.event_type} after {data[0]['id']}")
            return data[0]["id"]
        log.info(f"[{self.ledger_id}] Watching {self.config.event_type} from the first event")
        return {}

    def fetch_reveals(self, cursor: Any) -> Tuple[List[RevealEvent], Any]:
        page = self.client.query_events(
            self.config.event_type, cursor or None, self.config.page_size
        )
        data = (page or {}).get("data") or []

        events = []
        for raw in data:
            try:
                events.append(decode_reveal_event(raw, self.ledger_id))
            except IntegrationGap as e:
                log.error(f"[{self.ledger_id}] INTEGRATION GAP: {e}")

        next_cursor = page.get("nextCursor") if data else None
        if next_cursor is None:
            next_cursor = data[-1]["id"] if data else cursor
        return events, next_cursor

    # =========================================================================
    # Claims
    # =========================================================================

    def locker_fields(self, locker_id: str) -> Dict[str, Any]:
        """
        Read the locker object's Move fields.

        Raises:
            EscrowTerminal: the locker no longer exists
        """
        try:
            result = self.client.get_object(locker_id) or {}
        except SuiRPCError as e:
            raise ClaimRejected(f"Locker {locker_id}: {e.message}")

        error = result.get("error")
        if error:
            if error.get("code") in MISSING_OBJECT_CODES:
                raise EscrowTerminal(f"Locker {locker_id} is {error.get('code')}")
            raise ClaimRejected(f"Locker {locker_id}: {error}")

        content = (result.get("data") or {}).get("content") or {}
        return content.get("fields") or {}

    def claim(self, ref: EscrowRef, secret: bytes) -> str:
        """Call claim_shared on the locker at ref.locator."""
        secret = normalize_secret(secret)
        if ref.is_expired(self.now()):
            raise DeadlineExceeded(f"Locker {ref.locator} deadline {ref.deadline} passed")

        fields = self.locker_fields(ref.locator)
        if fields.get("claimed"):
            raise EscrowAlreadyClaimed(f"Locker {ref.locator} already claimed")
        if fields.get("refunded"):
            raise EscrowTerminal(f"Locker {ref.locator} was refunded")

        if fields.get("hashlock") is not None:
            expected = _decode_bytes(fields["hashlock"])
            if expected != hash_secret(secret, HashAlgorithm.BLAKE2B256):
                raise ClaimRejected(f"Locker {ref.locator}: hashlock does not match blake2b256(secret)")

        recipient = ref.params.get("recipient") or self.config.recipient or self.keypair.address
        log.info(f"[{self.ledger_id}] claim_shared({short_hex(secret)}) on {ref.locator}")

        try:
            result = self.client.sign_and_execute(
                self.keypair,
                self.config.package_id,
                self.config.module,
                self.config.claim_function,
                [ref.params.get("coin_type") or self.config.coin_type],
                [ref.locator, list(secret), recipient, SUI_CLOCK_OBJECT],
                self.config.gas_budget,
            )
        except SuiRPCError as e:
            self._raise_for_failure(ref, e.message)

        status = ((result or {}).get("effects") or {}).get("status") or {}
        if status.get("status") != "success":
            self._raise_for_failure(ref, status.get("error") or "transaction failed")

        digest = result.get("digest")
        log.info(f"[{self.ledger_id}] Claimed {ref.locator}: {digest}")
        return digest

    def abort_reason(self, message: str) -> Optional[str]:
        """Meaning of the Move abort code in `message`, if any."""
        match = MOVE_ABORT_RE.search(message or "")
        if not match:
            return None
        return self.config.abort_codes.get(int(match.group(1)), f"abort_{match.group(1)}")

    def _raise_for_failure(self, ref: EscrowRef, message: str):
        """Map a failed execution to the error taxonomy. Always raises."""
        reason = self.abort_reason(message)
        if reason == "already_claimed":
            raise EscrowAlreadyClaimed(f"Locker {ref.locator} already claimed")
        if reason == "refunded":
            raise EscrowTerminal(f"Locker {ref.locator} was refunded")
        if reason == "expired":
            raise DeadlineExceeded(f"Locker {ref.locator}: {message}")
        if "deleted" in message.lower() or "notexists" in message.lower():
            raise EscrowTerminal(f"Locker {ref.locator}: {message}")
        raise ClaimRejected(f"Locker {ref.locator}: {reason or message}")
