"""
Core types and hash utilities for xrelay.

Every ledger verifies the revealed secret with its own hash function, so a
single secret is turned into one HashVariant per supported algorithm.

Encoding contract: every digest is computed over the raw secret bytes exactly
as they are passed to the escrow claim entry points (32 bytes, no hex text,
no 0x prefix, no length prefix).
"""

import hashlib
import secrets
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, FrozenSet, Iterable, Union

from web3 import Web3


SECRET_LENGTH = 32


class HashAlgorithm(Enum):
    """Ledger-native hashlock algorithms."""
    KECCAK256 = "keccak256"     # EVM escrows
    BLAKE2B256 = "blake2b256"   # Sui shared lockers


SUPPORTED_ALGORITHMS = (
    HashAlgorithm.KECCAK256,
    HashAlgorithm.BLAKE2B256,
)


@dataclass(frozen=True)
class HashVariant:
    """One ledger-specific digest of a secret."""
    algorithm: HashAlgorithm
    digest: bytes

    @property
    def key(self) -> str:
        """Store key: 0x-prefixed lowercase hex digest."""
        return "0x" + self.digest.hex()

    def to_dict(self) -> Dict[str, str]:
        return {"algorithm": self.algorithm.value, "digest": self.key}

    def __str__(self) -> str:
        return f"{self.algorithm.value}:{self.key[:18]}..."


# =============================================================================
# Hash Compatibility Layer
# =============================================================================

def normalize_secret(value: Union[str, bytes, bytearray, List[int]]) -> bytes:
    """
    Convert a secret in any wire form into its canonical raw bytes.

    Accepts hex text (with or without 0x), bytes, or a list of ints
    (Sui vector<u8> JSON).

    Raises:
        ValueError: if the value cannot be decoded or is not SECRET_LENGTH bytes
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        text = value[2:] if value.lower().startswith("0x") else value
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise ValueError(f"Secret is not valid hex: {value[:18]}...")
    elif isinstance(value, (list, tuple)):
        try:
            raw = bytes(value)
        except (TypeError, ValueError):
            raise ValueError("Secret byte list contains non-byte values")
    else:
        raise ValueError(f"Unsupported secret type: {type(value).__name__}")

    if len(raw) != SECRET_LENGTH:
        raise ValueError(f"Secret must be {SECRET_LENGTH} bytes, got {len(raw)}")
    return raw


def hash_secret(secret: bytes, algorithm: HashAlgorithm) -> bytes:
    """Hash raw secret bytes with one ledger-native algorithm."""
    if algorithm == HashAlgorithm.KECCAK256:
        return bytes(Web3.keccak(secret))
    if algorithm == HashAlgorithm.BLAKE2B256:
        return hashlib.blake2b(secret, digest_size=32).digest()
    raise ValueError(f"Unsupported algorithm: {algorithm}")


def variant_for(secret: bytes, algorithm: HashAlgorithm) -> HashVariant:
    """Derive a single HashVariant."""
    return HashVariant(algorithm, hash_secret(secret, algorithm))


def derive_variants(secret: bytes) -> FrozenSet[HashVariant]:
    """
    Derive every supported HashVariant from one secret.

    Pure and deterministic. Watchers, the coordinator and lock registration
    must all go through this function.
    """
    secret = normalize_secret(secret)
    return frozenset(variant_for(secret, algo) for algo in SUPPORTED_ALGORITHMS)


def ordered_variants(secret: bytes) -> List[HashVariant]:
    """Variants in SUPPORTED_ALGORITHMS order (stable iteration)."""
    secret = normalize_secret(secret)
    return [variant_for(secret, algo) for algo in SUPPORTED_ALGORITHMS]


def verify_preimage(secret: bytes, variant: HashVariant) -> bool:
    """Check that hash(secret) == variant.digest for the variant's algorithm."""
    try:
        return hash_secret(normalize_secret(secret), variant.algorithm) == variant.digest
    except ValueError:
        return False


def parse_variant(algorithm: Union[str, HashAlgorithm], digest: Union[str, bytes]) -> HashVariant:
    """
    Build a HashVariant from wire values.

    Raises:
        ValueError: unknown algorithm or digest that is not 32 bytes
    """
    algo = algorithm if isinstance(algorithm, HashAlgorithm) else HashAlgorithm(algorithm)
    if isinstance(digest, str):
        text = digest[2:] if digest.lower().startswith("0x") else digest
        raw = bytes.fromhex(text)
    else:
        raw = bytes(digest)
    if len(raw) != 32:
        raise ValueError(f"Digest must be 32 bytes, got {len(raw)}")
    return HashVariant(algo, raw)


def generate_secret() -> bytes:
    """Generate a fresh random secret."""
    return secrets.token_bytes(SECRET_LENGTH)


def short_hex(data: Union[bytes, str], length: int = 16) -> str:
    """Truncated hex for log lines."""
    text = data.hex() if isinstance(data, (bytes, bytearray)) else data
    if text.startswith("0x"):
        text = text[2:]
    return f"{text[:length]}..."


# =============================================================================
# Escrow references and correlation entries
# =============================================================================

class EscrowRole(Enum):
    """Which side of the swap an escrow sits on."""
    SOURCE = "source"
    DESTINATION = "destination"


@dataclass(frozen=True)
class EscrowRef:
    """
    One concrete escrow instance on one ledger.

    `params` holds the ledger-specific data the claim entry point needs
    (EVM immutables struct; empty for a Sui shared locker).
    """
    ledger_id: str
    locator: str                    # contract address or object id
    role: EscrowRole
    deadline: Optional[int] = None  # unix seconds after which claim fails
    params: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self.deadline is None:
            return False
        now = int(time.time()) if now is None else now
        return now >= self.deadline

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ledger_id": self.ledger_id,
            "locator": self.locator,
            "role": self.role.value,
            "deadline": self.deadline,
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowRef":
        return cls(
            ledger_id=data["ledger_id"],
            locator=data["locator"],
            role=EscrowRole(data["role"]),
            deadline=data.get("deadline"),
            params=dict(data.get("params") or {}),
        )


class EntryState(Enum):
    """CorrelationEntry lifecycle."""
    PENDING = "pending"       # one side recorded
    READY = "ready"           # both sides recorded, not forwarded
    FORWARDED = "forwarded"   # claim submitted (or already claimed)
    ABANDONED = "abandoned"   # terminal ledger-side error
    EXPIRED = "expired"       # deadlines passed without a forward
    CONFLICT = "conflict"     # bookkeeping conflict, needs an operator


TERMINAL_STATES = (
    EntryState.FORWARDED,
    EntryState.ABANDONED,
    EntryState.EXPIRED,
    EntryState.CONFLICT,
)


@dataclass
class CorrelationEntry:
    """Links the two escrow instances of one swap via their HashVariants."""
    key: str
    variants: List[str] = field(default_factory=list)
    source_ref: Optional[EscrowRef] = None
    dest_ref: Optional[EscrowRef] = None
    forwarded: bool = False
    state: EntryState = EntryState.PENDING

    # Revealed secret (public once revealed), cached for replay
    secret: Optional[str] = None
    reveal_ledger: Optional[str] = None

    # Forwarding bookkeeping
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[int] = None
    claim_tx: Optional[str] = None

    created_at: int = 0
    updated_at: int = 0

    @property
    def is_complete(self) -> bool:
        return self.source_ref is not None and self.dest_ref is not None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def refs(self) -> List[EscrowRef]:
        return [r for r in (self.source_ref, self.dest_ref) if r is not None]

    def ref_for(self, role: EscrowRole) -> Optional[EscrowRef]:
        return self.source_ref if role == EscrowRole.SOURCE else self.dest_ref

    def counterpart(self, ledger_id: str) -> Optional[EscrowRef]:
        """The recorded escrow that is NOT on `ledger_id`."""
        for ref in self.refs():
            if ref.ledger_id != ledger_id:
                return ref
        return None

    def all_expired(self, now: Optional[int] = None) -> bool:
        """True when every recorded ref has a deadline and all have passed."""
        refs = self.refs()
        if not refs:
            return False
        return all(r.deadline is not None and r.is_expired(now) for r in refs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "variants": list(self.variants),
            "source_ref": self.source_ref.to_dict() if self.source_ref else None,
            "dest_ref": self.dest_ref.to_dict() if self.dest_ref else None,
            "forwarded": self.forwarded,
            "state": self.state.value,
            "secret": self.secret,
            "reveal_ledger": self.reveal_ledger,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_attempt_at": self.last_attempt_at,
            "claim_tx": self.claim_tx,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CorrelationEntry":
        src = data.get("source_ref")
        dst = data.get("dest_ref")
        return cls(
            key=data["key"],
            variants=list(data.get("variants") or [data["key"]]),
            source_ref=EscrowRef.from_dict(src) if src else None,
            dest_ref=EscrowRef.from_dict(dst) if dst else None,
            forwarded=bool(data.get("forwarded", False)),
            state=EntryState(data.get("state", EntryState.PENDING.value)),
            secret=data.get("secret"),
            reveal_ledger=data.get("reveal_ledger"),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            last_attempt_at=data.get("last_attempt_at"),
            claim_tx=data.get("claim_tx"),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
        )


@dataclass
class RevealEvent:
    """A secret observed on one ledger."""
    ledger_id: str
    secret: bytes
    tx_id: Optional[str] = None
    event_type: str = ""
    hashlock: Optional[str] = None      # digest carried by the event, if any
    observed_at: float = field(default_factory=time.time)

    def __repr__(self) -> str:
        return (f"RevealEvent(ledger={self.ledger_id}, secret={short_hex(self.secret)}, "
                f"tx={self.tx_id})")


def unique(items: Iterable[str]) -> List[str]:
    """Order-preserving de-duplication."""
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
