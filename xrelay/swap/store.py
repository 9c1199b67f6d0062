"""
Correlation Store for xrelay.

Durable mapping from every HashVariant digest to the escrow refs on both
ledgers that share one secret. It is the only mutable shared state in the
relayer; all access goes through the methods below.

Persistence: a single JSON document rewritten atomically on every mutation
(temp file + fsync + os.replace) before the method returns.

File layout:
    {
        "version": 1,
        "entries": {<canonical digest hex>: <CorrelationEntry dict>},
        "cursors": {<ledger_id>: <watcher cursor>}
    }
"""

import os
import copy
import json
import time
import logging
import threading
from typing import Optional, Dict, List, Iterable, Any, Union

from ..core import (
    HashVariant, EscrowRef, EscrowRole, CorrelationEntry, EntryState,
    TERMINAL_STATES, normalize_secret, verify_preimage, unique,
)
from ..errors import CorrelationConflict, StoreCorruption, UnknownEntry

log = logging.getLogger(__name__)

STORE_VERSION = 1

# A HashVariant or its 0x hex digest
VariantLike = Union[HashVariant, str]


def _digest(variant: VariantLike) -> str:
    if isinstance(variant, HashVariant):
        return variant.key
    return variant.lower()


class CorrelationStore:
    """
    Thread-safe, file-backed correlation store.

    Entries are reachable from any of their alias digests. Callers always get
    snapshot copies; mutation only happens through the store's methods.
    """

    def __init__(self, path: Optional[str] = None):
        """
        Args:
            path: JSON file path. None keeps the store in memory only.
        """
        self.path = os.path.expanduser(path) if path else None
        self._lock = threading.RLock()
        self._entries: Dict[str, CorrelationEntry] = {}
        self._index: Dict[str, str] = {}     # digest -> entry key
        self._cursors: Dict[str, Any] = {}
        self._load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self):
        """Load entries from disk."""
        if not self.path or not os.path.exists(self.path):
            return

        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreCorruption(f"Cannot read correlation store {self.path}: {e}")

        if not isinstance(data, dict) or not isinstance(data.get("entries", {}), dict):
            raise StoreCorruption(f"Unexpected layout in {self.path}")

        for key, raw in data.get("entries", {}).items():
            try:
                entry = CorrelationEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                log.error(f"Skipping malformed correlation entry {key}: {e}")
                continue
            self._entries[entry.key] = entry
            for digest in entry.variants:
                self._index[digest] = entry.key

        self._cursors = dict(data.get("cursors") or {})
        log.info(f"Loaded {len(self._entries)} correlation entries from {self.path}")

    def _flush(self):
        """Write the whole store durably. Caller holds the lock."""
        if not self.path:
            return

        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)

        payload = {
            "version": STORE_VERSION,
            "entries": {k: e.to_dict() for k, e in self._entries.items()},
            "cursors": self._cursors,
        }

        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

        try:
            dir_fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    # =========================================================================
    # Internal helpers (caller holds the lock)
    # =========================================================================

    def _find(self, digest: str) -> Optional[CorrelationEntry]:
        key = self._index.get(digest)
        return self._entries.get(key) if key else None

    def _require(self, variant: VariantLike) -> CorrelationEntry:
        digest = _digest(variant)
        entry = self._find(digest)
        if entry is None:
            raise UnknownEntry(digest)
        return entry

    def _touch(self, entry: CorrelationEntry):
        entry.updated_at = int(time.time())

    def _refresh_state(self, entry: CorrelationEntry):
        if entry.state in TERMINAL_STATES:
            return
        entry.state = EntryState.READY if entry.is_complete else EntryState.PENDING

    def _merge(self, target: CorrelationEntry, other: CorrelationEntry):
        """Fold `other` into `target`. Raises CorrelationConflict on a role clash."""
        for role in (EscrowRole.SOURCE, EscrowRole.DESTINATION):
            theirs = other.ref_for(role)
            mine = target.ref_for(role)
            if theirs is None:
                continue
            if mine is not None and mine != theirs:
                raise CorrelationConflict(
                    target.key,
                    f"cannot merge {other.key}: different {role.value} refs "
                    f"({mine.locator} vs {theirs.locator})"
                )
            if mine is None:
                self._set_ref(target, theirs)

        target.forwarded = target.forwarded or other.forwarded
        if other.state in TERMINAL_STATES and target.state not in TERMINAL_STATES:
            target.state = other.state
        target.secret = target.secret or other.secret
        target.reveal_ledger = target.reveal_ledger or other.reveal_ledger
        target.claim_tx = target.claim_tx or other.claim_tx
        target.attempts = max(target.attempts, other.attempts)
        target.variants = unique(target.variants + other.variants)

        del self._entries[other.key]
        for digest in target.variants:
            self._index[digest] = target.key

    @staticmethod
    def _set_ref(entry: CorrelationEntry, ref: EscrowRef):
        if ref.role == EscrowRole.SOURCE:
            entry.source_ref = ref
        else:
            entry.dest_ref = ref

    def _conflict(self, entry: CorrelationEntry, message: str) -> CorrelationConflict:
        entry.state = EntryState.CONFLICT
        entry.last_error = message
        self._touch(entry)
        self._flush()
        log.critical(f"CORRELATION CONFLICT on {entry.key}: {message}")
        return CorrelationConflict(entry.key, message)

    # =========================================================================
    # Public contract
    # =========================================================================

    def record_lock(self, variant: HashVariant, ref: EscrowRef,
                    linked: Iterable[HashVariant] = ()) -> CorrelationEntry:
        """
        Upsert the entry for `variant` with `ref` in its role.

        Args:
            variant: hashlock the escrow was created with
            ref: the escrow reference
            linked: other variants of the same secret (known to the locker)

        Returns:
            Snapshot of the updated entry

        Raises:
            CorrelationConflict: a different ref is already recorded for the role
        """
        digests = unique([variant.key] + [v.key for v in linked])

        with self._lock:
            found = unique(self._index[d] for d in digests if d in self._index)
            if found:
                entry = self._entries[found[0]]
                for other_key in found[1:]:
                    try:
                        self._merge(entry, self._entries[other_key])
                    except CorrelationConflict as e:
                        raise self._conflict(entry, str(e))
            else:
                now = int(time.time())
                entry = CorrelationEntry(key=variant.key, created_at=now, updated_at=now)
                self._entries[entry.key] = entry

            if entry.state == EntryState.CONFLICT:
                raise CorrelationConflict(entry.key, "entry is in conflict state")

            existing = entry.ref_for(ref.role)
            new_digests = [d for d in digests if d not in entry.variants]

            if existing is not None and existing != ref:
                raise self._conflict(
                    entry,
                    f"{ref.role.value} already recorded as "
                    f"{existing.ledger_id}/{existing.locator}, got "
                    f"{ref.ledger_id}/{ref.locator}"
                )

            if existing == ref and not new_digests and len(found) <= 1:
                return copy.deepcopy(entry)

            self._set_ref(entry, ref)
            entry.variants = unique(entry.variants + digests)
            for digest in entry.variants:
                self._index[digest] = entry.key
            self._refresh_state(entry)
            self._touch(entry)
            self._flush()

            log.info(f"Recorded {ref.role.value} lock {ref.ledger_id}/{ref.locator} "
                     f"for {variant} (state={entry.state.value})")
            return copy.deepcopy(entry)

    def lookup(self, variant: VariantLike) -> Optional[CorrelationEntry]:
        """Current entry for `variant` (or its 0x hex digest), or None."""
        with self._lock:
            entry = self._find(_digest(variant))
            return copy.deepcopy(entry) if entry else None

    def link(self, variants: Iterable[HashVariant]) -> Optional[CorrelationEntry]:
        """
        Merge every entry reachable from `variants` into one.

        Only call this with variants proven to share a preimage (all derived
        from one revealed secret).

        Raises:
            CorrelationConflict: the entries hold different refs for one role
        """
        digests = [v.key for v in variants]
        with self._lock:
            found = unique(self._index[d] for d in digests if d in self._index)
            if not found:
                return None
            entry = self._entries[found[0]]
            if len(found) > 1:
                for other_key in found[1:]:
                    try:
                        self._merge(entry, self._entries[other_key])
                    except CorrelationConflict as e:
                        raise self._conflict(entry, str(e))
                self._refresh_state(entry)
                self._touch(entry)
                self._flush()
                log.info(f"Linked {len(found)} entries into {entry.key}")
            return copy.deepcopy(entry)

    def record_reveal(self, variant: VariantLike, secret: bytes, ledger_id: str,
                      aliases: Iterable[HashVariant] = ()) -> CorrelationEntry:
        """
        Cache a revealed (now public) secret on the entry.

        Args:
            variant: any digest of the entry
            secret: the revealed preimage
            ledger_id: ledger the secret was observed on
            aliases: further variants of `secret`; they are indexed on the
                entry so a lock recorded later under any of them finds the
                cached secret

        Raises:
            ValueError: an alias is not a digest of `secret`
            CorrelationConflict: an alias leads to an entry with clashing refs
        """
        raw = normalize_secret(secret)
        secret_hex = "0x" + raw.hex()
        aliases = list(aliases)
        for alias in aliases:
            if not verify_preimage(raw, alias):
                raise ValueError(f"{alias} is not a digest of the revealed secret")

        with self._lock:
            entry = self._require(variant)
            new_digests = [a.key for a in aliases if a.key not in entry.variants]
            if entry.secret == secret_hex and entry.reveal_ledger and not new_digests:
                return copy.deepcopy(entry)

            # A lock recorded under another alias since the last link()
            others = unique(self._index[d] for d in new_digests
                            if d in self._index and self._index[d] != entry.key)
            for other_key in others:
                try:
                    self._merge(entry, self._entries[other_key])
                except CorrelationConflict as e:
                    raise self._conflict(entry, str(e))

            entry.variants = unique(entry.variants + new_digests)
            for digest in entry.variants:
                self._index[digest] = entry.key
            entry.secret = secret_hex
            entry.reveal_ledger = entry.reveal_ledger or ledger_id
            self._refresh_state(entry)
            self._touch(entry)
            self._flush()
            return copy.deepcopy(entry)

    def mark_forwarded(self, variant: VariantLike, claim_tx: Optional[str] = None) -> CorrelationEntry:
        """Idempotency marker: no further claim will be submitted for this entry."""
        with self._lock:
            entry = self._require(variant)
            if entry.forwarded:
                return copy.deepcopy(entry)
            entry.forwarded = True
            entry.state = EntryState.FORWARDED
            entry.claim_tx = claim_tx or entry.claim_tx
            entry.last_error = None
            self._touch(entry)
            self._flush()
            return copy.deepcopy(entry)

    def record_failure(self, variant: VariantLike, error: str) -> CorrelationEntry:
        """Count a failed forwarding attempt."""
        with self._lock:
            entry = self._require(variant)
            entry.attempts += 1
            entry.last_error = error
            entry.last_attempt_at = int(time.time())
            self._touch(entry)
            self._flush()
            return copy.deepcopy(entry)

    def mark_abandoned(self, variant: VariantLike, reason: str) -> CorrelationEntry:
        """Stop retrying after a terminal ledger-side error."""
        return self._finish(variant, EntryState.ABANDONED, reason)

    def mark_expired(self, variant: VariantLike, reason: str = "deadline passed") -> CorrelationEntry:
        """Stop retrying after the deadlines passed."""
        return self._finish(variant, EntryState.EXPIRED, reason)

    def _finish(self, variant: VariantLike, state: EntryState, reason: str) -> CorrelationEntry:
        with self._lock:
            entry = self._require(variant)
            if entry.is_terminal:
                return copy.deepcopy(entry)
            entry.state = state
            entry.last_error = reason
            self._touch(entry)
            self._flush()
            log.warning(f"Entry {entry.key} {state.value}: {reason}")
            return copy.deepcopy(entry)

    # =========================================================================
    # Queries
    # =========================================================================

    def entries(self) -> List[CorrelationEntry]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._entries.values()]

    def pending_forwards(self) -> List[CorrelationEntry]:
        """Complete, unforwarded, non-terminal entries with a cached secret."""
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._entries.values()
                if e.is_complete and not e.forwarded and not e.is_terminal and e.secret
            ]

    def active(self) -> List[CorrelationEntry]:
        """Every non-terminal entry."""
        with self._lock:
            return [copy.deepcopy(e) for e in self._entries.values() if not e.is_terminal]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in EntryState}
            for entry in self._entries.values():
                counts[entry.state.value] += 1
            counts["total"] = len(self._entries)
            return counts

    # =========================================================================
    # Watcher cursors
    # =========================================================================

    def get_cursor(self, ledger_id: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._cursors.get(ledger_id))

    def set_cursor(self, ledger_id: str, cursor: Any):
        with self._lock:
            if self._cursors.get(ledger_id) == cursor:
                return
            self._cursors[ledger_id] = copy.deepcopy(cursor)
            self._flush()
