"""
Coordinator for xrelay.

Turns a secret revealed on one ledger into a claim on the counterpart ledger.

Flow per revealed secret:
1. Derive every HashVariant of the secret
2. Resolve (and merge) the correlation entries those variants point to
3. Skip if already forwarded (duplicate delivery)
4. Skip if the counterpart escrow is not recorded yet (the secret stays cached
   on the entry and is replayed when the lock arrives)
5. Claim on the counterpart ledger; mark forwarded on success or when the
   escrow turns out to be claimed already

Forwarding decisions on one swap are serialised by a lock keyed on the secret's
first derived variant. Unrelated swaps run in parallel on the worker pool.
"""

import time
import queue
import logging
import threading
from enum import Enum
from collections import Counter
from contextlib import contextmanager
from typing import Dict, List, Optional, Iterable, Union

from ..core import (
    HashVariant, RevealEvent, CorrelationEntry, EscrowRef, EntryState,
    normalize_secret, ordered_variants, short_hex,
)
from ..errors import (
    CorrelationConflict, EscrowAlreadyClaimed, EscrowTerminal, DeadlineExceeded,
    ClaimRejected, TransientLedgerError,
)
from ..htlc.base import EscrowLedger
from .store import CorrelationStore
from .retry import retry_spacing

log = logging.getLogger(__name__)


class ForwardOutcome(Enum):
    """Result of one forwarding decision."""
    FORWARDED = "forwarded"
    ALREADY_CLAIMED = "already_claimed"
    DUPLICATE = "duplicate"
    MISS = "miss"                   # no entry for any variant
    INCOMPLETE = "incomplete"       # counterpart escrow not recorded yet
    RETRY = "retry"                 # claim failed, will be retried
    EXPIRED = "expired"
    ABANDONED = "abandoned"
    CONFLICT = "conflict"


class KeyedLock:
    """One mutex per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class Coordinator:
    """
    Forwards revealed secrets between ledgers.

    Watchers call `accept` (caches, then queues); worker threads call
    `on_secret_revealed`. Ledger errors are converted into outcomes here and
    never escape a worker.
    """

    def __init__(self, store: CorrelationStore,
                 ledgers: Union[Dict[str, EscrowLedger], Iterable[EscrowLedger]],
                 workers: int = 4, retry_interval: float = 30.0,
                 retry_backoff_max: float = 600.0):
        self.store = store
        if isinstance(ledgers, dict):
            self.ledgers = dict(ledgers)
        else:
            self.ledgers = {ledger.ledger_id: ledger for ledger in ledgers}
        self.workers = max(1, workers)
        self.retry_interval = retry_interval
        self.retry_backoff_max = retry_backoff_max

        self._queue: "queue.Queue[RevealEvent]" = queue.Queue()
        self._locks = KeyedLock()
        self._running = False
        self._threads: List[threading.Thread] = []

        self._stats_lock = threading.Lock()
        self.outcomes: Counter = Counter()

    # =========================================================================
    # Worker pool
    # =========================================================================

    def submit(self, event: RevealEvent):
        """Hand off a revealed secret. Never blocks."""
        self._queue.put_nowait(event)

    def accept(self, event: RevealEvent):
        """
        Watcher sink: cache the secret on its entry, then hand off to the workers.

        The store write is durable before this returns, so a cursor the watcher
        saves afterwards never moves past a reveal the store does not hold. A
        queued event lost on shutdown is re-driven from the cache by
        retry_pending().
        """
        self.cache_reveal(event.ledger_id, event.secret)
        self.submit(event)

    def cache_reveal(self, ledger_id: str, secret) -> Optional[CorrelationEntry]:
        """
        Link every variant of `secret` and store the secret on the entry.

        Does not take the swap lock: a watcher must not wait for a claim in
        flight on a worker.

        Returns:
            Snapshot of the entry, or None on a correlation miss or conflict
        """
        secret = normalize_secret(secret)
        variants = ordered_variants(secret)
        try:
            entry = self.store.link(variants)
            if entry is None:
                return None
            if entry.forwarded or entry.is_terminal:
                return entry
            return self.store.record_reveal(entry.key, secret, ledger_id, variants)
        except CorrelationConflict as e:
            log.critical(f"Secret {short_hex(secret)} hits a conflicted entry: {e}")
            return None

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def start(self):
        """Start worker threads."""
        if self._running:
            return
        self._running = True
        self._threads = []
        for i in range(self.workers):
            thread = threading.Thread(target=self._worker_loop, name=f"coordinator-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        log.info(f"Coordinator started with {self.workers} workers")

    def stop(self):
        """Stop worker threads (queued events are kept)."""
        self._running = False
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []
        log.info("Coordinator stopped")

    def join(self):
        """Block until every submitted event has been processed."""
        self._queue.join()

    def _worker_loop(self):
        while self._running:
            self.process_next(timeout=0.5)

    def process_next(self, timeout: Optional[float] = None) -> Optional[ForwardOutcome]:
        """
        Process one queued event.

        Returns:
            The outcome, or None if the queue stayed empty for `timeout`
        """
        try:
            event = self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

        try:
            return self.on_secret_revealed(event.ledger_id, event.secret)
        except Exception as e:
            log.error(f"Failed to process {event!r}: {e}")
            return None
        finally:
            self._queue.task_done()

    # =========================================================================
    # Forwarding
    # =========================================================================

    def _count(self, outcome: ForwardOutcome) -> ForwardOutcome:
        with self._stats_lock:
            self.outcomes[outcome.value] += 1
        return outcome

    def on_secret_revealed(self, ledger_id: str, secret) -> ForwardOutcome:
        """
        Forward a secret revealed on `ledger_id` to the counterpart escrow.

        Args:
            ledger_id: ledger the secret was observed on
            secret: raw secret (bytes, hex or byte list)

        Raises:
            ValueError: the secret is not SECRET_LENGTH bytes
        """
        secret = normalize_secret(secret)
        variants = ordered_variants(secret)

        with self._locks.hold(variants[0].key):
            try:
                entry = self.store.link(variants)
            except CorrelationConflict as e:
                log.critical(f"Secret {short_hex(secret)} hits a conflicted entry: {e}")
                return self._count(ForwardOutcome.CONFLICT)

            if entry is None:
                log.info(f"[{ledger_id}] Correlation miss for secret {short_hex(secret)}")
                return self._count(ForwardOutcome.MISS)

            variant = self._entry_variant(entry, variants)
            if entry.forwarded:
                log.info(f"[{ledger_id}] Duplicate reveal for {variant}, already forwarded")
                return self._count(ForwardOutcome.DUPLICATE)

            if entry.state == EntryState.CONFLICT:
                return self._count(ForwardOutcome.CONFLICT)
            if entry.state == EntryState.EXPIRED:
                return self._count(ForwardOutcome.EXPIRED)
            if entry.state == EntryState.ABANDONED:
                return self._count(ForwardOutcome.ABANDONED)

            try:
                entry = self.store.record_reveal(variant, secret, ledger_id, variants)
            except CorrelationConflict as e:
                log.critical(f"Secret {short_hex(secret)} hits a conflicted entry: {e}")
                return self._count(ForwardOutcome.CONFLICT)

            target = entry.counterpart(ledger_id)
            if not entry.is_complete or target is None:
                log.info(f"[{ledger_id}] No counterpart escrow for {variant} yet, "
                         f"secret cached for replay")
                return self._count(ForwardOutcome.INCOMPLETE)

            return self._count(self._forward(variant, target, secret))

    @staticmethod
    def _entry_variant(entry: CorrelationEntry, variants: List[HashVariant]) -> HashVariant:
        """The first derived variant that indexes `entry`."""
        for variant in variants:
            if variant.key in entry.variants:
                return variant
        return variants[0]

    def _forward(self, variant: HashVariant, target: EscrowRef, secret: bytes) -> ForwardOutcome:
        """Submit the claim on the target ledger. Caller holds the swap lock."""
        ledger = self.ledgers.get(target.ledger_id)
        if ledger is None:
            self.store.mark_abandoned(variant, f"no adapter for ledger {target.ledger_id}")
            return ForwardOutcome.ABANDONED

        if target.is_expired(ledger.now()):
            self.store.mark_expired(variant, f"{target.ledger_id} deadline {target.deadline} passed")
            return ForwardOutcome.EXPIRED

        log.info(f"Forwarding {short_hex(secret)} to {target.ledger_id}/{target.locator}")

        try:
            tx_id = ledger.claim(target, secret)

        except EscrowAlreadyClaimed as e:
            log.info(f"{target.ledger_id}/{target.locator} already claimed: {e}")
            self.store.mark_forwarded(variant)
            return ForwardOutcome.ALREADY_CLAIMED

        except EscrowTerminal as e:
            self.store.mark_abandoned(variant, str(e))
            return ForwardOutcome.ABANDONED

        except DeadlineExceeded as e:
            self.store.mark_expired(variant, str(e))
            return ForwardOutcome.EXPIRED

        except TransientLedgerError as e:
            log.warning(f"Transient failure claiming {target.locator}: {e}")
            return self._failed(variant, target, ledger, str(e))

        except ClaimRejected as e:
            log.error(f"Claim on {target.ledger_id}/{target.locator} rejected: {e}")
            return self._failed(variant, target, ledger, str(e))

        except Exception as e:
            log.error(f"Claim on {target.ledger_id}/{target.locator} failed: {e}")
            return self._failed(variant, target, ledger, str(e))

        self.store.mark_forwarded(variant, tx_id)
        log.info(f"Forwarded {variant} -> {target.ledger_id}/{target.locator}: {tx_id}")
        return ForwardOutcome.FORWARDED

    def _failed(self, variant: HashVariant, target: EscrowRef,
                ledger: EscrowLedger, error: str) -> ForwardOutcome:
        self.store.record_failure(variant, error)
        if target.is_expired(ledger.now()):
            self.store.mark_expired(variant, f"deadline passed after failed claim: {error}")
            return ForwardOutcome.EXPIRED
        return ForwardOutcome.RETRY

    # =========================================================================
    # Replay / retry
    # =========================================================================

    def on_lock_recorded(self, variant: Union[HashVariant, str]) -> Optional[ForwardOutcome]:
        """
        Replay a cached secret once the entry for `variant` becomes complete.

        Returns:
            The forwarding outcome, or None when there is nothing to replay
        """
        entry = self.store.lookup(variant)
        if entry is None or not entry.is_complete or not entry.secret:
            return None
        if entry.forwarded or entry.is_terminal:
            return None

        log.info(f"Replaying cached secret for {entry.key}")
        return self.on_secret_revealed(entry.reveal_ledger, entry.secret)

    def retry_pending(self, now: Optional[int] = None) -> Dict[str, int]:
        """
        Re-drive complete-but-unforwarded entries and expire lapsed ones.

        Returns:
            Outcome counts for this pass
        """
        now = int(time.time()) if now is None else now
        summary: Counter = Counter()

        for entry in self.store.active():
            if entry.all_expired(now):
                self.store.mark_expired(entry.key, "all deadlines passed")
                summary[ForwardOutcome.EXPIRED.value] += 1

        for entry in self.store.pending_forwards():
            spacing = retry_spacing(entry.attempts, self.retry_interval, self.retry_backoff_max)
            if entry.last_attempt_at and now - entry.last_attempt_at < spacing:
                continue
            try:
                outcome = self.on_secret_revealed(entry.reveal_ledger, entry.secret)
            except ValueError as e:
                log.error(f"Entry {entry.key} holds an invalid secret: {e}")
                self.store.mark_abandoned(entry.key, f"invalid cached secret: {e}")
                continue
            summary[outcome.value] += 1

        if summary:
            log.info(f"Retry pass: {dict(summary)}")
        return dict(summary)

    def status(self) -> Dict:
        with self._stats_lock:
            outcomes = dict(self.outcomes)
        return {
            "workers": self.workers,
            "running": self._running,
            "backlog": self.backlog,
            "outcomes": outcomes,
        }
