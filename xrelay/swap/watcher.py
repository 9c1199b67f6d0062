"""
Ledger Watcher for xrelay.

One watcher per ledger. Polls the ledger's secret-revelation events and hands
each RevealEvent to a sink (the coordinator's `accept`, which caches the secret
in the store and queues it). The cursor is saved only after the sink returns.

States: starting -> subscribed -> (delivering)* -> stopped

The watcher does not deduplicate; the coordinator and the correlation store
turn at-least-once delivery into effectively-once forwarding.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional, Any

from ..config import WatcherConfig
from ..core import RevealEvent
from ..htlc.base import EscrowLedger
from .retry import Backoff

log = logging.getLogger(__name__)


class WatcherState(Enum):
    STARTING = "starting"
    SUBSCRIBED = "subscribed"
    DELIVERING = "delivering"
    STOPPED = "stopped"


class LedgerWatcher:
    """
    Background service that watches one ledger for revealed secrets.

    On any failure the watcher drops back to `starting` and resubscribes from
    the last saved cursor after an exponential backoff.
    """

    def __init__(self, ledger: EscrowLedger, sink: Callable[[RevealEvent], Any],
                 config: WatcherConfig = None, cursor_store=None):
        """
        Args:
            ledger: adapter to observe
            sink: called once per event; must not block
            config: polling / backoff policy
            cursor_store: object with get_cursor / set_cursor (the CorrelationStore)
        """
        self.ledger = ledger
        self.sink = sink
        self.config = config or WatcherConfig()
        self.cursor_store = cursor_store

        self.backoff = Backoff(
            self.config.backoff_initial,
            self.config.backoff_max,
            self.config.backoff_factor,
        )

        self._state = WatcherState.STARTING
        self._cursor: Any = None
        self._running = False
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.delivered = 0
        self.last_error: Optional[str] = None

    @property
    def ledger_id(self) -> str:
        return self.ledger.ledger_id

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def cursor(self) -> Any:
        return self._cursor

    def start(self):
        """Start watcher in background thread."""
        if self._running:
            return

        self._running = True
        self._wake.clear()
        self._state = WatcherState.STARTING
        self._thread = threading.Thread(
            target=self._watch_loop, name=f"watcher-{self.ledger_id}", daemon=True
        )
        self._thread.start()
        log.info(f"[{self.ledger_id}] Watcher started")

    def stop(self):
        """Stop watcher."""
        self._running = False
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._state = WatcherState.STOPPED
        log.info(f"[{self.ledger_id}] Watcher stopped")

    def _watch_loop(self):
        """Main watch loop."""
        while self._running:
            count = self.poll_once()
            if count is None:
                delay = self.backoff.next_delay()
                log.warning(f"[{self.ledger_id}] Resubscribing in {delay:.1f}s")
            elif count:
                delay = 0
            else:
                delay = self.config.poll_interval
            if self._wake.wait(delay):
                break
        self._state = WatcherState.STOPPED

    def _subscribe(self):
        saved = self.cursor_store.get_cursor(self.ledger_id) if self.cursor_store else None
        self._cursor = self.ledger.subscribe(saved if saved is not None else self._cursor)
        self._save_cursor()
        self._state = WatcherState.SUBSCRIBED

    def _save_cursor(self):
        if self.cursor_store is not None and self._cursor is not None:
            self.cursor_store.set_cursor(self.ledger_id, self._cursor)

    def poll_once(self) -> Optional[int]:
        """
        One synchronous iteration: (re)subscribe if needed, fetch, deliver.

        Returns:
            Number of events delivered, or None if the iteration failed
        """
        try:
            if self._state in (WatcherState.STARTING, WatcherState.STOPPED):
                self._subscribe()

            events, next_cursor = self.ledger.fetch_reveals(self._cursor)

            if events:
                self._state = WatcherState.DELIVERING
                for event in events:
                    log.info(f"[{self.ledger_id}] Secret revealed: {event!r}")
                    self.sink(event)
                    self.delivered += 1

            self._cursor = next_cursor
            self._save_cursor()
            self._state = WatcherState.SUBSCRIBED
            self.backoff.reset()
            self.last_error = None
            return len(events)

        except Exception as e:
            # Transient or not, the watcher must keep running
            self.last_error = str(e)
            self._state = WatcherState.STARTING
            log.warning(f"[{self.ledger_id}] Watcher error: {e}")
            return None

    def status(self) -> dict:
        return {
            "ledger": self.ledger_id,
            "state": self._state.value,
            "cursor": self._cursor,
            "delivered": self.delivered,
            "last_error": self.last_error,
        }
