"""
Relay service for xrelay.

Wires the correlation store, ledger adapters, coordinator, watchers and
retry driver together from a RelayConfig.
"""

import logging
from typing import Dict, List, Optional, Iterable

from .config import RelayConfig
from .core import (
    HashVariant, EscrowRef, CorrelationEntry, derive_variants, normalize_secret,
)
from .chains.evm import EVMClient
from .chains.sui import SuiClient, SuiKeypair
from .htlc.base import EscrowLedger
from .htlc.evm import EVMEscrow
from .htlc.sui import SuiEscrow
from .swap.store import CorrelationStore
from .swap.coordinator import Coordinator, ForwardOutcome
from .swap.watcher import LedgerWatcher
from .swap.retry import RetryDriver

log = logging.getLogger(__name__)


def build_ledgers(config: RelayConfig) -> List[EscrowLedger]:
    """Create the EVM and Sui adapters described by `config`."""
    ledgers: List[EscrowLedger] = []
    if config.evm:
        client = EVMClient(config.evm)
        ledgers.append(EVMEscrow(client))
        log.info(f"EVM ledger '{config.evm.ledger_id}' relayer address {client.address}")
    if config.sui:
        keypair = SuiKeypair.from_string(config.sui.keypair)
        ledgers.append(SuiEscrow(SuiClient(config.sui), keypair, config.sui))
        log.info(f"Sui ledger '{config.sui.ledger_id}' relayer address {keypair.address}")
    return ledgers


class RelayService:
    """
    Complete relayer: one watcher per ledger feeding a coordinator pool.

    Usage:
        service = RelayService(load_config())
        service.start()
        ...
        service.stop()
    """

    def __init__(self, config: RelayConfig,
                 ledgers: Optional[Iterable[EscrowLedger]] = None,
                 store: Optional[CorrelationStore] = None):
        """
        Args:
            config: relayer configuration
            ledgers: adapters to use instead of building them from config
            store: correlation store to use instead of config.store_path
        """
        self.config = config
        self.store = store if store is not None else CorrelationStore(config.store_path)

        ledger_list = list(ledgers) if ledgers is not None else build_ledgers(config)
        self.ledgers: Dict[str, EscrowLedger] = {ledger.ledger_id: ledger for ledger in ledger_list}

        self.coordinator = Coordinator(
            self.store,
            self.ledgers,
            workers=config.workers,
            retry_interval=config.retry_interval,
            retry_backoff_max=config.retry_backoff_max,
        )

        self.watchers: List[LedgerWatcher] = []
        for ledger in ledger_list:
            self.watchers.append(LedgerWatcher(
                ledger,
                self.coordinator.accept,
                self._watcher_config(ledger.ledger_id),
                cursor_store=self.store,
            ))

        self.retry_driver = RetryDriver(self.coordinator, config.retry_interval)
        self._started = False

    def _watcher_config(self, ledger_id: str):
        if self.config.sui and ledger_id == self.config.sui.ledger_id:
            return self.config.sui_watcher
        return self.config.evm_watcher

    def start(self):
        """Start workers, watchers and the retry driver."""
        if self._started:
            return
        self._started = True
        self.coordinator.start()
        for watcher in self.watchers:
            watcher.start()
        self.retry_driver.start()
        log.info(f"Relay service started for ledgers: {', '.join(self.ledgers)}")

    def stop(self):
        """Stop in reverse order. Queued reveals are already cached in the store."""
        if not self._started:
            return
        self._started = False
        self.retry_driver.stop()
        for watcher in self.watchers:
            watcher.stop()
        self.coordinator.stop()
        log.info("Relay service stopped")

    # =========================================================================
    # Operator actions
    # =========================================================================

    def register_lock(self, variant: HashVariant, ref: EscrowRef,
                      linked: Iterable[HashVariant] = (),
                      secret: Optional[bytes] = None) -> CorrelationEntry:
        """
        Record an escrow ref, then replay any cached secret.

        Args:
            variant: hashlock the escrow was created with
            ref: the escrow reference
            linked: other variants of the same secret
            secret: optional preimage; when given, every derived variant is
                linked and `variant` must be one of them

        Raises:
            CorrelationConflict: a different ref is already recorded for the role
            ValueError: `secret` does not hash to `variant`
        """
        linked = list(linked)
        if secret is not None:
            derived = derive_variants(normalize_secret(secret))
            if variant not in derived:
                raise ValueError(f"Secret does not hash to {variant}")
            linked.extend(derived - {variant})

        entry = self.store.record_lock(variant, ref, linked)
        outcome = self.coordinator.on_lock_recorded(variant)
        if outcome is not None:
            log.info(f"Replay after lock {variant}: {outcome.value}")
            entry = self.store.lookup(variant)
        return entry

    def reveal(self, ledger_id: str, secret) -> ForwardOutcome:
        """Forward a known secret synchronously (operator replay)."""
        return self.coordinator.on_secret_revealed(ledger_id, secret)

    def status(self) -> Dict:
        return {
            "running": self._started,
            "ledgers": {lid: ledger.algorithm.value for lid, ledger in self.ledgers.items()},
            "store": self.store.stats(),
            "coordinator": self.coordinator.status(),
            "watchers": [w.status() for w in self.watchers],
            "retry_driver": self.retry_driver.running,
        }
