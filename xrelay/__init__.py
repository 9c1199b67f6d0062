"""
xrelay - Cross-Ledger HTLC Secret Relayer

Watches secret reveals on one ledger and replays the secret into the
counterpart escrow on the other ledger (EVM keccak256 escrows <-> Sui
blake2b256 shared lockers).

Usage:
    from xrelay import RelayService, load_config
    from xrelay import derive_variants, generate_secret

    service = RelayService(load_config())
    service.start()

    # Register both escrows of a swap under the same secret
    secret = generate_secret()
    variants = derive_variants(secret)
    service.register_lock(evm_variant, source_ref, linked=variants)
"""

from .core import (
    HashAlgorithm,
    HashVariant,
    EscrowRole,
    EscrowRef,
    EntryState,
    CorrelationEntry,
    RevealEvent,
    SUPPORTED_ALGORITHMS,
    derive_variants,
    generate_secret,
    hash_secret,
    normalize_secret,
    parse_variant,
    variant_for,
    verify_preimage,
)
from .errors import (
    RelayError,
    ConfigError,
    CorrelationConflict,
    IntegrationGap,
    LedgerError,
)
from .config import RelayConfig, EVMConfig, SuiConfig, WatcherConfig, load_config
from .swap.store import CorrelationStore
from .swap.coordinator import Coordinator, ForwardOutcome
from .swap.watcher import LedgerWatcher, WatcherState
from .service import RelayService

__version__ = "0.1.0"
__all__ = [
    # Core types
    "HashAlgorithm",
    "HashVariant",
    "EscrowRole",
    "EscrowRef",
    "EntryState",
    "CorrelationEntry",
    "RevealEvent",
    "SUPPORTED_ALGORITHMS",
    # Hash utilities
    "derive_variants",
    "generate_secret",
    "hash_secret",
    "normalize_secret",
    "parse_variant",
    "variant_for",
    "verify_preimage",
    # Errors
    "RelayError",
    "ConfigError",
    "CorrelationConflict",
    "IntegrationGap",
    "LedgerError",
    # Config
    "RelayConfig",
    "EVMConfig",
    "SuiConfig",
    "WatcherConfig",
    "load_config",
    # Relay
    "CorrelationStore",
    "Coordinator",
    "ForwardOutcome",
    "LedgerWatcher",
    "WatcherState",
    "RelayService",
]
