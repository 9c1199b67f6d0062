"""
Configuration for xrelay.

Values come from the environment, using the same variable names as the
maker / resolver scripts that register escrows (with their legacy fallbacks).
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Mapping, List

from .errors import ConfigError


DEFAULT_STORE_PATH = "~/.xrelay/correlation.json"

# Sui shared clock object
SUI_CLOCK_OBJECT = "0x6"


@dataclass
class EVMConfig:
    """EVM ledger configuration."""
    ledger_id: str = "ethereum"
    rpc_url: str = ""
    chain_id: Optional[int] = None      # None = ask the node
    private_key: str = ""
    claim_lookback: int = 50_000        # blocks scanned for an earlier withdrawal
    confirmations: int = 1              # reorg safety depth for event scans
    max_block_range: int = 2000         # eth_getLogs window
    tx_timeout: int = 120               # seconds to wait for a receipt


@dataclass
class SuiConfig:
    """Sui ledger configuration."""
    ledger_id: str = "sui"
    rpc_url: str = ""
    keypair: str = ""                   # JSON array of 32 (or 33) bytes, or base64
    package_id: str = ""
    module: str = "shared_locker"
    claim_function: str = "claim_shared"
    reveal_event: str = "SrcSecretRevealed"
    coin_type: str = "0x2::sui::SUI"
    recipient: str = ""                 # payout address for claims
    gas_budget: int = 20_000_000
    page_size: int = 50
    # Move abort code -> meaning, must match the deployed module
    abort_codes: Dict[int, str] = field(default_factory=lambda: {
        0: "hash_mismatch",
        1: "too_early",
        2: "expired",
        3: "already_claimed",
        4: "refunded",
    })

    @property
    def event_type(self) -> str:
        return f"{self.package_id}::{self.module}::{self.reveal_event}"


@dataclass
class WatcherConfig:
    """Watcher polling and reconnect policy."""
    poll_interval: float = 5.0          # seconds between polls
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    backoff_factor: float = 2.0


@dataclass
class RelayConfig:
    """Top-level relayer configuration."""
    store_path: str = DEFAULT_STORE_PATH
    workers: int = 4
    retry_interval: float = 30.0        # retry driver period
    retry_backoff_max: float = 600.0    # max spacing between retries of one entry
    evm: Optional[EVMConfig] = None
    sui: Optional[SuiConfig] = None
    evm_watcher: WatcherConfig = field(default_factory=WatcherConfig)
    sui_watcher: WatcherConfig = field(default_factory=WatcherConfig)

    def ledger_ids(self) -> List[str]:
        ids = []
        if self.evm:
            ids.append(self.evm.ledger_id)
        if self.sui:
            ids.append(self.sui.ledger_id)
        return ids


def _first(env: Mapping[str, str], *names: str) -> str:
    """Value of the first set variable among `names`."""
    for name in names:
        value = env.get(name)
        if value:
            return value.strip()
    return ""


def _number(env: Mapping[str, str], name: str, default, cast=int):
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")


def load_config(env: Optional[Mapping[str, str]] = None) -> RelayConfig:
    """
    Build a RelayConfig from environment variables.

    Raises:
        ConfigError: listing every missing required variable
    """
    env = os.environ if env is None else env
    missing = []

    evm = EVMConfig(
        rpc_url=_first(env, "ETH_RPC_URL", "SEPOLIA_RPC"),
        private_key=_first(env, "ETH_PRIVATE_KEY", "PRIVATE_KEY"),
        chain_id=_number(env, "ETH_CHAIN_ID", None),
        confirmations=_number(env, "EVM_CONFIRMATIONS", 1),
    )
    if not evm.rpc_url:
        missing.append("ETH_RPC_URL")
    if not evm.private_key:
        missing.append("ETH_PRIVATE_KEY")

    sui = SuiConfig(
        rpc_url=_first(env, "SUI_RPC_URL", "SUI_RPC"),
        keypair=_first(env, "SUI_KEY", "SUI_KEYPAIR"),
        package_id=_first(env, "FUSION_LOCKER_PACKAGE"),
        recipient=_first(env, "SUI_ADDRESS"),
    )
    if not sui.rpc_url:
        missing.append("SUI_RPC_URL")
    if not sui.keypair:
        missing.append("SUI_KEY")
    if not sui.package_id:
        missing.append("FUSION_LOCKER_PACKAGE")

    if missing:
        raise ConfigError(
            f"Missing env vars: {', '.join(missing)}", missing=missing
        )

    return RelayConfig(
        store_path=os.path.expanduser(_first(env, "RELAYER_STORE") or DEFAULT_STORE_PATH),
        workers=_number(env, "RELAYER_WORKERS", 4),
        retry_interval=_number(env, "RELAYER_RETRY_INTERVAL", 30.0, float),
        evm=evm,
        sui=sui,
        evm_watcher=WatcherConfig(poll_interval=_number(env, "EVM_POLL_INTERVAL", 5.0, float)),
        sui_watcher=WatcherConfig(poll_interval=_number(env, "SUI_POLL_INTERVAL", 2.0, float)),
    )
