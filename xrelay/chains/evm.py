"""
EVM RPC client for xrelay.

Thin wrapper around web3.py: log scanning and signed contract transactions.
Transport failures are raised as TransientLedgerError.
"""

import logging
import threading
from typing import Optional, Dict, Any, List

from web3 import Web3
from web3.exceptions import (
    ContractLogicError, TimeExhausted, ProviderConnectionError, Web3RPCError,
)
from eth_account import Account

from ..config import EVMConfig
from ..errors import TransientLedgerError, ClaimRejected

log = logging.getLogger(__name__)


class EVMClient:
    """
    EVM JSON-RPC client using web3.py.

    One instance is shared by the watcher and the coordinator workers, so
    nonce allocation and broadcast are serialised by `_send_lock`.
    """

    def __init__(self, config: EVMConfig, web3: Optional[Web3] = None):
        self.config = config
        self._web3 = web3
        self._chain_id = config.chain_id
        self._send_lock = threading.Lock()

        key = config.private_key
        if key and not key.startswith("0x"):
            key = "0x" + key
        self.account = Account.from_key(key) if key else None

    @property
    def web3(self) -> Web3:
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(
                self.config.rpc_url, request_kwargs={"timeout": 30}
            ))
        return self._web3

    @property
    def address(self) -> Optional[str]:
        return self.account.address if self.account else None

    # =========================================================================
    # Reads
    # =========================================================================

    def block_number(self) -> int:
        try:
            return self.web3.eth.block_number
        except (OSError, ProviderConnectionError, Web3RPCError) as e:
            raise TransientLedgerError(f"eth_blockNumber failed: {e}")

    def chain_id(self) -> int:
        if self._chain_id is None:
            try:
                self._chain_id = self.web3.eth.chain_id
            except (OSError, ProviderConnectionError, Web3RPCError) as e:
                raise TransientLedgerError(f"eth_chainId failed: {e}")
        return self._chain_id

    def get_logs(self, from_block: int, to_block: int,
                 topics: List[Any], address: Optional[str] = None) -> List[Dict]:
        """eth_getLogs over an inclusive block range."""
        params: Dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": topics,
        }
        if address:
            params["address"] = Web3.to_checksum_address(address)
        try:
            return list(self.web3.eth.get_logs(params))
        except (OSError, ProviderConnectionError, Web3RPCError) as e:
            raise TransientLedgerError(f"eth_getLogs {from_block}-{to_block} failed: {e}")

    def contract(self, address: str, abi: List[Dict]):
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    # =========================================================================
    # Writes
    # =========================================================================

    def send_transaction(self, function_call, value: int = 0) -> str:
        """
        Build, sign and broadcast a contract function call, then wait for the receipt.

        Returns:
            Transaction hash (0x hex)

        Raises:
            ContractLogicError: the call reverts during gas estimation
            ClaimRejected: the mined transaction reverted
            TransientLedgerError: RPC failure or receipt timeout
        """
        if not self.account:
            raise TransientLedgerError("No EVM private key configured")

        w3 = self.web3
        try:
            with self._send_lock:
                nonce = w3.eth.get_transaction_count(self.account.address, "pending")
                tx = function_call.build_transaction({
                    "from": self.account.address,
                    "nonce": nonce,
                    "value": value,
                    "chainId": self.chain_id(),
                })
                signed = self.account.sign_transaction(tx)
                tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError:
            raise
        except (OSError, ProviderConnectionError, Web3RPCError) as e:
            raise TransientLedgerError(f"Broadcast failed: {e}")

        tx_hex = Web3.to_hex(tx_hash)
        log.info(f"EVM TX sent: {tx_hex}")

        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.tx_timeout)
        except TimeExhausted:
            raise TransientLedgerError(f"No receipt for {tx_hex} after {self.config.tx_timeout}s")
        except (OSError, ProviderConnectionError, Web3RPCError) as e:
            raise TransientLedgerError(f"Receipt lookup failed for {tx_hex}: {e}")

        if receipt["status"] != 1:
            raise ClaimRejected(f"Transaction {tx_hex} reverted")
        return tx_hex
