"""
Sui JSON-RPC client for xrelay.

Uses httpx for transport and PyNaCl for Ed25519 transaction signatures.
"""

import json
import base64
import hashlib
import logging
from typing import Optional, Dict, Any, List

import httpx
from nacl.signing import SigningKey

from ..config import SuiConfig
from ..errors import TransientLedgerError

log = logging.getLogger(__name__)

ED25519_FLAG = 0x00
# IntentScope::TransactionData, IntentVersion::V0, AppId::Sui
TRANSACTION_INTENT = bytes([0, 0, 0])


class SuiRPCError(Exception):
    """JSON-RPC level error returned by the Sui node."""

    def __init__(self, code: Any, message: str):
        super().__init__(f"Sui RPC error {code}: {message}")
        self.code = code
        self.message = message


class SuiKeypair:
    """Ed25519 keypair in Sui's signature scheme."""

    def __init__(self, seed: bytes):
        if len(seed) != 32:
            raise ValueError(f"Ed25519 seed must be 32 bytes, got {len(seed)}")
        self._signing_key = SigningKey(seed)

    @classmethod
    def from_string(cls, value: str) -> "SuiKeypair":
        """
        Parse a key from config.

        Accepts a JSON byte array (32 bytes, 33 with a leading scheme flag,
        or 64 bytes seed+pubkey) or base64 of the same.
        """
        value = value.strip()
        if value.startswith("["):
            raw = bytes(json.loads(value))
        elif value.startswith("suiprivkey"):
            raise ValueError("Bech32 suiprivkey keys are not supported; export as base64")
        else:
            raw = base64.b64decode(value)

        if len(raw) == 33:
            if raw[0] != ED25519_FLAG:
                raise ValueError(f"Unsupported key scheme flag {raw[0]}")
            raw = raw[1:]
        elif len(raw) == 64:
            raw = raw[:32]
        return cls(raw)

    @property
    def public_key(self) -> bytes:
        return self._signing_key.verify_key.encode()

    @property
    def address(self) -> str:
        """Sui address: blake2b256(flag || pubkey)."""
        digest = hashlib.blake2b(bytes([ED25519_FLAG]) + self.public_key, digest_size=32)
        return "0x" + digest.hexdigest()

    def sign_transaction(self, tx_bytes: bytes) -> str:
        """
        Sign transaction bytes.

        Returns:
            base64(flag || signature || pubkey)
        """
        digest = hashlib.blake2b(TRANSACTION_INTENT + tx_bytes, digest_size=32).digest()
        signature = self._signing_key.sign(digest).signature
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode()


class SuiClient:
    """
    Sui fullnode JSON-RPC client.

    Transport errors and 5xx responses raise TransientLedgerError; RPC
    errors raise SuiRPCError so callers can classify them.
    """

    def __init__(self, config: SuiConfig, http: Optional[httpx.Client] = None):
        self.config = config
        self.rpc_url = config.rpc_url
        self._http = http or httpx.Client(timeout=30.0)
        self._request_id = 0

    def close(self):
        self._http.close()

    def _call(self, method: str, params: List = None) -> Any:
        """Make JSON-RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = self._http.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            raise TransientLedgerError(f"Sui RPC {method} failed: {e}")

        log.debug(f"Sui RPC {method} -> HTTP {response.status_code}")
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientLedgerError(f"Sui RPC {method}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise SuiRPCError(response.status_code, response.text[:200])

        try:
            data = response.json()
        except ValueError as e:
            raise TransientLedgerError(f"Sui RPC {method}: invalid JSON: {e}")

        if data.get("error"):
            err = data["error"]
            raise SuiRPCError(err.get("code"), err.get("message", str(err)))
        return data.get("result")

    # =========================================================================
    # Reads
    # =========================================================================

    def query_events(self, event_type: str, cursor: Optional[Dict] = None,
                     limit: int = 50, descending: bool = False) -> Dict:
        """suix_queryEvents filtered by Move event type."""
        return self._call("suix_queryEvents", [
            {"MoveEventType": event_type}, cursor, limit, descending,
        ])

    def get_object(self, object_id: str) -> Dict:
        """sui_getObject with content."""
        return self._call("sui_getObject", [object_id, {"showContent": True, "showOwner": True}])

    # =========================================================================
    # Transactions
    # =========================================================================

    def move_call(self, signer: str, package_id: str, module: str, function: str,
                  type_arguments: List[str], arguments: List[Any], gas_budget: int) -> bytes:
        """Build a Move call transaction on the node. Returns the unsigned tx bytes."""
        result = self._call("unsafe_moveCall", [
            signer, package_id, module, function,
            type_arguments, arguments, None, str(gas_budget),
        ])
        return base64.b64decode(result["txBytes"])

    def execute(self, tx_bytes: bytes, signature: str) -> Dict:
        """Execute a signed transaction and wait for local execution."""
        return self._call("sui_executeTransactionBlock", [
            base64.b64encode(tx_bytes).decode(),
            [signature],
            {"showEffects": True, "showEvents": True},
            "WaitForLocalExecution",
        ])

    def sign_and_execute(self, keypair: SuiKeypair, package_id: str, module: str,
                         function: str, type_arguments: List[str],
                         arguments: List[Any], gas_budget: int) -> Dict:
        """Build, sign and execute a Move call."""
        tx_bytes = self.move_call(
            keypair.address, package_id, module, function,
            type_arguments, arguments, gas_budget,
        )
        return self.execute(tx_bytes, keypair.sign_transaction(tx_bytes))
