"""
Ledger RPC clients for xrelay.

- EVM: web3.py HTTP provider, signed contract calls
- Sui: JSON-RPC over httpx, Ed25519 signing with PyNaCl
"""

from .evm import EVMClient
from .sui import SuiClient, SuiKeypair, SuiRPCError

__all__ = ["EVMClient", "SuiClient", "SuiKeypair", "SuiRPCError"]
