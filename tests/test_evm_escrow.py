#!/usr/bin/env python3
"""
EVM Escrow Adapter Tests

1. Reveal log decoding (SecretRevealed and EscrowWithdrawal shapes)
2. Hash-only events are integration gaps, never trusted
3. withdraw() call construction from the recorded immutables
4. Revert classification (hash mismatch, deadline, already withdrawn)
"""

import sys
import os
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eth_abi import encode as abi_encode
from web3 import Web3
from web3.exceptions import ContractLogicError

from xrelay.config import EVMConfig
from xrelay.core import HashAlgorithm, EscrowRef, EscrowRole, hash_secret, generate_secret
from xrelay.errors import (
    IntegrationGap, ClaimRejected, DeadlineExceeded, EscrowAlreadyClaimed,
    TransientLedgerError,
)
from xrelay.htlc.evm import (
    EVMEscrow, SECRET_REVEALED_TOPIC, ESCROW_WITHDRAWAL_TOPIC, REVERT_SELECTORS,
    decode_reveal_log, immutables_from_params,
)

ESCROW = "0x" + "ab" * 20


def reveal_log(secret: bytes, tx_hash: bytes = b"\x01" * 32):
    return {
        "address": ESCROW,
        "topics": [SECRET_REVEALED_TOPIC, hash_secret(secret, HashAlgorithm.KECCAK256)],
        "data": abi_encode(["bytes"], [secret]),
        "transactionHash": tx_hash,
        "blockNumber": 10,
    }


def immutables(secret: bytes):
    return {
        "orderHash": "0x" + "01" * 32,
        "hashlock": "0x" + hash_secret(secret, HashAlgorithm.KECCAK256).hex(),
        "maker": "0x" + "12" * 20,
        "taker": "0x" + "34" * 20,
        "token": "0x" + "00" * 20,
        "amount": "1000000",
        "safetyDeposit": 1000,
        "timelocks": "12345",
    }


class TestDecodeRevealLog(unittest.TestCase):

    def test_secret_revealed(self):
        secret = generate_secret()
        event = decode_reveal_log(reveal_log(secret))
        self.assertEqual(event.secret, secret)
        self.assertEqual(event.ledger_id, "ethereum")
        self.assertEqual(event.event_type, "SecretRevealed")
        self.assertEqual(event.tx_id, "0x" + "01" * 32)
        self.assertEqual(event.hashlock, "0x" + hash_secret(secret, HashAlgorithm.KECCAK256).hex())

    def test_escrow_withdrawal(self):
        secret = generate_secret()
        event = decode_reveal_log({
            "topics": ["0x" + bytes(ESCROW_WITHDRAWAL_TOPIC).hex()],
            "data": "0x" + secret.hex(),
            "transactionHash": "0xfeed",
        }, ledger_id="sepolia")
        self.assertEqual(event.secret, secret)
        self.assertEqual(event.ledger_id, "sepolia")
        self.assertEqual(event.tx_id, "0xfeed")
        self.assertIsNone(event.hashlock)

    def test_unrelated_log(self):
        self.assertIsNone(decode_reveal_log({"topics": [Web3.keccak(text="Transfer(address,address,uint256)")]}))
        self.assertIsNone(decode_reveal_log({"topics": []}))

    def test_hash_only_event_is_integration_gap(self):
        secret = generate_secret()
        log_entry = reveal_log(secret)
        log_entry["data"] = abi_encode(["bytes"], [b""])
        with self.assertRaises(IntegrationGap):
            decode_reveal_log(log_entry)

    def test_wrong_length_secret(self):
        log_entry = reveal_log(generate_secret())
        log_entry["data"] = abi_encode(["bytes"], [b"\x01" * 20])
        with self.assertRaises(IntegrationGap):
            decode_reveal_log(log_entry)

    def test_mismatched_hash_still_uses_secret(self):
        secret = generate_secret()
        log_entry = reveal_log(secret)
        log_entry["topics"][1] = b"\x00" * 32
        with self.assertLogs("xrelay.htlc.evm", level="WARNING"):
            event = decode_reveal_log(log_entry)
        self.assertEqual(event.secret, secret)


class TestImmutables(unittest.TestCase):

    def test_tuple_order_and_types(self):
        secret = generate_secret()
        values = immutables_from_params(immutables(secret))
        self.assertEqual(len(values), 8)
        self.assertEqual(values[0], b"\x01" * 32)
        self.assertEqual(values[1], hash_secret(secret, HashAlgorithm.KECCAK256))
        self.assertEqual(values[2], Web3.to_checksum_address("0x" + "12" * 20))
        self.assertEqual(values[5:], (1000000, 1000, 12345))

    def test_missing_field(self):
        params = immutables(generate_secret())
        del params["timelocks"]
        with self.assertRaises(ValueError):
            immutables_from_params(params)


class EscrowTestCase(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.client.config = EVMConfig(rpc_url="http://localhost:8545", confirmations=3)
        self.client.block_number.return_value = 100
        self.client.get_logs.return_value = []
        self.client.send_transaction.return_value = "0xtx"
        self.escrow = EVMEscrow(self.client)

        self.secret = generate_secret()
        self.ref = EscrowRef("ethereum", ESCROW, EscrowRole.SOURCE,
                             deadline=self.escrow.now() + 3600,
                             params=immutables(self.secret))


class TestEventStream(EscrowTestCase):

    def test_subscribe_starts_at_safe_head(self):
        self.assertEqual(self.escrow.subscribe(None), 98)
        self.assertEqual(self.escrow.subscribe(42), 42)

    def test_fetch_reveals_bounded_range(self):
        self.client.get_logs.return_value = [reveal_log(self.secret)]
        events, cursor = self.escrow.fetch_reveals(90)

        self.assertEqual([e.secret for e in events], [self.secret])
        self.assertEqual(cursor, 99)
        args = self.client.get_logs.call_args[0]
        self.assertEqual(args[:2], (90, 98))

    def test_fetch_reveals_caught_up(self):
        events, cursor = self.escrow.fetch_reveals(99)
        self.assertEqual((events, cursor), ([], 99))
        self.client.get_logs.assert_not_called()

    def test_fetch_skips_integration_gaps(self):
        bad = reveal_log(self.secret)
        bad["data"] = abi_encode(["bytes"], [b""])
        self.client.get_logs.return_value = [bad, reveal_log(self.secret)]
        with self.assertLogs("xrelay.htlc.evm", level="ERROR"):
            events, _ = self.escrow.fetch_reveals(90)
        self.assertEqual(len(events), 1)


class TestClaim(EscrowTestCase):

    def test_withdraw_call(self):
        contract = self.client.contract.return_value
        tx = self.escrow.claim(self.ref, self.secret)

        self.assertEqual(tx, "0xtx")
        self.client.contract.assert_called_once()
        secret_arg, immutables_arg = contract.functions.withdraw.call_args[0]
        self.assertEqual(secret_arg, self.secret)
        self.assertEqual(immutables_arg, immutables_from_params(self.ref.params))
        self.client.send_transaction.assert_called_once_with(contract.functions.withdraw.return_value)

    def test_deadline_passed(self):
        ref = EscrowRef("ethereum", ESCROW, EscrowRole.SOURCE, deadline=1, params=self.ref.params)
        with self.assertRaises(DeadlineExceeded):
            self.escrow.claim(ref, self.secret)
        self.client.send_transaction.assert_not_called()

    def test_wrong_secret_not_sent(self):
        with self.assertRaises(ClaimRejected):
            self.escrow.claim(self.ref, generate_secret())
        self.client.send_transaction.assert_not_called()

    def test_missing_immutables(self):
        ref = EscrowRef("ethereum", ESCROW, EscrowRole.SOURCE, params={})
        with self.assertRaises(ClaimRejected):
            self.escrow.claim(ref, self.secret)

    def test_invalid_secret_revert(self):
        self.client.send_transaction.side_effect = ContractLogicError("execution reverted: InvalidSecret")
        with self.assertRaises(ClaimRejected):
            self.escrow.claim(self.ref, self.secret)

    def test_custom_error_selector(self):
        data = "0x" + REVERT_SELECTORS["InvalidSecret"]
        self.client.send_transaction.side_effect = ContractLogicError("execution reverted", data)
        with self.assertRaises(ClaimRejected) as ctx:
            self.escrow.claim(self.ref, self.secret)
        self.assertIn("hash mismatch", str(ctx.exception))
        self.client.get_logs.assert_not_called()

    def test_revert_after_withdrawal_is_already_claimed(self):
        self.client.send_transaction.side_effect = ContractLogicError("execution reverted")
        self.client.get_logs.return_value = [reveal_log(self.secret)]
        with self.assertRaises(EscrowAlreadyClaimed):
            self.escrow.claim(self.ref, self.secret)
        self.assertEqual(self.client.get_logs.call_args[1]["address"], ESCROW)

    def test_revert_without_withdrawal_is_rejected(self):
        self.client.send_transaction.side_effect = ContractLogicError("execution reverted: InvalidTime")
        with self.assertRaises(ClaimRejected):
            self.escrow.claim(self.ref, self.secret)

    def test_mined_revert_checks_withdrawal(self):
        self.client.send_transaction.side_effect = ClaimRejected("Transaction 0xtx reverted")
        self.client.get_logs.return_value = [reveal_log(self.secret)]
        with self.assertRaises(EscrowAlreadyClaimed):
            self.escrow.claim(self.ref, self.secret)

    def test_transient_error_propagates(self):
        self.client.send_transaction.side_effect = TransientLedgerError("timeout")
        with self.assertRaises(TransientLedgerError):
            self.escrow.claim(self.ref, self.secret)


if __name__ == "__main__":
    unittest.main(verbosity=2)
