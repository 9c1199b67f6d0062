#!/usr/bin/env python3
"""
Sui Escrow Adapter Tests

1. Keypair parsing, address derivation and intent signatures
2. JSON-RPC client error mapping (transport vs RPC errors)
3. SrcSecretRevealed decoding (vector<u8> as list / hex / base64)
4. claim_shared construction and Move abort classification
"""

import sys
import os
import json
import base64
import hashlib
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import httpx
from nacl.signing import SigningKey, VerifyKey

from xrelay.config import SuiConfig
from xrelay.core import HashAlgorithm, EscrowRef, EscrowRole, hash_secret, generate_secret
from xrelay.errors import (
    IntegrationGap, ClaimRejected, DeadlineExceeded, EscrowAlreadyClaimed,
    EscrowTerminal, TransientLedgerError,
)
from xrelay.chains.sui import SuiClient, SuiKeypair, SuiRPCError, TRANSACTION_INTENT
from xrelay.htlc.sui import SuiEscrow, decode_reveal_event

PACKAGE = "0x" + "5a" * 32
LOCKER = "0x" + "c0" * 32
SEED = bytes(range(32))


def sui_config():
    return SuiConfig(rpc_url="https://fullnode.testnet.sui.io", keypair="", package_id=PACKAGE)


def reveal_event(secret, seq="0"):
    return {
        "id": {"txDigest": "Dig" + seq, "eventSeq": seq},
        "type": f"{PACKAGE}::shared_locker::SrcSecretRevealed",
        "parsedJson": {"secret": secret},
    }


class TestSuiKeypair(unittest.TestCase):

    def test_from_json_array(self):
        """Keys exported as JSON byte arrays, with or without the scheme flag."""
        plain = SuiKeypair.from_string(json.dumps(list(SEED)))
        flagged = SuiKeypair.from_string(json.dumps([0] + list(SEED)))
        self.assertEqual(plain.public_key, flagged.public_key)
        self.assertEqual(plain.public_key, SigningKey(SEED).verify_key.encode())

    def test_from_base64(self):
        key = SuiKeypair.from_string(base64.b64encode(b"\x00" + SEED).decode())
        self.assertEqual(key.public_key, SigningKey(SEED).verify_key.encode())
        full = SuiKeypair.from_string(base64.b64encode(SEED + key.public_key).decode())
        self.assertEqual(full.address, key.address)

    def test_rejected_keys(self):
        with self.assertRaises(ValueError):
            SuiKeypair.from_string(base64.b64encode(b"\x01" + SEED).decode())
        with self.assertRaises(ValueError):
            SuiKeypair.from_string("suiprivkey1qq")
        with self.assertRaises(ValueError):
            SuiKeypair(b"\x00" * 16)

    def test_address(self):
        key = SuiKeypair(SEED)
        expected = hashlib.blake2b(b"\x00" + key.public_key, digest_size=32).hexdigest()
        self.assertEqual(key.address, "0x" + expected)

    def test_signature_layout(self):
        """flag || ed25519(blake2b256(intent || tx)) || pubkey"""
        key = SuiKeypair(SEED)
        tx_bytes = b"transaction-bytes"
        raw = base64.b64decode(key.sign_transaction(tx_bytes))

        self.assertEqual(len(raw), 1 + 64 + 32)
        self.assertEqual(raw[0], 0)
        self.assertEqual(raw[65:], key.public_key)
        digest = hashlib.blake2b(TRANSACTION_INTENT + tx_bytes, digest_size=32).digest()
        VerifyKey(key.public_key).verify(digest, raw[1:65])


class TestSuiClient(unittest.TestCase):

    def client(self, handler):
        return SuiClient(sui_config(), http=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_result(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"data": []}})

        page = self.client(handler).query_events("0x1::m::E", None, 10)
        self.assertEqual(page, {"data": []})
        self.assertEqual(seen[0]["method"], "suix_queryEvents")
        self.assertEqual(seen[0]["params"], [{"MoveEventType": "0x1::m::E"}, None, 10, False])

    def test_rpc_error(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                             "error": {"code": -32602, "message": "bad params"}})
        with self.assertRaises(SuiRPCError) as ctx:
            self.client(handler).get_object(LOCKER)
        self.assertEqual(ctx.exception.code, -32602)

    def test_server_error_is_transient(self):
        with self.assertRaises(TransientLedgerError):
            self.client(lambda request: httpx.Response(503)).get_object(LOCKER)

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused")
        with self.assertRaises(TransientLedgerError):
            self.client(handler).get_object(LOCKER)

    def test_sign_and_execute(self):
        calls = []

        def handler(request):
            body = json.loads(request.content)
            calls.append(body)
            if body["method"] == "unsafe_moveCall":
                return httpx.Response(200, json={"result": {"txBytes": base64.b64encode(b"tx").decode()}})
            return httpx.Response(200, json={"result": {"digest": "D1"}})

        key = SuiKeypair(SEED)
        result = self.client(handler).sign_and_execute(
            key, PACKAGE, "shared_locker", "claim_shared", ["0x2::sui::SUI"], [LOCKER], 20_000_000
        )
        self.assertEqual(result, {"digest": "D1"})
        self.assertEqual(calls[0]["params"][0], key.address)
        self.assertEqual(calls[0]["params"][-1], "20000000")
        execute = calls[1]["params"]
        self.assertEqual(execute[0], base64.b64encode(b"tx").decode())
        self.assertEqual(execute[1], [key.sign_transaction(b"tx")])
        self.assertEqual(execute[3], "WaitForLocalExecution")


class TestDecodeRevealEvent(unittest.TestCase):

    def test_byte_list(self):
        secret = generate_secret()
        event = decode_reveal_event(reveal_event(list(secret)))
        self.assertEqual(event.secret, secret)
        self.assertEqual(event.ledger_id, "sui")
        self.assertEqual(event.tx_id, "Dig0")

    def test_hex_and_base64(self):
        secret = generate_secret()
        self.assertEqual(decode_reveal_event(reveal_event("0x" + secret.hex())).secret, secret)
        self.assertEqual(decode_reveal_event(reveal_event(base64.b64encode(secret).decode())).secret,
                         secret)

    def test_missing_secret(self):
        with self.assertRaises(IntegrationGap):
            decode_reveal_event({"id": {"txDigest": "x"}, "parsedJson": {"hashlock": [1] * 32}})

    def test_short_secret(self):
        with self.assertRaises(IntegrationGap):
            decode_reveal_event(reveal_event([1, 2, 3]))


class SuiEscrowTestCase(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.config = sui_config()
        self.keypair = SuiKeypair(SEED)
        self.escrow = SuiEscrow(self.client, self.keypair, self.config)

        self.secret = generate_secret()
        self.ref = EscrowRef("sui", LOCKER, EscrowRole.DESTINATION, deadline=self.escrow.now() + 3600)
        self.client.get_object.return_value = {"data": {"content": {"fields": {
            "hashlock": list(hash_secret(self.secret, HashAlgorithm.BLAKE2B256)),
            "claimed": False,
            "refunded": False,
        }}}}
        self.client.sign_and_execute.return_value = {
            "digest": "ClaimDigest",
            "effects": {"status": {"status": "success"}},
        }


class TestSuiEventStream(SuiEscrowTestCase):

    def test_subscribe_from_latest(self):
        self.client.query_events.return_value = {"data": [reveal_event([0] * 32, "7")]}
        cursor = self.escrow.subscribe(None)
        self.assertEqual(cursor, {"txDigest": "Dig7", "eventSeq": "7"})
        self.client.query_events.assert_called_with(self.config.event_type, None, 1, descending=True)

    def test_subscribe_without_events(self):
        self.client.query_events.return_value = {"data": []}
        self.assertEqual(self.escrow.subscribe(None), {})

    def test_subscribe_with_saved_cursor(self):
        saved = {"txDigest": "X", "eventSeq": "1"}
        self.assertEqual(self.escrow.subscribe(saved), saved)
        self.client.query_events.assert_not_called()

    def test_fetch_reveals(self):
        secret = generate_secret()
        self.client.query_events.return_value = {
            "data": [reveal_event(list(secret), "1"), reveal_event([], "2")],
            "nextCursor": {"txDigest": "Dig2", "eventSeq": "2"},
            "hasNextPage": False,
        }
        with self.assertLogs("xrelay.htlc.sui", level="ERROR"):
            events, cursor = self.escrow.fetch_reveals({})

        self.assertEqual([e.secret for e in events], [secret])
        self.assertEqual(cursor, {"txDigest": "Dig2", "eventSeq": "2"})
        self.client.query_events.assert_called_with(self.config.event_type, None, 50)

    def test_fetch_empty_keeps_cursor(self):
        cursor = {"txDigest": "A", "eventSeq": "3"}
        self.client.query_events.return_value = {"data": [], "nextCursor": None}
        self.assertEqual(self.escrow.fetch_reveals(cursor), ([], cursor))


class TestSuiClaim(SuiEscrowTestCase):

    def test_claim_shared_call(self):
        tx = self.escrow.claim(self.ref, self.secret)
        self.assertEqual(tx, "ClaimDigest")

        args = self.client.sign_and_execute.call_args[0]
        self.assertIs(args[0], self.keypair)
        self.assertEqual(args[1:4], (PACKAGE, "shared_locker", "claim_shared"))
        self.assertEqual(args[4], ["0x2::sui::SUI"])
        self.assertEqual(args[5], [LOCKER, list(self.secret), self.keypair.address, "0x6"])

    def test_recipient_from_ref(self):
        ref = EscrowRef("sui", LOCKER, EscrowRole.DESTINATION, params={"recipient": "0xbeef"})
        self.escrow.claim(ref, self.secret)
        self.assertEqual(self.client.sign_and_execute.call_args[0][5][2], "0xbeef")

    def test_already_claimed_locker(self):
        self.client.get_object.return_value["data"]["content"]["fields"]["claimed"] = True
        with self.assertRaises(EscrowAlreadyClaimed):
            self.escrow.claim(self.ref, self.secret)
        self.client.sign_and_execute.assert_not_called()

    def test_refunded_locker(self):
        self.client.get_object.return_value["data"]["content"]["fields"]["refunded"] = True
        with self.assertRaises(EscrowTerminal):
            self.escrow.claim(self.ref, self.secret)

    def test_deleted_locker(self):
        self.client.get_object.return_value = {"error": {"code": "deleted"}}
        with self.assertRaises(EscrowTerminal):
            self.escrow.claim(self.ref, self.secret)

    def test_hashlock_mismatch(self):
        with self.assertRaises(ClaimRejected):
            self.escrow.claim(self.ref, generate_secret())
        self.client.sign_and_execute.assert_not_called()

    def test_deadline_passed(self):
        ref = EscrowRef("sui", LOCKER, EscrowRole.DESTINATION, deadline=1)
        with self.assertRaises(DeadlineExceeded):
            self.escrow.claim(ref, self.secret)

    def test_move_abort_codes(self):
        cases = [
            (0, ClaimRejected),
            (1, ClaimRejected),
            (2, DeadlineExceeded),
            (3, EscrowAlreadyClaimed),
            (4, EscrowTerminal),
            (99, ClaimRejected),
        ]
        for code, error in cases:
            self.client.sign_and_execute.return_value = {"effects": {"status": {
                "status": "failure",
                "error": f"MoveAbort(MoveLocation {{ module: ModuleId {{ name: "
                         f"Identifier(\"shared_locker\") }}, function: 3 }}, {code}) in command 0",
            }}}
            with self.assertRaises(error, msg=f"abort {code}"):
                self.escrow.claim(self.ref, self.secret)

    def test_rpc_error_during_execute(self):
        self.client.sign_and_execute.side_effect = SuiRPCError(-32002, "Transaction validator signing failed")
        with self.assertRaises(ClaimRejected):
            self.escrow.claim(self.ref, self.secret)

    def test_transient_error_propagates(self):
        self.client.sign_and_execute.side_effect = TransientLedgerError("timeout")
        with self.assertRaises(TransientLedgerError):
            self.escrow.claim(self.ref, self.secret)

    def test_abort_reason(self):
        self.assertEqual(self.escrow.abort_reason("MoveAbort(loc, 3) in command 0"), "already_claimed")
        self.assertEqual(self.escrow.abort_reason("MoveAbort(loc, 42)"), "abort_42")
        self.assertIsNone(self.escrow.abort_reason("InsufficientGas"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
