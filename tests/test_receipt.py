"""
Tests for stamping receipts — JSON shape, compact tokens, validation.
"""

from __future__ import annotations

import base64
import json
import zlib
from unittest import TestCase

from ledgerstamp.errors import EncodingError
from ledgerstamp.stamping.receipt import (
    ChunkRef,
    StampingReceipt,
    decode_receipt_token,
    encode_receipt_token,
    validate_receipt,
)

DIGEST = "0f" * 32
TXIDS = ["aa" * 32, "bb" * 32]


def make_receipt(**overrides) -> StampingReceipt:
    fields = dict(
        id=TXIDS[0],
        group_id="3f2b8c1e-0000-4000-8000-000000000000",
        mode="public",
        chunks=[ChunkRef(0, 2, DIGEST), ChunkRef(1, 2, DIGEST)],
        transaction_ids=list(TXIDS),
        network="testnet-10",
        timestamp="2026-03-01T12:00:00.000+00:00",
        file_name="report.pdf",
        file_size=40_000,
        hash=DIGEST,
        compressed=True,
        total_fees=6000,
        total_mass=44_000,
    )
    fields.update(overrides)
    return StampingReceipt(**fields)


class TestReceiptJson(TestCase):

    def test_camel_case_shape(self):
        data = make_receipt().to_dict()
        self.assertEqual(data["groupId"], "3f2b8c1e-0000-4000-8000-000000000000")
        self.assertEqual(data["transactionIds"], TXIDS)
        self.assertEqual(data["chunkCount"], 2)
        self.assertEqual(data["chunks"][1], {"index": 1, "total": 2, "digest": DIGEST})
        self.assertFalse(data["transactionIdsEncrypted"])

    def test_round_trip(self):
        receipt = make_receipt()
        self.assertEqual(StampingReceipt.from_json(receipt.to_json()), receipt)

    def test_unknown_fields_preserved(self):
        data = make_receipt().to_dict()
        data["explorerUrl"] = "https://explorer.example/tx"
        receipt = StampingReceipt.from_dict(data)
        self.assertEqual(receipt.extra, {"explorerUrl": "https://explorer.example/tx"})
        self.assertEqual(receipt.to_dict()["explorerUrl"], "https://explorer.example/tx")

    def test_encrypted_ids_kept_as_string(self):
        receipt = make_receipt(transaction_ids="c2VhbGVk", transaction_ids_encrypted=True)
        again = StampingReceipt.from_dict(receipt.to_dict())
        self.assertEqual(again.transaction_ids, "c2VhbGVk")

    def test_malformed(self):
        with self.assertRaises(EncodingError):
            StampingReceipt.from_dict({"groupId": "x"})
        with self.assertRaises(EncodingError):
            StampingReceipt.from_json("{nope")
        with self.assertRaises(EncodingError):
            StampingReceipt.from_dict([])  # type: ignore[arg-type]


class TestReceiptToken(TestCase):

    def test_round_trip(self):
        receipt = make_receipt()
        token = encode_receipt_token(receipt)
        self.assertNotIn("=", token)
        self.assertNotIn("+", token)
        self.assertEqual(decode_receipt_token(token), receipt.to_dict())

    def test_from_url(self):
        token = encode_receipt_token(make_receipt())
        data = decode_receipt_token(f"https://stamp.example/receipt/{token}/")
        self.assertEqual(data["fileName"], "report.pdf")

    def test_plain_json(self):
        text = json.dumps(make_receipt().to_dict())
        self.assertEqual(decode_receipt_token(text)["id"], TXIDS[0])

    def test_zlib_token(self):
        raw = json.dumps(make_receipt().to_dict()).encode()
        token = base64.urlsafe_b64encode(zlib.compress(raw)).decode().rstrip("=")
        self.assertEqual(decode_receipt_token(token)["mode"], "public")

    def test_garbage(self):
        with self.assertRaises(EncodingError):
            decode_receipt_token("!!!!")
        with self.assertRaises(EncodingError):
            decode_receipt_token(base64.urlsafe_b64encode(b"\x00\x01\x02").decode())
        with self.assertRaises(EncodingError):
            decode_receipt_token("[1, 2")


class TestValidateReceipt:

    def test_valid(self):
        result = validate_receipt(make_receipt().to_dict())
        assert result.valid, result.errors
        assert result.warnings == []

    def test_not_an_object(self):
        assert not validate_receipt("receipt").valid

    def test_missing_fields(self):
        data = make_receipt().to_dict()
        del data["groupId"]
        del data["transactionIds"]
        result = validate_receipt(data)
        assert not result.valid
        assert "Missing required field: groupId" in result.errors
        assert "Missing required field: transactionIds" in result.errors

    def test_bad_mode_and_timestamp(self):
        data = make_receipt().to_dict()
        data["mode"] = "secret"
        data["timestamp"] = "yesterday"
        result = validate_receipt(data)
        assert any("mode" in e for e in result.errors)
        assert any("timestamp" in e for e in result.errors)

    def test_bad_txid(self):
        data = make_receipt().to_dict()
        data["transactionIds"] = ["xyz", TXIDS[1]]
        result = validate_receipt(data)
        assert result.errors == ["transactionIds[0] must be a 64-char hex id"]

    def test_chunk_coverage(self):
        data = make_receipt().to_dict()
        data["chunks"][1]["index"] = 0
        result = validate_receipt(data)
        assert any("cover" in e for e in result.errors)

    def test_chunks_disagree_on_total(self):
        data = make_receipt().to_dict()
        data["chunks"][1]["total"] = 3
        assert not validate_receipt(data).valid

    def test_count_mismatch_is_warning(self):
        data = make_receipt().to_dict()
        data["transactionIds"] = TXIDS[:1]
        result = validate_receipt(data)
        assert result.valid
        assert result.warnings == ["1 transaction ids for 2 chunks"]

    def test_dangerous_extension_warning(self):
        data = make_receipt(file_name="invoice.pdf.exe").to_dict()
        result = validate_receipt(data)
        assert result.valid
        assert any(".exe" in w for w in result.warnings)

    def test_suspicious_pattern_warning(self):
        data = make_receipt(file_name="<script>alert(1)</script>.txt").to_dict()
        result = validate_receipt(data)
        assert any("suspicious" in w for w in result.warnings)

    def test_encrypted_receipt(self):
        data = make_receipt(
            mode="private",
            transaction_ids="c2VhbGVk",
            transaction_ids_encrypted=True,
            encrypted=True,
            file_name="[encrypted]",
            file_size=0,
            hash="[encrypted]",
            encrypted_metadata="bWV0YQ==",
        ).to_dict()
        result = validate_receipt(data)
        assert result.valid, result.errors

    def test_encrypted_ids_must_be_string(self):
        data = make_receipt(transaction_ids_encrypted=True).to_dict()
        assert not validate_receipt(data).valid

    def test_bad_hash_and_size(self):
        data = make_receipt().to_dict()
        data["hash"] = "abc"
        data["fileSize"] = -5
        result = validate_receipt(data)
        assert len(result.errors) == 2

    def test_file_name_length(self):
        data = make_receipt(file_name="a" * 300).to_dict()
        assert not validate_receipt(data).valid
