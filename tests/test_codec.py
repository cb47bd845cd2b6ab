"""
Tests for chunk splitting and the payload codec.

TestSplitArtifact   — chunk sizes, group ids, min_chunks, argument checks
TestReassemble      — ordering, coverage, digest verification
TestEncodePayload   — wire layout, metadata limits, mass estimate
TestDecodePayload   — inverse of encode, hex parsing, malformed input
TestChunkRecord     — inner record round trip and separator strictness
"""

from __future__ import annotations

import hashlib
import json
import os
import struct
from unittest import TestCase

import pytest

from ledgerstamp import MASS_LIMIT
from ledgerstamp.chunking import Chunk, reassemble, sha256_hex, split_artifact
from ledgerstamp.errors import EncodingError, IntegrityError
from ledgerstamp.payload import (
    ChunkRecord,
    StampingEnvelope,
    decode_payload,
    deserialize_chunk_record,
    encode_payload,
    estimate_mass,
    parse_hex,
    serialize_chunk_record,
)


# ══════════════════════════════════════════════════════════════════════════
# Chunking
# ══════════════════════════════════════════════════════════════════════════


class TestSplitArtifact(TestCase):

    def test_45000_bytes_in_three_chunks(self):
        data = os.urandom(45000)
        chunks = split_artifact(data, chunk_size=20000)

        self.assertEqual([len(c.data) for c in chunks], [20000, 20000, 5000])
        self.assertEqual([c.index for c in chunks], [0, 1, 2])
        self.assertTrue(all(c.total == 3 for c in chunks))
        self.assertEqual(len({c.group_id for c in chunks}), 1)
        self.assertEqual(b"".join(c.data for c in chunks), data)

    def test_digest_covers_own_slice(self):
        data = b"a" * 10 + b"b" * 10
        chunks = split_artifact(data, chunk_size=10)
        self.assertEqual(chunks[0].digest, hashlib.sha256(b"a" * 10).hexdigest())
        self.assertEqual(chunks[1].digest, hashlib.sha256(b"b" * 10).hexdigest())
        self.assertTrue(all(c.verify() for c in chunks))

    def test_small_input_single_chunk(self):
        chunks = split_artifact(b"hello", chunk_size=20000)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].total, 1)
        self.assertEqual(chunks[0].data, b"hello")

    def test_empty_input_single_empty_chunk(self):
        chunks = split_artifact(b"")
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].data, b"")
        self.assertEqual(chunks[0].digest, sha256_hex(b""))

    def test_exact_multiple(self):
        chunks = split_artifact(b"x" * 40000, chunk_size=20000)
        self.assertEqual([len(c.data) for c in chunks], [20000, 20000])

    def test_min_chunks_pads_with_empty_slices(self):
        chunks = split_artifact(b"abc", chunk_size=10, min_chunks=3)
        self.assertEqual(len(chunks), 3)
        self.assertEqual(chunks[0].data, b"abc")
        self.assertEqual(chunks[1].data, b"")
        self.assertEqual(chunks[2].data, b"")
        self.assertTrue(all(c.total == 3 for c in chunks))

    def test_explicit_group_id(self):
        chunks = split_artifact(b"x" * 30, chunk_size=10, group_id="g1")
        self.assertTrue(all(c.group_id == "g1" for c in chunks))

    def test_generated_group_ids_differ(self):
        a = split_artifact(b"same")
        b = split_artifact(b"same")
        self.assertNotEqual(a[0].group_id, b[0].group_id)

    def test_invalid_sizes(self):
        for bad in (0, -1, 1.5, "10", True):
            with self.assertRaises(ValueError):
                split_artifact(b"data", chunk_size=bad)
        with self.assertRaises(ValueError):
            split_artifact(b"data", min_chunks=0)


class TestReassemble(TestCase):

    def test_shuffled_order(self):
        data = os.urandom(2500)
        chunks = split_artifact(data, chunk_size=1000)
        self.assertEqual(reassemble(list(reversed(chunks))), data)

    def test_missing_chunk(self):
        chunks = split_artifact(os.urandom(3000), chunk_size=1000)
        with self.assertRaises(EncodingError):
            reassemble([chunks[0], chunks[2]])

    def test_corrupted_chunk(self):
        chunks = split_artifact(b"A" * 20, chunk_size=10)
        bad = Chunk(chunks[1].group_id, 1, 2, b"B" * 10, chunks[1].digest)
        with self.assertRaises(IntegrityError) as ctx:
            reassemble([chunks[0], bad])
        self.assertIn("Chunk 1", str(ctx.exception))

    def test_mixed_groups(self):
        a = split_artifact(b"x" * 20, chunk_size=10, group_id="a")
        b = split_artifact(b"x" * 20, chunk_size=10, group_id="b")
        with self.assertRaises(EncodingError):
            reassemble([a[0], b[1]])

    def test_empty(self):
        with self.assertRaises(EncodingError):
            reassemble([])


# ══════════════════════════════════════════════════════════════════════════
# Payload codec
# ══════════════════════════════════════════════════════════════════════════


class TestEncodePayload(TestCase):

    def test_g1_public_layout(self):
        meta = {"groupId": "g1", "mode": "public"}
        encoded = encode_payload(StampingEnvelope(meta, bytes([1, 2, 3, 4])))
        meta_json = json.dumps(meta, separators=(",", ":")).encode()

        self.assertEqual(len(encoded.payload), 4 + len(meta_json) + 4 + 4)
        self.assertEqual(encoded.payload[:4], struct.pack("<I", len(meta_json)))
        self.assertEqual(encoded.payload[4:4 + len(meta_json)], meta_json)
        self.assertEqual(encoded.payload[-8:], b"\x00\x00\x00\x00\x01\x02\x03\x04")
        self.assertEqual(encoded.structure.metadata_length, 32)
        self.assertEqual(encoded.structure.total_bytes, 44)
        self.assertEqual(encoded.hex, encoded.payload.hex())

    def test_debug_info(self):
        encoded = encode_payload(StampingEnvelope({"a": 1}, b""))
        self.assertEqual(encoded.debug["separator_hex"], "00000000")
        self.assertEqual(encoded.debug["metadata_json"], '{"a":1}')
        self.assertEqual(encoded.debug["metadata_length_hex"], "07000000")

    def test_unicode_metadata_kept_as_utf8(self):
        encoded = encode_payload(StampingEnvelope({"fileName": "résumé.pdf"}, b""))
        self.assertIn("résumé.pdf".encode("utf-8"), encoded.payload)

    def test_metadata_limit(self):
        encode_payload(StampingEnvelope({"x": "a" * 9990}, b""))
        with self.assertRaises(EncodingError):
            encode_payload(StampingEnvelope({"x": "a" * 10_000}, b""))

    def test_metadata_must_be_object(self):
        with self.assertRaises(EncodingError):
            encode_payload(StampingEnvelope(["not", "a", "dict"], b""))  # type: ignore[arg-type]
        with self.assertRaises(EncodingError):
            encode_payload(StampingEnvelope({"x": object()}, b""))

    def test_lone_surrogate_metadata(self):
        # os.fsdecode of an undecodable file name yields lone surrogates
        with self.assertRaises(EncodingError):
            encode_payload(StampingEnvelope({"fileName": "bad\udcff.txt"}, b""))

    def test_mass_estimate(self):
        encoded = encode_payload(StampingEnvelope({"a": 1}, b"\x00" * 1000))
        mass = encoded.mass_estimate
        self.assertEqual(mass.total_estimate, 200 + 1118 + 846 + len(encoded.payload))
        self.assertTrue(mass.within_limit)

    def test_mass_limit_is_strict(self):
        self.assertFalse(estimate_mass(MASS_LIMIT - 2164).within_limit)
        self.assertTrue(estimate_mass(MASS_LIMIT - 2165).within_limit)


class TestDecodePayload(TestCase):

    def test_inverse_of_encode(self):
        meta = {"groupId": "g1", "mode": "public"}
        encoded = encode_payload(StampingEnvelope(meta, bytes([1, 2, 3, 4])))
        decoded = decode_payload(encoded.payload)

        self.assertTrue(decoded.valid_separator)
        self.assertEqual(decoded.chunk_data, bytes([1, 2, 3, 4]))
        self.assertEqual(decoded.metadata, meta)
        self.assertEqual(decoded.structure, encoded.structure)
        self.assertEqual(decoded.estimated_mass, 200 + 44)
        self.assertTrue(decoded.within_mass_limit)

    def test_hex_input(self):
        encoded = encode_payload(StampingEnvelope({"a": 1}, b"xyz"))
        text = "0x" + encoded.hex.upper()
        spaced = " ".join(text[i:i + 8] for i in range(0, len(text), 8))
        self.assertEqual(decode_payload(spaced).chunk_data, b"xyz")

    def test_five_bytes_too_short(self):
        with self.assertRaises(EncodingError) as ctx:
            decode_payload(b"\x01\x02\x03\x04\x05")
        self.assertIn("too short", str(ctx.exception))

    def test_invalid_hex(self):
        with self.assertRaises(EncodingError) as ctx:
            parse_hex("zz00")
        self.assertIn("non-hex", str(ctx.exception))
        with self.assertRaises(EncodingError) as ctx:
            parse_hex("abc")
        self.assertIn("odd length", str(ctx.exception))

    def test_metadata_length_out_of_range(self):
        data = struct.pack("<I", 10_001) + b"\x00" * 20
        with self.assertRaises(EncodingError) as ctx:
            decode_payload(data)
        self.assertIn("Invalid metadata length", str(ctx.exception))

    def test_truncated(self):
        data = struct.pack("<I", 50) + b"{}" + b"\x00" * 4
        with self.assertRaises(EncodingError) as ctx:
            decode_payload(data)
        self.assertIn("truncated", str(ctx.exception))

    def test_bad_utf8(self):
        data = struct.pack("<I", 2) + b"\xff\xfe" + b"\x00" * 4
        with self.assertRaises(EncodingError) as ctx:
            decode_payload(data)
        self.assertIn("UTF-8", str(ctx.exception))

    def test_bad_json(self):
        for meta in (b"{x}", b"[1]"):
            data = struct.pack("<I", len(meta)) + meta + b"\x00" * 4
            with self.assertRaises(EncodingError):
                decode_payload(data)

    def test_corrupt_separator_is_flagged(self):
        payload = bytearray(encode_payload(StampingEnvelope({"a": 1}, b"data")).payload)
        payload[4 + 7] = 0x01
        decoded = decode_payload(bytes(payload))
        self.assertFalse(decoded.valid_separator)
        self.assertEqual(decoded.chunk_data, b"data")

    def test_to_dict(self):
        decoded = decode_payload(encode_payload(StampingEnvelope({"a": 1}, b"\xab" * 300)).payload)
        out = decoded.to_dict()
        self.assertEqual(out["chunkDataBytes"], 300)
        self.assertEqual(len(out["chunkDataPreviewHex"]), 512)
        self.assertTrue(out["validSeparator"])


class TestChunkRecord(TestCase):

    def _record(self) -> ChunkRecord:
        return ChunkRecord(
            file_name="report.pdf",
            chunk_index=1,
            total_chunks=3,
            digest=sha256_hex(b"chunk"),
            timestamp="2026-01-01T00:00:00+00:00",
            chunk_data=b"chunk",
        )

    def test_round_trip(self):
        record = self._record()
        self.assertEqual(deserialize_chunk_record(serialize_chunk_record(record)), record)

    def test_camel_case_metadata(self):
        data = serialize_chunk_record(self._record())
        meta = decode_payload(data).metadata
        self.assertEqual(
            set(meta), {"fileName", "chunkIndex", "totalChunks", "digest", "timestamp"}
        )

    def test_bad_separator_rejected(self):
        data = bytearray(serialize_chunk_record(self._record()))
        meta_len = struct.unpack_from("<I", data)[0]
        data[4 + meta_len] = 0xFF
        with self.assertRaises(IntegrityError):
            deserialize_chunk_record(bytes(data))

    def test_missing_fields(self):
        data = encode_payload(StampingEnvelope({"fileName": "x"}, b"")).payload
        with pytest.raises(EncodingError):
            deserialize_chunk_record(data)
