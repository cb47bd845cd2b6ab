"""
ledgerstamp — stamp artifacts onto a UTXO ledger as chunked transaction payloads.

Architecture:
    Chunks:    artifact bytes -> SHA-256 tagged slices (<= 20 000 bytes each)
    Payload:   u32-le metaLen + JSON metadata + 00000000 + chunk bytes
    Private:   HKDF-SHA256(wallet key, groupId) -> AES-256-GCM (nonce || ct || tag)
    Enclave:   password-wrapped mnemonic, unlocked for a bounded window
    Chain:     one transaction per chunk, each spending the previous change output
"""

__version__ = "0.1.0"

# Chunking
DEFAULT_CHUNK_SIZE = 20_000  # max safe payload bytes per transaction

# Payload codec
PAYLOAD_HEADER_SIZE = 4  # u32-le metadata length
PAYLOAD_SEPARATOR = b"\x00\x00\x00\x00"
PAYLOAD_MIN_SIZE = 8  # header + separator
METADATA_MAX_BYTES = 10_000
PAYLOAD_PREVIEW_BYTES = 256
DEBUG_PREVIEW_BYTES = 100

# Mass accounting (single consolidated UTXO assumption)
BASE_TX_MASS = 200
INPUT_MASS = 1118
OUTPUT_MASS = 846
MASS_LIMIT = 100_000

# Envelope crypto
ENVELOPE_KEY_SIZE = 32  # AES-256
ENVELOPE_NONCE_SIZE = 12
ENVELOPE_TAG_SIZE = 16
ENVELOPE_HKDF_INFO = b"ledgerstamp/envelope/v1"

# Enclave
ENCLAVE_BLOB_VERSION = 1
ENCLAVE_STORAGE_SUFFIX = ".enclave"
ENCLAVE_KDF_ITERATIONS = 600_000  # OWASP 2023 minimum for PBKDF2-HMAC-SHA256
ENCLAVE_SALT_SIZE = 16
ENCLAVE_MIN_PASSWORD = 8
DEFAULT_AUTO_LOCK_MS = 30 * 60 * 1000
AUTO_DISCOVERY_SCAN = 10

# HD derivation
COIN_TYPE = 111111
SOMPI_PER_COIN = 100_000_000
VIRTUAL_DAA_SCORE = 2**64 - 1  # unconfirmed change output
