"""
Ledger addresses — ``prefix:base32(version || payload || checksum)``.

Uses the cashaddr-style BCH checksum (40 bits) with the human-readable
network prefix mixed in. Versions:
    0  Schnorr public key (32-byte x-only)
    1  ECDSA public key (33-byte compressed)
    8  script hash (32 bytes)
"""

from __future__ import annotations

from ledgerstamp.wallet.hd import xonly_public_key

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_CHARSET_REV = {c: i for i, c in enumerate(CHARSET)}
_GENERATORS = (0x98F2BC8E61, 0x79B76D99E2, 0xF33E5FB3C4, 0xAE2EABE2A8, 0x1E4F43E470)

VERSION_PUBKEY = 0
VERSION_PUBKEY_ECDSA = 1
VERSION_SCRIPT_HASH = 8
_PAYLOAD_SIZES = {VERSION_PUBKEY: 32, VERSION_PUBKEY_ECDSA: 33, VERSION_SCRIPT_HASH: 32}

PREFIXES = {
    "mainnet": "kaspa",
    "testnet": "kaspatest",
    "simnet": "kaspasim",
    "devnet": "kaspadev",
}
_KNOWN_PREFIXES = frozenset(PREFIXES.values())


class AddressError(ValueError):
    """Malformed or unsupported address."""


def network_prefix(network: str) -> str:
    """Address prefix for a network id such as ``mainnet`` or ``testnet-10``."""
    name = network.lower()
    if name.startswith("kaspa-"):
        name = name[len("kaspa-"):]
    for key, prefix in PREFIXES.items():
        if name == key or name.startswith(key + "-"):
            return prefix
    raise AddressError(f"Unknown network: {network!r}")


def _polymod(values: list[int]) -> int:
    c = 1
    for d in values:
        c0 = c >> 35
        c = ((c & 0x07FFFFFFFF) << 5) ^ d
        for i, gen in enumerate(_GENERATORS):
            if (c0 >> i) & 1:
                c ^= gen
    return c ^ 1


def _checksum(prefix: str, data5: list[int]) -> list[int]:
    value = _polymod([ord(ch) & 0x1F for ch in prefix] + [0] + data5 + [0] * 8)
    return [(value >> (5 * (7 - i))) & 0x1F for i in range(8)]


def _convert_bits(data: bytes | list[int], from_bits: int, to_bits: int, pad: bool) -> list[int]:
    acc = 0
    bits = 0
    out = []
    maxv = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & maxv)
    if pad:
        if bits:
            out.append((acc << (to_bits - bits)) & maxv)
    elif bits >= from_bits or ((acc << (to_bits - bits)) & maxv):
        raise AddressError("Invalid padding in address payload")
    return out


def encode_address(payload: bytes, network: str, version: int = VERSION_PUBKEY) -> str:
    expected = _PAYLOAD_SIZES.get(version)
    if expected is None:
        raise AddressError(f"Unsupported address version: {version}")
    if len(payload) != expected:
        raise AddressError(f"Version {version} payload must be {expected} bytes")
    prefix = network_prefix(network)
    data5 = _convert_bits(bytes([version]) + payload, 8, 5, pad=True)
    body = data5 + _checksum(prefix, data5)
    return prefix + ":" + "".join(CHARSET[d] for d in body)


def decode_address(address: str) -> tuple[str, int, bytes]:
    """Parse an address. Returns (prefix, version, payload)."""
    if address.lower() != address and address.upper() != address:
        raise AddressError("Mixed-case address")
    address = address.lower()
    prefix, sep, body = address.partition(":")
    if not sep or prefix not in _KNOWN_PREFIXES:
        raise AddressError(f"Unknown address prefix in {address!r}")
    if len(body) < 9:
        raise AddressError("Address too short")
    try:
        data5 = [_CHARSET_REV[c] for c in body]
    except KeyError as e:
        raise AddressError(f"Invalid address character: {e.args[0]!r}") from None
    if _checksum(prefix, data5[:-8]) != data5[-8:]:
        raise AddressError("Address checksum mismatch")

    raw = bytes(_convert_bits(data5[:-8], 5, 8, pad=False))
    version, payload = raw[0], raw[1:]
    expected = _PAYLOAD_SIZES.get(version)
    if expected is None or len(payload) != expected:
        raise AddressError(f"Invalid payload for address version {version}")
    return prefix, version, payload


def address_from_private_key(private_key: bytes, network: str) -> str:
    """Schnorr (version 0) address for a private key."""
    return encode_address(xonly_public_key(private_key), network, VERSION_PUBKEY)


def pay_to_address_script(address: str) -> str:
    """Locking script (hex) that pays to ``address``."""
    _, version, payload = decode_address(address)
    if version == VERSION_PUBKEY:
        script = b"\x20" + payload + b"\xac"  # OP_DATA_32 <key> OP_CHECKSIG
    elif version == VERSION_PUBKEY_ECDSA:
        script = b"\x21" + payload + b"\xab"  # OP_DATA_33 <key> OP_CHECKSIGECDSA
    else:
        script = b"\xaa\x20" + payload + b"\x87"  # OP_BLAKE2B <hash> OP_EQUAL
    return script.hex()
