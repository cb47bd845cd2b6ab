"""
ledgerstamp CLI — offline tooling for stamping payloads, receipts and wallets.

Commands:
  ledgerstamp decode-payload   - Decode a transaction payload (hex or @file)
  ledgerstamp decode-receipt   - Decode a receipt token, URL or file to JSON
  ledgerstamp validate-receipt - Check a receipt's structure and content
  ledgerstamp estimate         - Static size/mass/fee estimate for a file
  ledgerstamp enclave init     - Store a mnemonic under a password
  ledgerstamp enclave status   - Show whether a mnemonic is stored
  ledgerstamp enclave address  - Derive a receive/change address
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from ledgerstamp.errors import StampError


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _read_arg_text(value: str) -> str:
    """Return ``value`` itself, or the contents of ``@path`` / an existing file."""
    path = Path(value[1:]) if value.startswith("@") else Path(value)
    try:
        is_file = path.is_file()
    except OSError:
        is_file = False  # e.g. a long hex string is not a valid file name
    if value.startswith("@") and not is_file:
        _fail(f"File not found: {path}")
    if is_file:
        return path.read_text(encoding="utf-8").strip()
    return value.strip()


def _open_enclave(args: argparse.Namespace):
    from ledgerstamp.wallet.enclave import SigningEnclave
    from ledgerstamp.wallet.storage import FileStorage

    storage = FileStorage(args.config_data["storage_dir"])
    return SigningEnclave(storage, wallet_id=args.wallet), storage


def cmd_decode_payload(args: argparse.Namespace) -> None:
    """Decode a stamping payload and print its structure as JSON."""
    from ledgerstamp.payload import decode_payload, deserialize_chunk_record

    try:
        decoded = decode_payload(_read_arg_text(args.payload))
    except StampError as e:
        _fail(str(e))

    out = decoded.to_dict()
    if decoded.valid_separator:
        try:
            record = deserialize_chunk_record(decoded.chunk_data)
        except StampError:
            pass  # chunk data is not a chunk record; raw preview is enough
        else:
            out["chunkRecord"] = dict(record.metadata(), chunkDataLength=len(record.chunk_data))
    print(json.dumps(out, indent=2, ensure_ascii=False))


def cmd_decode_receipt(args: argparse.Namespace) -> None:
    """Decode a receipt token to JSON."""
    from ledgerstamp.stamping.receipt import decode_receipt_token

    try:
        data = decode_receipt_token(_read_arg_text(args.receipt))
    except StampError as e:
        _fail(str(e))
    print(json.dumps(data, indent=2, ensure_ascii=False))


def cmd_validate_receipt(args: argparse.Namespace) -> None:
    """Validate a receipt file, token or URL."""
    from ledgerstamp.stamping.receipt import decode_receipt_token, validate_receipt

    try:
        data = decode_receipt_token(_read_arg_text(args.receipt))
    except StampError as e:
        _fail(str(e))

    result = validate_receipt(data)
    for warning in result.warnings:
        print(f"  warning: {warning}")
    for error in result.errors:
        print(f"  error:   {error}")
    if not result.valid:
        print("Receipt INVALID")
        sys.exit(1)
    print(f"Receipt valid ({len(data.get('chunks', []))} chunks, mode={data.get('mode')})")


def cmd_estimate(args: argparse.Namespace) -> None:
    """Offline estimate: chunks, payload bytes, mass and minimum fees."""
    from ledgerstamp import MASS_LIMIT, SOMPI_PER_COIN
    from ledgerstamp.stamping.batcher import Artifact, prepare_artifact, static_estimate

    path = Path(args.path)
    if not path.is_file():
        _fail(f"File not found: {path}")

    config = args.config_data
    try:
        prepared = asyncio.run(prepare_artifact(
            Artifact.from_path(path),
            args.mode,
            chunk_size=args.chunk_size or int(config["chunk_size"]),
            compression=config["compression"] and not args.no_compress,
        ))
    except (StampError, ValueError) as e:
        _fail(str(e))

    priority_fee = int(config["priority_fee"])
    estimates = [static_estimate(p, priority_fee) for p in prepared.payloads]
    fees = sum(e.fees for e in estimates)
    worst = max(e.mass for e in estimates)

    print(f"Estimate for {path.name} ({len(prepared.artifact.data)} bytes, mode={args.mode})")
    print(f"  compressed:   {'yes' if prepared.compressed else 'no'}")
    print(f"  chunks:       {len(prepared.chunks)}")
    print(f"  payload:      {prepared.payload_bytes} bytes")
    print(f"  mass:         {sum(e.mass for e in estimates)} (largest tx {worst} / {MASS_LIMIT})")
    print(f"  min fees:     {fees} sompi ({fees / SOMPI_PER_COIN:.8f})")
    if not all(p.mass_estimate.within_limit for p in prepared.payloads):
        print("  WARNING: a transaction would exceed the mass limit; use a smaller --chunk-size")
        sys.exit(1)


def cmd_enclave_init(args: argparse.Namespace) -> None:
    """Store a mnemonic under a password."""
    import getpass

    enclave, storage = _open_enclave(args)
    if enclave.has_mnemonic() and not args.force:
        _fail(f"Wallet {args.wallet!r} already has a mnemonic (use --force to replace)")

    mnemonic = getpass.getpass("Mnemonic: ")
    password = getpass.getpass("Password: ")
    confirm = getpass.getpass("Confirm password: ")
    if password != confirm:
        _fail("Passwords do not match")

    try:
        asyncio.run(enclave.store_mnemonic(mnemonic, password))
    except (StampError, ValueError) as e:
        _fail(str(e))
    print(f"Mnemonic stored for wallet {args.wallet!r} in {storage.path}")


def cmd_enclave_status(args: argparse.Namespace) -> None:
    """Show enclave storage state."""
    enclave, storage = _open_enclave(args)
    status = enclave.get_status()
    print(f"Wallet {args.wallet!r}")
    print(f"  storage:  {storage.path}")
    print(f"  mnemonic: {'stored' if status.has_mnemonic else 'none'}")
    print(f"  locked:   {'yes' if status.is_locked else 'no'}")


def cmd_enclave_address(args: argparse.Namespace) -> None:
    """Unlock briefly and print an address."""
    import getpass

    from ledgerstamp.wallet.hd import KeyDerivation

    enclave, _ = _open_enclave(args)
    if not enclave.has_mnemonic():
        _fail(f"Wallet {args.wallet!r} has no mnemonic. Run 'ledgerstamp enclave init' first.")

    password = getpass.getpass("Password: ")
    passphrase = getpass.getpass("BIP-39 passphrase: ") if args.passphrase else None
    network = args.network or args.config_data["network"]

    async def _derive() -> str:
        await enclave.unlock(password, auto_lock_ms=60_000, passphrase=passphrase)
        try:
            return await enclave.derive_address(
                network, KeyDerivation(args.account, args.index, not args.change)
            )
        finally:
            enclave.lock()

    try:
        print(asyncio.run(_derive()))
    except (StampError, ValueError) as e:
        _fail(str(e))


def build_parser() -> argparse.ArgumentParser:
    from ledgerstamp import __version__

    parser = argparse.ArgumentParser(
        prog="ledgerstamp",
        description="Stamp artifacts onto a UTXO ledger as chunked transaction payloads.",
    )
    parser.add_argument("--version", action="version", version=f"ledgerstamp {__version__}")
    parser.add_argument("--config", help="Path to config.toml (default ~/.ledgerstamp/config.toml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p_dp = sub.add_parser("decode-payload", help="Decode a transaction payload")
    p_dp.add_argument("payload", help="Payload hex, or @file containing hex")

    p_dr = sub.add_parser("decode-receipt", help="Decode a receipt token, URL or file")
    p_dr.add_argument("receipt", help="Token, URL or path")

    p_vr = sub.add_parser("validate-receipt", help="Validate a receipt")
    p_vr.add_argument("receipt", help="Path, token or URL")

    p_est = sub.add_parser("estimate", help="Static estimate for stamping a file")
    p_est.add_argument("path", help="File to stamp")
    p_est.add_argument("--mode", choices=["public", "private"], default="public")
    p_est.add_argument("--no-compress", action="store_true", help="Disable gzip")
    p_est.add_argument("--chunk-size", type=int, help="Chunk size in bytes")

    p_enc = sub.add_parser("enclave", help="Signing enclave management")
    p_enc.add_argument("--wallet", default="main", help="Wallet id (default: main)")
    enc_sub = p_enc.add_subparsers(dest="enclave_command")
    p_ei = enc_sub.add_parser("init", help="Store a mnemonic under a password")
    p_ei.add_argument("--force", action="store_true", help="Replace an existing mnemonic")
    enc_sub.add_parser("status", help="Show enclave state")
    p_ea = enc_sub.add_parser("address", help="Derive an address")
    p_ea.add_argument("--network", help="Network (default from config)")
    p_ea.add_argument("--account", type=int, default=0)
    p_ea.add_argument("--index", type=int, default=0)
    p_ea.add_argument("--change", action="store_true", help="Change chain instead of receive")
    p_ea.add_argument("--passphrase", action="store_true", help="Prompt for a BIP-39 passphrase")

    return parser


def main(argv: list[str] | None = None) -> None:
    from ledgerstamp.config import load_config

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    if not args.command:
        print("ledgerstamp — artifact stamping tools")
        print()
        print("Usage:")
        print("  ledgerstamp decode-payload <hex|@file>")
        print("  ledgerstamp decode-receipt <token|url|file>")
        print("  ledgerstamp validate-receipt <file>")
        print("  ledgerstamp estimate <file> [--mode private] [--no-compress] [--chunk-size N]")
        print("  ledgerstamp enclave {init|status|address}")
        print()
        print("Run 'ledgerstamp <command> --help' for details on any command.")
        sys.exit(0)

    args.config_data = load_config(args.config)

    if args.command == "enclave":
        enclave_commands = {
            "init": cmd_enclave_init,
            "status": cmd_enclave_status,
            "address": cmd_enclave_address,
        }
        ec = getattr(args, "enclave_command", None)
        if not ec:
            print("Usage: ledgerstamp enclave {init|status|address}")
            sys.exit(0)
        enclave_commands[ec](args)
        return

    commands = {
        "decode-payload": cmd_decode_payload,
        "decode-receipt": cmd_decode_receipt,
        "validate-receipt": cmd_validate_receipt,
        "estimate": cmd_estimate,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
