"""Command line utilities for Warden key management."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from .affiliates import generate_affiliate_keys
from .exceptions import ConfigurationError
from .keystore import KeyStore, dump_keys, generate_key
from .serialization import json_encode

PROJECT_NAME = "warden"


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO)
    try:
        return args.func(args)
    except ConfigurationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROJECT_NAME, description="Warden key management commands")
    parser.add_argument("--quiet", action="store_true", help="Only log warnings and errors")
    sub = parser.add_subparsers(dest="command", required=True)

    keygen = sub.add_parser("keygen", help="Generate a new signing key version")
    keygen.add_argument("--version", type=int, help="Version number; defaults to one past the latest in --append")
    keygen.add_argument("--append", metavar="FILE", help="Key file to extend in place")
    keygen.set_defaults(func=_cmd_keygen)

    affiliate = sub.add_parser("affiliate-keys", help="Generate an RSA key pair for a new affiliate")
    affiliate.add_argument("--key-size", type=int, default=2048, help="RSA modulus size in bits")
    affiliate.set_defaults(func=_cmd_affiliate_keys)

    return parser


def _cmd_keygen(args: argparse.Namespace) -> int:
    if args.append is None:
        version = args.version if args.version is not None else 1
        print(dump_keys([generate_key(version)]).decode("utf-8"))
        return 0

    path = Path(args.append)
    existing = KeyStore.from_file(path) if path.exists() else None
    if args.version is not None:
        version = args.version
    elif existing is not None:
        version = existing.latest_version + 1
    else:
        version = 1
    key = generate_key(version)
    store = existing.rotated(key) if existing is not None else KeyStore([key])
    if store.latest_version != version:
        raise ConfigurationError(f"Key version {version} would not become the latest version")
    path.write_bytes(dump_keys(store))
    print(f"wrote key version {version} to {path}")
    return 0


def _cmd_affiliate_keys(args: argparse.Namespace) -> int:
    keys = generate_affiliate_keys(key_size=args.key_size)
    print(json_encode(keys).decode("utf-8"))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
