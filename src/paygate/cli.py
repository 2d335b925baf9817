from __future__ import annotations

import argparse
import base64
import json
import secrets
import sys
import time
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import ec, rsa

from .errors import ConfigurationError
from .receipts import verify_state_header
from .settings import settings
from .signing import AsymmetricKey, load_keys_dir
from .signing.asymmetric import algorithm_for_key


def cmd_keygen_hmac(args: argparse.Namespace) -> int:
    print(secrets.token_hex(args.bytes))
    return 0


def cmd_keygen_asymmetric(args: argparse.Namespace) -> int:
    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)
    priv_path, pub_path = out / f"{args.kid}.key", out / f"{args.kid}.pub"
    if priv_path.exists() and not args.force:
        print(f"{priv_path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1
    if args.kind == "rsa":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=args.bits)
    else:
        private_key = ec.generate_private_key(ec.SECP256R1())
    key = AsymmetricKey(
        args.kid, algorithm_for_key(private_key), private_key, private_key.public_key(), time.time()
    )
    priv_path.write_bytes(key.private_pem())
    priv_path.chmod(0o600)
    pub_path.write_bytes(key.public_pem())
    print(f"Wrote {key.algorithm} key {priv_path} and {pub_path}")
    return 0


def cmd_jwks(args: argparse.Namespace) -> int:
    keys_dir = Path(args.dir)
    if not keys_dir.is_dir():
        print(f"Not a directory: {keys_dir}", file=sys.stderr)
        return 2
    try:
        keys = load_keys_dir(keys_dir)
    except ConfigurationError as e:
        print(f"Invalid key material: {e}", file=sys.stderr)
        return 3
    print(json.dumps({"keys": [k.to_jwk() for k in keys.values()]}, indent=2))
    return 0


def cmd_verify_state(args: argparse.Namespace) -> int:
    if args.public_key:
        vk = base64.b64decode(args.public_key)
    else:
        vk_file = Path(args.keys_dir) / "state_verify_key_ed25519.b64"
        if not vk_file.exists():
            print(f"Verify key not found: {vk_file}", file=sys.stderr)
            return 2
        vk = base64.b64decode(vk_file.read_text().strip())
    header = args.header if args.header != "-" else sys.stdin.read().strip()
    verdict = verify_state_header(header, vk, settings.signature_future_skew_seconds)
    out = verdict.as_dict()
    if verdict.valid:
        out["claims"] = verdict.claims
    print(json.dumps(out, indent=2))
    return 0 if verdict.valid else 4


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="paygate-cli",
        description="Paygate key management and payment-state utilities",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_keygen = sub.add_parser("keygen", help="Generate signing key material")
    kg = p_keygen.add_subparsers(dest="kind", required=True)

    p_hmac = kg.add_parser("hmac", help="Print a random HMAC secret (hex)")
    p_hmac.add_argument("--bytes", type=int, default=32, help="Secret length in bytes (default: 32)")
    p_hmac.set_defaults(func=cmd_keygen_hmac)

    for kind, help_text in (("rsa", "RS256 key pair"), ("ec", "ES256 (P-256) key pair")):
        p_kind = kg.add_parser(kind, help=f"Write a PEM {help_text} as <kid>.key / <kid>.pub")
        p_kind.add_argument("--kid", required=True, help="Key id (file stem)")
        p_kind.add_argument("--out", required=True, help="Keys directory")
        p_kind.add_argument("--force", action="store_true", help="Overwrite an existing key")
        if kind == "rsa":
            p_kind.add_argument("--bits", type=int, default=2048, help="RSA modulus size")
        p_kind.set_defaults(func=cmd_keygen_asymmetric)

    p_jwks = sub.add_parser("jwks", help="Print the JWKS document for a keys directory")
    p_jwks.add_argument("--dir", required=True, help="Directory of <kid>.key PEM files")
    p_jwks.set_defaults(func=cmd_jwks)

    p_state = sub.add_parser("verify-state", help="Verify an X-Payment-State header")
    p_state.add_argument("header", help="Header value, or - to read stdin")
    g = p_state.add_mutually_exclusive_group()
    g.add_argument("--public-key", help="Base64 Ed25519 verify key")
    g.add_argument(
        "--keys-dir",
        default=str(settings.keys_dir),
        help="Directory holding state_verify_key_ed25519.b64 (default: data dir keys/)",
    )
    p_state.set_defaults(func=cmd_verify_state)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
