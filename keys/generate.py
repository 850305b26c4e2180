"""
Write a development RSA key pair for signing and verifying access tokens.

Point the application at the generated files with::

    export JWT_PRIVATE_KEY_PATH=keys/dev.private.pem
    export JWT_PUBLIC_KEY_PATH=keys/dev.public.pem
"""

from __future__ import annotations

import argparse
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

KEYS_DIR = Path(__file__).resolve().parent


def generate_key_pair(key_size: int = 2048) -> tuple[bytes, bytes]:
    """Return ``(private_pem, public_pem)`` for a fresh RSA key."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--out-dir", type=Path, default=KEYS_DIR)
    parser.add_argument("--force", action="store_true", help="Overwrite existing keys.")
    args = parser.parse_args(argv)

    private_path = args.out_dir / "dev.private.pem"
    public_path = args.out_dir / "dev.public.pem"
    existing = [path for path in (private_path, public_path) if path.exists()]

    if existing and not args.force:
        if len(existing) == 2:
            print(f"Keys already exist, skipping: {private_path} / {public_path}")
            return 0
        raise SystemExit(
            f"Only {existing[0].name} exists. Re-run with --force to replace both keys."
        )

    args.out_dir.mkdir(parents=True, exist_ok=True)
    private_pem, public_pem = generate_key_pair()
    private_path.write_bytes(private_pem)
    public_path.write_bytes(public_pem)
    print(f"Generated: {private_path}")
    print(f"Generated: {public_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
