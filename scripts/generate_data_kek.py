from __future__ import annotations

import argparse
import base64
import os
import sys

from tenantguard.core.errors import ConfigurationError
from tenantguard.services.crypto.keyring import KEK_BYTES, KEK_ENV_PREFIX, validate_version


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate a 256-bit data key-encryption key")
    parser.add_argument("--version", required=True, help="KEK version label, e.g. v2")
    parser.add_argument("--format", choices=("base64", "hex"), default="base64")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    try:
        version = validate_version(args.version)
    except ConfigurationError as exc:
        print(f"generate_data_kek failed: {exc}", file=sys.stderr)
        return 1
    key = os.urandom(KEK_BYTES)
    encoded = key.hex() if args.format == "hex" else f"base64:{base64.b64encode(key).decode('ascii')}"
    # Printed once; store it in the secret manager, not in source control.
    print(f"{KEK_ENV_PREFIX}{version}={encoded}")
    print(f"# Promote after every replica has the key: DATA_KEK_VERSION={version}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
