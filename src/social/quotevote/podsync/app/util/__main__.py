import argparse
import asyncio
import json
import logging
import sys
import aiohttp

from social.quotevote.podsync.app.config import Settings
from social.quotevote.podsync.errors import DiscoveryError
from social.quotevote.podsync.oidc.discovery import discover_issuer
from social.quotevote.podsync.storage.encryption import (
    generate_encryption_key,
    validate_encryption_key,
)

logger = logging.getLogger(__name__)


async def genCryptoKey() -> None:
    print(generate_encryption_key())


async def checkKey() -> int:
    settings = Settings()  # type: ignore
    if validate_encryption_key(settings.solid_token_encryption_key or ""):
        print("SOLID_TOKEN_ENCRYPTION_KEY is valid")
        return 0

    print(
        "SOLID_TOKEN_ENCRYPTION_KEY is missing or malformed. "
        "Generate one with: podsync-util gen-crypto",
        file=sys.stderr,
    )
    return 1


async def discover(issuer_or_web_id: str, timeout: float) -> int:
    async with aiohttp.ClientSession() as http_session:
        try:
            metadata = await discover_issuer(http_session, issuer_or_web_id, timeout)
        except DiscoveryError as e:
            print(str(e), file=sys.stderr)
            return 1

    print(json.dumps(metadata.model_dump(exclude_none=True), indent=2))
    return 0


async def realMain() -> int:
    parser = argparse.ArgumentParser(
        prog="podsync-util", description="Pod sync utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser(
        "gen-crypto", help="Generate a token encryption key (64 hex characters)"
    )
    _ = subparsers.add_parser(
        "check-key", help="Validate SOLID_TOKEN_ENCRYPTION_KEY from the environment"
    )
    discover_parser = subparsers.add_parser(
        "discover", help="Discover OIDC issuer metadata"
    )
    discover_parser.add_argument("issuer", help="Issuer URL or WebID.")
    discover_parser.add_argument(
        "--timeout", type=float, default=10.0, help="Request timeout in seconds."
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-crypto":
        await genCryptoKey()
    elif command == "check-key":
        return await checkKey()
    elif command == "discover":
        issuer: str = args.get("issuer", str)
        timeout: float = args.get("timeout", 10.0)
        return await discover(issuer, timeout)
    return 0


def main() -> None:
    sys.exit(asyncio.run(realMain()))


if __name__ == "__main__":
    main()
