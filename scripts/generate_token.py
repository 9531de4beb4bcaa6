"""
CLI utility to mint a database token with the configured organization credential.

Useful for checking that TURSO_API_TOKEN / TURSO_ORGANIZATION are valid and
for handing a scoped token to another client by hand. It goes through the
same TokenIssuer the server uses, so the printed expiry is the one the server
would cache.

Usage examples:

    # Read-only token for the "shop" database
    python -m scripts.generate_token --database shop --permission read-only

    # Full-access token with a custom lifetime
    python -m scripts.generate_token --database shop --expiration 1d

    # Only print the token (for shell substitution)
    export DB_TOKEN=$(python -m scripts.generate_token --database shop --quiet)
"""

import argparse
import asyncio
import sys

from turso_mcp.config import load_settings
from turso_mcp.errors import ConfigurationError, TursoError
from turso_mcp.issuer import TokenIssuer
from turso_mcp.organization import OrganizationClient
from turso_mcp.tokens import OrganizationCredential, Permission, ScopedToken


async def generate_token(
    database: str,
    permission: Permission,
    expiration: str | None = None,
) -> ScopedToken:
    """
    Mint one token for `database` at `permission`.

    Args:
        database: Database name
        permission: Permission level to request
        expiration: Requested lifetime; TURSO_TOKEN_EXPIRATION when omitted
    """
    settings = load_settings()
    credential = OrganizationCredential(
        organization=settings.organization, api_token=settings.api_token
    )
    client = OrganizationClient(
        credential, base_url=settings.api_base_url, timeout=settings.http_timeout
    )
    try:
        issuer = TokenIssuer(client, expiration=expiration or settings.token_expiration)
        return await issuer.issue(database, permission)
    finally:
        await client.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint a Turso database token using the organization credential.",
    )
    parser.add_argument("--database", required=True, help="Database to mint a token for")
    parser.add_argument(
        "--permission",
        choices=[p.value for p in Permission],
        default=Permission.FULL_ACCESS.value,
        help="Permission level (default: full-access)",
    )
    parser.add_argument(
        "--expiration",
        default=None,
        help="Requested lifetime, e.g. 1d, 2w, never (default: TURSO_TOKEN_EXPIRATION)",
    )
    parser.add_argument("--quiet", action="store_true", help="Print only the token")

    args = parser.parse_args()

    try:
        token = asyncio.run(
            generate_token(args.database, Permission(args.permission), args.expiration)
        )
    except (ConfigurationError, TursoError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.quiet:
        print(token.token_value)
        return

    print(f"Database:   {token.database_name}")
    print(f"Permission: {token.permission.value}")
    print(f"Expires:    {token.expires_at.isoformat()}")
    print()
    print(f"Token: {token.token_value}")


if __name__ == "__main__":
    main()
