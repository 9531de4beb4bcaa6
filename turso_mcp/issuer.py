"""
Database token issuance.

A TokenIssuer turns (database name, permission) into a ScopedToken with one
call to the organization API. It keeps no state: caching is TokenCache's job.
"""

import logging

from turso_mcp.errors import TursoError
from turso_mcp.organization import OrganizationClient
from turso_mcp.tokens import Permission, ScopedToken, decode_expiration, utcnow

logger = logging.getLogger("turso-mcp.issuer")


class TokenIssuer:
    """
    Mints permission-scoped database tokens with the organization credential.

    The expiry of each token is read from the token itself, since the platform
    decides how long it actually lives; `expiration` is only what we ask for.
    """

    def __init__(self, client: OrganizationClient, expiration: str = "7d"):
        self.client = client
        self.expiration = expiration

    async def issue(self, database_name: str, permission: Permission) -> ScopedToken:
        """
        Request a new token for `database_name` at `permission`.

        Raises:
            ValueError: database_name is empty
            AuthorizationFailure: organization credential rejected (401/403)
            NotFound: unknown database (404)
            RemoteServiceError: any other remote or network failure
        """
        if not database_name:
            raise ValueError("database_name must be a non-empty string")
        permission = Permission(permission)

        try:
            token_value = await self.client.create_database_token(
                database_name, permission, self.expiration
            )
        except TursoError as e:
            if e.database_name is None:
                e.database_name = database_name
            if e.permission is None:
                e.permission = permission.value
            logger.warning(
                "Token issuance failed",
                extra={
                    "log_data": {
                        "database": database_name,
                        "permission": permission.value,
                        "error": type(e).__name__,
                        "status_code": e.status_code,
                    }
                },
            )
            raise

        token = ScopedToken(
            database_name=database_name,
            permission=permission,
            token_value=token_value,
            expires_at=decode_expiration(token_value, now=utcnow()),
        )
        logger.info(
            "Database token issued",
            extra={
                "log_data": {
                    "database": database_name,
                    "permission": permission.value,
                    "expires_at": token.expires_at.isoformat(),
                }
            },
        )
        return token
