"""
Credential broker: the object every data-plane operation goes through.

    tool call (database?)                          ┌── OrganizationClient
        │                                          │
        ├── resolve_database(database) ── DatabaseContext
        │
        └── get_token(db, permission) ── TokenCache ── TokenIssuer ──┘

One broker is owned by one server instance, so tests (or several servers in
one process) each get their own cache and session context.
"""

import logging

import httpx

from turso_mcp.cache import TokenCache
from turso_mcp.config import Settings
from turso_mcp.context import DatabaseContext
from turso_mcp.database import DatabaseClient
from turso_mcp.issuer import TokenIssuer
from turso_mcp.organization import OrganizationClient
from turso_mcp.tokens import OrganizationCredential, Permission, ScopedToken

logger = logging.getLogger("turso-mcp.broker")


class CredentialBroker:
    """
    Owns the organization credential, token cache and session context.

    Args:
        settings: Loaded configuration
        http_client: Optional shared httpx.AsyncClient for both remote APIs
                     (tests inject one backed by httpx.MockTransport)
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.credential = OrganizationCredential(
            organization=settings.organization,
            api_token=settings.api_token,
        )
        self.organization = OrganizationClient(
            self.credential,
            base_url=settings.api_base_url,
            timeout=settings.http_timeout,
            client=http_client,
        )
        self.issuer = TokenIssuer(self.organization, expiration=settings.token_expiration)
        self.cache = TokenCache(self.issuer, cleanup_interval=settings.cleanup_interval)
        self.context = DatabaseContext(settings.default_database)
        self.databases = DatabaseClient(
            settings.database_url,
            timeout=settings.http_timeout,
            client=http_client,
        )

    def resolve_database(self, explicit: str | None = None) -> str:
        return self.context.resolve(explicit)

    async def get_token(self, database_name: str, permission: Permission) -> ScopedToken:
        return await self.cache.get_token(database_name, permission)

    async def start(self) -> None:
        self.cache.start()
        logger.info(
            "Credential broker started",
            extra={
                "log_data": {
                    "organization": self.credential.organization,
                    "default_database": self.context.default_database,
                    "cleanup_interval": self.cache.cleanup_interval,
                }
            },
        )

    async def stop(self) -> None:
        await self.cache.stop()
        await self.organization.close()
        await self.databases.close()
        logger.info("Credential broker stopped")
