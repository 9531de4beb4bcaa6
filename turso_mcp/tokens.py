"""
Credential types for the two-level authentication model.

    OrganizationCredential  --(TokenIssuer)-->  ScopedToken
         one per process                        one per (database, permission)

The organization credential is only ever used to talk to the platform API.
Data-plane calls use a ScopedToken minted for exactly one database at exactly
one permission level. Both are frozen dataclasses: once built, nothing can
change who a credential belongs to or what it allows.
"""

import datetime
import enum
import logging
from dataclasses import dataclass, field

import jwt
from pydantic import SecretStr

logger = logging.getLogger("turso-mcp.tokens")

# Used when an issued token's exp claim can't be read. Erring short only costs
# an extra issuance; erring long could serve a dead token.
FALLBACK_TOKEN_LIFETIME = datetime.timedelta(hours=1)


class Permission(str, enum.Enum):
    """Permission level of a database token, using the platform's wire values."""

    FULL_ACCESS = "full-access"
    READ_ONLY = "read-only"


@dataclass(frozen=True)
class OrganizationCredential:
    """
    The organization-wide bearer token and the organization it is scoped to.

    Attributes:
        organization: Organization slug used in platform API paths
        api_token: Bearer token; a SecretStr so it prints as '**********'
    """

    organization: str
    api_token: SecretStr

    def auth_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token.get_secret_value()}"}


@dataclass(frozen=True)
class CacheKey:
    """Cache slot identity. Different permissions never share a slot."""

    database_name: str
    permission: Permission


@dataclass(frozen=True)
class ScopedToken:
    """
    A database-level credential.

    Attributes:
        database_name: Database the token grants access to
        permission: Permission level fixed at issuance
        token_value: Opaque bearer string (excluded from repr)
        expires_at: Absolute, timezone-aware UTC expiry
    """

    database_name: str
    permission: Permission
    token_value: str = field(repr=False)
    expires_at: datetime.datetime

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.database_name, self.permission)

    def is_expired(self, now: datetime.datetime | None = None) -> bool:
        """True once `now` has reached `expires_at`."""
        now = now or utcnow()
        return now >= self.expires_at


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def decode_expiration(
    token_value: str, now: datetime.datetime | None = None
) -> datetime.datetime:
    """
    Read the expiry of an issued token from its `exp` claim.

    The signature is not verified: the token came straight from the platform
    API over TLS and we only need the claim, not proof of authenticity. If the
    token is not a JWT or carries no usable `exp`, returns now + 1 hour.
    """
    now = now or utcnow()
    try:
        payload = jwt.decode(token_value, options={"verify_signature": False})
        exp = payload.get("exp")
        # bool is an int subclass; a boolean exp is as malformed as a string one.
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise ValueError(f"exp claim is {type(exp).__name__}, expected a number")
        return datetime.datetime.fromtimestamp(exp, tz=datetime.timezone.utc)
    except (jwt.InvalidTokenError, ValueError, OverflowError, OSError) as e:
        logger.warning(
            "Could not decode token expiration, assuming one hour",
            extra={"log_data": {"reason": str(e)}},
        )
        return now + FALLBACK_TOKEN_LIFETIME
