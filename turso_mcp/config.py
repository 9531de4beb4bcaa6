"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that reads from
environment variables (prefix TURSO_) or a local .env file. The organization
token is the only secret the process holds; it is typed as SecretStr so it
never shows up in reprs, logs or tool output.

Required:
- TURSO_API_TOKEN: organization-wide platform API token
- TURSO_ORGANIZATION: organization slug the token belongs to

Everything else has a sensible default.
"""

from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings

from turso_mcp.errors import ConfigurationError
from turso_mcp.tokens import Permission


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the TURSO_ prefix.
    For example, `organization` reads from TURSO_ORGANIZATION and
    `default_database` from TURSO_DEFAULT_DATABASE.
    """

    # --- Organization credential ---

    api_token: SecretStr
    organization: str

    # Database used when a tool call names none and no session database is set.
    default_database: str | None = None

    # --- Database token issuance ---

    # Lifetime requested for minted database tokens, in the platform's
    # duration syntax ("7d", "2w", "never").
    token_expiration: str = "7d"

    # Permission used by generate_database_token when the caller omits one.
    token_permission: Permission = Permission.FULL_ACCESS

    # How often the background sweep drops expired tokens from the cache.
    cleanup_interval: float = 3600.0

    # --- Remote endpoints ---

    api_base_url: str = "https://api.turso.tech/v1"
    database_url_template: str = "https://{database}-{organization}.turso.io"

    # Upper bound for every outbound HTTP call, in seconds.
    http_timeout: float = 30.0

    # --- Server settings ---

    transport: Literal["stdio", "streamable-http"] = "stdio"
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    model_config = {
        "env_prefix": "TURSO_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def database_url(self, database_name: str) -> str:
        """Base URL of the HTTP endpoint serving `database_name`."""
        return self.database_url_template.format(
            database=database_name, organization=self.organization
        )


def load_settings(**overrides) -> Settings:
    """
    Build Settings from the environment, turning validation problems into
    a ConfigurationError that names the missing variables.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        missing = [
            "TURSO_" + str(err["loc"][0]).upper()
            for err in e.errors()
            if err["type"] == "missing"
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}. "
                "Set these environment variables or add them to your .env file."
            ) from e
        raise ConfigurationError(f"Invalid configuration: {e}") from e


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    return load_settings()
