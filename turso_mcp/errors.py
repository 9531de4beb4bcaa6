"""
Error taxonomy for credential resolution and remote API calls.

Every failure that reaches a tool is one of these. They all carry a
human-readable message and the HTTP-ish status code that best describes them,
and errors raised while obtaining a database token also carry the database
name and permission involved so the caller can present a precise message.

    TursoError
    ├── AuthorizationFailure   401/403 from a remote API
    ├── NotFound               404 (unknown database or resource)
    ├── RemoteServiceError     anything else remote: 5xx, network, timeouts
    └── NoDatabaseSelected     caller supplied no database and none is configured

ConfigurationError is separate: it is raised before the server starts and
is fatal to the process.
"""


class TursoError(Exception):
    """
    Base class for failures surfaced to tool callers.

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code that best describes the failure
        database_name: Database involved, when known
        permission: Permission level involved, when known
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        database_name: str | None = None,
        permission: str | None = None,
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.database_name = database_name
        self.permission = permission
        super().__init__(message)


class AuthorizationFailure(TursoError):
    """The organization credential (or a database token) was rejected."""

    status_code = 401


class NotFound(TursoError):
    """The remote API does not know the named database or resource."""

    status_code = 404


class RemoteServiceError(TursoError):
    """Transient, network-level or otherwise unexpected remote failure."""

    status_code = 502


class NoDatabaseSelected(TursoError):
    """No database name could be resolved for an operation. Not retryable."""

    status_code = 400

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "No database specified. Provide a database name or set "
            "TURSO_DEFAULT_DATABASE to configure a default."
        )


class ConfigurationError(Exception):
    """Required configuration is missing or invalid at startup."""


def error_for_status(
    status_code: int,
    message: str,
    database_name: str | None = None,
    permission: str | None = None,
) -> TursoError:
    """Map a non-2xx status from a remote API onto the error taxonomy."""
    if status_code in (401, 403):
        cls = AuthorizationFailure
    elif status_code == 404:
        cls = NotFound
    else:
        cls = RemoteServiceError
    return cls(
        message,
        status_code=status_code,
        database_name=database_name,
        permission=permission,
    )
