"""
MCP server exposing Turso organization and database tools via FastMCP v2.

This module builds the MCP server around a CredentialBroker:
- Organization tools (list/create/delete databases, mint tokens) use the
  organization credential directly
- Database tools resolve a database name from the call or the session context,
  fetch a scoped token from the cache at the tool's permission level, and
  run SQL over the database HTTP API
- An audit middleware logs every tool call with its permission and turns
  credential/remote failures into MCP tool errors
- Health and readiness HTTP endpoints for the streamable-http transport
- Structured JSON logging on stderr (stdout belongs to the stdio transport)

Architecture:
    Every database tool does the same three steps:

    1. database_name = broker.resolve_database(database)
    2. token = await broker.get_token(database_name, TOOL_PERMISSION_MAP[tool])
    3. await broker.databases.<operation>(token, ...)

    A cache hit makes step 2 free; a miss or an expired entry mints a new token
    with one call to the organization API.

Running the server:
    TURSO_API_TOKEN=... TURSO_ORGANIZATION=... python -m turso_mcp.server

    Defaults to the stdio transport. Set TURSO_TRANSPORT=streamable-http to
    serve /mcp, /health and /ready on TURSO_HOST:TURSO_PORT instead.
"""

import json
import logging
import sys
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Any, Sequence

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import CallToolRequestParams, ListToolsRequest
from pydantic import Field
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from turso_mcp.broker import CredentialBroker
from turso_mcp.config import Settings, get_settings
from turso_mcp.errors import ConfigurationError, TursoError
from turso_mcp.tokens import Permission
from turso_mcp.tools import TOOL_PERMISSION_MAP, is_read_only_query

logger = logging.getLogger("turso-mcp")

DatabaseArg = Annotated[
    str | None,
    Field(description="Database name (optional, uses the session context if not provided)"),
]
ParamsArg = Annotated[
    dict[str, Any] | list[Any] | None,
    Field(description="Query parameters: a list for '?' placeholders or an object for named ones"),
]


# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO", "logger": "turso-mcp.issuer",
         "message": "Database token issued", "database": "shop", "permission": "read-only"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Structured fields passed via logger.info("msg", extra={"log_data": {...}})
        if hasattr(record, "log_data"):
            log_entry.update(record.log_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONLogFormatter())
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[handler],
        force=True,
    )


# ---------------------------------------------------------------------------
# Audit Middleware
# ---------------------------------------------------------------------------


class ToolAuditMiddleware(Middleware):
    """
    Logs every tool call and converts broker failures into tool errors.

    Tools without an entry in TOOL_PERMISSION_MAP are hidden from tools/list
    and refused on tools/call, so a tool can't be added without deciding what
    database permission it runs with.
    """

    async def on_list_tools(
        self,
        context: MiddlewareContext[ListToolsRequest],
        call_next: CallNext[ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        all_tools = await call_next(context)
        return [tool for tool in all_tools if tool.name in TOOL_PERMISSION_MAP]

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        request_id = str(uuid.uuid4())[:8]
        tool_name = context.message.name
        arguments = context.message.arguments or {}

        if tool_name not in TOOL_PERMISSION_MAP:
            logger.warning(
                "Tool call denied: no permission mapping found",
                extra={"log_data": {"request_id": request_id, "tool": tool_name, "decision": "denied"}},
            )
            raise ToolError(f"Access denied: tool '{tool_name}' has no permission mapping")

        permission = TOOL_PERMISSION_MAP[tool_name]
        audit = {
            "request_id": request_id,
            "tool": tool_name,
            "permission": permission.value if permission else None,
            "database": arguments.get("database"),
        }

        try:
            result = await call_next(context)
        except Exception as e:
            # The tool manager wraps tool exceptions in ToolError; look through it.
            error = _find_turso_error(e)
            if error is None:
                raise
            logger.warning(
                "Tool call failed",
                extra={
                    "log_data": {
                        **audit,
                        "database": error.database_name or audit["database"],
                        "error": type(error).__name__,
                        "status_code": error.status_code,
                        "decision": "failed",
                    }
                },
            )
            raise ToolError(_describe(error)) from error

        logger.info("Tool call completed", extra={"log_data": {**audit, "decision": "completed"}})
        return result


def _find_turso_error(error: BaseException | None) -> TursoError | None:
    while error is not None:
        if isinstance(error, TursoError):
            return error
        error = error.__cause__
    return None


def _describe(error: TursoError) -> str:
    """Tool-facing message, naming the database and permission when known."""
    label = {
        "AuthorizationFailure": "Authentication error",
        "NotFound": "Not found",
        "NoDatabaseSelected": "No database selected",
    }.get(type(error).__name__, "Error")
    message = f"{label}: {error.message}"
    if error.permission and error.database_name:
        message += f" (database '{error.database_name}', permission '{error.permission}')"
    return message


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def create_server(settings: Settings, broker: CredentialBroker | None = None) -> FastMCP:
    """
    Build a FastMCP server bound to its own CredentialBroker.

    Args:
        settings: Loaded configuration
        broker: Pre-built broker (tests inject one wired to fake HTTP APIs)
    """
    broker = broker or CredentialBroker(settings)

    @asynccontextmanager
    async def lifespan(server: FastMCP):
        await broker.start()
        try:
            yield {"broker": broker}
        finally:
            await broker.stop()

    mcp = FastMCP(
        name="turso-mcp",
        instructions=(
            "Tools for a Turso organization. Organization tools manage databases; "
            "database tools run SQL against one database. Database tools accept an "
            "optional 'database' argument; once a database is named it becomes the "
            "session default for later calls."
        ),
        middleware=[ToolAuditMiddleware()],
        lifespan=lifespan,
    )

    async def token_for(tool_name: str, database: str | None):
        database_name = broker.resolve_database(database)
        token = await broker.get_token(database_name, TOOL_PERMISSION_MAP[tool_name])
        return database_name, token

    # ----- Organization tools -----

    @mcp.tool(description="List all databases in your Turso organization.")
    async def list_databases() -> dict[str, Any]:
        return {"databases": await broker.organization.list_databases()}

    @mcp.tool(description="Create a new database in your Turso organization.")
    async def create_database(
        name: Annotated[str, Field(description="Name of the database to create")],
        group: Annotated[str | None, Field(description="Optional group name for the database")] = None,
        regions: Annotated[
            list[str] | None, Field(description="Optional list of regions to deploy the database to")
        ] = None,
    ) -> dict[str, Any]:
        database = await broker.organization.create_database(name, group=group, regions=regions)
        return {"database": database}

    @mcp.tool(description="Delete a database from your Turso organization.")
    async def delete_database(
        name: Annotated[str, Field(description="Name of the database to delete")],
    ) -> dict[str, Any]:
        await broker.organization.delete_database(name)
        broker.cache.invalidate(name)
        return {"success": True, "message": f"Database '{name}' deleted successfully"}

    @mcp.tool(description="Get details for a specific database in your Turso organization.")
    async def get_database_details(
        name: Annotated[str, Field(description="Name of the database")],
    ) -> dict[str, Any]:
        return {"database": await broker.organization.get_database(name)}

    @mcp.tool(description="Generate a new token for a specific database.")
    async def generate_database_token(
        database: Annotated[str, Field(description="Name of the database to generate a token for")],
        permission: Annotated[
            Permission | None, Field(description="Permission level for the token")
        ] = None,
    ) -> dict[str, Any]:
        # Handed to the caller, so it is minted fresh and never shared with the cache.
        token = await broker.issuer.issue(database, permission or settings.token_permission)
        return {
            "success": True,
            "database": database,
            "token": {
                "jwt": token.token_value,
                "permission": token.permission.value,
                "expires_at": token.expires_at.isoformat(),
            },
            "message": (
                f"Token generated successfully for database '{database}' "
                f"with '{token.permission.value}' permissions"
            ),
        }

    # ----- Session context tools -----

    @mcp.tool(description="Show which database tools use when no database is given.")
    async def get_current_database() -> dict[str, Any]:
        current = broker.context.current
        return {
            "current_database": current,
            "default_database": broker.context.default_database,
            "effective_database": current or broker.context.default_database,
        }

    @mcp.tool(description="Select the database later tool calls use by default.")
    async def use_database(
        name: Annotated[str, Field(description="Database to use for subsequent calls")],
    ) -> dict[str, Any]:
        try:
            broker.context.set_current(name)
        except ValueError as e:
            raise ToolError(str(e)) from e
        return {"current_database": name}

    # ----- Database tools -----

    @mcp.tool(description="Lists all tables in a database.")
    async def list_tables(database: DatabaseArg = None) -> dict[str, Any]:
        database_name, token = await token_for("list_tables", database)
        tables = await broker.databases.list_tables(token)
        return {"database": database_name, "tables": tables}

    @mcp.tool(
        description="Executes a read-only SQL query against a database (e.g., SELECT, PRAGMA)."
    )
    async def execute_read_only_query(
        query: Annotated[str, Field(description="SQL query to execute")],
        params: ParamsArg = None,
        database: DatabaseArg = None,
    ) -> dict[str, Any]:
        if not is_read_only_query(query):
            raise ToolError(
                "Only SELECT, PRAGMA, EXPLAIN and WITH queries are allowed "
                "with execute_read_only_query"
            )
        database_name, token = await token_for("execute_read_only_query", database)
        result = await broker.databases.execute(token, query, params)
        return {"database": database_name, "query": query, "result": result.to_dict()}

    @mcp.tool(
        description=(
            "Executes a potentially destructive SQL query against a database "
            "(e.g., INSERT, UPDATE, DELETE, CREATE, DROP, ALTER)."
        )
    )
    async def execute_query(
        query: Annotated[str, Field(description="SQL query to execute")],
        params: ParamsArg = None,
        database: DatabaseArg = None,
    ) -> dict[str, Any]:
        if is_read_only_query(query):
            raise ToolError("SELECT and PRAGMA queries should use execute_read_only_query")
        database_name, token = await token_for("execute_query", database)
        result = await broker.databases.execute(token, query, params)
        return {"database": database_name, "query": query, "result": result.to_dict()}

    @mcp.tool(description="Gets schema information for a table.")
    async def describe_table(
        table: Annotated[str, Field(description="Table name")],
        database: DatabaseArg = None,
    ) -> dict[str, Any]:
        database_name, token = await token_for("describe_table", database)
        columns = await broker.databases.describe_table(token, table)
        return {"database": database_name, "table": table, "columns": columns}

    @mcp.tool(description="Performs vector similarity search.")
    async def vector_search(
        table: Annotated[str, Field(description="Table name")],
        vector_column: Annotated[str, Field(description="Column containing vectors")],
        query_vector: Annotated[list[float], Field(description="Query vector for similarity search")],
        limit: Annotated[int, Field(description="Maximum number of results", ge=1, le=100)] = 10,
        database: DatabaseArg = None,
    ) -> dict[str, Any]:
        database_name, token = await token_for("vector_search", database)
        result = await broker.databases.vector_search(
            token, table, vector_column, query_vector, limit
        )
        return {
            "database": database_name,
            "table": table,
            "vector_column": vector_column,
            "results": result.to_dict(),
        }

    # ----- Health and readiness (streamable-http only) -----

    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        """Liveness probe: is the server process alive and responsive?"""
        return JSONResponse({"status": "healthy"})

    @mcp.custom_route("/ready", methods=["GET"])
    async def readiness_check(request: Request) -> Response:
        """Readiness probe: is the token cache sweeper running?"""
        if not broker.cache.running:
            return JSONResponse(
                {"status": "not_ready", "reason": "token cache not started"},
                status_code=503,
            )
        return JSONResponse({"status": "ready", "cached_tokens": len(broker.cache)})

    return mcp


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


def main() -> None:
    try:
        settings = get_settings()
    except ConfigurationError as e:
        configure_logging("info")
        logger.critical("Failed to start server: %s", e)
        sys.exit(1)

    configure_logging(settings.log_level)
    mcp = create_server(settings)
    logger.info(
        "Starting Turso MCP server for organization %s (transport=%s)",
        settings.organization,
        settings.transport,
    )
    if settings.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(
            transport="streamable-http",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level,
        )


if __name__ == "__main__":
    main()
