"""
Client for the per-database HTTP API.

Each database is served at its own URL (https://{database}-{organization}.turso.io)
and accepts SQL over the pipeline endpoint:

    POST /v2/pipeline
    {"requests": [{"type": "execute", "stmt": {"sql": ..., "args": [...]}},
                  {"type": "close"}]}

Values travel as typed objects ({"type": "integer", "value": "42"}, ...).
This module only encodes statements and decodes results; it never decides
which token to use. Callers pass in a ScopedToken from the broker.
"""

import base64
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

import httpx

from turso_mcp.errors import RemoteServiceError, error_for_status
from turso_mcp.tokens import ScopedToken

logger = logging.getLogger("turso-mcp.database")


@dataclass
class QueryResult:
    """Decoded result of one statement."""

    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    rows_affected: int = 0
    last_insert_rowid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def quote_identifier(name: str) -> str:
    """Quote a table or column name for interpolation into SQL."""
    if not name:
        raise ValueError("Identifier must be a non-empty string")
    return '"' + name.replace('"', '""') + '"'


def encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"type": "null"}
    if isinstance(value, bool):
        return {"type": "integer", "value": "1" if value else "0"}
    if isinstance(value, int):
        return {"type": "integer", "value": str(value)}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    if isinstance(value, str):
        return {"type": "text", "value": value}
    if isinstance(value, (bytes, bytearray)):
        return {"type": "blob", "base64": base64.b64encode(value).decode("ascii")}
    raise ValueError(f"Unsupported query parameter type: {type(value).__name__}")


def decode_value(value: dict[str, Any]) -> Any:
    """
    Decode one typed value. Blobs are left base64-encoded so results stay
    JSON-serializable.
    """
    kind = value.get("type")
    if kind == "null":
        return None
    if kind == "integer":
        return int(value["value"])
    if kind == "float":
        return float(value["value"])
    if kind == "text":
        return value["value"]
    if kind == "blob":
        return value.get("base64")
    raise ValueError(f"Unknown value type in result: {kind!r}")


def build_statement(sql: str, params: list | dict | None = None) -> dict[str, Any]:
    """
    Build a pipeline statement.

    `params` may be a list (positional `?` arguments), a dict with names
    (`:name`, `@name`, `$name`; a bare key gets a `:` prefix), or a dict keyed
    by "1", "2", ... which is treated as positional.
    """
    stmt: dict[str, Any] = {"sql": sql}
    if not params:
        return stmt
    if isinstance(params, dict):
        if all(str(k).isdigit() for k in params):
            params = [params[k] for k in sorted(params, key=lambda k: int(k))]
        else:
            stmt["named_args"] = [
                {
                    "name": name if name[:1] in (":", "@", "$") else f":{name}",
                    "value": encode_value(value),
                }
                for name, value in params.items()
            ]
            return stmt
    stmt["args"] = [encode_value(v) for v in params]
    return stmt


class DatabaseClient:
    """
    Executes SQL against individual databases with a scoped token.

    Args:
        url_for: Maps a database name to its base URL
        timeout: Per-request timeout in seconds
        client: Optional injected httpx.AsyncClient
    """

    def __init__(
        self,
        url_for: Callable[[str], str],
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url_for = url_for
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        token: ScopedToken,
        sql: str,
        params: list | dict | None = None,
    ) -> QueryResult:
        """Run one statement against `token.database_name`."""
        database_name = token.database_name
        url = self.url_for(database_name).rstrip("/") + "/v2/pipeline"
        body = {
            "requests": [
                {"type": "execute", "stmt": build_statement(sql, params)},
                {"type": "close"},
            ]
        }
        annotations = {"database_name": database_name, "permission": token.permission.value}
        logger.debug(
            "Executing statement",
            extra={"log_data": {"database": database_name, "permission": token.permission.value}},
        )

        try:
            response = await self._get_client().post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {token.token_value}"},
            )
        except httpx.HTTPError as e:
            raise RemoteServiceError(
                f"Failed to query database {database_name}: {type(e).__name__}: {e}",
                **annotations,
            ) from e

        if response.is_error:
            raise error_for_status(
                response.status_code,
                f"Failed to query database {database_name}: "
                f"{response.text.strip() or response.reason_phrase}",
                **annotations,
            )

        try:
            first = response.json()["results"][0]
            if first.get("type") == "error":
                error = first.get("error")
                message = error.get("message") if isinstance(error, dict) else error
                raise RemoteServiceError(
                    f"Query failed on database {database_name}: {message or 'unknown error'}",
                    status_code=400,
                    **annotations,
                )
            return _decode_result(first["response"]["result"])
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise RemoteServiceError(
                f"Unexpected response from database {database_name}: {type(e).__name__}: {e}",
                **annotations,
            ) from e

    # ==================== Introspection ====================

    async def list_tables(self, token: ScopedToken) -> list[str]:
        result = await self.execute(
            token,
            "SELECT name FROM sqlite_schema "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' "
            "ORDER BY name",
        )
        return [row["name"] for row in result.rows]

    async def describe_table(self, token: ScopedToken, table: str) -> list[dict[str, Any]]:
        result = await self.execute(token, f"PRAGMA table_info({quote_identifier(table)})")
        return [
            {
                "name": row["name"],
                "type": row["type"],
                "nullable": row["notnull"] == 0,
                "default_value": row["dflt_value"],
                "primary_key": row["pk"] > 0,
            }
            for row in result.rows
        ]

    async def vector_search(
        self,
        token: ScopedToken,
        table: str,
        vector_column: str,
        query_vector: list[float],
        limit: int = 10,
    ) -> QueryResult:
        """Nearest rows to `query_vector` by cosine distance, closest first."""
        if not query_vector:
            raise ValueError("query_vector must not be empty")
        sql = (
            f"SELECT *, vector_distance_cos({quote_identifier(vector_column)}, vector32(?)) "
            f"AS distance FROM {quote_identifier(table)} "
            "ORDER BY distance ASC LIMIT ?"
        )
        return await self.execute(token, sql, [json.dumps(query_vector), int(limit)])


def _decode_result(result: dict[str, Any]) -> QueryResult:
    columns = [col.get("name") or "" for col in result.get("cols", [])]
    rows = [
        dict(zip(columns, (decode_value(v) for v in row)))
        for row in result.get("rows", [])
    ]
    last_rowid = result.get("last_insert_rowid")
    return QueryResult(
        columns=columns,
        rows=rows,
        rows_affected=result.get("affected_row_count", 0),
        last_insert_rowid=int(last_rowid) if last_rowid is not None else None,
    )
