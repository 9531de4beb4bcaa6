"""
Tool registry: which database permission each tool needs.

    TOOL_PERMISSION_MAP = {
        "tool_name": Permission | None,
    }

None means the tool never touches a database's data plane: it works with the
organization credential directly (list/create/delete databases, mint a token
for the caller) or only with the session context. Every other tool obtains a
token from the cache at exactly the listed permission, so read-only tools can
never end up holding a full-access token.

The audit middleware in server.py logs this permission with every call.
"""

from turso_mcp.tokens import Permission

TOOL_PERMISSION_MAP: dict[str, Permission | None] = {
    # Organization
    "list_databases": None,
    "create_database": None,
    "delete_database": None,
    "get_database_details": None,
    "generate_database_token": None,
    # Session context
    "get_current_database": None,
    "use_database": None,
    # Data plane
    "list_tables": Permission.READ_ONLY,
    "describe_table": Permission.READ_ONLY,
    "execute_read_only_query": Permission.READ_ONLY,
    "vector_search": Permission.READ_ONLY,
    "execute_query": Permission.FULL_ACCESS,
}

# Statements allowed through execute_read_only_query.
READ_ONLY_PREFIXES = ("select", "pragma", "explain", "with")


def is_read_only_query(query: str) -> bool:
    """True when the statement's leading keyword marks it as read-only."""
    words = query.strip().split(None, 1)
    return bool(words) and words[0].lower().rstrip("(") in READ_ONLY_PREFIXES
