"""
Shared test fixtures for the turso-mcp test suite.

Key fixtures:
- make_jwt: factory for platform-style database tokens with any exp claim
- clock: a controllable UTC clock for expiry tests
- fake_issuer: an in-memory TokenIssuer stand-in that counts issuance calls
- fake_turso: a fake platform + database API served through httpx.MockTransport
- settings / broker: real Settings and CredentialBroker wired to fake_turso

Testing approach:
- test_cache.py / test_context.py: unit tests of the cache and resolver with
  fake_issuer and clock, no HTTP at all.
- test_issuer.py / test_database.py: the HTTP clients against fake_turso, so
  status-code mapping and wire formats are exercised for real.
- test_tools.py: full MCP requests through the FastMCP ASGI app.
"""

import asyncio
import datetime
import json
import os
import uuid

import httpx
import jwt
import pytest

from turso_mcp.broker import CredentialBroker
from turso_mcp.config import Settings
from turso_mcp.database import encode_value
from turso_mcp.tokens import Permission, ScopedToken

# The server never verifies database token signatures, any key will do.
PLATFORM_SECRET = "platform-signing-key-for-tests-only-0123456789"
ORG_TOKEN = "org-token-for-tests"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep TURSO_* variables from the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("TURSO_"):
            monkeypatch.delenv(name)


# ---------------------------------------------------------------------------
# Tokens and time
# ---------------------------------------------------------------------------


@pytest.fixture
def make_jwt():
    """
    Factory fixture producing signed JWTs like the platform issues.

    Usage:
        token = make_jwt(exp_hours=2)
        token = make_jwt(include_exp=False)
        token = make_jwt(extra_claims={"exp": "soon"})
    """

    def _make_jwt(
        exp_hours: float = 1.0,
        include_exp: bool = True,
        extra_claims: dict | None = None,
        now: datetime.datetime | None = None,
    ) -> str:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {"iat": now, "jti": uuid.uuid4().hex}
        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)
        if extra_claims:
            payload.update(extra_claims)
        return jwt.encode(payload, PLATFORM_SECRET, algorithm="HS256")

    return _make_jwt


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime.datetime | None = None):
        self.now = start or datetime.datetime(2026, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


class FakeIssuer:
    """
    Issuer stand-in: every call returns a distinct token valid for `lifetime`
    from the fake clock's current time.

    Set `gate` to an asyncio.Event to hold every issuance until it is set;
    `completed` records the tokens in the order their issuance finished.
    """

    def __init__(self, clock: FakeClock, lifetime: datetime.timedelta = datetime.timedelta(hours=1)):
        self.clock = clock
        self.lifetime = lifetime
        self.calls: list[tuple[str, Permission]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.completed: list[ScopedToken] = []

    async def issue(self, database_name: str, permission: Permission) -> ScopedToken:
        self.calls.append((database_name, permission))
        number = len(self.calls)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        token = ScopedToken(
            database_name=database_name,
            permission=permission,
            token_value=f"{database_name}:{permission.value}:{number}",
            expires_at=self.clock() + self.lifetime,
        )
        self.completed.append(token)
        return token


@pytest.fixture
def fake_issuer(clock):
    return FakeIssuer(clock)


# ---------------------------------------------------------------------------
# Fake remote APIs
# ---------------------------------------------------------------------------


def hrana_result(columns: list[str], rows: list[list], affected: int = 0, last_rowid=None) -> dict:
    """Build a successful pipeline response carrying one statement result."""
    return {
        "baton": None,
        "base_url": None,
        "results": [
            {
                "type": "ok",
                "response": {
                    "type": "execute",
                    "result": {
                        "cols": [{"name": c, "decltype": None} for c in columns],
                        "rows": [[encode_value(v) for v in row] for row in rows],
                        "affected_row_count": affected,
                        "last_insert_rowid": None if last_rowid is None else str(last_rowid),
                    },
                },
            },
            {"type": "ok", "response": {"type": "close"}},
        ],
    }


class FakeTurso:
    """
    In-memory stand-in for api.turso.tech and the per-database endpoints.

    Attributes tests can tweak:
        token_status: HTTP status returned by the token endpoint
        token_body: Override for the token endpoint's JSON body
        token_hours: Lifetime of issued tokens
        pipeline_body: JSON returned by /v2/pipeline
        raise_on_token: Exception raised instead of answering the token endpoint
    """

    def __init__(self, make_jwt):
        self.make_jwt = make_jwt
        self.databases = {
            "shop": {"Name": "shop", "DbId": "db-1", "group": "default"},
            "reports": {"Name": "reports", "DbId": "db-2", "group": "default"},
        }
        self.requests: list[httpx.Request] = []
        self.issued: list[tuple[str, str]] = []
        self.token_status = 200
        self.token_body: dict | None = None
        self.token_hours = 1.0
        self.raise_on_token: Exception | None = None
        self.pipeline_body = hrana_result(["name"], [["orders"], ["users"]])

    @property
    def statements(self) -> list[dict]:
        """Statements sent to any database, in order."""
        return [
            json.loads(r.content)["requests"][0]["stmt"]
            for r in self.requests
            if r.url.path.endswith("/v2/pipeline")
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip("/").split("/")

        if request.url.host.endswith(".turso.io"):
            return httpx.Response(200, json=self.pipeline_body)

        # /v1/organizations/{org}/databases[/{name}[/auth/tokens]]
        if request.headers.get("authorization") != f"Bearer {ORG_TOKEN}":
            return httpx.Response(401, json={"error": "invalid token"})
        assert parts[:2] == ["v1", "organizations"]
        rest = parts[3:]

        if rest == ["databases"] and request.method == "GET":
            return httpx.Response(200, json={"databases": list(self.databases.values())})
        if rest == ["databases"] and request.method == "POST":
            body = json.loads(request.content)
            db = {"Name": body["name"], "DbId": f"db-{len(self.databases) + 1}", "group": body["group"]}
            self.databases[body["name"]] = db
            return httpx.Response(200, json={"database": db})

        name = rest[1]
        if name not in self.databases:
            return httpx.Response(404, json={"error": f"database {name} not found"})

        if rest[2:] == ["auth", "tokens"]:
            if self.raise_on_token is not None:
                raise self.raise_on_token
            body = json.loads(request.content)
            self.issued.append((name, body["permission"]))
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "token endpoint failed"})
            return httpx.Response(
                200, json=self.token_body or {"jwt": self.make_jwt(exp_hours=self.token_hours)}
            )
        if request.method == "DELETE":
            del self.databases[name]
            return httpx.Response(200, json={"database": name})
        return httpx.Response(200, json={"database": self.databases[name]})


@pytest.fixture
def fake_turso(make_jwt):
    return FakeTurso(make_jwt)


@pytest.fixture
def make_settings():
    """Factory for Settings with test defaults; keyword arguments override."""

    def _make_settings(**overrides) -> Settings:
        values = {
            "api_token": ORG_TOKEN,
            "organization": "acme",
            "_env_file": None,
        }
        values.update(overrides)
        return Settings(**values)

    return _make_settings


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
async def http_client(fake_turso):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_turso.handler))
    yield client
    await client.aclose()


@pytest.fixture
def make_broker(http_client):
    def _make_broker(settings: Settings) -> CredentialBroker:
        return CredentialBroker(settings, http_client=http_client)

    return _make_broker


@pytest.fixture
def broker(make_broker, settings):
    return make_broker(settings)
