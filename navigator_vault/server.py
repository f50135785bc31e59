"""
Vault HTTP API — local aiohttp application used by browser extensions.

Routes:
- ``GET /health`` — liveness check (no authentication)
- ``POST /api/auth`` — exchange the master password for a bearer token
- ``DELETE /api/auth`` — revoke the presented token
- ``POST /api/passwords`` — create an entry
- ``GET /api/passwords`` — list summaries (``?sort=<field>``, ``?q=<search>``)
- ``GET /api/passwords/{entry_id}`` — full entry, password included

Every ``/api/*`` route except ``POST /api/auth`` goes through
``auth_middleware``, which rejects a missing, unknown or expired token with
401 before any handler (and therefore the entry store) runs. Blocking core
calls (Argon2, file I/O) are moved off the event loop with
``asyncio.to_thread``.

Security Note:
    Error bodies are fixed strings; exception messages, tokens and request
    bodies are never echoed back or logged.
"""
import asyncio
import logging
from typing import Any

import orjson
from aiohttp import hdrs, web

from .config import VaultConfig
from .crypto import MasterKey
from .exceptions import (
    CryptoError,
    IntegrityViolation,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    SessionExpired,
    StorageError,
    ValidationError,
    VaultLocked,
)
from .models import AuthRequest, EntryInput, parse_model
from .session import SessionManager
from .vault import Vault

logger = logging.getLogger("navigator.vault")

SERVICE_NAME = "navigator-vault"
SESSIONS_KEY = web.AppKey("sessions", SessionManager)
REQUEST_KEY = "vault.key"
REQUEST_TOKEN = "vault.token"

# (method, path) pairs reachable without a token
PUBLIC_ROUTES = {("POST", "/api/auth")}


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode("utf-8")


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def error_response(status: int, error: str, **extra) -> web.Response:
    return json_response({"error": error, **extra}, status=status)


def bearer_token(request: web.Request) -> str:
    """Extract the token of an ``Authorization: Bearer <token>`` header.

    Raises:
        InvalidToken: Header missing or not a bearer credential.
    """
    parts = request.headers.get(hdrs.AUTHORIZATION, "").split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise InvalidToken()
    return parts[1]


async def read_json(request: web.Request) -> Any:
    """Parse the request body as JSON.

    Raises:
        ValidationError: Empty or malformed body.
    """
    body = await request.read()
    if not body:
        raise ValidationError("request body is required")
    try:
        return orjson.loads(body)
    except orjson.JSONDecodeError:
        raise ValidationError("request body is not valid JSON") from None


# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------

@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map vault errors to fixed HTTP responses."""
    try:
        return await handler(request)
    except InvalidCredentials:
        return error_response(401, "invalid credentials")
    except InvalidToken:
        return error_response(401, "invalid token")
    except (SessionExpired, VaultLocked):
        return error_response(401, "session expired")
    except ValidationError as err:
        return error_response(400, str(err), details=err.errors)
    except NotFound:
        return error_response(404, "not found")
    except IntegrityViolation:
        logger.warning("Request %s %s hit a record failing integrity checks", request.method, request.path)
        return error_response(500, "unable to decrypt")
    except (CryptoError, StorageError) as err:
        logger.error("Request %s %s failed: %s", request.method, request.path, type(err).__name__)
        return error_response(500, "internal error")


@web.middleware
async def auth_middleware(request: web.Request, handler):
    """Resolve the bearer token to a MasterKey for every protected route."""
    if request.path.startswith("/api/") and (request.method, request.path) not in PUBLIC_ROUTES:
        token = bearer_token(request)
        sessions = request.app[SESSIONS_KEY]
        request[REQUEST_KEY] = sessions.validate(token)
        request[REQUEST_TOKEN] = token
    return await handler(request)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def health(request: web.Request) -> web.Response:
    return json_response({"status": "ok", "service": SERVICE_NAME})


async def authenticate(request: web.Request) -> web.Response:
    data = await read_json(request)
    auth = parse_model(AuthRequest, data, message="invalid authentication request")
    sessions: SessionManager = request.app[SESSIONS_KEY]
    session = await asyncio.to_thread(sessions.authenticate, auth.master_password)
    return json_response(session.to_response().model_dump(mode="json"))


async def logout(request: web.Request) -> web.Response:
    request.app[SESSIONS_KEY].revoke(request[REQUEST_TOKEN])
    return web.Response(status=204)


async def create_password(request: web.Request) -> web.Response:
    entry = parse_model(EntryInput, await read_json(request))
    key: MasterKey = request[REQUEST_KEY]
    store = request.app[SESSIONS_KEY].vault.store
    entry_id = await asyncio.to_thread(store.create, entry, key)
    return json_response({"id": entry_id}, status=201)


async def list_passwords(request: web.Request) -> web.Response:
    key: MasterKey = request[REQUEST_KEY]
    store = request.app[SESSIONS_KEY].vault.store
    query = request.query.get("q")
    if query:
        summaries = await asyncio.to_thread(store.search, key, query)
    else:
        sort_by = request.query.get("sort", "title")
        summaries = await asyncio.to_thread(store.list, key, sort_by)
    return json_response([s.model_dump(mode="json") for s in summaries])


async def get_password(request: web.Request) -> web.Response:
    key: MasterKey = request[REQUEST_KEY]
    store = request.app[SESSIONS_KEY].vault.store
    entry = await asyncio.to_thread(store.read, request.match_info["entry_id"], key)
    return json_response(entry.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

async def _on_cleanup(app: web.Application) -> None:
    app[SESSIONS_KEY].lock_all()


def create_app(sessions: SessionManager) -> web.Application:
    """Build the API application around an existing SessionManager."""
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[SESSIONS_KEY] = sessions
    app.router.add_get("/health", health)
    app.router.add_post("/api/auth", authenticate)
    app.router.add_delete("/api/auth", logout)
    app.router.add_post("/api/passwords", create_password)
    app.router.add_get("/api/passwords", list_passwords)
    app.router.add_get("/api/passwords/{entry_id}", get_password)
    app.on_cleanup.append(_on_cleanup)
    return app


def run_server(config: VaultConfig | None = None) -> None:
    """Serve the API for the vault described by ``config`` until interrupted."""
    config = config or VaultConfig.from_env()
    vault = Vault(config=config)
    if not vault.is_initialized:
        logger.warning("Vault at %s is not initialized; every login will fail", vault.path)
    app = create_app(SessionManager(vault))
    logger.info("Vault API listening on http://%s:%s", config.server_host, config.server_port)
    web.run_app(
        app,
        host=config.server_host,
        port=config.server_port,
        print=None,
    )
