"""
HTTP API.

JSON endpoints for login, presence, content upload/download, key issuance
and the kill switch. Identity travels as `Authorization: Bearer <token>`.
"""

import base64
from typing import Any, Dict

from aiohttp import web
from loguru import logger

from ..auth.models import PrincipalContext
from ..auth.permissions import Permission, can_revoke_sessions, key_issue_denial, require_permission
from ..errors import AuthFailure, Forbidden, InvalidInput, VaultGateError
from ..services import Services


SERVICES = web.AppKey("services", Services)
PRINCIPAL = web.RequestKey("principal", PrincipalContext)
MAX_BODY_SIZE = 5 * 1024 * 1024   # 5 MB


# ============================================================================
# Helpers
# ============================================================================

def _services(request: web.Request) -> Services:
    return request.app[SERVICES]


def _bearer_token(request: web.Request) -> str:
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        raise AuthFailure("Unauthorized", "No token provided")
    return auth_header[7:].strip()  # Remove 'Bearer ' prefix


def authenticate(request: web.Request) -> PrincipalContext:
    """Validate the bearer token on every authenticated call."""
    principal = _services(request).credentials.validate(_bearer_token(request))
    request[PRINCIPAL] = principal
    return principal


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise InvalidInput("InvalidMessage", "Invalid JSON body")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInput("InvalidMessage", "JSON body must be an object")
    return data


def _ok(**extra: Any) -> web.Response:
    return web.json_response({"ok": True, **extra})


# ============================================================================
# Middleware
# ============================================================================

@web.middleware
async def error_middleware(request, handler):
    """Translate vaultgate errors into JSON responses with matching status."""
    try:
        return await handler(request)
    except VaultGateError as e:
        return web.json_response(e.to_dict(), status=e.status)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"{request.method} {request.path} error: {e}")
        return web.json_response({
            'error': 'InternalError',
            'message': 'Internal server error'
        }, status=500)


@web.middleware
async def cors_middleware(request, handler):
    """Add CORS headers to all responses."""
    if request.method == 'OPTIONS':
        # Preflight request
        response = web.Response()
    else:
        response = await handler(request)

    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
    return response


# ============================================================================
# Session endpoints
# ============================================================================

async def handle_login(request: web.Request) -> web.Response:
    """
    POST /api/login
    Body: {"username": "...", "password": "...", "version": "..."}
    Returns: {"token": "...", "role": "...", "sessionId": "...", "expiresAt": "..."}
    """
    services = _services(request)
    data = await _json_body(request)
    username = str(data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        raise InvalidInput("MissingFields", "Username and password required")

    credential = services.credentials.issue(username, str(password), data.get('version'))
    await services.router.broadcast_presence()

    return web.json_response({
        'token': credential.token,
        'role': credential.role.value,
        'sessionId': credential.credential_id,
        'expiresAt': credential.expires_at.isoformat(),
    })


async def handle_logout(request: web.Request) -> web.Response:
    """
    POST /api/logout
    Headers: Authorization: Bearer <token>
    Returns: {"ok": true}
    """
    services = _services(request)
    principal = authenticate(request)

    services.credentials.revoke_id(principal.credential_id)
    services.key_issuer.revoke(principal.credential_id)
    if services.presence.remove(principal.credential_id) is not None:
        await services.router.broadcast_presence()

    logger.info(f"User logged out: {principal.username}")
    return _ok()


async def handle_heartbeat(request: web.Request) -> web.Response:
    """
    POST /api/heartbeat
    Body: {"version": "..."}
    """
    services = _services(request)
    principal = authenticate(request)
    data = await _json_body(request)

    created = services.presence.record_heartbeat(
        principal.credential_id, principal.username, principal.role, data.get('version')
    )
    if created:
        await services.router.broadcast_presence()
    return _ok()


async def handle_online(request: web.Request) -> web.Response:
    """GET /api/online"""
    services = _services(request)
    authenticate(request)
    return web.json_response([entry.to_dict() for entry in services.presence.list_online()])


async def handle_create_user(request: web.Request) -> web.Response:
    """
    POST /api/users (owner only)
    Body: {"username": "...", "password": "...", "role": "..."}
    """
    services = _services(request)
    principal = authenticate(request)
    require_permission(
        principal.username, principal.role, Permission.CREATE_USERS,
        kill_switch_on=services.kill_switch.enabled,
    )

    data = await _json_body(request)
    username = data.get('username')
    password = data.get('password')
    role = data.get('role')
    if not username or not password or not role:
        raise InvalidInput("MissingFields", "username, password and role are required")

    services.users.create_user(str(username), str(password), str(role))
    return _ok()


# ============================================================================
# Content endpoints
# ============================================================================

async def handle_upload_content(request: web.Request) -> web.Response:
    """
    POST /api/upload-content (owner only)
    Body: {"payload": "..."}
    """
    services = _services(request)
    principal = authenticate(request)
    require_permission(
        principal.username, principal.role, Permission.UPLOAD_CONTENT,
        kill_switch_on=services.kill_switch.enabled,
    )

    data = await _json_body(request)
    payload = data.get('payload')
    if not payload or not isinstance(payload, str):
        raise InvalidInput("MissingPayload", "Missing payload")

    blob = services.vault.upload(payload)
    return _ok(generation=blob.generation)


async def handle_content(request: web.Request) -> web.Response:
    """GET /content -> raw encrypted bytes"""
    services = _services(request)
    principal = authenticate(request)
    require_permission(principal.username, principal.role, Permission.DOWNLOAD_CONTENT)

    return web.Response(
        body=services.vault.current_ciphertext(),
        content_type='application/octet-stream',
    )


async def handle_get_key(request: web.Request) -> web.Response:
    """
    POST /api/get-key
    Body: {"ttlSeconds": 15}
    Returns: {"key": "<base64>", "expiresAt": <ms since epoch>, "generation": n}
    """
    services = _services(request)
    principal = authenticate(request)
    data = await _json_body(request)

    grant = services.key_issuer.issue_key(principal, data.get('ttlSeconds'))
    return web.json_response({
        'key': base64.b64encode(grant.key).decode('ascii'),
        'expiresAt': int(grant.expires_at.timestamp() * 1000),
        'generation': grant.generation,
    })


async def handle_authorize(request: web.Request) -> web.Response:
    """POST /api/authorize -> {"allowed": bool, "reason"?: str}"""
    services = _services(request)
    principal = authenticate(request)

    user = services.users.get_user(principal.username)
    if user is None:
        raise AuthFailure("Unknown", "User no longer exists")

    denial = key_issue_denial(user, services.kill_switch.enabled, role=principal.role)
    if denial is not None:
        return web.json_response({'allowed': False, 'reason': denial.code})
    return web.json_response({'allowed': True})


# ============================================================================
# Owner controls
# ============================================================================

async def handle_kill_switch(request: web.Request) -> web.Response:
    """
    POST /api/kill-switch (owner only)
    Body: {"enable": true}
    """
    services = _services(request)
    principal = authenticate(request)
    data = await _json_body(request)

    enabled = await services.router.set_kill_switch(principal, bool(data.get('enable')))
    return web.json_response({'killSwitchEnabled': enabled})


async def handle_kill_switch_status(request: web.Request) -> web.Response:
    """GET /api/kill-switch"""
    services = _services(request)
    authenticate(request)
    return web.json_response({'killSwitchEnabled': services.kill_switch.enabled})


async def handle_revoke_session(request: web.Request) -> web.Response:
    """
    POST /api/revoke-session (owner only)
    Body: {"sessionId": "..."} revokes one session and its key grant;
          {} revokes every outstanding key grant.
    """
    services = _services(request)
    principal = authenticate(request)
    if not can_revoke_sessions(principal.role):
        raise Forbidden("Forbidden", "Only owners may revoke sessions")

    data = await _json_body(request)
    session_id = data.get('sessionId')

    if not session_id:
        revoked = services.key_issuer.revoke_all()
        return _ok(revoked=revoked)

    session_id = str(session_id)
    revoked = services.credentials.revoke_id(session_id)
    services.key_issuer.revoke(session_id)
    if services.presence.remove(session_id) is not None:
        await services.router.broadcast_presence()
    await services.router.close_invalid()

    logger.info(f"Session {session_id} revoked by {principal.username}")
    return _ok(revoked=int(revoked))


async def health_check(request: web.Request) -> web.Response:
    """Health check endpoint."""
    services = _services(request)
    return web.json_response({
        'status': 'healthy',
        'service': 'vaultgate',
        'contentLoaded': services.vault.has_content,
        'killSwitchEnabled': services.kill_switch.enabled,
        'online': len(services.presence),
    })


def create_app(services: Services) -> web.Application:
    """Build the aiohttp application around `services`."""
    app = web.Application(
        middlewares=[cors_middleware, error_middleware],
        client_max_size=MAX_BODY_SIZE,
    )
    app[SERVICES] = services

    app.router.add_post('/api/login', handle_login)
    app.router.add_post('/api/logout', handle_logout)
    app.router.add_post('/api/heartbeat', handle_heartbeat)
    app.router.add_get('/api/online', handle_online)
    app.router.add_post('/api/users', handle_create_user)
    app.router.add_post('/api/upload-content', handle_upload_content)
    app.router.add_get('/content', handle_content)
    app.router.add_post('/api/get-key', handle_get_key)
    app.router.add_post('/api/authorize', handle_authorize)
    app.router.add_post('/api/kill-switch', handle_kill_switch)
    app.router.add_get('/api/kill-switch', handle_kill_switch_status)
    app.router.add_post('/api/revoke-session', handle_revoke_session)
    app.router.add_get('/health', health_check)

    return app
