"""Identity endpoints.

Endpoints:
    POST /login              - Start a session for a nickname (sets the cookie)
    GET  /logout             - Clear the session cookie
    GET  /api/user           - Current identity
    POST /api/user/nickname  - Rename the current identity

Error bodies carry a machine-readable ``error`` code (``INVALID_NICKNAME``,
``DUPLICATE_NICKNAME``, ``UNAUTHENTICATED``, ``SERVER_ERROR``).
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from chatroom.chat.manager import ChatManager
from chatroom.chat.router import get_chat_manager, get_identity_resolver, get_session_codec

from .schemas import NicknameRequest, SessionClaims
from .service import (
    DisplayNameConflict,
    IdentityProvisioningError,
    IdentityResolver,
    InvalidDisplayName,
    normalize_display_name,
)
from .session import SessionCodec

logger = logging.getLogger(__name__)

router = APIRouter(tags=["identity"])


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "message": message})


def _set_session_cookie(response, codec: SessionCodec, token: str) -> None:
    response.set_cookie(
        codec.cookie_name,
        token,
        max_age=codec.ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=codec.cookie_secure,
    )


@router.post("/login")
async def login(
    body: NicknameRequest,
    codec: SessionCodec = Depends(get_session_codec),
    manager: ChatManager = Depends(get_chat_manager),
):
    """Issue a session carrying only the display name.

    The identity itself is provisioned lazily, on the first WebSocket
    connection or ``GET /api/user``.
    """
    try:
        name = normalize_display_name(body.nickname, manager.config.chat.display_name_max_length)
    except InvalidDisplayName as e:
        return _error(400, "INVALID_NICKNAME", str(e))

    token = codec.encode(SessionClaims(name=name))
    response = JSONResponse(content={"success": True, "nickname": name})
    _set_session_cookie(response, codec, token)
    logger.info(f"[Identity] Session started for '{name}'")
    return response


@router.get("/logout")
async def logout(codec: SessionCodec = Depends(get_session_codec)):
    response = RedirectResponse(url="/", status_code=303)
    response.delete_cookie(codec.cookie_name)
    return response


@router.get("/api/user")
async def current_user(
    request: Request,
    codec: SessionCodec = Depends(get_session_codec),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    """Return ``{userId, nickname, email}`` for the session, provisioning if needed."""
    claims = codec.from_cookies(request.cookies)
    if claims is None:
        return _error(401, "UNAUTHENTICATED", "Not logged in")
    try:
        resolved = await resolver.resolve(claims)
    except IdentityProvisioningError as e:
        logger.error(f"[Identity] Could not resolve '{claims.name}': {e.__cause__ or e}")
        return _error(500, "SERVER_ERROR", "Could not load user")

    identity = resolved.identity
    response = JSONResponse(
        content={"userId": identity.id, "nickname": identity.display_name, "email": identity.email}
    )
    if resolved.token:
        _set_session_cookie(response, codec, resolved.token)
    return response


@router.post("/api/user/nickname")
async def update_nickname(
    body: NicknameRequest,
    request: Request,
    codec: SessionCodec = Depends(get_session_codec),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    manager: ChatManager = Depends(get_chat_manager),
):
    """Rename the current identity and tell every live connection."""
    claims = codec.from_cookies(request.cookies)
    if claims is None:
        return _error(401, "UNAUTHENTICATED", "Not logged in")

    try:
        current = await resolver.resolve(claims)
        renamed = await resolver.rename(current.identity.id, body.nickname)
    except InvalidDisplayName as e:
        return _error(400, "INVALID_NICKNAME", str(e))
    except DisplayNameConflict as e:
        return _error(409, "DUPLICATE_NICKNAME", f"'{e.display_name}' is already taken")
    except Exception as e:
        logger.error(f"[Identity] Rename failed for '{claims.name}': {e}", exc_info=True)
        return _error(500, "SERVER_ERROR", "Could not update nickname")

    identity = renamed.identity
    await manager.rename_identity(identity)

    response = JSONResponse(
        content={"success": True, "userId": identity.id, "nickname": identity.display_name}
    )
    _set_session_cookie(response, codec, renamed.token)
    return response
