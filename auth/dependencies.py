"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens only: "Authorization: Bearer <access token>". There are no
cookies and no API keys in identity-core.

identity_from_token() is the shared guard: it parses a token for an expected
purpose with the codec on app.state, loads the identity and requires it to be
active. get_current_identity() applies it to the Authorization header with
purpose=access; the refresh route applies it to the body's refresh token with
purpose=refresh, which is the possession proof AuthService.refresh() relies on.

Every failure -- missing header, malformed/expired/wrong-purpose token,
unknown or disabled identity -- is the same 401 so the response never says
which check failed.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import TokenError
from auth.models import Identity, TokenPurpose


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def identity_from_token(request: Request, token: str, purpose: TokenPurpose) -> Identity:
    """Return the active identity a token of the given purpose was issued to, or raise 401."""
    codec = request.app.state.token_codec
    try:
        claims = codec.parse(token, purpose)
    except TokenError:
        raise _unauthorized() from None
    identity = request.app.state.auth_store.find_by_id(claims.subject)
    if identity is None or not identity.is_active:
        raise _unauthorized()
    return identity


def get_current_identity(request: Request) -> Identity:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_current_identity)): ...
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise _unauthorized()
    return identity_from_token(request, auth_header[7:], TokenPurpose.ACCESS)
