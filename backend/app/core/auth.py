import logging
import threading
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request
from jwt import PyJWKClient
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_db
from app.core.errors import StaleAuthorization
from app.models.inspection import User
from app.schemas.access import ROLE_LEVELS, PermissionContext, Principal, Role

logger = logging.getLogger(__name__)

# Thread-safe JWKS client cache (initialised lazily, lives for process lifetime).
_jwks_client: Optional[PyJWKClient] = None
_jwks_lock = threading.Lock()


def _get_jwks_client(jwks_url: str) -> PyJWKClient:
    """Return a cached PyJWKClient (with built-in key caching)."""
    global _jwks_client
    if _jwks_client is not None:
        return _jwks_client
    with _jwks_lock:
        if _jwks_client is not None:
            return _jwks_client
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)
        return _jwks_client


def _decode_options(settings):
    """Build shared audience kwargs + options dict."""
    audience = (settings.jwt_audience or "").strip()
    decode_kwargs = {}
    options = {}
    if audience:
        decode_kwargs["audience"] = audience
        options["verify_aud"] = True
    else:
        options["verify_aud"] = False
    return decode_kwargs, options


def _try_hs256(token: str, settings, decode_kwargs: dict, options: dict):
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options=options,
            **decode_kwargs,
        )
    except jwt.InvalidTokenError:
        return None


def _try_es256(token: str, settings, decode_kwargs: dict, options: dict):
    jwks_url = (settings.jwks_url or "").strip()
    if not jwks_url:
        return None
    try:
        client = _get_jwks_client(jwks_url)
        signing_key = client.get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["ES256"],
            options=options,
            **decode_kwargs,
        )
    except (jwt.InvalidTokenError, jwt.PyJWKClientError) as exc:
        logger.debug("ES256 verification failed: %s", exc)
        return None


def principal_from_claims(payload: dict) -> Principal:
    """
    Build a Principal from verified claims.
    Role, level, branch and company come only from server-managed app_metadata;
    user_metadata is user-editable and never trusted for access decisions.
    """
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(401, "Invalid token")

    app_meta = payload.get("app_metadata") or {}
    try:
        role = Role(str(app_meta.get("role") or "").strip())
    except ValueError:
        raise HTTPException(403, "Missing role")

    expected_level = ROLE_LEVELS[role]
    raw_level = app_meta.get("permission_level")
    if raw_level is None:
        level = expected_level
    else:
        try:
            level = int(raw_level)
        except (TypeError, ValueError):
            raise HTTPException(401, "Invalid token")
    if level != expected_level:
        logger.warning("Token for %s carries role %s with level %s", user_id, role.value, level)
        raise HTTPException(401, "Invalid token")

    return Principal(
        id=str(user_id),
        role=role,
        permission_level=level,
        branch_id=app_meta.get("branch_id") or None,
        company_id=app_meta.get("company_id") or None,
        display_name=payload.get("name") or payload.get("email"),
    )


def decode_token(token: str) -> dict:
    settings = get_settings()

    # Need at least one verification method configured
    if not settings.jwt_secret and not settings.jwks_url:
        raise HTTPException(500, "JWT_SECRET is not configured")

    decode_kwargs, options = _decode_options(settings)

    # Peek at token header to choose strategy order (avoids unnecessary network calls)
    try:
        header = jwt.get_unverified_header(token)
    except jwt.DecodeError:
        raise HTTPException(401, "Invalid token")

    alg = header.get("alg", "")

    payload = None
    if alg == "ES256":
        payload = _try_es256(token, settings, decode_kwargs, options)
        if payload is None and settings.jwt_secret:
            payload = _try_hs256(token, settings, decode_kwargs, options)
    else:
        if settings.jwt_secret:
            payload = _try_hs256(token, settings, decode_kwargs, options)
        if payload is None:
            payload = _try_es256(token, settings, decode_kwargs, options)

    if payload is None:
        raise HTTPException(401, "Invalid token")
    return payload


def get_current_principal(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    return principal_from_claims(decode_token(token))


def get_optional_principal(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Optional[Principal]:
    if not authorization:
        return None
    return get_current_principal(authorization)


def resolve_fresh_principal(db: Session, principal: Principal) -> Principal:
    """
    Re-check the token's claims against the users table.
    Any disagreement means the token predates a role or branch change and the
    caller must re-authenticate (StaleAuthorization, not PermissionDenied).
    """
    user = db.get(User, principal.id)
    if user is None or not user.is_active:
        raise StaleAuthorization(principal.id)

    stale = []
    if user.role != principal.role.value:
        stale.append("role")
    if int(user.permission_level) != principal.permission_level:
        stale.append("permission_level")
    if (user.branch_id or None) != principal.branch_id:
        stale.append("branch_id")
    if (user.company_id or None) != principal.company_id:
        stale.append("company_id")
    if stale:
        raise StaleAuthorization(principal.id, tuple(stale))

    if principal.display_name or not user.display_name:
        return principal
    return Principal(
        id=principal.id,
        role=principal.role,
        permission_level=principal.permission_level,
        branch_id=principal.branch_id,
        company_id=principal.company_id,
        display_name=user.display_name,
    )


def _context(request: Request, principal: Principal, db: Session) -> PermissionContext:
    if get_settings().enforce_principal_freshness:
        principal = resolve_fresh_principal(db, principal)
    return PermissionContext(
        principal=principal,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_permission_context(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> PermissionContext:
    return _context(request, principal, db)


def get_optional_permission_context(
    request: Request,
    principal: Optional[Principal] = Depends(get_optional_principal),
    db: Session = Depends(get_db),
) -> Optional[PermissionContext]:
    if principal is None:
        return None
    return _context(request, principal, db)


def require_level(min_level: int):
    def _dependency(ctx: PermissionContext = Depends(get_permission_context)) -> PermissionContext:
        if ctx.principal.permission_level < min_level:
            raise HTTPException(403, "Forbidden")
        return ctx

    return _dependency
