from dataclasses import dataclass
from collections import deque
from threading import Lock
import time

from fastapi import Depends, HTTPException, Request
import jwt
from jwt import InvalidTokenError

from second_brain.config import settings
from second_brain.metrics import throttled_requests_total


@dataclass(frozen=True)
class AuthUser:
    user_id: str
    is_admin: bool = False


class PrincipalRateLimiter:
    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def allow(self, principal_key: str, limit: int, window_seconds: int) -> bool:
        if limit <= 0:
            return True
        now = time.time()
        cutoff = now - window_seconds

        with self._lock:
            bucket = self._events.setdefault(principal_key, deque())
            while bucket and bucket[0] < cutoff:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now)
            return True


principal_rate_limiter = PrincipalRateLimiter()


def _parse_api_key_mappings() -> dict[str, str]:
    mapping: dict[str, str] = {}
    raw = settings.api_key_mappings.strip()
    if not raw:
        return mapping

    for item in raw.split(","):
        pair = item.strip()
        if ":" not in pair:
            continue
        api_key, user_id = (part.strip() for part in pair.split(":", 1))
        if api_key and user_id:
            mapping[api_key] = user_id
    return mapping


def _bearer_token(request: Request) -> str | None:
    """Token from the Authorization header, falling back to the session cookie.

    An explicit header always wins over the cookie so API clients can override
    whatever the browser sends along.
    """
    authorization = request.headers.get("Authorization")
    if authorization:
        prefix = "Bearer "
        if not authorization.startswith(prefix):
            raise HTTPException(status_code=401, detail="invalid authorization header")
        token = authorization[len(prefix) :].strip()
        if not token:
            raise HTTPException(status_code=401, detail="missing bearer token")
        return token
    cookie_token = request.cookies.get(settings.auth_cookie_name)
    if cookie_token:
        return cookie_token.strip()
    return None


def _resolve_from_jwt(token: str | None) -> tuple[str, str, dict]:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt auth is enabled but jwt_secret is not configured")
    if not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    decode_kwargs = {
        "key": settings.jwt_secret,
        "algorithms": [settings.jwt_algorithm],
    }
    if settings.jwt_audience:
        decode_kwargs["audience"] = settings.jwt_audience
    if settings.jwt_issuer:
        decode_kwargs["issuer"] = settings.jwt_issuer
    try:
        payload = jwt.decode(token, **decode_kwargs)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"invalid bearer token: {exc}") from exc
    user_id = str(payload.get("sub") or payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="jwt missing subject claim")
    return user_id, token, payload


def _resolve_from_api_key(x_api_key: str | None) -> tuple[str, str]:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing API key")
    user_id = _parse_api_key_mappings().get(x_api_key)
    if not user_id:
        raise HTTPException(status_code=403, detail="invalid API key")
    return user_id, x_api_key


def require_user(request: Request) -> AuthUser:
    mode = settings.auth_mode.lower().strip()
    if mode not in {"api_key", "jwt", "hybrid"}:
        raise HTTPException(status_code=500, detail=f"unsupported auth_mode: {settings.auth_mode}")

    claims: dict = {}
    x_api_key = request.headers.get("X-API-Key")
    if mode == "jwt":
        user_id, rate_key, claims = _resolve_from_jwt(_bearer_token(request))
    elif mode == "hybrid":
        token = _bearer_token(request)
        if token:
            user_id, rate_key, claims = _resolve_from_jwt(token)
        else:
            user_id, rate_key = _resolve_from_api_key(x_api_key)
    else:
        user_id, rate_key = _resolve_from_api_key(x_api_key)

    if not principal_rate_limiter.allow(rate_key, settings.api_rate_limit_per_minute, 60):
        throttled_requests_total.inc()
        raise HTTPException(
            status_code=429,
            detail="principal rate limit exceeded",
            headers={"Retry-After": "60", "X-RateLimit-Reason": "principal_rate_limit"},
        )

    admin_ids = {item.strip() for item in settings.admin_user_ids.split(",") if item.strip()}
    return AuthUser(
        user_id=user_id,
        is_admin=user_id in admin_ids or claims.get("role") == "admin",
    )


def require_admin_user(user: AuthUser = Depends(require_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return user
