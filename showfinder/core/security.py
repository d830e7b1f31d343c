import logging
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from showfinder.core.auth import Principal, parse_bearer_token
from showfinder.core.config import Settings, get_settings
from showfinder.services.repository import StoreError, get_repository

UNAUTHORIZED_DETAIL = "Unauthorized. Admin access required."
SUPABASE_USER_PATH = "/auth/v1/user"

logger = logging.getLogger(__name__)


def _forbidden() -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=UNAUTHORIZED_DETAIL)


async def get_admin_principal(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    """Resolve the caller through Supabase and require the admin role in ``profiles``."""
    token = parse_bearer_token(authorization)
    if token is None:
        raise _forbidden()

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = (user or {}).get("id")
    if not isinstance(user_id, str) or not user_id:
        raise _forbidden()

    try:
        is_admin = await repository.is_admin(user_id)
    except StoreError as exc:
        logger.warning("admin role lookup failed user_id=%s error=%s", user_id, exc)
        is_admin = False

    principal = Principal(user_id=user_id, email=user.get("email"), is_admin=bool(is_admin))
    try:
        principal.require_admin()
    except PermissionError as exc:
        logger.info("admin review denied user_id=%s", user_id)
        raise _forbidden() from exc
    return principal


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any] | None:
    """Return the Supabase user for ``token``, or ``None`` when the token is refused."""
    try:
        async with httpx.AsyncClient(base_url=supabase_url.rstrip("/"), timeout=timeout_seconds) as client:
            response = await client.get(
                SUPABASE_USER_PATH,
                headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key},
            )
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        logger.warning("supabase user lookup failed error=%s", exc.__class__.__name__)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code != 200:
        logger.info("supabase refused token status=%s", response.status_code)
        return None

    payload = response.json()
    return payload if isinstance(payload, dict) else None
