"""Resolve bearer tokens to principals via the Supabase auth API."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from fastapi import Depends, HTTPException, Request, status

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str | None = None


class SupabaseIdentityVerifier:
    """Ask the identity provider which user a token belongs to.

    Signature checks happen on the provider's side; any failure resolves to
    ``None`` so callers treat the request as anonymous.
    """

    def __init__(
        self,
        base_url: str | None,
        *,
        anon_key: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._anon_key = anon_key
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def configured(self) -> bool:
        return self._base_url is not None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def verify(self, token: str) -> Principal | None:
        if not token:
            return None
        if self._base_url is None:
            logger.error(
                "SUPABASE_URL not configured for token verification "
                "(set SUPABASE_URL or VITE_SUPABASE_URL)"
            )
            return None

        headers = {"Authorization": f"{_BEARER_PREFIX}{token}"}
        if self._anon_key:
            headers["apikey"] = self._anon_key

        try:
            response = await self._get_http_client().get(
                f"{self._base_url}/auth/v1/user", headers=headers
            )
        except httpx.HTTPError as exc:
            logger.error("Token verification failed: %s", exc)
            return None

        if response.status_code != 200:
            logger.info("Token rejected by identity provider (%s)", response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.error("Identity provider returned a non-JSON user payload")
            return None

        user_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(user_id, str) or not user_id:
            return None
        email = data.get("email")
        return Principal(user_id=user_id, email=email if isinstance(email, str) else None)


def _extract_bearer(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if not header or not header.startswith(_BEARER_PREFIX):
        return None
    token = header[len(_BEARER_PREFIX):].strip()
    return token or None


def get_identity_verifier(request: Request) -> SupabaseIdentityVerifier:
    verifier = getattr(request.app.state, "identity_verifier", None)
    if verifier is None:
        raise HTTPException(status_code=500, detail="Identity verifier unavailable")
    return verifier


async def get_optional_principal(
    request: Request,
    verifier: SupabaseIdentityVerifier = Depends(get_identity_verifier),
) -> Principal | None:
    """Attach the principal when a valid token is present, else ``None``."""

    token = _extract_bearer(request)
    if token is None:
        return None
    return await verifier.verify(token)


async def require_principal(
    request: Request,
    verifier: SupabaseIdentityVerifier = Depends(get_identity_verifier),
) -> Principal:
    token = _extract_bearer(request)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required"
        )
    principal = await verifier.verify(token)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token"
        )
    return principal


def client_address(request: Request) -> str | None:
    if request.client is None:
        return None
    return request.client.host


__all__ = [
    "Principal",
    "SupabaseIdentityVerifier",
    "client_address",
    "get_identity_verifier",
    "get_optional_principal",
    "require_principal",
]
