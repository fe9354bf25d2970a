from __future__ import annotations

import httpx
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from voxa.auth import (
    Principal,
    SupabaseIdentityVerifier,
    get_optional_principal,
    require_principal,
)


def _verifier(handler) -> SupabaseIdentityVerifier:
    return SupabaseIdentityVerifier(
        "https://project.supabase.co/",
        anon_key="anon",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _user_endpoint(request: httpx.Request) -> httpx.Response:
    assert request.url.path == "/auth/v1/user"
    assert request.headers["apikey"] == "anon"
    if request.headers["authorization"] != "Bearer good-token":
        return httpx.Response(401, json={"message": "invalid JWT"})
    return httpx.Response(200, json={"id": "user-1", "email": "a@example.com"})


@pytest.mark.anyio
async def test_verify_resolves_principal() -> None:
    principal = await _verifier(_user_endpoint).verify("good-token")

    assert principal == Principal(user_id="user-1", email="a@example.com")


@pytest.mark.anyio
async def test_verify_rejects_bad_token() -> None:
    assert await _verifier(_user_endpoint).verify("bad-token") is None


@pytest.mark.anyio
async def test_verify_treats_transport_errors_as_anonymous() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    assert await _verifier(handler).verify("good-token") is None


@pytest.mark.anyio
async def test_unconfigured_verifier_returns_none() -> None:
    verifier = SupabaseIdentityVerifier(None)

    assert not verifier.configured
    assert await verifier.verify("good-token") is None


@pytest.fixture
def client() -> TestClient:
    app = FastAPI()
    app.state.identity_verifier = _verifier(_user_endpoint)

    @app.get("/optional")
    async def optional(principal: Principal | None = Depends(get_optional_principal)):
        return {"user": principal.user_id if principal else None}

    @app.get("/required")
    async def required(principal: Principal = Depends(require_principal)):
        return {"user": principal.user_id}

    return TestClient(app)


def test_optional_principal(client: TestClient) -> None:
    assert client.get("/optional").json() == {"user": None}
    assert client.get(
        "/optional", headers={"Authorization": "Bearer bad-token"}
    ).json() == {"user": None}
    assert client.get(
        "/optional", headers={"Authorization": "Bearer good-token"}
    ).json() == {"user": "user-1"}


def test_required_principal(client: TestClient) -> None:
    missing = client.get("/required")
    invalid = client.get("/required", headers={"Authorization": "Bearer bad-token"})
    valid = client.get("/required", headers={"Authorization": "Bearer good-token"})

    assert (missing.status_code, missing.json()["detail"]) == (401, "Authentication required")
    assert (invalid.status_code, invalid.json()["detail"]) == (401, "Invalid or expired token")
    assert valid.json() == {"user": "user-1"}
