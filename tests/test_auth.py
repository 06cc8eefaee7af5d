import base64
from collections import Counter
from urllib.parse import parse_qs, quote_plus, urlparse

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from portcullis.core.auth.code_ledger import compute_code_challenge
from portcullis.core.auth.types_auth import CodeChallengeMethod, GrantType
from portcullis.core.clients import models_clients
from portcullis.core.utils import security
from portcullis.dependencies import get_orchestrator
from portcullis.types.exceptions import StorageError
from tests.commons import (
    FailingCommitSessionLocal,
    TestingSessionLocal,
    call_with_db,
    create_client,
    create_user,
    settings,
    token_ledger,
)

REDIRECT_URI = "https://app.portcullis.test/callback"
USER_EMAIL = "authorize@portcullis.test"
USER_PASSWORD = "authorize_password"
CODE_VERIFIER = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"

web_client: models_clients.OAuthClient
web_client_secret: str
public_client: models_clients.OAuthClient
query_client: models_clients.OAuthClient


@pytest_asyncio.fixture(scope="module", autouse=True)
async def init_objects() -> None:
    global web_client, web_client_secret
    web_client, secret = await create_client(
        redirect_uris=[REDIRECT_URI],
        scopes=["read:profile", "read:email"],
        grant_types=[GrantType.authorization_code, GrantType.refresh_token],
    )
    assert secret is not None
    web_client_secret = secret

    global public_client
    public_client, _ = await create_client(
        redirect_uris=[REDIRECT_URI],
        scopes=["read:profile"],
        grant_types=[GrantType.authorization_code],
        confidential=False,
    )

    global query_client
    query_client, _ = await create_client(
        redirect_uris=[REDIRECT_URI + "?tenant=portcullis"],
        confidential=False,
    )

    await create_user(email=USER_EMAIL, password=USER_PASSWORD)


def authorize(
    client: TestClient,
    client_id: str | None = None,
    redirect_uri: str = REDIRECT_URI,
    **params: str,
):
    data = {
        "client_id": client_id or web_client.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": "read:profile",
        "state": "azerty",
        "email": USER_EMAIL,
        "password": USER_PASSWORD,
    }
    data.update(params)
    return client.post("/auth/authorize", data=data, follow_redirects=False)


def get_redirect_params(location: str) -> dict[str, str]:
    return {key: value[0] for key, value in parse_qs(urlparse(location).query).items()}


def get_code(client: TestClient, **params: str) -> str:
    response = authorize(client, **params)
    assert response.status_code == 302
    return get_redirect_params(response.headers["location"])["code"]


def basic_authorization(client_id: str, client_secret: str) -> dict[str, str]:
    credentials = f"{quote_plus(client_id)}:{quote_plus(client_secret)}"
    return {
        "Authorization": "Basic "
        + base64.b64encode(credentials.encode("utf-8")).decode("ascii"),
    }


def test_authorize(client: TestClient) -> None:
    response = authorize(client)

    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith(REDIRECT_URI + "?")
    params = get_redirect_params(location)
    assert params["state"] == "azerty"
    assert len(params["code"]) >= 43


def test_authorize_with_user_email_in_another_case(client: TestClient) -> None:
    response = authorize(client, email=USER_EMAIL.upper())

    assert response.status_code == 302
    assert "code" in get_redirect_params(response.headers["location"])


def test_authorize_keeps_redirect_uri_query(client: TestClient) -> None:
    response = authorize(
        client,
        client_id=query_client.client_id,
        redirect_uri=REDIRECT_URI + "?tenant=portcullis",
        scope="",
    )

    assert response.status_code == 302
    params = get_redirect_params(response.headers["location"])
    assert params["tenant"] == "portcullis"
    assert "code" in params


def test_authorize_unknown_client(client: TestClient) -> None:
    response = authorize(client, client_id="unknown")

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_client"
    assert "location" not in response.headers


def test_authorize_unregistered_redirect_uri_is_not_followed(
    client: TestClient,
) -> None:
    response = authorize(client, redirect_uri="https://evil.test/callback")

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"
    assert "location" not in response.headers


def test_authorize_with_wrong_password(client: TestClient) -> None:
    response = authorize(client, password="wrong password")

    assert response.status_code == 302
    params = get_redirect_params(response.headers["location"])
    assert params["error"] == "access_denied"
    assert params["state"] == "azerty"
    assert "code" not in params


def test_authorize_unknown_user(client: TestClient) -> None:
    response = authorize(client, email="unknown@portcullis.test")

    assert response.status_code == 302
    assert get_redirect_params(response.headers["location"])["error"] == (
        "access_denied"
    )


async def test_authenticate_unknown_user_costs_one_verification(
    bcrypt_operations: Counter[str],
) -> None:
    identity_provider = security.DatabaseIdentityProvider(
        hash_rounds=settings.SECRET_HASH_ROUNDS,
    )

    user_id = await call_with_db(
        identity_provider.authenticate,
        email=USER_EMAIL,
        password="wrong password",
    )
    assert user_id is None
    wrong_password_operations = dict(bcrypt_operations)
    bcrypt_operations.clear()

    user_id = await call_with_db(
        identity_provider.authenticate,
        email="unknown@portcullis.test",
        password="wrong password",
    )
    assert user_id is None

    assert wrong_password_operations == {"checkpw": 1}
    assert dict(bcrypt_operations) == wrong_password_operations


def test_authorize_with_scope_escalation(client: TestClient) -> None:
    response = authorize(client, scope="read:profile admin")

    assert response.status_code == 302
    params = get_redirect_params(response.headers["location"])
    assert params["error"] == "invalid_scope"
    assert "code" not in params


def test_authorize_with_unsupported_response_type(client: TestClient) -> None:
    response = authorize(client, response_type="token")

    assert response.status_code == 302
    assert get_redirect_params(response.headers["location"])["error"] == (
        "unsupported_response_type"
    )


def test_authorize_without_state(client: TestClient) -> None:
    data = {
        "client_id": web_client.client_id,
        "redirect_uri": REDIRECT_URI,
        "response_type": "code",
        "email": USER_EMAIL,
        "password": USER_PASSWORD,
    }
    response = client.post("/auth/authorize", data=data, follow_redirects=False)

    assert response.status_code == 302
    assert "state" not in get_redirect_params(response.headers["location"])


def test_token_with_authorization_code(client: TestClient) -> None:
    code = get_code(client)

    response = client.post(
        "/auth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": web_client.client_id,
            "client_secret": web_client_secret,
        },
    )

    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-store"
    assert response.headers["pragma"] == "no-cache"
    json = response.json()
    assert json["token_type"] == "bearer"
    assert json["scope"] == "read:profile"
    assert json["expires_in"] == int(token_ledger.access_token_ttl.total_seconds())
    assert "refresh_token" in json


def test_token_with_basic_authorization(client: TestClient) -> None:
    code = get_code(client)

    response = client.post(
        "/auth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
        },
        headers=basic_authorization(web_client.client_id, web_client_secret),
    )

    assert response.status_code == 200


def test_token_with_malformed_basic_authorization(client: TestClient) -> None:
    response = client.post(
        "/auth/token",
        data={"grant_type": "client_credentials"},
        headers={"Authorization": "Basic not-base64!"},
    )

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_client"
    assert response.headers["www-authenticate"] == "Basic"


def test_token_with_credentials_in_header_and_body(client: TestClient) -> None:
    code = get_code(client)

    response = client.post(
        "/auth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": web_client.client_id,
            "client_secret": web_client_secret,
        },
        headers=basic_authorization(web_client.client_id, web_client_secret),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"
    assert response.headers["cache-control"] == "no-store"
    assert "access_token" not in response.json()


def test_token_with_wrong_client_secret(client: TestClient) -> None:
    code = get_code(client)

    response = client.post(
        "/auth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
        },
        headers=basic_authorization(web_client.client_id, "wrong secret"),
    )

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_client"
    assert response.headers["www-authenticate"] == "Basic"
    assert response.headers["cache-control"] == "no-store"


def test_token_with_used_code(client: TestClient) -> None:
    code = get_code(client)
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
        "client_id": web_client.client_id,
        "client_secret": web_client_secret,
    }
    assert client.post("/auth/token", data=data).status_code == 200

    response = client.post("/auth/token", data=data)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"
    assert response.headers["cache-control"] == "no-store"


def test_token_with_pkce_for_public_client(client: TestClient) -> None:
    code = get_code(
        client,
        client_id=public_client.client_id,
        code_challenge=compute_code_challenge(
            CODE_VERIFIER,
            CodeChallengeMethod.S256,
        ),
        code_challenge_method="S256",
    )

    response = client.post(
        "/auth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": public_client.client_id,
            "code_verifier": CODE_VERIFIER,
        },
    )

    assert response.status_code == 200


def test_token_with_client_credentials(client: TestClient) -> None:
    response = client.post(
        "/auth/token",
        data={"grant_type": "client_credentials", "scope": "admin"},
        headers=basic_authorization("AdminClient", "AdminClientSecret"),
    )

    assert response.status_code == 200
    json = response.json()
    assert json["scope"] == "admin"
    assert "refresh_token" not in json


def test_token_with_refresh_token(client: TestClient) -> None:
    code = get_code(client)
    credentials = {
        "client_id": web_client.client_id,
        "client_secret": web_client_secret,
    }
    first = client.post(
        "/auth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            **credentials,
        },
    ).json()

    response = client.post(
        "/auth/token",
        data={
            "grant_type": "refresh_token",
            "refresh_token": first["refresh_token"],
            **credentials,
        },
    )

    assert response.status_code == 200
    assert response.json()["refresh_token"] != first["refresh_token"]

    reused = client.post(
        "/auth/token",
        data={
            "grant_type": "refresh_token",
            "refresh_token": first["refresh_token"],
            **credentials,
        },
    )
    assert reused.status_code == 400
    assert reused.json()["error"] == "invalid_grant"


@pytest.mark.parametrize(
    ("grant_type", "expected_error"),
    [
        ("password", "unsupported_grant_type"),
        ("client_credentials", "unauthorized_client"),
    ],
)
def test_token_with_grant_not_available(
    client: TestClient,
    grant_type: str,
    expected_error: str,
) -> None:
    response = client.post(
        "/auth/token",
        data={
            "grant_type": grant_type,
            "client_id": web_client.client_id,
            "client_secret": web_client_secret,
        },
    )

    assert response.status_code == 400
    assert response.json()["error"] == expected_error


def test_token_without_grant_type(client: TestClient) -> None:
    response = client.post(
        "/auth/token",
        data={"client_id": web_client.client_id},
    )

    assert response.status_code == 422


async def test_revoke_token(client: TestClient) -> None:
    response = client.post(
        "/auth/token",
        data={"grant_type": "client_credentials", "scope": "admin"},
        headers=basic_authorization("AdminClient", "AdminClientSecret"),
    )
    access_token = response.json()["access_token"]

    response = client.post("/auth/revoke", data={"token": access_token})

    assert response.status_code == 200
    assert (
        await call_with_db(token_ledger.validate, access_token=access_token) is None
    )
    response = client.get(
        "/auth/clients",
        headers={"Authorization": f"Bearer {access_token}"},
    )
    assert response.status_code == 401


def test_revoke_refresh_token_with_wrong_type_hint(client: TestClient) -> None:
    code = get_code(client)
    credentials = {
        "client_id": web_client.client_id,
        "client_secret": web_client_secret,
    }
    tokens = client.post(
        "/auth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            **credentials,
        },
    ).json()

    response = client.post(
        "/auth/revoke",
        data={
            "token": tokens["refresh_token"],
            "token_type_hint": "access_token",
        },
    )
    assert response.status_code == 200

    response = client.post(
        "/auth/token",
        data={
            "grant_type": "refresh_token",
            "refresh_token": tokens["refresh_token"],
            **credentials,
        },
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


def test_revoke_unknown_token(client: TestClient) -> None:
    response = client.post(
        "/auth/revoke",
        data={"token": "unknown", "token_type_hint": "refresh_token"},
    )

    assert response.status_code == 200


def test_oauth_authorization_server_metadata(client: TestClient) -> None:
    response = client.get("/.well-known/oauth-authorization-server")

    assert response.status_code == 200
    json = response.json()
    assert json["issuer"] == "http://127.0.0.1:8000"
    assert json["token_endpoint"] == "http://127.0.0.1:8000/auth/token"
    assert json["response_types_supported"] == ["code"]
    assert set(json["grant_types_supported"]) == {
        "authorization_code",
        "client_credentials",
        "refresh_token",
    }
    assert "S256" in json["code_challenge_methods_supported"]


class FailingOrchestrator:
    async def token(self, **kwargs):
        raise StorageError("persist_token", "timed out")


def test_storage_error_is_not_leaked(client: TestClient) -> None:
    client.app.dependency_overrides[get_orchestrator] = FailingOrchestrator  # type: ignore[attr-defined]
    try:
        response = client.post(
            "/auth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": web_client.client_id,
                "client_secret": web_client_secret,
            },
        )
    finally:
        client.app.dependency_overrides.pop(get_orchestrator)  # type: ignore[attr-defined]

    assert response.status_code == 500
    assert response.json() == {
        "error": "server_error",
        "error_description": "The server encountered an unexpected error",
    }


def test_failing_commit_is_answered_with_server_error(client: TestClient) -> None:
    client.app_state["SessionLocal"] = FailingCommitSessionLocal
    try:
        response = client.post(
            "/auth/token",
            data={"grant_type": "client_credentials", "scope": "admin"},
            headers=basic_authorization("AdminClient", "AdminClientSecret"),
        )
    finally:
        client.app_state["SessionLocal"] = TestingSessionLocal

    assert response.status_code == 500
    assert response.json() == {
        "error": "server_error",
        "error_description": "The server encountered an unexpected error",
    }
    assert "access_token" not in response.text
