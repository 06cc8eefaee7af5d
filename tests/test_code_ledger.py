import asyncio
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from portcullis.core.auth import cruds_auth, models_auth
from portcullis.core.auth.code_ledger import (
    compute_code_challenge,
    verify_code_verifier,
)
from portcullis.core.auth.types_auth import (
    CodeChallengeMethod,
    GrantType,
    OAuthError,
    OAuthErrorType,
)
from portcullis.core.clients import models_clients
from portcullis.core.users import models_users
from tests.commons import (
    TestingSessionLocal,
    add_object_to_db,
    call_with_db,
    code_ledger,
    create_client,
    create_user,
)

REDIRECT_URI = "https://app.portcullis.test/callback"

# Example from https://datatracker.ietf.org/doc/html/rfc7636#appendix-B
CODE_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CODE_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

client: models_clients.OAuthClient
other_client: models_clients.OAuthClient
user: models_users.CoreUser


@pytest_asyncio.fixture(scope="module", autouse=True)
async def init_objects() -> None:
    global client, other_client
    client, _ = await create_client(
        redirect_uris=[REDIRECT_URI, "https://app.portcullis.test/other"],
        scopes=["read:profile"],
        grant_types=[GrantType.authorization_code],
    )
    other_client, _ = await create_client(redirect_uris=[REDIRECT_URI])

    global user
    user = await create_user()


async def issue_code(
    code_challenge: str | None = None,
    code_challenge_method: CodeChallengeMethod | None = None,
) -> models_auth.AuthorizationCode:
    return await call_with_db(
        code_ledger.issue,
        client_id=client.client_id,
        user_id=user.id,
        redirect_uri=REDIRECT_URI,
        scope="read:profile",
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )


async def redeem_code(
    code: str,
    redeeming_client: models_clients.OAuthClient | None = None,
    redirect_uri: str = REDIRECT_URI,
    code_verifier: str | None = None,
) -> models_auth.AuthorizationCode | OAuthError:
    return await call_with_db(
        code_ledger.redeem,
        code=code,
        client=redeeming_client or client,
        redirect_uri=redirect_uri,
        code_verifier=code_verifier,
    )


async def is_code_used(code: str) -> bool:
    async with TestingSessionLocal() as db:
        db_code = await cruds_auth.get_authorization_code_by_code(db=db, code=code)
    assert db_code is not None
    return db_code.used


def test_compute_s256_code_challenge():
    assert (
        compute_code_challenge(CODE_VERIFIER, CodeChallengeMethod.S256)
        == CODE_CHALLENGE
    )


def test_compute_plain_code_challenge():
    assert (
        compute_code_challenge(CODE_VERIFIER, CodeChallengeMethod.plain)
        == CODE_VERIFIER
    )


def test_verify_code_verifier_accepts_padded_challenge():
    assert verify_code_verifier(
        CODE_VERIFIER,
        CODE_CHALLENGE + "=",
        CodeChallengeMethod.S256,
    )
    assert not verify_code_verifier(
        CODE_VERIFIER + "a",
        CODE_CHALLENGE,
        CodeChallengeMethod.S256,
    )


async def test_issue_code():
    authorization_code = await issue_code()

    # 32 urlsafe base64 encoded bytes
    assert len(authorization_code.code) >= 43
    assert not authorization_code.used
    assert authorization_code.client_id == client.client_id
    assert authorization_code.expire_on - authorization_code.created_on == timedelta(
        minutes=10,
    )


async def test_issue_code_with_challenge_and_no_method_defaults_to_plain():
    authorization_code = await issue_code(code_challenge=CODE_VERIFIER)
    assert authorization_code.code_challenge_method == CodeChallengeMethod.plain.value

    result = await redeem_code(authorization_code.code, code_verifier=CODE_VERIFIER)
    assert not isinstance(result, OAuthError)


async def test_redeem_code():
    authorization_code = await issue_code()

    result = await redeem_code(authorization_code.code)
    assert not isinstance(result, OAuthError)
    assert result.user_id == user.id
    assert result.scope == "read:profile"
    assert await is_code_used(authorization_code.code)


async def test_redeem_code_twice():
    authorization_code = await issue_code()

    first = await redeem_code(authorization_code.code)
    assert not isinstance(first, OAuthError)

    second = await redeem_code(authorization_code.code)
    assert isinstance(second, OAuthError)
    assert second.error == OAuthErrorType.invalid_grant


async def test_redeem_unknown_code_is_reported_as_used_code():
    authorization_code = await issue_code()
    await redeem_code(authorization_code.code)

    used = await redeem_code(authorization_code.code)
    unknown = await redeem_code("unknown_code")
    assert used == unknown


@pytest.mark.parametrize("attempts", [2, 8])
async def test_concurrent_redemptions_succeed_exactly_once(attempts: int):
    authorization_code = await issue_code()

    results = await asyncio.gather(
        *[redeem_code(authorization_code.code) for _ in range(attempts)],
    )

    successes = [result for result in results if not isinstance(result, OAuthError)]
    failures = [result for result in results if isinstance(result, OAuthError)]
    assert len(successes) == 1
    assert len(failures) == attempts - 1
    assert all(failure.error == OAuthErrorType.invalid_grant for failure in failures)


async def test_redeem_expired_code():
    now = datetime.now(UTC)
    expired_code = models_auth.AuthorizationCode(
        code="expired_authorization_code",
        client_id=client.client_id,
        user_id=user.id,
        redirect_uri=REDIRECT_URI,
        scope="",
        code_challenge=None,
        code_challenge_method=None,
        created_on=now - timedelta(minutes=10, seconds=1),
        expire_on=now - timedelta(seconds=1),
        used=False,
    )
    await add_object_to_db(expired_code)

    result = await redeem_code(expired_code.code)
    assert isinstance(result, OAuthError)
    assert result.error == OAuthErrorType.invalid_grant
    assert not await is_code_used(expired_code.code)


async def test_redeem_code_about_to_expire():
    now = datetime.now(UTC)
    almost_expired_code = models_auth.AuthorizationCode(
        code="almost_expired_authorization_code",
        client_id=client.client_id,
        user_id=user.id,
        redirect_uri=REDIRECT_URI,
        scope="",
        code_challenge=None,
        code_challenge_method=None,
        created_on=now - timedelta(minutes=9, seconds=30),
        expire_on=now + timedelta(seconds=30),
        used=False,
    )
    await add_object_to_db(almost_expired_code)

    result = await redeem_code(almost_expired_code.code)
    assert not isinstance(result, OAuthError)


async def test_redeem_code_with_another_client():
    authorization_code = await issue_code()

    result = await redeem_code(authorization_code.code, redeeming_client=other_client)
    assert isinstance(result, OAuthError)
    assert result.error == OAuthErrorType.invalid_client

    # A failed attempt does not consume the code
    assert not await is_code_used(authorization_code.code)
    assert not isinstance(await redeem_code(authorization_code.code), OAuthError)


async def test_redeem_code_with_another_redirect_uri():
    authorization_code = await issue_code(
        code_challenge=CODE_CHALLENGE,
        code_challenge_method=CodeChallengeMethod.S256,
    )

    result = await redeem_code(
        authorization_code.code,
        redirect_uri="https://app.portcullis.test/other",
        code_verifier=CODE_VERIFIER,
    )
    assert isinstance(result, OAuthError)
    assert result.error == OAuthErrorType.invalid_grant
    assert not await is_code_used(authorization_code.code)


async def test_redeem_code_with_s256_verifier():
    authorization_code = await issue_code(
        code_challenge=CODE_CHALLENGE,
        code_challenge_method=CodeChallengeMethod.S256,
    )

    result = await redeem_code(authorization_code.code, code_verifier=CODE_VERIFIER)
    assert not isinstance(result, OAuthError)


async def test_redeem_code_with_wrong_verifier():
    authorization_code = await issue_code(
        code_challenge=CODE_CHALLENGE,
        code_challenge_method=CodeChallengeMethod.S256,
    )

    result = await redeem_code(
        authorization_code.code,
        code_verifier="wrong_code_verifier_wrong_code_verifier_wrong",
    )
    assert isinstance(result, OAuthError)
    assert result.error == OAuthErrorType.invalid_grant
    assert not await is_code_used(authorization_code.code)


async def test_redeem_code_without_required_verifier():
    authorization_code = await issue_code(
        code_challenge=CODE_CHALLENGE,
        code_challenge_method=CodeChallengeMethod.S256,
    )

    result = await redeem_code(authorization_code.code)
    assert isinstance(result, OAuthError)
    assert result.error == OAuthErrorType.invalid_grant


async def test_redeem_code_with_unexpected_verifier():
    authorization_code = await issue_code()

    result = await redeem_code(authorization_code.code, code_verifier=CODE_VERIFIER)
    assert isinstance(result, OAuthError)
    assert result.error == OAuthErrorType.invalid_grant


async def test_discard_codes_of_a_client():
    discarded_client, _ = await create_client(redirect_uris=[REDIRECT_URI])
    authorization_code = await call_with_db(
        code_ledger.issue,
        client_id=discarded_client.client_id,
        user_id=user.id,
        redirect_uri=REDIRECT_URI,
        scope="",
    )

    assert (
        await call_with_db(
            code_ledger.discard_for_client,
            client_id=discarded_client.client_id,
        )
        == 1
    )
    result = await redeem_code(
        authorization_code.code,
        redeeming_client=discarded_client,
    )
    assert isinstance(result, OAuthError)


async def test_sweep_expired_codes():
    now = datetime.now(UTC)
    swept_code = models_auth.AuthorizationCode(
        code="swept_authorization_code",
        client_id=client.client_id,
        user_id=user.id,
        redirect_uri=REDIRECT_URI,
        scope="",
        code_challenge=None,
        code_challenge_method=None,
        created_on=now - timedelta(hours=1),
        expire_on=now - timedelta(minutes=50),
        used=True,
    )
    await add_object_to_db(swept_code)
    kept_code = await issue_code()

    deleted = await call_with_db(code_ledger.sweep_expired)
    assert deleted >= 1

    async with TestingSessionLocal() as db:
        assert (
            await cruds_auth.get_authorization_code_by_code(db=db, code=swept_code.code)
            is None
        )
        assert (
            await cruds_auth.get_authorization_code_by_code(db=db, code=kept_code.code)
            is not None
        )
