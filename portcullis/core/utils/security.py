import secrets
from functools import lru_cache
from typing import Protocol, runtime_checkable

import bcrypt
from fastapi.security import OAuth2AuthorizationCodeBearer
from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.users import cruds_users

"""
In order to salt and hash secrets, we use the bcrypt hashing function (see https://en.wikipedia.org/wiki/Bcrypt).

A different salt will be added automatically for each secret. See [Auth0 Understanding bcrypt](https://auth0.com/blog/hashing-in-action-understanding-bcrypt/) for information about bcrypt.
It is important to use enough rounds while accounting for the hash computation time. Default is 12. 13 allows for a 0.5 seconds computing delay.
"""

oauth2_scheme = OAuth2AuthorizationCodeBearer(
    authorizationUrl="/auth/authorize",
    tokenUrl="/auth/token",
    scheme_name="AuthorizationCodeAuthentication",
    scopes={"admin": "Manage the registered clients"},
    auto_error=False,
)
"""
Read the bearer access token from the Authorization header.
See [FastAPI documentation](https://fastapi.tiangolo.com/tutorial/security/oauth2-jwt/) about JWT.
"""

jwt_algorithm = "HS256"
"""
The algorithme used to sign JWT access tokens
"""


def generate_token(nbytes=32) -> str:
    """
    Generate a `nbytes` bytes cryptographically strong random urlsafe token using the *secrets* library.

    By default, a 32 bytes (256 bits) token is generated.
    """
    # We use https://docs.python.org/3/library/secrets.html#secrets.token_urlsafe
    return secrets.token_urlsafe(nbytes)


def get_password_hash(password: str, rounds: int = 13) -> str:
    """
    Return a salted hash computed from password.
    Both the salt and the algorithm identifier are included in the hash.
    """
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


@lru_cache
def get_dummy_hash(rounds: int = 13) -> bytes:
    """
    Return the hash of a random secret, computed once per cost factor.

    Credentials of an unknown account are checked against it, so that rejecting them costs a single bcrypt verification, like a wrong password would.
    """
    return bcrypt.hashpw(generate_token(12).encode("utf-8"), bcrypt.gensalt(rounds))


def verify_password(
    plain_password: str,
    hashed_password: str | None,
    rounds: int = 13,
) -> bool:
    """
    Compare `plain_password` against its salted hash representation `hashed_password`. bcrypt comparison is constant-time.

    When hashed_password=None (ie the account isn't valid) we check `plain_password` against a dummy hash with the same cost to simulate the delay a real verification would have taken.
    This is useful to limit timing attacks that could be used to guess valid emails or client ids.
    """
    if hashed_password is None:
        bcrypt.checkpw(plain_password.encode("utf-8"), get_dummy_hash(rounds))
        return False
    return bcrypt.checkpw(
        plain_password.encode("utf-8"),
        hashed_password.encode("utf-8"),
    )


@runtime_checkable
class IdentityProvider(Protocol):
    """
    Authenticate the resource owner during the authorization request.

    The authorization server only needs a user identifier, how credentials are checked is up to the provider.
    """

    async def authenticate(
        self,
        db: AsyncSession,
        email: str,
        password: str,
    ) -> str | None:
        """Return the user id, or None if the credentials are not valid."""
        ...


class DatabaseIdentityProvider:
    """
    Identity provider backed by the `core_user` table
    """

    def __init__(self, hash_rounds: int = 13):
        self.hash_rounds = hash_rounds
        get_dummy_hash(hash_rounds)

    async def authenticate(
        self,
        db: AsyncSession,
        email: str,
        password: str,
    ) -> str | None:
        """
        Try to authenticate the user.
        If the user is unknown or the password is invalid return `None`. Else return the user's id.
        """
        user = await cruds_users.get_user_by_email(db=db, email=email)
        if not user:
            # In order to prevent timing attacks, we simulate the delay the password validation would have taken if the account existed
            verify_password(password, None, rounds=self.hash_rounds)
            return None
        if not verify_password(password, user.password_hash, rounds=self.hash_rounds):
            return None
        return user.id
