"""Contains all security related helper functions
"""
import logfire

from fastapi import Depends, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyCookie, HTTPAuthorizationCredentials, HTTPBearer

from passlib.context import CryptContext

from typing import Annotated, Optional

from models.helpers import CredentialKind
from schema.security import TokenPair
from schema.users import Identity, UserSummary
from security.cookies import clear_credential_cookies
from security.errors import (
    CredentialError,
    IdentityNotFound,
    InvalidLoginCredentials,
    MissingCredential,
)
from security.settings import ACCESS_COOKIE_NAME
from security.tokens import CredentialEncoder, get_credential_encoder
from services.user_store import UserCredentialStore, get_user_store


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

access_cookie_scheme = APIKeyCookie(name=ACCESS_COOKIE_NAME, auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifies that `plain_password` and `hashed_password` are equal.

    Args:
        plain_password (str): The plain text password to verify.
        hashed_password (str): The hashed password to compare against.

    Returns:
        bool: True if the passwords match, False otherwise.
    """
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Generates a hash for the given password.

    Args:
        password (str): The plain text password to hash.

    Returns:
        str: The hashed password.
    """
    return pwd_context.hash(password)


def credential_error_response(error: CredentialError, clear_cookies: bool = False) -> JSONResponse:
    """Render an authentication failure as a 401 response.

    Args:
        error (CredentialError): The failure to report.
        clear_cookies (bool, optional): Also expire both credential cookies. Defaults to False.

    Returns:
        JSONResponse: The 401 response.
    """
    response = JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": error.reason, "code": error.code},
        headers={"WWW-Authenticate": "Bearer"},
    )
    if clear_cookies:
        clear_credential_cookies(response)
    return response


async def authenticate_user(
    handle: str, password: str, store: UserCredentialStore
) -> Identity:
    """Authenticates a user by their username or email and password.

    An unknown handle and a wrong password raise the same error.

    Args:
        handle (str): The username or email of the user.
        password (str): The password of the user.
        store (UserCredentialStore): Where users are looked up.

    Raises:
        InvalidLoginCredentials: When the handle or the password is wrong.

    Returns:
        Identity: The authenticated user.
    """
    try:
        user = await store.find_by_login_handle(handle)
    except IdentityNotFound:
        pwd_context.dummy_verify()  # Keep response timing independent of whether the user exists
        raise InvalidLoginCredentials()

    if not verify_password(password, user.password):
        raise InvalidLoginCredentials()
    return user


async def issue_credentials(
    user: Identity, store: UserCredentialStore, encoder: CredentialEncoder
) -> TokenPair:
    """Mint a fresh credential pair at login and make its refresh credential the only valid one.

    Returns:
        TokenPair: The new access and refresh credentials.
    """
    access_token = encoder.mint(CredentialKind.ACCESS, user.id)
    refresh_token = encoder.mint(CredentialKind.REFRESH, user.id)

    # Login supersedes any earlier session, so overwrite without comparing
    await store.set_refresh_credential(user.id, refresh_token)

    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=encoder.lifetime_seconds(CredentialKind.ACCESS),
    )


async def get_current_user(
    request: Request,
    cookie_token: Annotated[Optional[str], Security(access_cookie_scheme)],
    bearer: Annotated[Optional[HTTPAuthorizationCredentials], Security(bearer_scheme)],
    store: Annotated[UserCredentialStore, Depends(get_user_store)],
    encoder: Annotated[CredentialEncoder, Depends(get_credential_encoder)],
) -> UserSummary:
    """Get the current user from the access credential.

    The `accessToken` cookie wins over an `Authorization: Bearer` header.

    Raises:
        MissingCredential: Neither the cookie nor the header carries a credential.
        ExpiredCredential: The access credential has expired.
        MalformedCredential: The access credential cannot be verified.
        WrongCredentialKind: A refresh credential was presented.
        IdentityNotFound: The credential's subject no longer exists.

    Returns:
        UserSummary: The authenticated user without password or refresh credential.
    """
    token = cookie_token or (bearer.credentials if bearer else None)

    if not token:
        raise MissingCredential()

    user_id = encoder.verify(CredentialKind.ACCESS, token)

    try:
        user = await store.find_by_id(user_id)
    except IdentityNotFound:
        logfire.warning(f"Access credential presented for missing user {user_id}")
        raise

    summary = user.summary()
    request.state.user = summary
    return summary
