"""
Auth router for handling login, logout and credential refresh.
"""

import logfire

from fastapi import APIRouter, Body, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from typing import Annotated, Optional

from schema.security import LoginRequest, LoginResponse, MessageResponse, RefreshTokenRequest, TokenPair
from schema.users import UserSummary
from security.cookies import clear_credential_cookies, set_credential_cookies
from security.errors import CredentialError, StoreUnavailable
from security.helpers import (
    authenticate_user,
    credential_error_response,
    get_current_user,
    issue_credentials,
)
from security.refresh_token import RefreshProtocolHandler, get_refresh_protocol_handler
from security.settings import REFRESH_COOKIE_NAME
from security.tokens import CredentialEncoder, get_credential_encoder
from services.user_store import UserCredentialStore, get_user_store

router = APIRouter(
    prefix="/api/v1/users",
    tags=["Auth"],
)


@router.post("/login", response_model=LoginResponse)
async def login(
    payload: LoginRequest,
    response: Response,
    store: Annotated[UserCredentialStore, Depends(get_user_store)],
    encoder: Annotated[CredentialEncoder, Depends(get_credential_encoder)],
):
    """Login endpoint that returns both access and refresh tokens and sets them as cookies.

    Logging in invalidates any session previously opened for the same user.

    ## Responses
    ### Unknown user or wrong password
    - status code: 401
    - body: ```{"detail": "Invalid user credentials", "code": "invalid_login_credentials"}```
    """
    try:
        user = await authenticate_user(payload.handle, payload.password, store)
    except CredentialError as e:
        logfire.info("Failed login attempt")
        return credential_error_response(e)

    try:
        tokens = await issue_credentials(user, store, encoder)
    except (CredentialError, StoreUnavailable):
        raise
    except Exception as e:
        logfire.error(f"Fatal error occured during login {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred during login. Please try again later."
            },
        )

    set_credential_cookies(response, tokens.access_token, tokens.refresh_token, encoder)

    logfire.info(f"User {user.id} logged in successfully")

    return LoginResponse(user=user.summary(), **tokens.model_dump())


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    current_user: Annotated[UserSummary, Depends(get_current_user)],
    store: Annotated[UserCredentialStore, Depends(get_user_store)],
):
    """Logout endpoint that revokes the stored refresh token and clears the credential cookies.

    Logging out twice is not an error.
    """
    try:
        await store.clear_refresh_credential(current_user.id)
    except (CredentialError, StoreUnavailable):
        raise
    except Exception as e:
        logfire.error(f"Fatal error occured during logout for user {current_user.id}: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "An unexpected error occurred during logout. Please try again later."},
        )

    clear_credential_cookies(response)

    logfire.info(f"User {current_user.id} logged out")

    return MessageResponse(message="User logged out successfully")


@router.post("/refresh-token", response_model=TokenPair)
async def refresh_access_token(
    request: Request,
    response: Response,
    handler: Annotated[RefreshProtocolHandler, Depends(get_refresh_protocol_handler)],
    encoder: Annotated[CredentialEncoder, Depends(get_credential_encoder)],
    payload: Annotated[Optional[RefreshTokenRequest], Body()] = None,
):
    """Exchange a refresh token for a new access/refresh pair.

    The refresh token is read from the `refreshToken` cookie, else from the
    `refreshToken` field of the body. Every presented refresh token can be used once.

    ## Responses
    ### Missing, invalid, expired, already used or revoked refresh token
    - status code: 401
    - cookies: both credential cookies are cleared
    - body: ```{"detail": "...", "code": "..."}```
    """
    presented = request.cookies.get(REFRESH_COOKIE_NAME) or (
        payload.refresh_token if payload else None
    )

    try:
        tokens = await handler.rotate(presented)
    except CredentialError as e:
        # Force the client into a clean logged-out state instead of a retry loop
        return credential_error_response(e, clear_cookies=True)
    except StoreUnavailable:
        raise
    except Exception as e:
        logfire.error(f"Fatal error occured during token refresh {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "An unexpected error occurred while refreshing the session."},
        )

    set_credential_cookies(response, tokens.access_token, tokens.refresh_token, encoder)

    return tokens
