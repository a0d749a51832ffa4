""" User router for handling all user-related endpoints.
"""

import logfire

from fastapi import APIRouter, status, Depends
from fastapi.responses import JSONResponse

from typing import Annotated

from schema.security import MessageResponse
from schema.users import ChangePasswordRequest, CreateUserRequest, UpdateDetailsRequest, UserSummary
from security.errors import CredentialError, DuplicateIdentity, StoreUnavailable
from security.helpers import get_current_user, get_password_hash, verify_password
from services.user_store import UserCredentialStore, get_user_store

router = APIRouter(
    prefix="/api/v1/users",
    tags=["Users"],
)


@router.post("/register", response_model=UserSummary, status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: CreateUserRequest,
    store: Annotated[UserCredentialStore, Depends(get_user_store)],
):
    """This endpoint creates a new user. No credentials are issued; the user logs in afterwards.

    ## Possible Errors
    - 409 Conflict: If a user with the provided email or username already exists.
    - 503 Service Unavailable: If the user store cannot be reached.
    """
    with logfire.span(f"Registering new user: {payload.username}"):
        try:
            user = await store.create_user(
                username=payload.username,
                email=payload.email,
                fullname=payload.fullname,
                password_hash=get_password_hash(payload.password),
            )
        except DuplicateIdentity as e:
            logfire.warning(f"Attempt to create duplicate user on {e.field}")
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"detail": str(e)},
            )
        except StoreUnavailable:
            raise
        except Exception as e:
            logfire.error(f"Unexpected error for new user {payload.username}: {str(e)}")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "An unexpected error occurred"},
            )

        logfire.info(f"Saved new user {user.id}")
        return user.summary()


@router.get("/current-user", response_model=UserSummary)
async def get_user_details(
    current_user: Annotated[UserSummary, Depends(get_current_user)],
):
    """Get details of the authenticated user."""
    return current_user


@router.patch("/update-details", response_model=UserSummary)
async def update_current_user_details(
    payload: UpdateDetailsRequest,
    current_user: Annotated[UserSummary, Depends(get_current_user)],
    store: Annotated[UserCredentialStore, Depends(get_user_store)],
):
    """Update the authenticated user's full name and return the updated user."""
    try:
        user = await store.update_details(current_user.id, payload.fullname)
    except (CredentialError, StoreUnavailable):
        raise
    except Exception as e:
        logfire.error(f"Failed to update details for user {current_user.id}: {str(e)}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Failed to update user details"},
        )

    logfire.info(f"Details updated for user {user.id}")
    return user.summary()


@router.post("/change-password", response_model=MessageResponse)
async def change_current_user_password(
    payload: ChangePasswordRequest,
    current_user: Annotated[UserSummary, Depends(get_current_user)],
    store: Annotated[UserCredentialStore, Depends(get_user_store)],
):
    """Change the authenticated user's password.

    ## Possible Errors
    - 400 Bad Request: If the old password is incorrect.
    """
    try:
        user = await store.find_by_id(current_user.id)

        if not verify_password(payload.old_password, user.password):
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": "Old password is incorrect"},
            )

        await store.update_password(user.id, get_password_hash(payload.new_password))
    except (CredentialError, StoreUnavailable):
        raise
    except Exception as e:
        logfire.error(f"Failed to change password for user {current_user.id}: {str(e)}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Failed to change password"},
        )

    logfire.info(f"Password changed for user {user.id}")

    return MessageResponse(message="Password changed successfully")
