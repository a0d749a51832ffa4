"""Defines schema of requests and responses related to security"""

from pydantic import BaseModel, ConfigDict, Field, model_validator

from typing import Annotated, Optional

from .users import UserSummary


class LoginRequest(BaseModel):
    """Model for the login request.

    The login handle may be sent as `handle`, `username` or `email`.
    """

    handle: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: Annotated[str, Field(min_length=1)]

    @model_validator(mode="after")
    def resolve_handle(self):
        handle = self.handle or self.username or self.email
        if not handle or not handle.strip():
            raise ValueError("Enter a valid email or username")
        self.handle = handle.strip().lower()
        return self


class TokenPair(BaseModel):
    """Model representing both access and refresh tokens."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: Annotated[str, Field(serialization_alias="accessToken")]
    refresh_token: Annotated[str, Field(serialization_alias="refreshToken")]
    token_type: Annotated[str, Field(default="Bearer", serialization_alias="tokenType")]
    expires_in: Annotated[int, Field(serialization_alias="expiresIn")]  # Access token expiry in seconds


class LoginResponse(TokenPair):
    """Model representing a successful login."""

    user: UserSummary


class RefreshTokenRequest(BaseModel):
    """Model for refresh token request. Cookie clients may send an empty body."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Annotated[Optional[str], Field(default=None, alias="refreshToken")]


class MessageResponse(BaseModel):
    """Model for plain acknowledgement responses."""

    message: str
