"""Contains the schema definition for requests and responses related to users
"""

import re

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator

from typing import Annotated, Optional


class Identity(BaseModel):
    """A user record as seen by the credential store.

    `refresh_token` is the single refresh credential currently on file for this user.
    """

    id: str
    username: str
    email: str
    fullname: str
    password: str
    refresh_token: Optional[str] = None

    def summary(self) -> "UserSummary":
        """Strip the password hash and refresh credential."""
        return UserSummary(**self.model_dump(exclude={"password", "refresh_token"}))


class UserSummary(BaseModel):
    """The public view of a user, safe to attach to requests and responses."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    username: str
    email: str
    fullname: str


class CreateUserRequest(BaseModel):
    """Describes the structure of the register user request."""

    username: Annotated[str, Field(min_length=3, max_length=30)]
    email: Annotated[EmailStr, Field(max_length=50)]
    fullname: Annotated[str, Field(min_length=2, max_length=100)]
    password: Annotated[str, Field(min_length=8, max_length=72)]

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not re.fullmatch(r"[A-Za-z0-9_.]+", v):
            raise ValueError("Username may only contain letters, digits, '_' and '.'")
        return v.lower()

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()

    # * Require at least one letter and one number
    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if not re.search(r"[A-Za-z]", v):
            raise ValueError("Password must contain at least one letter")
        if not re.search(r"\d", v):
            raise ValueError("Password must contain at least one number")
        return v


class ChangePasswordRequest(BaseModel):
    """Describes the structure of the change password request."""

    model_config = ConfigDict(populate_by_name=True)

    old_password: Annotated[str, Field(min_length=1, alias="oldPassword")]
    new_password: Annotated[str, Field(min_length=8, max_length=72, alias="newPassword")]


class UpdateDetailsRequest(BaseModel):
    """Describes the structure of the update account details request."""

    fullname: Annotated[str, Field(min_length=2, max_length=100)]

    @field_validator("fullname")
    @classmethod
    def strip_fullname(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Full name must contain at least 2 characters")
        return v
