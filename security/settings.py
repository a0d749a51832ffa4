"""Configuration for credential signing and cookie issuance.

Values are read from the environment (a `.env` file is honoured) once and
frozen, so every issuance site sees the same lifetimes and cookie attributes.
"""

import os

from datetime import timedelta
from typing import Annotated, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

load_dotenv()


class TokenSettings(BaseModel):
    """Signing secrets and lifetimes for both credential kinds."""

    model_config = ConfigDict(frozen=True)

    access_secret: Annotated[str, Field(min_length=16)]
    refresh_secret: Annotated[str, Field(min_length=16)]
    access_lifetime: timedelta = timedelta(minutes=1440)
    refresh_lifetime: timedelta = timedelta(days=7)
    algorithm: str = "HS256"

    @model_validator(mode="after")
    def check_distinct_secrets(self):
        # A shared secret would let an access token verify as a refresh token
        if self.access_secret == self.refresh_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ")
        return self


ACCESS_COOKIE_NAME = "accessToken"
REFRESH_COOKIE_NAME = "refreshToken"


class CookieSettings(BaseModel):
    """Every attribute attached to the credential cookies."""

    model_config = ConfigDict(frozen=True)

    access_cookie_name: str = ACCESS_COOKIE_NAME
    refresh_cookie_name: str = REFRESH_COOKIE_NAME
    http_only: bool = True
    secure: bool = False
    same_site: Literal["strict", "lax", "none"] = "strict"
    path: str = "/"
    domain: Optional[str] = None


def is_production() -> bool:
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


def load_token_settings() -> TokenSettings:
    """Build `TokenSettings` from the environment.

    Raises:
        RuntimeError: If a signing secret is not configured.

    Returns:
        TokenSettings: The frozen token settings.
    """
    access_secret = os.getenv("ACCESS_TOKEN_SECRET")
    refresh_secret = os.getenv("REFRESH_TOKEN_SECRET")

    if not access_secret or not refresh_secret:
        raise RuntimeError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be set")

    return TokenSettings(
        access_secret=access_secret,
        refresh_secret=refresh_secret,
        access_lifetime=timedelta(
            minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))
        ),
        refresh_lifetime=timedelta(days=int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))),
    )


def load_cookie_settings() -> CookieSettings:
    """Build `CookieSettings` from the environment.

    `secure` is only switched on in production, where a domain is expected too.
    """
    return CookieSettings(
        secure=is_production(),
        path=os.getenv("COOKIE_PATH", "/"),
        domain=os.getenv("COOKIE_DOMAIN") or None,
    )


_token_settings: Optional[TokenSettings] = None
_cookie_settings: Optional[CookieSettings] = None


def get_token_settings() -> TokenSettings:
    global _token_settings

    if _token_settings is None:
        _token_settings = load_token_settings()

    return _token_settings


def get_cookie_settings() -> CookieSettings:
    global _cookie_settings

    if _cookie_settings is None:
        _cookie_settings = load_cookie_settings()

    return _cookie_settings


def reset_settings() -> None:
    """Forget cached settings so the next access re-reads the environment."""
    global _token_settings, _cookie_settings

    _token_settings = None
    _cookie_settings = None
