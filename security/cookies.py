"""Issue and clear the credential cookies with one fixed attribute set."""

from fastapi import Response

from security.settings import CookieSettings, get_cookie_settings
from security.tokens import CredentialEncoder
from models.helpers import CredentialKind


def set_credential_cookies(
    response: Response,
    access_token: str,
    refresh_token: str,
    encoder: CredentialEncoder,
    settings: CookieSettings | None = None,
) -> None:
    """Attach both credentials as cookies, each living as long as the credential itself.

    Args:
        response (Response): The outgoing response.
        access_token (str): Newly minted access credential.
        refresh_token (str): Newly minted refresh credential.
        encoder (CredentialEncoder): Source of the per-kind lifetimes.
        settings (CookieSettings | None, optional): Cookie attributes. Defaults to the configured ones.
    """
    settings = settings or get_cookie_settings()

    for name, value, kind in (
        (settings.access_cookie_name, access_token, CredentialKind.ACCESS),
        (settings.refresh_cookie_name, refresh_token, CredentialKind.REFRESH),
    ):
        response.set_cookie(
            key=name,
            value=value,
            max_age=encoder.lifetime_seconds(kind),
            path=settings.path,
            domain=settings.domain,
            secure=settings.secure,
            httponly=settings.http_only,
            samesite=settings.same_site,
        )


def clear_credential_cookies(response: Response, settings: CookieSettings | None = None) -> None:
    """Expire both credential cookies using the same attributes they were set with."""
    settings = settings or get_cookie_settings()

    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(
            key=name,
            path=settings.path,
            domain=settings.domain,
            secure=settings.secure,
            httponly=settings.http_only,
            samesite=settings.same_site,
        )
