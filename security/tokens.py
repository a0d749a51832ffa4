"""Minting and verification of signed, expiring credentials.

Access and refresh credentials share one claim layout but are signed with
different secrets, so one kind can never be replayed as the other.
"""

import secrets

from datetime import datetime, timezone
from typing import Optional

from jose import jwt, JWTError
from jose.exceptions import ExpiredSignatureError

from models.helpers import CredentialKind
from security.errors import ExpiredCredential, MalformedCredential, WrongCredentialKind
from security.settings import TokenSettings, get_token_settings


class CredentialEncoder:
    """Stateless signer/verifier for access and refresh credentials."""

    def __init__(self, settings: TokenSettings):
        self.settings = settings

    def secret_for(self, kind: CredentialKind) -> str:
        if kind is CredentialKind.ACCESS:
            return self.settings.access_secret
        return self.settings.refresh_secret

    def lifetime_seconds(self, kind: CredentialKind) -> int:
        if kind is CredentialKind.ACCESS:
            return int(self.settings.access_lifetime.total_seconds())
        return int(self.settings.refresh_lifetime.total_seconds())

    def mint(self, kind: CredentialKind, subject: str, now: Optional[datetime] = None) -> str:
        """Create a signed credential of `kind` for `subject`.

        Args:
            kind (CredentialKind): Which credential to mint.
            subject (str): The identity id carried in the `sub` claim.
            now (Optional[datetime], optional): Issuance time. Defaults to the current UTC time.

        Returns:
            str: The encoded JWT.
        """
        issued_at = now or datetime.now(timezone.utc)
        lifetime = (
            self.settings.access_lifetime
            if kind is CredentialKind.ACCESS
            else self.settings.refresh_lifetime
        )

        claims = {
            "sub": subject,
            "type": kind.value,
            "jti": secrets.token_urlsafe(16),  # Two tokens minted in the same second still differ
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + lifetime).timestamp()),
        }

        return jwt.encode(claims, self.secret_for(kind), algorithm=self.settings.algorithm)

    def verify(self, kind: CredentialKind, token: str) -> str:
        """Verify `token` as a credential of `kind` and return its subject.

        Raises:
            ExpiredCredential: The signature is valid but the credential is past its expiry.
            WrongCredentialKind: The token is a valid credential of the other kind.
            MalformedCredential: The token cannot be decoded or lacks a subject.

        Returns:
            str: The identity id the credential was issued to.
        """
        try:
            payload: dict = jwt.decode(
                token, self.secret_for(kind), algorithms=[self.settings.algorithm]
            )
        except ExpiredSignatureError:
            raise ExpiredCredential()
        except JWTError:
            if self._is_other_kind(kind, token):
                raise WrongCredentialKind()
            raise MalformedCredential()

        if payload.get("type") != kind.value:
            raise WrongCredentialKind()

        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            raise MalformedCredential()

        return subject

    def _is_other_kind(self, kind: CredentialKind, token: str) -> bool:
        """Check whether `token` verifies under the other kind's secret."""
        other = CredentialKind.REFRESH if kind is CredentialKind.ACCESS else CredentialKind.ACCESS

        try:
            jwt.decode(
                token,
                self.secret_for(other),
                algorithms=[self.settings.algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            return False
        return True


_encoder: Optional[CredentialEncoder] = None


def get_credential_encoder() -> CredentialEncoder:
    """Get the process-wide credential encoder."""
    global _encoder

    if _encoder is None:
        _encoder = CredentialEncoder(get_token_settings())

    return _encoder


def reset_credential_encoder() -> None:
    global _encoder
    _encoder = None
