"""
Refresh credential rotation.

A presented refresh credential is exchanged for a new pair exactly once: the
swap goes through the store's compare-and-swap, so of two callers racing on
the same credential one is issued a pair and the other is told it is stale.
"""

from typing import Annotated, Optional

import logfire

from fastapi import Depends

from models.helpers import CredentialKind, RefreshState
from schema.security import TokenPair
from security.errors import (
    CredentialError,
    IdentityNotFound,
    MissingCredential,
    StaleOrRevokedCredential,
)
from security.tokens import CredentialEncoder, get_credential_encoder
from services.user_store import UserCredentialStore, get_user_store


class RefreshProtocolHandler:
    """Runs one refresh attempt through IDLE -> VALIDATING -> ROTATING -> ISSUED | REJECTED."""

    def __init__(self, store: UserCredentialStore, encoder: CredentialEncoder):
        self.store = store
        self.encoder = encoder
        self.state = RefreshState.IDLE

    async def rotate(self, presented: Optional[str]) -> TokenPair:
        """Exchange `presented` for a new access/refresh pair.

        Args:
            presented (Optional[str]): The refresh credential sent by the client.

        Raises:
            MissingCredential: No refresh credential was presented.
            ExpiredCredential: The refresh credential has expired.
            MalformedCredential: The refresh credential cannot be verified.
            WrongCredentialKind: An access credential was presented.
            IdentityNotFound: The credential's subject no longer exists.
            StaleOrRevokedCredential: The credential was already rotated or revoked by logout.

        Returns:
            TokenPair: The newly issued pair.
        """
        try:
            return await self._rotate(presented)
        except CredentialError as e:
            self.state = RefreshState.REJECTED
            logfire.warning(f"Refresh rejected: {e.code}")
            raise

    async def _rotate(self, presented: Optional[str]) -> TokenPair:
        self.state = RefreshState.VALIDATING

        if not presented:
            raise MissingCredential("Refresh token is missing. Please login again.")

        user_id = self.encoder.verify(CredentialKind.REFRESH, presented)

        try:
            await self.store.find_by_id(user_id)
        except IdentityNotFound:
            raise IdentityNotFound("Invalid refresh token. User not found.")

        self.state = RefreshState.ROTATING

        with logfire.span(f"Rotating refresh credential for user {user_id}"):
            new_refresh_token = self.encoder.mint(CredentialKind.REFRESH, user_id)

            try:
                await self.store.rotate_refresh_credential(
                    user_id, expected_old=presented, new_value=new_refresh_token
                )
            except StaleOrRevokedCredential:
                logfire.warning(f"Stale or revoked refresh credential presented for user {user_id}")
                raise

            access_token = self.encoder.mint(CredentialKind.ACCESS, user_id)

        self.state = RefreshState.ISSUED
        logfire.info(f"Tokens refreshed for user {user_id}")

        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_in=self.encoder.lifetime_seconds(CredentialKind.ACCESS),
        )


def get_refresh_protocol_handler(
    store: Annotated[UserCredentialStore, Depends(get_user_store)],
    encoder: Annotated[CredentialEncoder, Depends(get_credential_encoder)],
) -> RefreshProtocolHandler:
    """Build a handler for a single refresh request."""
    return RefreshProtocolHandler(store, encoder)
