"""Error taxonomy for the credential lifecycle.

Every `CredentialError` is an authentication failure: the caller gets a 401
and must not retry. `StoreUnavailable` is the only transient failure.
"""


class CredentialError(Exception):
    """Base class for every authentication failure."""

    code = "unauthorized"
    reason = "Unauthorized access"

    def __init__(self, reason: str | None = None):
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class MissingCredential(CredentialError):
    code = "missing_credential"
    reason = "Missing credential"


class MalformedCredential(CredentialError):
    code = "malformed_credential"
    reason = "Invalid credential"


class ExpiredCredential(CredentialError):
    code = "expired_credential"
    reason = "Credential has expired"


class WrongCredentialKind(CredentialError):
    code = "wrong_credential_kind"
    reason = "Credential is not valid for this purpose"


class IdentityNotFound(CredentialError):
    code = "identity_not_found"
    reason = "Identity gone"


class StaleOrRevokedCredential(CredentialError):
    code = "stale_or_revoked_credential"
    reason = "Refresh token has expired or been used. Please login again."


class InvalidLoginCredentials(CredentialError):
    code = "invalid_login_credentials"
    reason = "Invalid user credentials"


class StoreUnavailable(Exception):
    """The persistence layer could not be reached. Safe to retry with backoff."""


class DuplicateIdentity(Exception):
    """A user with the same username or email already exists."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"A user with this {field} already exists")
