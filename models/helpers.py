"""Contains all models commonly used across different modules."""
from enum import Enum


class CredentialKind(str, Enum):
    """Enumeration of credential kinds."""
    ACCESS = "access"
    REFRESH = "refresh"


class RefreshState(str, Enum):
    """States a single refresh attempt moves through."""

    IDLE = "idle"
    VALIDATING = "validating"
    ROTATING = "rotating"
    ISSUED = "issued"
    REJECTED = "rejected"
