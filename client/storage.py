"""Where a client keeps its credentials between runs."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel


class StoredCredentials(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None


class CredentialStorage:
    """Interface for client-side credential persistence."""

    def load(self) -> Optional[StoredCredentials]:
        raise NotImplementedError

    def save(self, credentials: StoredCredentials) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCredentialStorage(CredentialStorage):
    """Keeps credentials for the lifetime of the process only."""

    def __init__(self, credentials: Optional[StoredCredentials] = None):
        self._credentials = credentials

    def load(self) -> Optional[StoredCredentials]:
        return self._credentials

    def save(self, credentials: StoredCredentials) -> None:
        self._credentials = credentials

    def clear(self) -> None:
        self._credentials = None


class FileCredentialStorage(CredentialStorage):
    """Keeps credentials in a JSON file readable only by the current user."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[StoredCredentials]:
        if not self.path.exists():
            return None
        return StoredCredentials.model_validate_json(self.path.read_text(encoding="utf-8"))

    def save(self, credentials: StoredCredentials) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(credentials.model_dump_json(), encoding="utf-8")
        self.path.chmod(0o600)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
