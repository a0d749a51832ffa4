"""User credential store.

Owns the single `refresh_token` slot per user. Rotation is a compare-and-swap
performed by the storage layer itself: the value is replaced only if it still
equals the credential the caller presented, in one indivisible operation.
"""

import threading

from contextlib import contextmanager
from typing import Optional

import logfire

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import Or, Set
from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from models.users import User
from schema.users import Identity
from security.errors import (
    DuplicateIdentity,
    IdentityNotFound,
    StaleOrRevokedCredential,
    StoreUnavailable,
)


class UserCredentialStore:
    """Interface every user credential store implements."""

    async def find_by_id(self, user_id: str) -> Identity:
        raise NotImplementedError

    async def find_by_login_handle(self, handle: str) -> Identity:
        raise NotImplementedError

    async def rotate_refresh_credential(
        self, user_id: str, expected_old: str, new_value: str
    ) -> None:
        """Atomically replace the stored refresh credential.

        Raises:
            StaleOrRevokedCredential: The stored value is no longer `expected_old`.
        """
        raise NotImplementedError

    async def set_refresh_credential(self, user_id: str, new_value: str) -> None:
        raise NotImplementedError

    async def clear_refresh_credential(self, user_id: str) -> None:
        raise NotImplementedError

    async def create_user(
        self, username: str, email: str, fullname: str, password_hash: str
    ) -> Identity:
        raise NotImplementedError

    async def update_password(self, user_id: str, password_hash: str) -> None:
        raise NotImplementedError

    async def update_details(self, user_id: str, fullname: str) -> Identity:
        raise NotImplementedError


@contextmanager
def _translate_store_errors():
    """Surface persistence-layer outages as `StoreUnavailable`."""
    try:
        yield
    except ConnectionFailure as e:
        logfire.error(f"User store unreachable: {str(e)}")
        raise StoreUnavailable(str(e)) from e


def _object_id(user_id: str) -> PydanticObjectId:
    try:
        return PydanticObjectId(user_id)
    except (InvalidId, TypeError):
        raise IdentityNotFound()


class BeanieUserStore(UserCredentialStore):
    """MongoDB-backed store. Requires `init_beanie` to have run."""

    async def find_by_id(self, user_id: str) -> Identity:
        oid = _object_id(user_id)
        with _translate_store_errors():
            user = await User.get(oid)

        if user is None:
            raise IdentityNotFound()
        return user.to_identity()

    async def find_by_login_handle(self, handle: str) -> Identity:
        handle = handle.lower()
        with _translate_store_errors():
            user = await User.find_one(Or(User.username == handle, User.email == handle))

        if user is None:
            raise IdentityNotFound()
        return user.to_identity()

    async def rotate_refresh_credential(
        self, user_id: str, expected_old: str, new_value: str
    ) -> None:
        oid = _object_id(user_id)
        with _translate_store_errors():
            # Single update_one filtered on the expected value: the compare and the write are one operation
            result = await User.find_one(
                User.id == oid, User.refresh_token == expected_old
            ).update(
                Set({User.refresh_token: new_value}),
                response_type=UpdateResponse.UPDATE_RESULT,
            )

        if result is None or result.matched_count != 1:
            raise StaleOrRevokedCredential()

    async def set_refresh_credential(self, user_id: str, new_value: str) -> None:
        oid = _object_id(user_id)
        with _translate_store_errors():
            result = await User.find_one(User.id == oid).update(
                Set({User.refresh_token: new_value}),
                response_type=UpdateResponse.UPDATE_RESULT,
            )

        if result is None or result.matched_count != 1:
            raise IdentityNotFound()

    async def clear_refresh_credential(self, user_id: str) -> None:
        oid = _object_id(user_id)
        with _translate_store_errors():
            await User.find_one(User.id == oid).update(
                Set({User.refresh_token: None}),
                response_type=UpdateResponse.UPDATE_RESULT,
            )

    async def create_user(
        self, username: str, email: str, fullname: str, password_hash: str
    ) -> Identity:
        with _translate_store_errors():
            if await User.find_one(User.email == email):
                raise DuplicateIdentity("email")
            if await User.find_one(User.username == username):
                raise DuplicateIdentity("username")

            user = User(
                username=username, email=email, fullname=fullname, password=password_hash
            )
            try:
                await user.insert()
            except DuplicateKeyError as e:
                # Lost a race with a concurrent registration
                key_value = (e.details or {}).get("keyValue", {})
                raise DuplicateIdentity("email" if "email" in key_value else "username")

        return user.to_identity()

    async def update_password(self, user_id: str, password_hash: str) -> None:
        oid = _object_id(user_id)
        with _translate_store_errors():
            result = await User.find_one(User.id == oid).update(
                Set({User.password: password_hash}),
                response_type=UpdateResponse.UPDATE_RESULT,
            )

        if result is None or result.matched_count != 1:
            raise IdentityNotFound()

    async def update_details(self, user_id: str, fullname: str) -> Identity:
        oid = _object_id(user_id)
        with _translate_store_errors():
            user = await User.find_one(User.id == oid).update(
                Set({User.fullname: fullname}),
                response_type=UpdateResponse.NEW_DOCUMENT,
            )

        if user is None:
            raise IdentityNotFound()
        return user.to_identity()


class InMemoryUserStore(UserCredentialStore):
    """Process-local store for development and tests.

    All reads and writes happen under one lock with no await inside the
    critical section, which makes `rotate_refresh_credential` atomic across
    coroutines and threads alike.
    """

    def __init__(self):
        self._users: dict[str, Identity] = {}
        self._lock = threading.Lock()

    async def find_by_id(self, user_id: str) -> Identity:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise IdentityNotFound()
            return user.model_copy()

    async def find_by_login_handle(self, handle: str) -> Identity:
        handle = handle.lower()
        with self._lock:
            for user in self._users.values():
                if handle in (user.username, user.email):
                    return user.model_copy()
        raise IdentityNotFound()

    async def rotate_refresh_credential(
        self, user_id: str, expected_old: str, new_value: str
    ) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None or user.refresh_token is None or user.refresh_token != expected_old:
                raise StaleOrRevokedCredential()
            user.refresh_token = new_value

    async def set_refresh_credential(self, user_id: str, new_value: str) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise IdentityNotFound()
            user.refresh_token = new_value

    async def clear_refresh_credential(self, user_id: str) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is not None:
                user.refresh_token = None

    async def create_user(
        self, username: str, email: str, fullname: str, password_hash: str
    ) -> Identity:
        username, email = username.lower(), email.lower()
        with self._lock:
            for user in self._users.values():
                if user.email == email:
                    raise DuplicateIdentity("email")
                if user.username == username:
                    raise DuplicateIdentity("username")

            user = Identity(
                id=str(ObjectId()),
                username=username,
                email=email,
                fullname=fullname,
                password=password_hash,
            )
            self._users[user.id] = user
            return user.model_copy()

    async def update_password(self, user_id: str, password_hash: str) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise IdentityNotFound()
            user.password = password_hash

    async def update_details(self, user_id: str, fullname: str) -> Identity:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise IdentityNotFound()
            user.fullname = fullname
            return user.model_copy()


# Global store instance, chosen at start-up
_user_store: Optional[UserCredentialStore] = None


def configure_user_store(store: UserCredentialStore) -> None:
    global _user_store
    _user_store = store


def get_user_store() -> UserCredentialStore:
    """Get the configured user credential store, falling back to an in-memory one."""
    global _user_store

    if _user_store is None:
        logfire.warning("No user store configured, using in-memory store")
        _user_store = InMemoryUserStore()

    return _user_store
