from pydantic import Field, field_serializer
from typing import Annotated, Optional

import pymongo
from beanie import Document, Indexed, PydanticObjectId

from schema.users import Identity


class User(Document):
    """Persisted user record.

    `refresh_token` holds the only refresh credential currently valid for the user.
    It is overwritten on login and rotation and cleared on logout.
    """
    username: Annotated[str, Indexed(index_type=pymongo.ASCENDING, unique=True), Field(max_length=30)]
    email: Annotated[str, Indexed(index_type=pymongo.ASCENDING, unique=True), Field(max_length=50)]
    fullname: Annotated[str, Field(max_length=100, min_length=2)]
    password: Annotated[str, Field(min_length=8)]
    refresh_token: Annotated[Optional[str], Field(default=None)]

    @field_serializer("id")
    def convert_pydantic_object_id_to_string(self, id: PydanticObjectId):
        return str(id)

    def to_identity(self) -> Identity:
        return Identity(
            id=str(self.id),
            username=self.username,
            email=self.email,
            fullname=self.fullname,
            password=self.password,
            refresh_token=self.refresh_token,
        )

    class Settings:
        name = "users"
