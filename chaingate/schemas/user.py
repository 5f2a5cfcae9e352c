"""User account schemas."""

from datetime import datetime
from uuid import UUID

from chaingate.schemas.common import CamelModel


class RegisteredUser(CamelModel):
    id: UUID
    username: str
    email: str
    created_at: datetime


class LoggedInUser(CamelModel):
    id: UUID
    username: str
    email: str
    last_login: datetime | None = None


class RegisterResponse(CamelModel):
    message: str
    user: RegisteredUser


class LoginResponse(CamelModel):
    message: str
    user: LoggedInUser
