"""User accounts: register and log in."""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chaingate.core.dependencies import rate_limit, validated_body
from chaingate.core.exceptions import BadRequestError, UnauthorizedError, ValidationFailedError
from chaingate.core.security import hash_password, verify_password
from chaingate.db.postgres import get_db
from chaingate.gateway.rate_limiter import RateLimitTier
from chaingate.gateway.validation import FieldError, check_password_strength
from chaingate.models.user import User
from chaingate.schemas.user import LoggedInUser, LoginResponse, RegisteredUser, RegisterResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


async def _clashing_field(db: AsyncSession, email: str, username: str) -> str | None:
    """Which of email/username is already taken, if either."""
    existing = await db.execute(select(User).where(or_(User.email == email, User.username == username)))
    clash = existing.scalars().first()
    if clash is None:
        return None
    return "email" if clash.email == email else "username"


def _already_exists(field: str) -> BadRequestError:
    return BadRequestError(
        "User already exists",
        details=[FieldError(field, f"A user with this {field} already exists").to_dict()],
    )


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[Depends(rate_limit(RateLimitTier.AUTH))],
)
async def register(
    body: dict[str, Any] = Depends(validated_body("userRegister")),
    db: AsyncSession = Depends(get_db),
):
    strength = check_password_strength(body["password"])
    if not strength.is_valid:
        raise ValidationFailedError(
            [FieldError("password", msg).to_dict() for msg in strength.violated_rule_messages],
            detail="Password does not meet requirements",
        )

    email = body["email"].lower()
    field = await _clashing_field(db, email, body["username"])
    if field is not None:
        raise _already_exists(field)

    user = User(username=body["username"], email=email, password_hash=hash_password(body["password"]))
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        # a concurrent registration took the email or username after the check
        await db.rollback()
        raise _already_exists(await _clashing_field(db, email, body["username"]) or "email")
    await db.refresh(user)

    logger.info("User registered", extra={"context": {"userId": str(user.id), "username": user.username}})
    return RegisterResponse(message="User registered successfully", user=RegisteredUser.model_validate(user))


@router.post("/login", response_model=LoginResponse, dependencies=[Depends(rate_limit(RateLimitTier.AUTH))])
async def login(
    body: dict[str, Any] = Depends(validated_body("userLogin")),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).where(User.email == body["email"].lower()))
    user = result.scalar_one_or_none()

    if not user or not verify_password(body["password"], user.password_hash):
        logger.warning("Failed login attempt", extra={"context": {"email": body["email"]}})
        raise UnauthorizedError("Invalid email or password")

    user.last_login = datetime.now(timezone.utc)
    await db.flush()

    logger.info("User logged in", extra={"context": {"userId": str(user.id)}})
    return LoginResponse(message="Login successful", user=LoggedInUser.model_validate(user))
