"""Identity dependency: bearer JWT to calling party."""

from dataclasses import dataclass

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from ..config import Settings
from ..domain.errors import Forbidden, NotFound, Unauthenticated
from ..domain.models import Party
from ..repositories.base import Repository

logger = get_logger()

security = HTTPBearer(auto_error=False)


@dataclass
class AuthUser:
    user_id: str
    email_confirmed: bool = False


@dataclass
class Caller:
    """The authenticated user together with their profile."""

    user: AuthUser
    party: Party


def decode_token(token: str, settings: Settings) -> AuthUser:
    """Validate an HS256 access token and extract the auth user."""
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.info("invalid_token", error=str(e))
        raise Unauthenticated("Unauthorized")

    return AuthUser(
        user_id=str(claims["sub"]),
        email_confirmed=bool(claims.get("email_confirmed", False)),
    )


def get_repository(request: Request) -> Repository:
    """Returns the store attached to the running app"""
    return request.app.state.repository


async def get_auth_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> AuthUser:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Unauthorized")
    return decode_token(credentials.credentials, request.app.state.settings)


async def get_caller(
    user: AuthUser = Depends(get_auth_user),
    repository: Repository = Depends(get_repository),
) -> Caller:
    """Resolve the request to a party, or fail before reaching the engine."""
    party = await repository.get_party_by_user_id(user.user_id)
    if party is None:
        raise NotFound("Profile not found. Please create your profile first.")
    return Caller(user=user, party=party)


async def get_confirmed_caller(caller: Caller = Depends(get_caller)) -> Caller:
    """Like get_caller, but also requires a confirmed email address."""
    if not caller.user.email_confirmed:
        logger.info("email_not_confirmed", user_id=caller.user.user_id)
        raise Forbidden("Please confirm your email address before messaging.")
    return caller
