import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi_users import FastAPIUsers
from fastapi_users.manager import BaseUserManager, IntegerIDMixin
from fastapi_users.authentication import CookieTransport, AuthenticationBackend, JWTStrategy
from fastapi_users.db import SQLAlchemyUserDatabase
from .models import User
from .database import get_db
from .settings.config import settings


logger = logging.getLogger(__name__)

SECRET = settings.SECRET.strip()
if not SECRET or SECRET == "CHANGE_ME_SECRET":
    raise RuntimeError(
        "SECRET environment variable must be set to a strong value; the default placeholder is not allowed."
    )


async def get_user_db(session=Depends(get_db)):
    yield SQLAlchemyUserDatabase(session, User)


# -------------------------
# User Manager
# -------------------------
class UserManager(IntegerIDMixin, BaseUserManager[User, int]):
    reset_password_token_secret = SECRET
    verification_token_secret = SECRET

    async def on_after_register(self, user: User, request: Optional[Request] = None):
        logger.info("User %s registered (%s)", user.id, user.email)

    async def on_after_login(self, user: User, request: Optional[Request] = None, response=None):
        logger.info("User %s logged in", user.id)

    async def on_after_forgot_password(self, user: User, token: str, request: Optional[Request] = None):
        # no mail transport; operators hand the token over out of band
        logger.warning("Password reset requested for user %s", user.id)


async def get_user_manager(user_db=Depends(get_user_db)):
    yield UserManager(user_db)


# -------------------------
# Cookie session with JWT payload
# -------------------------
cookie_transport = CookieTransport(
    cookie_name="mabel_session",
    cookie_max_age=settings.SESSION_LIFETIME_SECONDS,
    cookie_secure=settings.COOKIE_SECURE,
    cookie_httponly=True,
    cookie_samesite="lax",
)


def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(secret=SECRET, lifetime_seconds=settings.SESSION_LIFETIME_SECONDS)


auth_backend = AuthenticationBackend(name="jwt", transport=cookie_transport, get_strategy=get_jwt_strategy)

fastapi_users = FastAPIUsers[User, int](get_user_manager, [auth_backend])

current_active_user = fastapi_users.current_user(active=True)
