import logging
import uuid
from typing import Optional, Union
from fastapi import Request
from fastapi_users import exceptions, schemas
from fastapi_users.manager import BaseUserManager, UUIDIDMixin
from fastapi_users_db_sqlalchemy import SQLAlchemyUserDatabase
from .models import User
from .settings.config import settings


logger = logging.getLogger(__name__)


SECRET = (settings.JWT_SECRET or "").strip()
if not SECRET or SECRET == "CHANGE_ME_SECRET":
    raise RuntimeError(
        "JWT_SECRET environment variable must be set to a strong value; the default placeholder is not allowed."
    )

# -------------------------
# User Manager
# -------------------------
class UserManager(UUIDIDMixin, BaseUserManager[User, uuid.UUID]):
    reset_password_token_secret = SECRET
    verification_token_secret = SECRET

    async def validate_password(self, password: str, user: Union[schemas.UC, User]) -> None:
        if len(password or "") < settings.PASSWORD_MIN_LENGTH:
            raise exceptions.InvalidPasswordException(
                reason=f"Password should be at least {settings.PASSWORD_MIN_LENGTH} characters"
            )
        if user.email and user.email.split("@")[0].lower() in (password or "").lower():
            raise exceptions.InvalidPasswordException(reason="Password should not contain e-mail")

    async def on_after_register(self, user: User, request: Optional[Request] = None):
        logger.info("User %s registered", user.id)

    async def on_after_update(self, user: User, update_dict: dict, request: Optional[Request] = None):
        logger.info("User %s updated fields %s", user.id, sorted(update_dict))


def user_manager_for(session) -> UserManager:
    """UserManager bound to an explicit session (services outside a request)."""
    return UserManager(SQLAlchemyUserDatabase(session, User))
