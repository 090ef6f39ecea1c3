"""JWT authentication service.

Tokens are HS256 JWTs that are also persisted in ``user_tokens`` so they
can be revoked. An access token is accepted only while its row exists, is
not revoked and has not expired, and the signature verifies.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import jwt
from jwt.exceptions import InvalidTokenError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from devops_insights.exceptions import (
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from devops_insights.models import User, UserStatus, UserToken, ViewScope
from devops_insights.services.users import (
    UserRoleService,
    UserService,
    _check_password,
    _hash_password,
    _verify_password,
    serialize_user,
)
from devops_insights.utils.datetime import to_utc
from devops_insights.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("JWT_ACCESS_TOKEN_EXPIRE_HOURS", "24"))
JWT_REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("JWT_REFRESH_TOKEN_EXPIRE_DAYS", "7"))

# Seconds slept after every password check, to blur timing differences.
LOGIN_DELAY_RANGE = (0.1, 0.2)


def _get_jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET_KEY")
    if not secret:
        logger.warning(
            "JWT_SECRET_KEY not set, using derived key from SETTINGS_ENCRYPTION_KEY"
        )
        encryption_key = os.getenv("SETTINGS_ENCRYPTION_KEY", "dev-key-not-for-prod")
        secret = hashlib.sha256(encryption_key.encode()).hexdigest()
    return secret


@lru_cache(maxsize=1)
def _dummy_password_hash() -> str:
    return _hash_password(uuid.uuid4().hex)


def _invalid_credentials() -> UnauthorizedError:
    return UnauthorizedError("Invalid credentials", code="INVALID_CREDENTIALS")


@dataclass
class TokenPair:
    """Access and refresh token pair."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at.isoformat(),
            "tokenType": self.token_type,
        }


class AuthService:
    """Login, token issuance and token verification for dashboard users."""

    def __init__(self, session: AsyncSession, secret_key: str | None = None):
        self.session = session
        self.secret_key = secret_key or _get_jwt_secret()
        self.users = UserService(session)

    def create_access_token(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "login": user.login,
            "role": user.role.name if user.role else None,
            "type": "access",
            "exp": now + timedelta(hours=JWT_ACCESS_TOKEN_EXPIRE_HOURS),
            "iat": now,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=JWT_ALGORITHM)

    def create_refresh_token(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "type": "refresh",
            "exp": now + timedelta(days=JWT_REFRESH_TOKEN_EXPIRE_DAYS),
            "iat": now,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=JWT_ALGORITHM)

    def decode_token(self, token: str, token_type: str = "access") -> dict[str, Any]:
        """Decode and check a JWT. Raises UnauthorizedError when invalid."""
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "sub", "type"]},
            )
        except jwt.ExpiredSignatureError:
            raise UnauthorizedError("Token expired", code="EXPIRED_TOKEN")
        except InvalidTokenError as e:
            logger.debug("Invalid token: %s", e)
            raise UnauthorizedError("Invalid token", code="INVALID_TOKEN")
        if payload.get("type") != token_type:
            logger.warning("Token type mismatch: expected %s", token_type)
            raise UnauthorizedError("Invalid token", code="INVALID_TOKEN")
        return payload

    async def _issue_tokens(self, user: User) -> TokenPair:
        pair = TokenPair(
            access_token=self.create_access_token(user),
            refresh_token=self.create_refresh_token(user),
            expires_at=datetime.now(timezone.utc)
            + timedelta(hours=JWT_ACCESS_TOKEN_EXPIRE_HOURS),
        )
        self.session.add(
            UserToken(
                user_id=user.id,
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                expires_at=pair.expires_at,
            )
        )
        await self.session.flush()
        return pair

    async def login(self, email_or_login: str, password: str) -> dict[str, Any]:
        user = await self.users.get_by_email_or_login(email_or_login)

        # Always run bcrypt so unknown users take as long as known ones.
        password_hash = (user.password if user else None) or _dummy_password_hash()
        is_valid = _verify_password(password, password_hash)
        await asyncio.sleep(random.uniform(*LOGIN_DELAY_RANGE))

        if user is None or not user.password or not is_valid:
            logger.info("Failed login for %s", sanitize_for_log(email_or_login))
            raise _invalid_credentials()
        if not user.is_active or user.status != UserStatus.ACTIVE.value:
            logger.info("Login refused for inactive user %s", user.id)
            raise _invalid_credentials()

        tokens = await self._issue_tokens(user)
        user.last_login = datetime.now(timezone.utc)
        await self.session.flush()
        logger.info("User %s logged in", user.id)
        return {"user": serialize_user(user), **tokens.to_dict()}

    async def login_with_azure_ad(
        self,
        azure_ad_id: str,
        email: str,
        name: str,
        azure_ad_email: str | None = None,
    ) -> dict[str, Any]:
        """Sign in a user federated through Azure AD.

        Unknown identities are provisioned as pending, inactive users with
        the default access role and must be activated by an admin before
        tokens are issued.
        """
        result = await self.session.execute(
            select(User).where(
                (User.email == email.lower()) | (User.azure_ad_id == azure_ad_id)
            )
        )
        user = result.scalars().first()

        if user is None:
            role = await UserRoleService(self.session).get_default()
            if role is None:
                raise ValidationError(
                    "No default role configured", code="DEFAULT_ROLE_NOT_FOUND"
                )
            user = User(
                name=name,
                email=email.lower(),
                login=email.split("@")[0],
                azure_ad_id=azure_ad_id,
                azure_ad_email=azure_ad_email or email,
                role=role,
                is_active=False,
                status=UserStatus.PENDING.value,
                view_scope=ViewScope.OWN.value,
            )
            self.session.add(user)
            await self.session.flush()
            logger.info("Created pending Azure AD user %s", sanitize_for_log(email))
            await self._try_link_developer(user, email, azure_ad_id)

        if not user.is_active or user.status != UserStatus.ACTIVE.value:
            return {
                "user": serialize_user(user),
                "accessToken": None,
                "refreshToken": None,
                "requiresApproval": True,
            }

        if user.azure_ad_id != azure_ad_id or user.azure_ad_email != (
            azure_ad_email or email
        ):
            user.azure_ad_id = azure_ad_id
            user.azure_ad_email = azure_ad_email or email
            user.name = name
        if user.developer_id is None:
            await self._try_link_developer(user, email, azure_ad_id)

        tokens = await self._issue_tokens(user)
        user.last_login = datetime.now(timezone.utc)
        await self.session.flush()
        logger.info("Azure AD user %s logged in", user.id)
        return {
            "user": serialize_user(user),
            **tokens.to_dict(),
            "requiresApproval": False,
        }

    async def _try_link_developer(
        self, user: User, email: str, azure_ad_id: str | None
    ) -> None:
        try:
            async with self.session.begin_nested():
                await self.users.auto_link_developer(user, email, azure_ad_id)
        except Exception:
            logger.exception("Failed to link user %s with a developer", user.id)

    async def _get_token_row(self, **criteria: Any) -> UserToken | None:
        result = await self.session.execute(select(UserToken).filter_by(**criteria))
        return result.scalar_one_or_none()

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new pair, revoking the old one."""
        row = await self._get_token_row(refresh_token=refresh_token)
        await asyncio.sleep(random.uniform(*LOGIN_DELAY_RANGE))

        invalid = UnauthorizedError(
            "Invalid refresh token", code="INVALID_REFRESH_TOKEN"
        )
        if row is None or row.is_revoked:
            raise invalid
        if to_utc(row.expires_at) < datetime.now(timezone.utc):
            raise invalid
        if row.user is None or not row.user.is_active:
            raise invalid
        try:
            self.decode_token(refresh_token, token_type="refresh")
        except UnauthorizedError:
            raise invalid

        row.is_revoked = True
        tokens = await self._issue_tokens(row.user)
        logger.info("Refreshed tokens for user %s", row.user_id)
        return tokens.to_dict()

    async def verify(self, access_token: str) -> User:
        """Return the active user owning ``access_token``."""
        row = await self._get_token_row(access_token=access_token)
        if row is None:
            raise UnauthorizedError("Invalid token", code="INVALID_TOKEN")
        if row.is_revoked:
            raise UnauthorizedError("Token revoked", code="REVOKED_TOKEN")
        if to_utc(row.expires_at) < datetime.now(timezone.utc):
            raise UnauthorizedError("Token expired", code="EXPIRED_TOKEN")
        user = row.user
        if user is None or not user.is_active:
            raise UnauthorizedError("User inactive", code="USER_INACTIVE")
        payload = self.decode_token(access_token, token_type="access")
        if payload["sub"] != str(user.id):
            raise UnauthorizedError("Invalid token", code="INVALID_TOKEN")
        return user

    async def logout(self, access_token: str) -> None:
        await self.session.execute(
            update(UserToken)
            .where(UserToken.access_token == access_token)
            .values(is_revoked=True)
        )
        await self.session.flush()

    async def revoke_all(self, user_id: Any) -> None:
        await self.session.execute(
            update(UserToken)
            .where(UserToken.user_id == user_id)
            .values(is_revoked=True)
        )
        await self.session.flush()
        logger.info("Revoked all tokens for user %s", user_id)

    async def change_password(
        self, user_id: Any, current_password: str, new_password: str
    ) -> None:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        if not user.password or not _verify_password(current_password, user.password):
            raise ValidationError(
                "Current password is incorrect", code="INVALID_CURRENT_PASSWORD"
            )
        _check_password(new_password)
        user.password = _hash_password(new_password)
        await self.session.flush()
        await self.revoke_all(user.id)


def extract_token_from_header(authorization: str | None) -> str | None:
    """Extract JWT token from Authorization header."""
    if not authorization:
        return None

    parts = authorization.split()
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token
