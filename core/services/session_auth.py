"""
Bearer credentials with per-account version revocation.

A token carries the account's ``token_version`` at mint time and is valid only
while that still equals the stored value. Revoking bumps the stored version,
which invalidates every earlier token at once.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable, Mapping, Optional

import jwt
from sqlalchemy import update

import core.config as config
from core.db import open_session
from core.errors import Unauthorized
from core.models import Account, utcnow

logger = config.logger


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    value = headers.get("authorization") or headers.get("Authorization")
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class SessionAuthenticator:
    def __init__(
        self,
        secret: Optional[str] = None,
        *,
        ttl_seconds: int = config.SESSION_TOKEN_TTL_SECONDS,
        single_active: bool = config.SESSION_SINGLE_ACTIVE,
        session_factory: Optional[Callable] = None,
    ):
        self._secret = secret or config.JWT_SECRET
        if not self._secret:
            raise RuntimeError("JWT_SECRET is required for session tokens")
        self._ttl = timedelta(seconds=ttl_seconds)
        self.single_active = single_active
        self._session_factory = session_factory or open_session

    def mint(self, account: Account) -> str:
        """Issue a token bound to the account's current token version."""
        version = account.token_version or 0
        if self.single_active:
            version = self.revoke(account.id)
            account.token_version = version
        issued_at = utcnow()
        claims = {
            "sub": account.id,
            "token_version": version,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=config.JWT_ALGORITHM)

    def _decode(self, token: str) -> dict:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[config.JWT_ALGORITHM],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthorized("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized("invalid token") from exc
        if not isinstance(claims.get("token_version"), int):
            raise Unauthorized("invalid token")
        return claims

    def validate(self, token: Optional[str]) -> Account:
        """Return the token's account, or raise Unauthorized."""
        if not token:
            raise Unauthorized("missing token")
        claims = self._decode(token)

        db = self._session_factory()
        try:
            account = db.get(Account, claims["sub"])
            if account is None or not account.is_active:
                raise Unauthorized("unknown account")
            if account.token_version != claims["token_version"]:
                logger.info(
                    "session_token_revoked",
                    extra={"account_id": account.id, "token_version": claims["token_version"]},
                )
                raise Unauthorized("token revoked")
            db.expunge(account)
            return account
        finally:
            db.close()

    def revoke(self, account_id: str) -> int:
        """Invalidate every token issued so far; returns the new version."""
        db = self._session_factory()
        try:
            # The bumped value comes back from the UPDATE itself so concurrent
            # revokes each see their own version.
            version = db.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(token_version=Account.token_version + 1)
                .returning(Account.token_version)
            ).scalar_one_or_none()
            if version is None:
                db.rollback()
                raise Unauthorized("unknown account")
            db.commit()
        except Unauthorized:
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("session_tokens_revoked", extra={"account_id": account_id, "token_version": version})
        return int(version)
