"""Identity gate: bearer-token check run once per connection."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from .errors import AuthError, StorageError
from .models import AuthenticatedUser
from .store import ChatStore
from .util import normalize_user_id


class IdentityGate:
    def __init__(
        self,
        store: ChatStore,
        *,
        secret: str | None,
        algorithm: str = "HS256",
        user_claim: str = "userId",
        banned_users: tuple[str, ...] | set[str] = (),
    ) -> None:
        self.store = store
        self.secret = secret
        self.algorithm = algorithm
        self.user_claim = user_claim
        self.banned_users = {str(u).strip() for u in banned_users if str(u).strip()}
        self.log = logging.getLogger("chatd.auth")

    def issue_token(self, user_id: str, *, expires_in_s: float = 7 * 24 * 3600) -> str:
        """Mint a bearer token for ``user_id`` (operator tooling and tests)."""
        if not self.secret:
            raise AuthError("no jwt_secret configured")
        now = datetime.now(timezone.utc)
        claims = {
            self.user_claim: user_id,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in_s),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def decode_token(self, token: Any) -> dict[str, Any]:
        if not isinstance(token, str) or not token.strip():
            raise AuthError("No token provided")
        if not self.secret:
            # A hub without a secret cannot verify anything.
            raise AuthError("Invalid token")
        try:
            return jwt.decode(
                token.strip(),
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError("Token expired") from e
        except jwt.PyJWTError as e:
            self.log.debug("Token rejected: %s", e)
            raise AuthError("Invalid token") from e

    def authenticate(self, token: Any) -> AuthenticatedUser:
        """Verify ``token`` and resolve the user it names.

        Raises AuthError for every failure, including a store failure during
        the lookup; the connection never proceeds half-authenticated.
        """
        claims = self.decode_token(token)
        user_id = normalize_user_id(claims.get(self.user_claim) or claims.get("sub"))
        if user_id is None:
            raise AuthError("Invalid token")

        try:
            user = self.store.find_user_by_id(user_id)
        except StorageError as e:
            self.log.warning("User lookup failed user=%s err=%s", user_id, e)
            raise AuthError("Invalid token") from e

        if user is None:
            raise AuthError("User not found")
        if user.id in self.banned_users:
            raise AuthError("banned")

        return AuthenticatedUser(user_id=user.id, username=user.username)
