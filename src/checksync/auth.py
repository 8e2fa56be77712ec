"""
Auth session -- who is signed in, and with which token.

Identity acquisition is somebody else's job: an ``IdentityProvider``
hands back ``(UserIdentity, access_token)`` or raises ``AuthError``.
The session only remembers the result, persists it, and tells
subscribers when it changes.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

import requests
from pydantic import ValidationError

from .errors import AuthError, LocalStoreError
from .kvstore import KeyValueStore
from .models import Credentials, UserIdentity

logger = logging.getLogger("checksync.auth")

USER_KEY = "auth-user"
TOKEN_KEY = "auth-access-token"
DEFAULT_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

AuthCallback = Callable[[Optional[UserIdentity]], None]


class IdentityProvider(ABC):
    """Source of a signed-in identity."""

    @abstractmethod
    def sign_in(self) -> tuple[UserIdentity, str]:
        """Return the identity and its bearer token.

        Raises:
            AuthError: If no identity could be obtained.
        """


class StaticIdentityProvider(IdentityProvider):
    """Provider for an identity that is already known."""

    def __init__(self, identity: UserIdentity, access_token: str) -> None:
        self.identity = identity
        self.access_token = access_token

    def sign_in(self) -> tuple[UserIdentity, str]:
        if not self.access_token:
            raise AuthError("No access token supplied")
        return self.identity, self.access_token


def fetch_userinfo(
    access_token: str,
    userinfo_url: str = DEFAULT_USERINFO_URL,
    session: Optional[requests.Session] = None,
    timeout: float = 10.0,
) -> Optional[UserIdentity]:
    """Resolve a bearer token to an identity via a userinfo endpoint.

    Returns:
        The identity, or None if the token was rejected or the answer
        lacked an ``id`` or ``email``.
    """
    http = session or requests
    try:
        resp = http.get(
            userinfo_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
        )
    except requests.RequestException as exc:
        logger.error("Token verification error: %s", exc)
        return None

    if not resp.ok:
        logger.error("Userinfo endpoint answered %s", resp.status_code)
        return None

    try:
        info = resp.json()
    except ValueError:
        logger.error("Userinfo endpoint returned non-JSON body")
        return None

    if not isinstance(info, dict) or not info.get("id") or not info.get("email"):
        logger.error("Invalid user info: %r", info)
        return None

    try:
        return UserIdentity.model_validate(info)
    except ValidationError as exc:
        logger.error("Invalid user info: %s", exc)
        return None


class UserinfoIdentityProvider(IdentityProvider):
    """Turn an existing bearer token into an identity.

    Args:
        access_token: Token obtained out of band (e.g. an OAuth flow).
        userinfo_url: Endpoint that maps the token to ``{id, email, ...}``.
        session: Optional requests session.
    """

    def __init__(
        self,
        access_token: str,
        userinfo_url: str = DEFAULT_USERINFO_URL,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.access_token = access_token
        self.userinfo_url = userinfo_url
        self.session = session

    def sign_in(self) -> tuple[UserIdentity, str]:
        if not self.access_token:
            raise AuthError("No access token supplied")
        identity = fetch_userinfo(self.access_token, self.userinfo_url, self.session)
        if identity is None:
            raise AuthError("The provided access token is invalid or expired")
        return identity, self.access_token


class AuthSession:
    """The current identity and token, persisted across restarts.

    Args:
        kv: Key/value store to persist the session in.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._lock = threading.Lock()
        self._identity: Optional[UserIdentity] = None
        self._token: Optional[str] = None
        self._observers: list[AuthCallback] = []
        self._restore()

    def _restore(self) -> None:
        raw_user = self._kv.get(USER_KEY)
        token = self._kv.get(TOKEN_KEY)
        if not raw_user or not token:
            return
        try:
            self._identity = UserIdentity.model_validate(json.loads(raw_user))
            self._token = token
            logger.debug("Restored session for %s", self._identity.id)
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.error("Failed to parse stored user: %s", exc)

    @property
    def identity(self) -> Optional[UserIdentity]:
        with self._lock:
            return self._identity

    @property
    def access_token(self) -> Optional[str]:
        with self._lock:
            return self._token

    @property
    def is_authenticated(self) -> bool:
        with self._lock:
            return self._identity is not None

    def credentials(self) -> Credentials:
        with self._lock:
            return Credentials(
                user_id=self._identity.id if self._identity else None,
                access_token=self._token,
                is_authenticated=self._identity is not None,
            )

    def subscribe(self, callback: AuthCallback) -> Callable[[], None]:
        """Call ``callback`` with the new identity (or None) on every change."""
        with self._lock:
            self._observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def _notify(self, identity: Optional[UserIdentity]) -> None:
        with self._lock:
            observers = list(self._observers)
        for callback in observers:
            try:
                callback(identity)
            except Exception as exc:
                logger.error("Auth observer %r failed: %s", callback, exc)

    def sign_in(self, provider: IdentityProvider) -> UserIdentity:
        """Sign in through ``provider`` and persist the result.

        Raises:
            AuthError: If the provider fails.
        """
        identity, token = provider.sign_in()
        try:
            self._kv.put_many({
                USER_KEY: identity.model_dump_json(),
                TOKEN_KEY: token,
            })
        except LocalStoreError as exc:
            logger.error("Could not persist session: %s", exc)

        with self._lock:
            self._identity = identity
            self._token = token
        logger.info("Signed in as %s (%s)", identity.email, identity.id)
        self._notify(identity)
        return identity

    def sign_out(self) -> None:
        """Forget the identity and token."""
        with self._lock:
            previous = self._identity
            self._identity = None
            self._token = None
        self._kv.delete(USER_KEY)
        self._kv.delete(TOKEN_KEY)
        if previous is not None:
            logger.info("Signed out %s", previous.id)
            self._notify(None)
