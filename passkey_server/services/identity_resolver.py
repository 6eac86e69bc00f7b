"""
Identity resolution for passkey ceremonies.

A ceremony is bound to one of three identities, decided once when it begins:

- ``NAMED_EXISTING``: the hint names a stored user; a credential is added
- ``NAMED_NEW``: the hint names nobody yet; the user is created on success
- ``ANONYMOUS``: no hint; the username is derived from the new credential id

Anonymous usernames are a pure function of the credential id, so a retried
completion for the same credential always lands on the same identity.
"""

import hashlib
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import structlog
from fido2.utils import websafe_decode, websafe_encode

from passkey_server.core.config import settings
from passkey_server.core.exceptions import (
    DuplicateCredential,
    DuplicateUsername,
    InvalidIdentifier,
    UserNotFound,
)
from passkey_server.models.credential import Credential
from passkey_server.models.user import User
from passkey_server.services.identity_store import IdentityStore

logger = structlog.get_logger()

ANONYMOUS_HANDLE_BYTES = 32
ANONYMOUS_DIGEST_CHARS = 16
# Matches users.username
MAX_USERNAME_LENGTH = 255
CEREMONY_KEY_SEPARATOR = ":"

_ANONYMOUS_TAG = b"passkey-anonymous-username:"
_HANDLE_TAG = b"passkey-user-handle:"


class IdentityMode(str, Enum):
    NAMED_EXISTING = "named_existing"
    NAMED_NEW = "named_new"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class CeremonyIdentity:
    mode: IdentityMode
    user_handle: bytes
    display_name: str
    username: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.mode is IdentityMode.ANONYMOUS

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "username": self.username,
            "user_handle": websafe_encode(self.user_handle),
            "display_name": self.display_name,
            "anonymous": self.is_anonymous,
        }

    @classmethod
    def from_metadata(cls, metadata: Dict[str, Any]) -> "CeremonyIdentity":
        return cls(
            mode=IdentityMode(metadata["mode"]),
            user_handle=websafe_decode(metadata["user_handle"]),
            display_name=metadata.get("display_name") or "",
            username=metadata.get("username"),
        )


def derive_anonymous_username(credential_id: bytes, prefix: Optional[str] = None) -> str:
    """Fixed-length, URL-safe, one-way username for a credential id."""
    prefix = settings.ANONYMOUS_USERNAME_PREFIX if prefix is None else prefix
    digest = hashlib.sha256(_ANONYMOUS_TAG + bytes(credential_id)).digest()
    return prefix + websafe_encode(digest)[:ANONYMOUS_DIGEST_CHARS]


def is_anonymous_username(username: str, prefix: Optional[str] = None) -> bool:
    prefix = settings.ANONYMOUS_USERNAME_PREFIX if prefix is None else prefix
    return username.startswith(prefix)


def derive_user_handle(username: str) -> bytes:
    """Stable user handle for a named user created by registration."""
    return hashlib.sha256(_HANDLE_TAG + username.encode("utf-8")).digest()


class IdentityResolver:
    def __init__(self, store: IdentityStore):
        self.store = store

    async def resolve_hint(self, identity_hint: Optional[str]) -> Tuple[CeremonyIdentity, Optional[User]]:
        """Pick the ceremony identity for ``begin_registration``."""
        if not identity_hint:
            identity = CeremonyIdentity(
                mode=IdentityMode.ANONYMOUS,
                user_handle=secrets.token_bytes(ANONYMOUS_HANDLE_BYTES),
                display_name=settings.ANONYMOUS_DISPLAY_NAME,
            )
            return identity, None

        if len(identity_hint) > MAX_USERNAME_LENGTH:
            raise InvalidIdentifier(f"Usernames are limited to {MAX_USERNAME_LENGTH} characters")

        user = await self.store.get_user_by_username(identity_hint)
        if user is not None:
            identity = CeremonyIdentity(
                mode=IdentityMode.NAMED_EXISTING,
                user_handle=bytes(user.user_handle),
                display_name=user.username,
                username=user.username,
            )
            return identity, user

        if is_anonymous_username(identity_hint):
            # Reserved namespace; only derivation may produce these names
            raise InvalidIdentifier(f"Usernames starting with {settings.ANONYMOUS_USERNAME_PREFIX!r} are reserved")
        if CEREMONY_KEY_SEPARATOR in identity_hint or not identity_hint.isprintable():
            # Named usernames double as ceremony keys; ':' marks the generated ones
            raise InvalidIdentifier("Usernames may not contain ':' or control characters")

        identity = CeremonyIdentity(
            mode=IdentityMode.NAMED_NEW,
            user_handle=derive_user_handle(identity_hint),
            display_name=identity_hint,
            username=identity_hint,
        )
        return identity, None

    async def resolve_owner(self, identity: CeremonyIdentity, credential_id: bytes) -> Tuple[User, bool]:
        """Return the user a newly registered credential belongs to, creating it if needed.

        Must run inside ``IdentityStore.transaction()`` together with the
        credential insert. Returns ``(user, created)``.
        """
        if identity.is_anonymous:
            username = derive_anonymous_username(credential_id)
            existing = await self.store.get_user_by_username(username)
            if existing is not None:
                if await self.store.get_credential(credential_id) is not None:
                    raise DuplicateCredential()
                # Same derived name from a different credential
                logger.error("Anonymous username collision", username=username)
                raise DuplicateUsername(username)
            user = await self.store.add_user(username, identity.user_handle)
            logger.info("Anonymous user created", username=username)
            return user, True

        user = await self.store.get_user_by_username(identity.username)
        if user is not None:
            return user, False

        user = await self.store.add_user(identity.username, identity.user_handle)
        logger.info("Named user created", username=identity.username)
        return user, True

    async def owner_of(self, credential: Credential) -> User:
        user = await self.store.get_user_by_id(credential.user_id)
        if user is None:
            logger.error("Credential owner missing", user_id=str(credential.user_id))
            raise UserNotFound()
        return user

    async def resolve_identifier(self, identifier: str, credential_id: Optional[bytes] = None) -> User:
        """Map an API identifier (username, or anonymous name + credential id) to a user."""
        if is_anonymous_username(identifier):
            if not credential_id:
                raise InvalidIdentifier("Credential ID required for anonymous users")
            user = await self.store.get_user_by_credential_id(credential_id)
            if user is None or user.username != identifier:
                raise UserNotFound(identifier)
            return user

        user = await self.store.get_user_by_username(identifier)
        if user is None:
            raise UserNotFound(identifier)
        return user
