import os

# Settings are read at import time; point them at throwaway backends first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.pop("REDIS_URL", None)
os.environ.setdefault("RP_ID", "localhost")
os.environ.setdefault("ORIGIN", "https://localhost")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import Any, AsyncGenerator, Dict, Mapping, Optional, Sequence

import pytest
from fido2.utils import websafe_decode, websafe_encode
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from passkey_server.api.dependencies import get_ledger, get_verifier
from passkey_server.db.postgres import Base, get_db
from passkey_server.main import app
from passkey_server.models import Credential, User  # noqa: F401
from passkey_server.services.challenge_ledger import MemoryChallengeLedger
from passkey_server.services.identity_store import IdentityStore
from passkey_server.services.verifier import (
    AuthenticationResult,
    FailureReason,
    RegisteredCredential,
    RegistrationResult,
    StoredCredential,
    Verifier,
)


class FakeVerifier(Verifier):
    """
    Stand-in for the WebAuthn verifier.
    An assertion is accepted when it echoes the issued challenge; the public
    key of a credential is derived from its id so authentication can check it.
    """

    def __init__(self):
        self.unavailable = False

    @staticmethod
    def public_key_for(credential_id: bytes) -> bytes:
        return b"pk:" + credential_id

    @staticmethod
    def registration(
        credential_id: bytes,
        options: Mapping[str, Any],
        sign_count: int = 0,
        transports: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        return {
            "id": websafe_encode(credential_id),
            "challenge": options["challenge"],
            "signCount": sign_count,
            "response": {"transports": list(transports or ["internal"])},
        }

    @staticmethod
    def assertion(credential_id: bytes, options: Mapping[str, Any], sign_count: int = 0) -> Dict[str, Any]:
        return {
            "id": websafe_encode(credential_id),
            "challenge": options["challenge"],
            "signCount": sign_count,
        }

    def registration_options(self, challenge, user_handle, username, display_name, exclude=()):
        return {
            "challenge": websafe_encode(challenge),
            "rp": {"id": "localhost", "name": "Passkey Server"},
            "user": {
                "id": websafe_encode(user_handle),
                "name": username,
                "displayName": display_name,
            },
            "excludeCredentials": [
                {"type": "public-key", "id": websafe_encode(c.credential_id)} for c in exclude
            ],
        }

    def authentication_options(self, challenge):
        return {
            "challenge": websafe_encode(challenge),
            "rpId": "localhost",
            "userVerification": "required",
        }

    def credential_id_of(self, assertion):
        raw = assertion.get("id")
        return websafe_decode(raw) if raw else None

    def challenge_of(self, assertion):
        raw = assertion.get("challenge")
        return websafe_decode(raw) if raw else None

    def _check(self, assertion, expected_challenge) -> Optional[FailureReason]:
        if self.unavailable:
            return FailureReason.UNAVAILABLE
        if "id" not in assertion or "challenge" not in assertion:
            return FailureReason.MALFORMED
        if websafe_decode(assertion["challenge"]) != expected_challenge:
            return FailureReason.REJECTED
        return None

    async def verify_registration(self, assertion, expected_challenge, require_user_verification=True):
        reason = self._check(assertion, expected_challenge)
        if reason is not None:
            return RegistrationResult(False, reason=reason)
        credential_id = websafe_decode(assertion["id"])
        return RegistrationResult(
            True,
            credential=RegisteredCredential(
                credential_id=credential_id,
                public_key=self.public_key_for(credential_id),
                sign_count=assertion.get("signCount", 0),
            ),
        )

    async def verify_authentication(
        self,
        assertion,
        expected_challenge,
        credential: StoredCredential,
        require_user_verification=True,
    ):
        reason = self._check(assertion, expected_challenge)
        if reason is not None:
            return AuthenticationResult(False, reason=reason)
        if credential.public_key != self.public_key_for(credential.credential_id):
            return AuthenticationResult(False, reason=FailureReason.REJECTED)
        return AuthenticationResult(True, new_sign_count=assertion.get("signCount", 0))


@pytest.fixture
async def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()

@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Fixture to get a test database session."""
    async with session_factory() as session:
        yield session

@pytest.fixture
def store(db_session) -> IdentityStore:
    return IdentityStore(db_session)

@pytest.fixture
def ledger() -> MemoryChallengeLedger:
    return MemoryChallengeLedger(ttl_seconds=300)

@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()

@pytest.fixture
async def async_client(session_factory, ledger, verifier) -> AsyncGenerator[AsyncClient, None]:
    """Fixture for an async test client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_verifier] = lambda: verifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
