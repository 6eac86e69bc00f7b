import secrets
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import structlog
from fido2.utils import websafe_encode

from passkey_server.core.config import settings
from passkey_server.core.exceptions import (
    ChallengeExpiredOrMissing,
    CredentialNotFound,
    VerificationFailed,
    VerifierUnavailable,
)
from passkey_server.core.logging import short_id
from passkey_server.core.metrics import track_ceremony
from passkey_server.services.challenge_ledger import CeremonyKind, ChallengeEntry, ChallengeLedger
from passkey_server.services.credential_manager import CredentialRecordManager, to_stored
from passkey_server.services.identity_resolver import (
    CEREMONY_KEY_SEPARATOR,
    CeremonyIdentity,
    IdentityResolver,
    is_anonymous_username,
)
from passkey_server.services.identity_store import IdentityStore
from passkey_server.services.verifier import FailureReason, Verifier

logger = structlog.get_logger()

CHALLENGE_BYTES = 32
ANONYMOUS_KEY_PREFIX = "reg" + CEREMONY_KEY_SEPARATOR
AUTHENTICATION_KEY_PREFIX = "auth" + CEREMONY_KEY_SEPARATOR


@dataclass(frozen=True)
class CeremonyOptions:
    options: Dict[str, Any]
    ceremony_key: str


@dataclass(frozen=True)
class CeremonyOutcome:
    verified: bool
    username: str

    @property
    def is_anonymous(self) -> bool:
        return is_anonymous_username(self.username)


def _failure(result) -> Exception:
    if result.reason is FailureReason.UNAVAILABLE:
        return VerifierUnavailable(result.detail or "verifier unavailable")
    reason = result.reason.value if result.reason else FailureReason.REJECTED.value
    return VerificationFailed(reason, detail=result.detail)


class CeremonyCoordinator:
    """Begin/complete operations for passkey registration and authentication.

    One coordinator serves one request. The ledger and verifier are shared
    across requests; the store wraps the request's database session.
    """

    def __init__(
        self,
        store: IdentityStore,
        ledger: ChallengeLedger,
        verifier: Verifier,
        uniform_failures: Optional[bool] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.verifier = verifier
        self.identities = IdentityResolver(store)
        self.credentials = CredentialRecordManager(store)
        self.uniform_failures = (
            settings.UNIFORM_AUTH_FAILURES if uniform_failures is None else uniform_failures
        )

    @track_ceremony("registration", "begin")
    async def begin_registration(self, identity_hint: Optional[str] = None) -> CeremonyOptions:
        identity, user = await self.identities.resolve_hint(identity_hint)

        exclude = []
        if user is not None:
            exclude = [to_stored(c) for c in await self.credentials.list_for_user(user)]

        if identity.is_anonymous:
            # Never collides with a username or with a concurrent anonymous ceremony
            ceremony_key = ANONYMOUS_KEY_PREFIX + secrets.token_urlsafe(24)
        else:
            ceremony_key = identity.username

        challenge = secrets.token_bytes(CHALLENGE_BYTES)
        options = self.verifier.registration_options(
            challenge=challenge,
            user_handle=identity.user_handle,
            username=identity.display_name,
            display_name=identity.display_name,
            exclude=exclude,
        )
        await self.ledger.issue(
            ceremony_key,
            challenge,
            CeremonyKind.REGISTRATION,
            identity.to_metadata(),
        )

        logger.info(
            "Registration ceremony started",
            mode=identity.mode.value,
            username=identity.username,
            excluded=len(exclude),
        )
        return CeremonyOptions(options=options, ceremony_key=ceremony_key)

    @track_ceremony("registration", "complete")
    async def complete_registration(
        self,
        assertion: Mapping[str, Any],
        ceremony_key: Optional[str] = None,
        identity_hint: Optional[str] = None,
    ) -> CeremonyOutcome:
        key = ceremony_key or identity_hint
        if not key:
            raise ChallengeExpiredOrMissing()
        entry = await self.ledger.consume(key)
        if entry.kind is not CeremonyKind.REGISTRATION:
            raise VerificationFailed(FailureReason.MALFORMED.value, detail="not a registration ceremony")

        identity = CeremonyIdentity.from_metadata(entry.metadata)
        if identity_hint and not identity.is_anonymous and identity_hint != identity.username:
            raise VerificationFailed(FailureReason.IDENTITY_MISMATCH.value)

        result = await self.verifier.verify_registration(
            assertion,
            expected_challenge=entry.challenge,
            require_user_verification=True,
        )
        if not result.verified:
            logger.info("Registration verification failed", reason=result.reason, mode=identity.mode.value)
            raise _failure(result)

        registered = result.credential
        transports = self.verifier.transports_of(assertion)

        async with self.store.transaction():
            user, created = await self.identities.resolve_owner(identity, registered.credential_id)
            await self.credentials.create(user, registered, transports)

        logger.info(
            "Registration ceremony completed",
            username=user.username,
            new_user=created,
            credential_id=short_id(registered.credential_id),
        )
        return CeremonyOutcome(verified=True, username=user.username)

    @track_ceremony("authentication", "begin")
    async def begin_authentication(self) -> CeremonyOptions:
        challenge = secrets.token_bytes(CHALLENGE_BYTES)
        # Keyed by the challenge so the assertion alone locates its ceremony
        ceremony_key = AUTHENTICATION_KEY_PREFIX + websafe_encode(challenge)
        options = self.verifier.authentication_options(challenge)
        await self.ledger.issue(ceremony_key, challenge, CeremonyKind.AUTHENTICATION)
        logger.info("Authentication ceremony started")
        return CeremonyOptions(options=options, ceremony_key=ceremony_key)

    async def _consume_authentication(
        self, assertion: Mapping[str, Any], ceremony_key: Optional[str]
    ) -> ChallengeEntry:
        if not ceremony_key:
            challenge = self.verifier.challenge_of(assertion)
            if challenge is None:
                raise ChallengeExpiredOrMissing()
            ceremony_key = AUTHENTICATION_KEY_PREFIX + websafe_encode(challenge)
        entry = await self.ledger.consume(ceremony_key)
        if entry.kind is not CeremonyKind.AUTHENTICATION:
            raise VerificationFailed(FailureReason.MALFORMED.value, detail="not an authentication ceremony")
        return entry

    @track_ceremony("authentication", "complete")
    async def complete_authentication(
        self,
        assertion: Mapping[str, Any],
        ceremony_key: Optional[str] = None,
    ) -> CeremonyOutcome:
        entry = await self._consume_authentication(assertion, ceremony_key)

        credential_id = self.verifier.credential_id_of(assertion)
        if credential_id is None:
            raise VerificationFailed(FailureReason.MALFORMED.value, detail="missing credential id")

        try:
            record = await self.credentials.get(credential_id)
        except CredentialNotFound:
            if self.uniform_failures:
                raise VerificationFailed(FailureReason.REJECTED.value)
            raise
        user = await self.identities.owner_of(record)
        stored = to_stored(record)

        result = await self.verifier.verify_authentication(
            assertion,
            expected_challenge=entry.challenge,
            credential=stored,
            require_user_verification=True,
        )
        if not result.verified:
            logger.info(
                "Authentication verification failed",
                reason=result.reason,
                credential_id=short_id(credential_id),
            )
            raise _failure(result)

        async with self.store.transaction():
            await self.credentials.record_authentication(stored, result.new_sign_count or 0)

        logger.info("Authentication ceremony completed", username=user.username)
        return CeremonyOutcome(verified=True, username=user.username)
