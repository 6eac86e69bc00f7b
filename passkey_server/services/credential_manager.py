from typing import List, Sequence

import structlog

from passkey_server.core.exceptions import CredentialNotFound, VerificationFailed
from passkey_server.core.logging import short_id
from passkey_server.core.metrics import replays_rejected_total
from passkey_server.models.credential import Credential
from passkey_server.models.user import User
from passkey_server.services.identity_store import IdentityStore
from passkey_server.services.verifier import FailureReason, RegisteredCredential, StoredCredential

logger = structlog.get_logger()


def is_replay(stored_count: int, new_count: int) -> bool:
    """Signature counter check.

    Authenticators that always report 0 carry no counter signal and are
    exempt; otherwise the counter must strictly increase.
    """
    return stored_count > 0 and new_count <= stored_count


def to_stored(credential: Credential) -> StoredCredential:
    return StoredCredential(
        credential_id=bytes(credential.credential_id),
        public_key=bytes(credential.public_key),
        sign_count=credential.sign_count or 0,
        aaguid=bytes(credential.aaguid) if credential.aaguid else b"\x00" * 16,
        transports=tuple(credential.transports or ()),
    )


class CredentialRecordManager:
    def __init__(self, store: IdentityStore):
        self.store = store

    async def list_for_user(self, user: User) -> List[Credential]:
        return await self.store.get_user_credentials(user.id)

    async def get(self, credential_id: bytes) -> Credential:
        credential = await self.store.get_credential(credential_id)
        if credential is None:
            logger.info("Unknown credential presented", credential_id=short_id(credential_id))
            raise CredentialNotFound()
        return credential

    async def create(
        self,
        user: User,
        registered: RegisteredCredential,
        transports: Sequence[str] = (),
    ) -> Credential:
        """Insert a credential row; raises DuplicateCredential if the id exists."""
        credential = Credential(
            user_id=user.id,
            credential_id=registered.credential_id,
            public_key=registered.public_key,
            aaguid=registered.aaguid,
            sign_count=registered.sign_count,
            device_type=registered.device_type,
            backed_up=registered.backed_up,
            transports=list(transports),
        )
        await self.store.add_credential(credential)
        logger.info(
            "Credential stored",
            username=user.username,
            credential_id=short_id(registered.credential_id),
            device_type=registered.device_type,
        )
        return credential

    async def record_authentication(self, credential: StoredCredential, new_count: int) -> None:
        """Apply the replay rule, then persist ``new_count`` against the snapshot.

        The write is a compare-and-set on the counter value the verifier saw,
        so a slower concurrent authentication can never roll the counter back.
        """
        if is_replay(credential.sign_count, new_count):
            replays_rejected_total.inc()
            logger.warning(
                "Signature counter did not increase",
                credential_id=short_id(credential.credential_id),
                stored=credential.sign_count,
                reported=new_count,
            )
            raise VerificationFailed(FailureReason.REPLAY.value)

        updated = await self.store.compare_and_set_sign_count(
            credential.credential_id, credential.sign_count, new_count
        )
        if not updated:
            logger.warning(
                "Signature counter changed concurrently",
                credential_id=short_id(credential.credential_id),
            )
            raise VerificationFailed(FailureReason.COUNTER_CONFLICT.value)
