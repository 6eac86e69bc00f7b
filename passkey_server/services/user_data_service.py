from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from passkey_server.core.exceptions import UserNotFound
from passkey_server.services.identity_resolver import IdentityResolver
from passkey_server.services.identity_store import IdentityStore

logger = structlog.get_logger()

SEED_BACKUP_VERSION = 1


class UserDataService:
    """Cleartext metadata plus an encrypted payload the server never opens."""

    def __init__(self, store: IdentityStore):
        self.store = store
        self.identities = IdentityResolver(store)

    async def store_user_data(
        self,
        identifier: str,
        encrypted_data: Optional[Any] = None,
        email: Optional[str] = None,
        credential_id: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        async with self.store.transaction():
            user = await self.identities.resolve_identifier(identifier, credential_id)
            await self.store.update_user_data(user, email=email, encrypted_data=encrypted_data)

        logger.info("User data stored", username=user.username)
        return {
            "success": True,
            "username": user.username,
            "email": user.email,
            "has_encrypted_data": user.encrypted_data is not None,
            "updated_at": user.updated_at,
        }

    async def fetch_user_data(
        self,
        identifier: str,
        credential_id: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        user = await self.identities.resolve_identifier(identifier, credential_id)
        return {
            "username": user.username,
            "email": user.email,
            "encrypted_data": user.encrypted_data,
            "created_at": user.created_at,
            "updated_at": user.updated_at,
        }

    async def store_seed_backup(
        self,
        username: str,
        encrypted_seed: Any,
        key_derivation_params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Merge an encrypted seed backup into the user's encrypted payload."""
        backup_date = datetime.now(timezone.utc).isoformat()
        async with self.store.transaction():
            user = await self.store.get_user_by_username(username)
            if user is None:
                raise UserNotFound(username)

            current = user.encrypted_data if isinstance(user.encrypted_data, dict) else {}
            updated = {
                **current,
                "seedBackup": {
                    "encryptedSeed": encrypted_seed,
                    "keyDerivationParams": key_derivation_params,
                    "backupDate": backup_date,
                    "version": SEED_BACKUP_VERSION,
                },
            }
            await self.store.update_user_data(user, encrypted_data=updated)

        logger.info("Seed backup stored", username=username)
        return {"success": True, "backup_date": backup_date}

    async def delete_user(self, username: str) -> None:
        async with self.store.transaction():
            user = await self.store.get_user_by_username(username)
            if user is None:
                raise UserNotFound(username)
            await self.store.delete_user(user)
        logger.info("User deleted with all credentials", username=username)
