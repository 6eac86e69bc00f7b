from typing import Dict, Optional
from fastapi import APIRouter, Depends, status
from fido2.utils import websafe_decode
import structlog

from passkey_server.api.dependencies import get_user_data_service
from passkey_server.core.exceptions import InvalidIdentifier
from passkey_server.schemas.user import (
    SeedBackupStore,
    SeedBackupStored,
    UserDataResponse,
    UserDataStore,
    UserDataStored,
)
from passkey_server.services.user_data_service import UserDataService

router = APIRouter()
logger = structlog.get_logger()


def _credential_id(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    try:
        return websafe_decode(value)
    except ValueError:
        raise InvalidIdentifier("Credential ID must be base64url encoded")


@router.post("/{identifier}/data", response_model=UserDataStored)
async def store_user_data(
    *,
    identifier: str,
    body: UserDataStore,
    service: UserDataService = Depends(get_user_data_service),
) -> UserDataStored:
    """
    Store cleartext metadata and the client-encrypted payload.
    Anonymous identities are addressed by their credential id.
    """
    result = await service.store_user_data(
        identifier,
        encrypted_data=body.encrypted_data,
        email=body.email,
        credential_id=_credential_id(body.credential_id),
    )
    return UserDataStored(**result)

@router.get("/{identifier}/data", response_model=UserDataResponse)
async def fetch_user_data(
    *,
    identifier: str,
    credentialId: Optional[str] = None,
    service: UserDataService = Depends(get_user_data_service),
) -> UserDataResponse:
    """Return metadata and the encrypted payload exactly as stored"""
    result = await service.fetch_user_data(identifier, credential_id=_credential_id(credentialId))
    return UserDataResponse(**result)

@router.post("/{username}/seed-backup", response_model=SeedBackupStored)
async def store_seed_backup(
    *,
    username: str,
    body: SeedBackupStore,
    service: UserDataService = Depends(get_user_data_service),
) -> SeedBackupStored:
    result = await service.store_seed_backup(
        username,
        encrypted_seed=body.encrypted_seed,
        key_derivation_params=body.key_derivation_params,
    )
    return SeedBackupStored(**result)

@router.delete("/{username}", status_code=status.HTTP_200_OK)
async def delete_user(
    *,
    username: str,
    service: UserDataService = Depends(get_user_data_service),
) -> Dict[str, str]:
    """Delete a user and, by cascade, all of their credentials"""
    await service.delete_user(username)
    logger.info("User deleted via API", username=username)
    return {"message": f"User {username} and all their authenticators deleted"}
