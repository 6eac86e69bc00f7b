from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Any, Dict
from datetime import datetime

# Properties to receive via API when storing user data
class UserDataStore(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    encrypted_data: Optional[Any] = Field(default=None, alias="encryptedData")
    credential_id: Optional[str] = Field(default=None, alias="credentialId")

class UserDataStored(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    username: str
    email: Optional[str] = None
    has_encrypted_data: bool = Field(alias="hasEncryptedData")
    updated_at: datetime = Field(alias="updatedAt")

# Properties to return via API; encrypted data is passed through untouched
class UserDataResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str
    email: Optional[str] = None
    encrypted_data: Optional[Any] = Field(default=None, alias="encryptedData")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

class SeedBackupStore(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    encrypted_seed: Any = Field(alias="encryptedSeed")
    key_derivation_params: Optional[Dict[str, Any]] = Field(default=None, alias="keyDerivationParams")

class SeedBackupStored(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str = "Encrypted seed backup stored successfully"
    backup_date: str = Field(alias="backupDate")
