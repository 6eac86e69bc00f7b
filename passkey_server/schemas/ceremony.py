from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any

class RegistrationVerify(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: Optional[str] = None
    challenge_key: Optional[str] = Field(default=None, alias="challengeKey")
    cred: Dict[str, Any]

class AuthenticationVerify(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    challenge_key: Optional[str] = Field(default=None, alias="challengeKey")
    cred: Dict[str, Any]

class CeremonyResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    verified: bool
    username: str
    is_anonymous: bool = Field(alias="isAnonymous")
