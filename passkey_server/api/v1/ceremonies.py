from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, status
import structlog

from passkey_server.api.dependencies import get_coordinator
from passkey_server.schemas.ceremony import (
    AuthenticationVerify,
    CeremonyResult,
    RegistrationVerify,
)
from passkey_server.services.ceremony_service import CeremonyCoordinator

router = APIRouter()
logger = structlog.get_logger()

@router.get("/generate-registration-options", status_code=status.HTTP_200_OK)
async def generate_registration_options(
    *,
    username: Optional[str] = None,
    coordinator: CeremonyCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Begin a passkey registration; omit ``username`` for an anonymous identity."""
    ceremony = await coordinator.begin_registration(username or None)
    return {**ceremony.options, "challengeKey": ceremony.ceremony_key}

@router.post("/verify-registration", response_model=CeremonyResult)
async def verify_registration(
    *,
    body: RegistrationVerify,
    coordinator: CeremonyCoordinator = Depends(get_coordinator),
) -> CeremonyResult:
    """Complete a passkey registration"""
    outcome = await coordinator.complete_registration(
        body.cred,
        ceremony_key=body.challenge_key,
        identity_hint=body.username,
    )
    return CeremonyResult(
        verified=outcome.verified,
        username=outcome.username,
        is_anonymous=outcome.is_anonymous,
    )

@router.get("/generate-authentication-options", status_code=status.HTTP_200_OK)
async def generate_authentication_options(
    coordinator: CeremonyCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Begin a discoverable-credential authentication"""
    ceremony = await coordinator.begin_authentication()
    return {**ceremony.options, "challengeKey": ceremony.ceremony_key}

@router.post("/verify-authentication", response_model=CeremonyResult)
async def verify_authentication(
    *,
    body: AuthenticationVerify,
    coordinator: CeremonyCoordinator = Depends(get_coordinator),
) -> CeremonyResult:
    """Complete an authentication and report the verified identity"""
    outcome = await coordinator.complete_authentication(
        body.cred,
        ceremony_key=body.challenge_key,
    )
    logger.info("User authenticated with passkey", username=outcome.username)
    return CeremonyResult(
        verified=outcome.verified,
        username=outcome.username,
        is_anonymous=outcome.is_anonymous,
    )
