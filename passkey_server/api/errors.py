from fastapi import Request, status
from fastapi.responses import JSONResponse
import structlog

from passkey_server.core.exceptions import (
    CeremonyError,
    ChallengeNotFound,
    CredentialNotFound,
    DuplicateCredential,
    DuplicateUsername,
    InvalidIdentifier,
    PasskeyError,
    ServiceError,
    UserNotFound,
    VerificationFailed,
)

logger = structlog.get_logger()

USER_DATA_PREFIX = "/api/users"


def to_status(request: Request, exc: PasskeyError) -> tuple:
    """Map a passkey error to (status code, client-facing message)."""
    if isinstance(exc, ServiceError):
        return status.HTTP_503_SERVICE_UNAVAILABLE, "Service temporarily unavailable"
    if isinstance(exc, (DuplicateCredential, DuplicateUsername)):
        return status.HTTP_409_CONFLICT, str(exc)
    if isinstance(exc, UserNotFound):
        if request.url.path.startswith(USER_DATA_PREFIX):
            return status.HTTP_404_NOT_FOUND, "User not found"
        return status.HTTP_400_BAD_REQUEST, "Verification failed"
    if isinstance(exc, InvalidIdentifier):
        return status.HTTP_400_BAD_REQUEST, str(exc) or "Invalid identifier"
    if isinstance(exc, ChallengeNotFound):
        return status.HTTP_400_BAD_REQUEST, "Challenge expired or missing"
    if isinstance(exc, CredentialNotFound):
        return status.HTTP_400_BAD_REQUEST, "Authenticator not found"
    if isinstance(exc, VerificationFailed):
        return status.HTTP_400_BAD_REQUEST, "Verification failed"
    if isinstance(exc, CeremonyError):
        return status.HTTP_400_BAD_REQUEST, "Request rejected"
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"


async def passkey_exception_handler(request: Request, exc: PasskeyError):
    """Translate passkey errors to HTTP responses globally."""
    status_code, message = to_status(request, exc)
    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=type(exc).__name__)
    else:
        logger.info("Request rejected", path=request.url.path, error=type(exc).__name__)
    return JSONResponse(status_code=status_code, content={"error": message})
