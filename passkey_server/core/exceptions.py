"""
Error taxonomy for passkey ceremonies.

Ceremony errors are terminal for one attempt: the caller starts over from
``begin``. Service errors mean a collaborator (store or verifier) failed and
say nothing about the credential itself.
"""
from typing import Optional


class PasskeyError(Exception):
    """Base class for all passkey server errors"""
    pass


class CeremonyError(PasskeyError):
    """A registration or authentication attempt was rejected"""
    pass


class ChallengeNotFound(CeremonyError):
    """No live challenge for the ceremony key (never issued, consumed or expired)"""

    def __init__(self, key: Optional[str] = None):
        self.key = key
        super().__init__("Challenge expired or missing")


ChallengeExpiredOrMissing = ChallengeNotFound


class VerificationFailed(CeremonyError):
    def __init__(self, reason: str = "verification failed", detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(f"Verification failed: {reason}")


class DuplicateCredential(CeremonyError):
    def __init__(self):
        super().__init__("Credential is already registered")


class DuplicateUsername(CeremonyError):
    def __init__(self, username: str):
        self.username = username
        super().__init__(f"Username already exists: {username}")


class CredentialNotFound(CeremonyError):
    def __init__(self):
        super().__init__("Credential not found")


class UserNotFound(CeremonyError):
    def __init__(self, identifier: Optional[str] = None):
        self.identifier = identifier
        super().__init__("User not found")


class InvalidIdentifier(CeremonyError):
    """Identifier cannot be resolved as given (e.g. anonymous without credential id)"""
    pass


class ServiceError(PasskeyError):
    """A collaborator failed; the ceremony must be retried from the beginning"""
    pass


class StoreUnavailable(ServiceError):
    pass


class VerifierUnavailable(ServiceError):
    pass
