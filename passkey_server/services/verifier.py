"""
WebAuthn verification backed by python-fido2.

The coordinator never sees fido2 exceptions: every outcome comes back as a
result value with a ``FailureReason`` so that a rejected assertion cannot be
mistaken for a crashed collaborator.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from fido2 import cbor
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AttestedCredentialData,
    AuthenticationResponse,
    AuthenticatorData,
    AuthenticatorTransport,
    CollectedClientData,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    RegistrationResponse,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from passkey_server.core.config import settings
from passkey_server.core.logging import short_id

logger = structlog.get_logger()

MULTI_DEVICE = "multiDevice"
SINGLE_DEVICE = "singleDevice"

_NO_AAGUID = b"\x00" * 16


class FailureReason(str, Enum):
    MALFORMED = "malformed"
    REJECTED = "rejected"
    REPLAY = "replay"
    COUNTER_CONFLICT = "counter_conflict"
    IDENTITY_MISMATCH = "identity_mismatch"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class RegisteredCredential:
    """Credential descriptor produced by a successful registration"""
    credential_id: bytes
    public_key: bytes
    sign_count: int
    aaguid: bytes = _NO_AAGUID
    device_type: str = SINGLE_DEVICE
    backed_up: bool = False


@dataclass(frozen=True)
class StoredCredential:
    """What the verifier needs to check an assertion against a stored credential"""
    credential_id: bytes
    public_key: bytes
    sign_count: int
    aaguid: bytes = _NO_AAGUID
    transports: Sequence[str] = field(default_factory=tuple)


@dataclass(frozen=True)
class RegistrationResult:
    verified: bool
    credential: Optional[RegisteredCredential] = None
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class AuthenticationResult:
    verified: bool
    new_sign_count: Optional[int] = None
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None


class Verifier(ABC):
    """Builds ceremony options and validates authenticator responses."""

    @abstractmethod
    def registration_options(
        self,
        challenge: bytes,
        user_handle: bytes,
        username: str,
        display_name: str,
        exclude: Sequence[StoredCredential] = (),
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def authentication_options(self, challenge: bytes) -> Dict[str, Any]:
        ...

    @abstractmethod
    def credential_id_of(self, assertion: Mapping[str, Any]) -> Optional[bytes]:
        ...

    @abstractmethod
    def challenge_of(self, assertion: Mapping[str, Any]) -> Optional[bytes]:
        ...

    @abstractmethod
    async def verify_registration(
        self,
        assertion: Mapping[str, Any],
        expected_challenge: bytes,
        require_user_verification: bool = True,
    ) -> RegistrationResult:
        ...

    @abstractmethod
    async def verify_authentication(
        self,
        assertion: Mapping[str, Any],
        expected_challenge: bytes,
        credential: StoredCredential,
        require_user_verification: bool = True,
    ) -> AuthenticationResult:
        ...

    @staticmethod
    def transports_of(assertion: Mapping[str, Any]) -> List[str]:
        response = assertion.get("response") if isinstance(assertion, Mapping) else None
        transports = response.get("transports") if isinstance(response, Mapping) else None
        if not isinstance(transports, list):
            return []
        return [t for t in transports if isinstance(t, str)]


def _attested(credential: StoredCredential) -> AttestedCredentialData:
    public_key = CoseKey.parse(cbor.decode(credential.public_key))
    return AttestedCredentialData.create(
        credential.aaguid or _NO_AAGUID,
        credential.credential_id,
        public_key,
    )


def _descriptor(credential: StoredCredential) -> PublicKeyCredentialDescriptor:
    # Unknown transport hints are dropped
    known = {t.value for t in AuthenticatorTransport}
    transports = [AuthenticatorTransport(t) for t in credential.transports if t in known]
    return PublicKeyCredentialDescriptor(
        type=PublicKeyCredentialType.PUBLIC_KEY,
        id=credential.credential_id,
        transports=transports or None,
    )


def _state(challenge: bytes, require_user_verification: bool) -> Dict[str, Any]:
    uv = (
        UserVerificationRequirement.REQUIRED
        if require_user_verification
        else UserVerificationRequirement.PREFERRED
    )
    return {"challenge": websafe_encode(challenge), "user_verification": uv}


class Fido2Verifier(Verifier):
    def __init__(
        self,
        rp_id: Optional[str] = None,
        rp_name: Optional[str] = None,
        origins: Optional[Sequence[str]] = None,
    ):
        self.rp = PublicKeyCredentialRpEntity(
            name=rp_name or settings.RP_NAME,
            id=rp_id or settings.RP_ID,
        )
        self.origins = set(origins or settings.expected_origins)
        self.server = Fido2Server(
            self.rp,
            attestation=AttestationConveyancePreference.NONE,
            verify_origin=self._verify_origin,
        )

    def _verify_origin(self, origin: str) -> bool:
        return origin in self.origins

    def registration_options(
        self,
        challenge: bytes,
        user_handle: bytes,
        username: str,
        display_name: str,
        exclude: Sequence[StoredCredential] = (),
    ) -> Dict[str, Any]:
        options, _ = self.server.register_begin(
            PublicKeyCredentialUserEntity(
                name=username,
                id=user_handle,
                display_name=display_name,
            ),
            [_descriptor(c) for c in exclude],
            resident_key_requirement=ResidentKeyRequirement.REQUIRED,
            user_verification=UserVerificationRequirement.REQUIRED,
            challenge=challenge,
        )
        return dict(options)["publicKey"]

    def authentication_options(self, challenge: bytes) -> Dict[str, Any]:
        options, _ = self.server.authenticate_begin(
            user_verification=UserVerificationRequirement.REQUIRED,
            challenge=challenge,
        )
        return dict(options)["publicKey"]

    def credential_id_of(self, assertion: Mapping[str, Any]) -> Optional[bytes]:
        if not isinstance(assertion, Mapping):
            return None
        raw = assertion.get("rawId") or assertion.get("id")
        if not isinstance(raw, str) or not raw:
            return None
        try:
            return websafe_decode(raw)
        except ValueError:
            return None

    def challenge_of(self, assertion: Mapping[str, Any]) -> Optional[bytes]:
        response = assertion.get("response") if isinstance(assertion, Mapping) else None
        raw = response.get("clientDataJSON") if isinstance(response, Mapping) else None
        if not isinstance(raw, str):
            return None
        try:
            return CollectedClientData(websafe_decode(raw)).challenge
        except (ValueError, KeyError, TypeError):
            return None

    async def verify_registration(
        self,
        assertion: Mapping[str, Any],
        expected_challenge: bytes,
        require_user_verification: bool = True,
    ) -> RegistrationResult:
        try:
            registration = RegistrationResponse.from_dict(assertion)
        except Exception as e:
            logger.info("Malformed registration response", error=str(e))
            return RegistrationResult(False, reason=FailureReason.MALFORMED, detail=str(e))

        try:
            auth_data = self.server.register_complete(
                _state(expected_challenge, require_user_verification),
                registration,
            )
        except Exception as e:
            logger.info("Registration response rejected", error=str(e))
            return RegistrationResult(False, reason=FailureReason.REJECTED, detail=str(e))

        credential_data = auth_data.credential_data
        if credential_data is None:
            return RegistrationResult(
                False, reason=FailureReason.MALFORMED, detail="no attested credential data"
            )

        backup_eligible = bool(auth_data.flags & AuthenticatorData.FLAG.BE)
        credential = RegisteredCredential(
            credential_id=bytes(credential_data.credential_id),
            public_key=cbor.encode(dict(credential_data.public_key)),
            sign_count=auth_data.counter,
            aaguid=bytes(credential_data.aaguid),
            device_type=MULTI_DEVICE if backup_eligible else SINGLE_DEVICE,
            backed_up=bool(auth_data.flags & AuthenticatorData.FLAG.BS),
        )
        logger.info(
            "Registration response verified",
            credential_id=short_id(credential.credential_id),
            device_type=credential.device_type,
        )
        return RegistrationResult(True, credential=credential)

    async def verify_authentication(
        self,
        assertion: Mapping[str, Any],
        expected_challenge: bytes,
        credential: StoredCredential,
        require_user_verification: bool = True,
    ) -> AuthenticationResult:
        try:
            authentication = AuthenticationResponse.from_dict(assertion)
            stored = _attested(credential)
        except Exception as e:
            logger.info("Malformed authentication response", error=str(e))
            return AuthenticationResult(False, reason=FailureReason.MALFORMED, detail=str(e))

        try:
            self.server.authenticate_complete(
                _state(expected_challenge, require_user_verification),
                [stored],
                authentication,
            )
        except Exception as e:
            logger.info(
                "Authentication response rejected",
                credential_id=short_id(credential.credential_id),
                error=str(e),
            )
            return AuthenticationResult(False, reason=FailureReason.REJECTED, detail=str(e))

        return AuthenticationResult(
            True,
            new_sign_count=authentication.response.authenticator_data.counter,
        )
