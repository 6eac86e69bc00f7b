from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_server.db.postgres import get_db
from passkey_server.services.ceremony_service import CeremonyCoordinator
from passkey_server.services.challenge_ledger import ChallengeLedger
from passkey_server.services.identity_store import IdentityStore
from passkey_server.services.user_data_service import UserDataService
from passkey_server.services.verifier import Verifier


def get_ledger(request: Request) -> ChallengeLedger:
    return request.app.state.ledger


def get_verifier(request: Request) -> Verifier:
    return request.app.state.verifier


async def get_identity_store(db: AsyncSession = Depends(get_db)) -> IdentityStore:
    return IdentityStore(db)


async def get_coordinator(
    store: IdentityStore = Depends(get_identity_store),
    ledger: ChallengeLedger = Depends(get_ledger),
    verifier: Verifier = Depends(get_verifier),
) -> CeremonyCoordinator:
    return CeremonyCoordinator(store, ledger, verifier)


async def get_user_data_service(
    store: IdentityStore = Depends(get_identity_store),
) -> UserDataService:
    return UserDataService(store)
