from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_server.core.exceptions import (
    DuplicateCredential,
    DuplicateUsername,
    StoreUnavailable,
)
from passkey_server.models.credential import Credential
from passkey_server.models.user import User

logger = structlog.get_logger()


@asynccontextmanager
async def _guard(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as e:
        logger.error("Identity store failure", operation=operation, error=str(e))
        raise StoreUnavailable(f"identity store unavailable during {operation}") from e


class IdentityStore:
    """Users and their credentials, backed by one request-scoped session.

    Writes are flushed but not committed; callers group them with
    ``transaction()`` so that a user and its first credential land together.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        try:
            yield
            async with _guard("commit"):
                await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with _guard("get_user_by_username"):
            result = await self.db.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: UUID) -> Optional[User]:
        async with _guard("get_user_by_id"):
            result = await self.db.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def get_user_by_credential_id(self, credential_id: bytes) -> Optional[User]:
        async with _guard("get_user_by_credential_id"):
            result = await self.db.execute(
                select(User)
                .join(Credential, Credential.user_id == User.id)
                .where(Credential.credential_id == credential_id)
            )
            return result.scalar_one_or_none()

    async def add_user(self, username: str, user_handle: bytes) -> User:
        user = User(username=username, user_handle=user_handle)
        self.db.add(user)
        try:
            async with _guard("add_user"):
                await self.db.flush()
        except IntegrityError as e:
            logger.warning("Username collision on insert", username=username)
            raise DuplicateUsername(username) from e
        return user

    async def get_user_credentials(self, user_id: UUID) -> List[Credential]:
        async with _guard("get_user_credentials"):
            result = await self.db.execute(
                select(Credential)
                .where(Credential.user_id == user_id)
                .order_by(Credential.created_at)
            )
            return list(result.scalars().all())

    async def get_credential(self, credential_id: bytes) -> Optional[Credential]:
        async with _guard("get_credential"):
            result = await self.db.execute(
                select(Credential).where(Credential.credential_id == credential_id)
            )
            return result.scalar_one_or_none()

    async def add_credential(self, credential: Credential) -> Credential:
        self.db.add(credential)
        try:
            async with _guard("add_credential"):
                await self.db.flush()
        except IntegrityError as e:
            raise DuplicateCredential() from e
        return credential

    async def compare_and_set_sign_count(
        self, credential_id: bytes, expected: int, new: int
    ) -> bool:
        """Write ``new`` only if the stored counter still equals ``expected``."""
        async with _guard("compare_and_set_sign_count"):
            result = await self.db.execute(
                update(Credential)
                .where(Credential.credential_id == credential_id)
                .where(Credential.sign_count == expected)
                .values(sign_count=new, last_used_at=datetime.utcnow())
            )
            return result.rowcount == 1

    async def update_user_data(
        self,
        user: User,
        email: Optional[str] = None,
        encrypted_data: Optional[Any] = None,
    ) -> User:
        if email is not None:
            user.email = email
        if encrypted_data is not None:
            user.encrypted_data = encrypted_data
        user.updated_at = datetime.utcnow()
        async with _guard("update_user_data"):
            await self.db.flush()
        return user

    async def delete_user(self, user: User) -> None:
        async with _guard("delete_user"):
            await self.db.execute(delete(Credential).where(Credential.user_id == user.id))
            await self.db.execute(delete(User).where(User.id == user.id))
